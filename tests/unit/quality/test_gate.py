"""Unit tests for the track-aware gate policy."""

from __future__ import annotations

import pytest

from stagegate.domain.models import GateDecision, InvalidTrackError, Track
from stagegate.quality.gate import GatePolicy, TrackThresholds
from stagegate.quality.rubric import Score


@pytest.mark.parametrize(
    ("score", "track", "expected"),
    [
        (100, Track.PRODUCTION, GateDecision.PASS),
        (90, Track.PRODUCTION, GateDecision.PASS),
        (89, Track.PRODUCTION, GateDecision.WARN),
        (80, Track.PRODUCTION, GateDecision.WARN),
        (79, Track.PRODUCTION, GateDecision.BLOCK),
        (75, Track.PRODUCTION, GateDecision.BLOCK),
        (0, Track.PRODUCTION, GateDecision.BLOCK),
        (65, Track.EXPLORATION, GateDecision.PASS),
        (60, Track.EXPLORATION, GateDecision.PASS),
        (59, Track.EXPLORATION, GateDecision.BLOCK),
    ],
)
def test_default_thresholds(score: int, track: Track, expected: GateDecision) -> None:
    assert GatePolicy().decide(score, track) is expected


def test_exploration_track_has_no_warn_band() -> None:
    policy = GatePolicy()
    assert not policy.thresholds_for("exploration").has_warn_band
    decisions = {policy.decide(value, "exploration") for value in range(101)}
    assert GateDecision.WARN not in decisions


def test_verdict_flags_excellence_and_accepts_scores() -> None:
    score = Score(value=95, total_deduction=5, finding_count=1)
    verdict = GatePolicy().verdict(score, "production")
    assert verdict.decision is GateDecision.PASS
    assert verdict.excellent
    assert not verdict.blocks
    assert verdict.to_dict()["track"] == "production"


def test_unknown_track_raises() -> None:
    with pytest.raises(InvalidTrackError):
        GatePolicy().decide(50, "staging")


def test_scores_outside_range_are_rejected() -> None:
    with pytest.raises(ValueError, match="within 0..100"):
        GatePolicy().decide(101, Track.PRODUCTION)


def test_injected_thresholds_replace_defaults() -> None:
    policy = GatePolicy(
        {
            "production": TrackThresholds(block_below=85, pass_at=95),
            "exploration": TrackThresholds(block_below=50, pass_at=70),
        }
    )
    assert policy.decide(84, "production") is GateDecision.BLOCK
    assert policy.decide(90, "production") is GateDecision.WARN
    assert policy.decide(60, "exploration") is GateDecision.WARN


def test_thresholds_validation() -> None:
    with pytest.raises(ValueError, match="block_below must be <= pass_at"):
        TrackThresholds(block_below=90, pass_at=80)
    with pytest.raises(ValueError, match="missing tracks"):
        GatePolicy({"production": TrackThresholds(block_below=80, pass_at=90)})
