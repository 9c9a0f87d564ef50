"""
stagegate — gate policy

File: src/stagegate/quality/gate.py
Last updated: 2026-10-19

Purpose
- Map a score and a track onto PASS / WARN / BLOCK using injected thresholds.

Functional requirements
- ``score < block_below`` blocks, ``score >= pass_at`` passes and anything between
  warns. Tracks whose two boundaries coincide have no WARN band.
- Defaults: production blocks below 80 and passes at 90; exploration blocks below 60
  and passes at 60.
- Unknown tracks raise ``InvalidTrackError``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Final

from stagegate.constants import SCORE_MAX, SCORE_MIN
from stagegate.domain.models import GateDecision, InvalidTrackError, Track, parse_track
from stagegate.quality.rubric import Score


@dataclass(frozen=True, slots=True)
class TrackThresholds:
    block_below: int
    pass_at: int
    excellence_at: int = 90

    def __post_init__(self) -> None:
        for name in ("block_below", "pass_at", "excellence_at"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"TrackThresholds.{name}: expected integer")
            if not SCORE_MIN <= value <= SCORE_MAX:
                raise ValueError(f"TrackThresholds.{name}: must be within {SCORE_MIN}..{SCORE_MAX}")
        if self.block_below > self.pass_at:
            raise ValueError("TrackThresholds: block_below must be <= pass_at")

    @property
    def has_warn_band(self) -> bool:
        return self.block_below < self.pass_at

    def to_dict(self) -> dict[str, int]:
        return {
            "block_below": self.block_below,
            "pass_at": self.pass_at,
            "excellence_at": self.excellence_at,
        }


DEFAULT_THRESHOLDS: Final[Mapping[Track, TrackThresholds]] = MappingProxyType(
    {
        Track.PRODUCTION: TrackThresholds(block_below=80, pass_at=90, excellence_at=90),
        Track.EXPLORATION: TrackThresholds(block_below=60, pass_at=60, excellence_at=90),
    }
)


@dataclass(frozen=True, slots=True)
class GateVerdict:
    decision: GateDecision
    score: int
    track: Track
    excellent: bool

    @property
    def blocks(self) -> bool:
        return self.decision is GateDecision.BLOCK

    def to_dict(self) -> dict[str, object]:
        return {
            "decision": self.decision.value,
            "score": self.score,
            "track": self.track.value,
            "excellent": self.excellent,
        }


class GatePolicy:
    """Pure threshold policy; holds no state beyond its configuration."""

    __slots__ = ("_thresholds",)

    def __init__(self, thresholds: Mapping[Track | str, TrackThresholds] | None = None) -> None:
        source = DEFAULT_THRESHOLDS if thresholds is None else thresholds
        parsed = {parse_track(track): value for track, value in source.items()}
        missing = sorted(track.value for track in Track if track not in parsed)
        if missing:
            raise ValueError(f"GatePolicy.thresholds: missing tracks: {missing}")
        for track, value in parsed.items():
            if not isinstance(value, TrackThresholds):
                raise ValueError(f"GatePolicy.thresholds.{track.value}: expected TrackThresholds")
        self._thresholds: Mapping[Track, TrackThresholds] = MappingProxyType(parsed)

    @property
    def thresholds(self) -> Mapping[Track, TrackThresholds]:
        return self._thresholds

    def thresholds_for(self, track: Track | str) -> TrackThresholds:
        return self._thresholds[parse_track(track)]

    def decide(self, score: Score | int, track: Track | str) -> GateDecision:
        return self.verdict(score, track).decision

    def verdict(self, score: Score | int, track: Track | str) -> GateVerdict:
        value = _score_value(score)
        parsed_track = parse_track(track)
        thresholds = self._thresholds[parsed_track]
        if value < thresholds.block_below:
            decision = GateDecision.BLOCK
        elif value >= thresholds.pass_at:
            decision = GateDecision.PASS
        else:
            decision = GateDecision.WARN
        return GateVerdict(
            decision=decision,
            score=value,
            track=parsed_track,
            excellent=value >= thresholds.excellence_at,
        )


def _score_value(score: Score | int) -> int:
    value = score.value if isinstance(score, Score) else score
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"score: expected integer, got {type(value).__name__}")
    if not SCORE_MIN <= value <= SCORE_MAX:
        raise ValueError(f"score: must be within {SCORE_MIN}..{SCORE_MAX}")
    return value


__all__ = [
    "DEFAULT_THRESHOLDS",
    "GatePolicy",
    "GateVerdict",
    "InvalidTrackError",
    "TrackThresholds",
]
