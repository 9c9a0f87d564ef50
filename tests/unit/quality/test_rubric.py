"""
stagegate — unit tests for the rubric scorer

File: tests/unit/quality/test_rubric.py
Last updated: 2026-10-19

Purpose
- Validate deduction arithmetic, clamping, unknown severities and YAML rubric files.

What this test file should cover
- Default table: critical 100, major 5, minor 1, info 0.
- Explicit per-finding deductions override the table.
- Order independence and the 0..100 clamp (property based).
"""

from __future__ import annotations

from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from stagegate.domain.models import ArtifactKind, Finding
from stagegate.quality.rubric import RubricScorer, RubricTable, Score, load_rubric_file

_SEVERITIES = ("critical", "major", "minor", "info", "cosmetic")


def _finding(severity: str, deduction: int | None = None, message: str = "m") -> Finding:
    return Finding(severity=severity, category="test", message=message, deduction=deduction)


_findings = st.lists(
    st.builds(
        _finding,
        severity=st.sampled_from(_SEVERITIES),
        deduction=st.one_of(st.none(), st.integers(min_value=0, max_value=60)),
        message=st.text(alphabet="abcdef", min_size=1, max_size=6),
    ),
    max_size=25,
)


def test_two_major_findings_score_ninety() -> None:
    score = RubricScorer().compute([_finding("major"), _finding("major")])
    assert score == Score(value=90, total_deduction=10, finding_count=2)


def test_no_findings_is_a_perfect_score() -> None:
    score = RubricScorer().compute([])
    assert score.value == 100
    assert score.is_perfect


def test_explicit_deduction_wins_over_table() -> None:
    score = RubricScorer().compute([_finding("minor", deduction=25)])
    assert score.value == 75


def test_single_critical_zeroes_the_score() -> None:
    assert RubricScorer().compute([_finding("critical")]).value == 0


def test_unknown_severity_uses_configured_deduction_and_is_reported() -> None:
    scorer = RubricScorer(RubricTable(unknown_severity_deduction=7))
    score = scorer.compute([_finding("cosmetic"), _finding("cosmetic"), _finding("info")])
    assert score.value == 86
    assert score.unknown_severities == ("cosmetic",)


def test_table_rejects_negative_and_non_integer_deductions() -> None:
    with pytest.raises(ValueError, match="deductions.major"):
        RubricTable(deductions={"major": -1})
    with pytest.raises(ValueError, match="expected integer"):
        RubricTable(deductions={"major": 2.5})  # type: ignore[dict-item]


@settings(max_examples=75, deadline=None)
@given(findings=_findings, data=st.data())
def test_score_is_order_independent(findings: list[Finding], data: st.DataObject) -> None:
    scorer = RubricScorer()
    shuffled = data.draw(st.permutations(findings))
    assert scorer.compute(findings) == scorer.compute(shuffled)


@settings(max_examples=75, deadline=None)
@given(findings=_findings)
def test_score_is_clamped_difference(findings: list[Finding]) -> None:
    table = RubricTable()
    score = RubricScorer(table).compute(findings)
    expected_total = sum(table.deduction_for(item)[0] for item in findings)
    assert score.total_deduction == expected_total
    assert score.value == max(0, min(100, 100 - expected_total))


def test_load_rubric_file_applies_default_and_kind_overlays(tmp_path: Path) -> None:
    path = tmp_path / "rubric.yaml"
    path.write_text(
        "\n".join(
            [
                "schema_version: 1",
                "unknown_severity_deduction: 3",
                "default:",
                "  major: 8",
                "kinds:",
                "  manuscript:",
                "    major: 10",
                "    style: 2",
            ]
        ),
        encoding="utf-8",
    )
    scorer = load_rubric_file(path)
    findings = [_finding("major"), _finding("style")]

    assert scorer.compute(findings, kind=ArtifactKind.MANUSCRIPT).value == 88
    # ``style`` is unknown outside manuscripts.
    document_score = scorer.compute(findings, kind="document")
    assert document_score.value == 89
    assert document_score.unknown_severities == ("style",)
    assert scorer.table.deductions["critical"] == 100


def test_load_rubric_file_overlays_a_base_table(tmp_path: Path) -> None:
    path = tmp_path / "rubric.yaml"
    path.write_text("default: {minor: 2}\n", encoding="utf-8")
    base = RubricTable(deductions={"critical": 50, "major": 5, "minor": 1, "info": 0})
    scorer = load_rubric_file(path, base=base)
    assert scorer.table.deductions["critical"] == 50
    assert scorer.table.deductions["minor"] == 2


@pytest.mark.parametrize(
    ("text", "match"),
    [
        ("- just\n- a list\n", "top-level YAML mapping"),
        ("schema_version: 9\n", "unsupported version"),
        ("surprise: 1\n", "unexpected fields"),
        ("kinds:\n  spreadsheet: {major: 1}\n", "kinds.spreadsheet"),
        ("default: {major: -5}\n", "must be >= 0"),
        ("default: [1, 2\n", "invalid YAML"),
    ],
)
def test_load_rubric_file_rejects_malformed_tables(tmp_path: Path, text: str, match: str) -> None:
    path = tmp_path / "rubric.yaml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(ValueError, match=match):
        load_rubric_file(path)
