"""Fix-up packages, baseline comparison and the pass-through executor hand-off."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from stagegate.control_plane.executor import PassthroughExecutor, TaskExecutor
from stagegate.control_plane.feedback import (
    build_fixup_package,
    compare_to_baseline,
    latest_scored_attempt,
)
from stagegate.domain.models import (
    ArtifactKind,
    Attempt,
    Finding,
    GateDecision,
    Task,
    TaskStage,
    Track,
    VerificationResult,
)
from stagegate.quality.rubric import RubricScorer

_CREATED = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)


def _finding(
    severity: str,
    message: str,
    *,
    category: str = "check",
    deduction: int | None = None,
    proposed_fix: str | None = None,
) -> Finding:
    return Finding(
        severity=severity,
        category=category,
        message=message,
        deduction=deduction,
        proposed_fix=proposed_fix,
    )


def _attempt(number: int, *findings: Finding, decision: GateDecision | None) -> Attempt:
    result = VerificationResult(
        verifier="presence", artifact_ref="paper.tex", passed=not findings, findings=findings
    )
    return Attempt(
        number=number,
        artifact_ref="paper.tex",
        results=(result,),
        verified=True,
        decision=decision,
    )


def _task(task_id: str, *attempts: Attempt, stage: TaskStage = TaskStage.RETRYING) -> Task:
    return Task(
        id=task_id,
        artifact_ref="paper.tex",
        kind=ArtifactKind.DOCUMENT,
        track=Track.PRODUCTION,
        stage=stage,
        created_at=_CREATED,
        attempts=attempts,
        retries=max(len(attempts) - 1, 0),
    )


def test_fixup_package_carries_only_major_and_above() -> None:
    task = _task(
        "task-f",
        _attempt(
            1,
            _finding("critical", "build failed", category="latex-error"),
            _finding("major", "dangling ref", proposed_fix="Add \\label{fig:a}."),
            _finding("minor", "overfull box"),
            _finding("info", "underfull box"),
            decision=GateDecision.BLOCK,
        ),
    )

    package = build_fixup_package(task, 0, GateDecision.BLOCK)

    assert [item.severity for item in package.required_fixes] == ["critical", "major"]
    assert package.advisory_count == 2
    assert package.remediation_hints == (
        "Fix the LaTeX error at the reported line.",
        "Add \\label{fig:a}.",
    )
    assert package.attempt == 1
    assert not package.is_empty
    payload = json.loads(package.to_json())
    assert payload["decision"] == "block"
    assert payload["required_fixes"][0]["verifier"] == "presence"


def test_block_from_minor_findings_gives_an_empty_package() -> None:
    task = _task(
        "task-m",
        _attempt(1, _finding("minor", "style", deduction=25), decision=GateDecision.BLOCK),
    )
    package = build_fixup_package(task, 75, GateDecision.BLOCK)
    assert package.is_empty
    assert package.advisory_count == 1
    assert package.score == 75


def test_fixup_package_needs_an_attempt() -> None:
    with pytest.raises(ValueError, match="no attempt"):
        build_fixup_package(_task("task-e", stage=TaskStage.EXECUTING), 100, GateDecision.BLOCK)


def test_latest_scored_attempt_skips_unscored_tail() -> None:
    scored = _attempt(1, decision=GateDecision.BLOCK)
    pending = Attempt(number=2, artifact_ref="paper.tex")
    task = _task("task-l", scored, pending, stage=TaskStage.VERIFYING)
    assert latest_scored_attempt(task) == scored
    assert latest_scored_attempt(_task("task-n", stage=TaskStage.EXECUTING)) is None


def test_baseline_comparison_reports_delta_and_finding_drift() -> None:
    repeated = _finding("major", "unresolved ref")
    baseline = _task(
        "task-base",
        _attempt(1, repeated, _finding("major", "missing cite"), decision=GateDecision.PASS),
        stage=TaskStage.COMMITTED,
    )
    current = _task(
        "task-new",
        _attempt(
            1, repeated, repeated, _finding("minor", "wide table"), decision=GateDecision.WARN
        ),
        stage=TaskStage.COMMITTED,
    )

    comparison = compare_to_baseline(current, baseline, RubricScorer())

    assert (comparison.score, comparison.baseline_score, comparison.delta) == (89, 90, -1)
    assert [item.message for item in comparison.new_findings] == [
        "unresolved ref",
        "wide table",
    ]
    assert [item.message for item in comparison.resolved_findings] == ["missing cite"]
    assert comparison.to_dict()["delta"] == -1


def test_baseline_comparison_requires_scored_attempts() -> None:
    unscored = _task("task-u", stage=TaskStage.EXECUTING)
    scored = _task("task-s", _attempt(1, decision=GateDecision.PASS), stage=TaskStage.COMMITTED)
    with pytest.raises(ValueError, match="baseline task has no scored attempt"):
        compare_to_baseline(scored, unscored, RubricScorer())
    with pytest.raises(ValueError, match="task-u: task has no scored attempt"):
        compare_to_baseline(unscored, scored, RubricScorer())


@pytest.mark.asyncio
async def test_passthrough_executor_writes_redacted_handoff(tmp_path: Path) -> None:
    executor = PassthroughExecutor(tmp_path / "handoff")
    assert isinstance(executor, TaskExecutor)
    task = _task(
        "task-h",
        _attempt(
            1,
            _finding("major", "token=abc123 leaked into the log"),
            decision=GateDecision.BLOCK,
        ),
    )

    first = await executor.execute(task, None)
    assert first.artifact_ref == "paper.tex"
    assert first.note is None
    assert not (tmp_path / "handoff").exists()

    outcome = await executor.execute(task, build_fixup_package(task, 95, GateDecision.BLOCK))

    path = tmp_path / "handoff" / "task-h.fixups.json"
    assert outcome.artifact_ref == "paper.tex"
    assert outcome.note == f"fix-ups written to {path}"
    written = path.read_text(encoding="utf-8")
    assert "abc123" not in written
    assert json.loads(written)["task_id"] == "task-h"


@pytest.mark.asyncio
async def test_passthrough_executor_without_handoff_dir_only_passes_through() -> None:
    executor = PassthroughExecutor()
    task = _task("task-p", _attempt(1, _finding("major", "x"), decision=GateDecision.BLOCK))
    outcome = await executor.execute(task, build_fixup_package(task, 95, GateDecision.BLOCK))
    assert outcome.artifact_ref == "paper.tex"
    assert executor.handoff_path(task.id) is None
