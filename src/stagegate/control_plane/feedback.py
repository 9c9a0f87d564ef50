"""
Control-plane feedback.

Builds the fix-up package handed back to the Execute collaborator after a BLOCK, and
compares a task's latest scored attempt against a baseline task.

Fix-up packages only carry findings at Major severity or above; lower findings are
counted as advisories. Nothing here edits the artifact.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from stagegate.constants import FIXUP_PACKAGE_SCHEMA_VERSION
from stagegate.domain.models import Attempt, Finding, GateDecision, Severity, Task, sort_findings

if TYPE_CHECKING:
    from stagegate.quality.rubric import RubricScorer, Score

_CATEGORY_HINTS: Final[dict[str, str]] = {
    "verifier-timeout": "Shorten the run or raise scheduler.verifier_timeout_seconds.",
    "verifier-crash": "Install the verifier toolchain or fix the artifact so the tool can start.",
    "artifact-missing": "Write the artifact to the path recorded on the task.",
    "artifact-empty": "Regenerate the artifact; it must not be empty.",
    "latex-error": "Fix the LaTeX error at the reported line.",
    "undefined-reference": "Add the missing \\label or correct the \\ref.",
    "undefined-citation": "Add the bibliography entry or correct the \\cite key.",
    "missing-output": "Make the build produce its PDF.",
    "python-exception": "Fix the exception raised by the script.",
    "r-error": "Fix the R error reported by Rscript.",
    "julia-error": "Fix the Julia error reported by the interpreter.",
    "stata-error": "Fix the Stata command that returned a non-zero r() code.",
}


@dataclass(frozen=True, slots=True)
class FixupPackage:
    """Required fix-up input for the next Execute attempt."""

    schema_version: int
    task_id: str
    attempt: int
    score: int
    decision: GateDecision
    required_fixes: tuple[Finding, ...]
    remediation_hints: tuple[str, ...]
    advisory_count: int

    @property
    def is_empty(self) -> bool:
        return not self.required_fixes

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "attempt": self.attempt,
            "score": self.score,
            "decision": self.decision.value,
            "required_fixes": [item.to_dict() for item in self.required_fixes],
            "remediation_hints": list(self.remediation_hints),
            "advisory_count": self.advisory_count,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_fixup_package(task: Task, score: Score | int, decision: GateDecision) -> FixupPackage:
    attempt = task.current_attempt
    if attempt is None:
        raise ValueError(f"{task.id}: no attempt to build fix-ups from")
    findings = attempt.findings
    required = sort_findings(item for item in findings if item.is_at_least(Severity.MAJOR))
    hints: list[str] = []
    for item in required:
        hint = item.proposed_fix or _CATEGORY_HINTS.get(item.category)
        if hint and hint not in hints:
            hints.append(hint)
    return FixupPackage(
        schema_version=FIXUP_PACKAGE_SCHEMA_VERSION,
        task_id=task.id,
        attempt=attempt.number,
        score=score if isinstance(score, int) else score.value,
        decision=decision,
        required_fixes=required,
        remediation_hints=tuple(hints),
        advisory_count=len(findings) - len(required),
    )


@dataclass(frozen=True, slots=True)
class BaselineComparison:
    task_id: str
    baseline_id: str
    score: int
    baseline_score: int
    new_findings: tuple[Finding, ...]
    resolved_findings: tuple[Finding, ...]

    @property
    def delta(self) -> int:
        return self.score - self.baseline_score

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "baseline_id": self.baseline_id,
            "score": self.score,
            "baseline_score": self.baseline_score,
            "delta": self.delta,
            "new_findings": [item.to_dict() for item in self.new_findings],
            "resolved_findings": [item.to_dict() for item in self.resolved_findings],
        }


def latest_scored_attempt(task: Task) -> Attempt | None:
    for attempt in reversed(task.attempts):
        if attempt.decision is not None:
            return attempt
    return None


def compare_to_baseline(task: Task, baseline: Task, scorer: RubricScorer) -> BaselineComparison:
    """Score delta and finding drift between the latest scored attempts of two tasks.

    Findings are matched by (severity, category, message) as a multiset, so a second
    occurrence of a finding the baseline had once still counts as new.
    """

    current = latest_scored_attempt(task)
    reference = latest_scored_attempt(baseline)
    if current is None:
        raise ValueError(f"{task.id}: task has no scored attempt")
    if reference is None:
        raise ValueError(f"{baseline.id}: baseline task has no scored attempt")

    current_findings = current.findings
    reference_findings = reference.findings
    return BaselineComparison(
        task_id=task.id,
        baseline_id=baseline.id,
        score=scorer.compute(current_findings, kind=task.kind).value,
        baseline_score=scorer.compute(reference_findings, kind=baseline.kind).value,
        new_findings=_difference(current_findings, reference_findings),
        resolved_findings=_difference(reference_findings, current_findings),
    )


def _difference(
    left: tuple[Finding, ...], right: tuple[Finding, ...]
) -> tuple[Finding, ...]:
    remaining = Counter(item.identity() for item in right)
    extra: list[Finding] = []
    for item in left:
        key = item.identity()
        if remaining[key] > 0:
            remaining[key] -= 1
            continue
        extra.append(item)
    return sort_findings(extra)


__all__ = [
    "BaselineComparison",
    "FixupPackage",
    "build_fixup_package",
    "compare_to_baseline",
    "latest_scored_attempt",
]
