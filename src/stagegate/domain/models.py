"""
stagegate — domain value objects

File: src/stagegate/domain/models.py
Last updated: 2026-10-19

Purpose
- Define the frozen value objects that flow between planes: tasks, plans, attempts,
  findings, verification results and session records.

What should be included in this file
- Track / artifact-kind / severity / decision / stage enums.
- Strict ``__post_init__`` validation with ``<path>: <message>`` errors.
- Canonical JSON serialization (``to_dict`` / ``to_json`` / ``from_dict``).

Functional requirements
- A task never stores its score; scores are recomputed from findings.
- Severities are free-form strings so externally supplied rubric tables may carry
  severities this module does not know about.

Non-functional requirements
- Deterministic serialization: sorted keys, UTC ``Z`` timestamps, stable finding order.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Any, Final, NoReturn, TypeVar

from stagegate.constants import SCORE_MAX, SCORE_MIN, SESSION_RECORD_SCHEMA_VERSION, SEVERITY_RANK

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT: Final[int] = 8192
_MAX_MESSAGE: Final[int] = 4096
_MAX_NAME: Final[int] = 128
_MAX_COLLECTION: Final[int] = 512

_TASK_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class Track(StrEnum):
    PRODUCTION = "production"
    EXPLORATION = "exploration"


class ArtifactKind(StrEnum):
    DOCUMENT = "document"
    NUMERIC_SCRIPT = "numeric-script"
    MANUSCRIPT = "manuscript"
    EXPLORATION_ARTIFACT = "exploration-artifact"


class Severity(StrEnum):
    INFO = "info"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self.value]


class GateDecision(StrEnum):
    PASS = "pass"
    WARN = "warn"
    BLOCK = "block"


class TaskStage(StrEnum):
    PLANNED = "planned"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    SCORED = "scored"
    COMMITTED = "committed"
    RETRYING = "retrying"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


class RecordEvent(StrEnum):
    """Why a session record was written."""

    START = "start"
    ADVANCE = "advance"
    RETRY = "retry"
    ESCALATE = "escalate"
    CANCEL = "cancel"


TERMINAL_STAGES: Final[frozenset[TaskStage]] = frozenset(
    {TaskStage.COMMITTED, TaskStage.ESCALATED, TaskStage.ABANDONED}
)


class InvalidTrackError(ValueError):
    """Raised when a track name is not one of the configured tracks."""

    def __init__(self, value: object) -> None:
        self.value = value
        expected = ", ".join(sorted(item.value for item in Track))
        super().__init__(f"unknown track {value!r}; expected one of: {expected}")


def parse_track(value: object) -> Track:
    """Coerce ``value`` into a :class:`Track` or raise :class:`InvalidTrackError`."""

    if isinstance(value, Track):
        return value
    if not isinstance(value, str):
        raise InvalidTrackError(value)
    try:
        return Track(value.strip().lower())
    except ValueError:
        raise InvalidTrackError(value) from None


def parse_artifact_kind(value: object) -> ArtifactKind:
    """Coerce ``value`` into an :class:`ArtifactKind`; underscores are accepted for dashes."""

    if isinstance(value, ArtifactKind):
        return value
    if not isinstance(value, str):
        _fail("artifact_kind", f"expected string, got {type(value).__name__}")
    normalized = value.strip().lower().replace("_", "-")
    try:
        return ArtifactKind(normalized)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in ArtifactKind))
        _fail("artifact_kind", f"invalid value {value!r}; expected one of: {allowed}")


def severity_rank(severity: str) -> int | None:
    """Return the ordering rank of a known severity, ``None`` for unknown ones."""

    return SEVERITY_RANK.get(severity.strip().lower())


def check_task_id(task_id: object, path: str = "task_id") -> str:
    """Task IDs double as file names in the session store, so keep them path-safe."""

    parsed = _as_str(task_id, path, max_len=_MAX_NAME)
    if not _TASK_ID_RE.fullmatch(parsed):
        _fail(path, "must match [A-Za-z0-9][A-Za-z0-9._-]* (max 128 characters)")
    return parsed


@dataclass(frozen=True, slots=True)
class Finding:
    """One diagnostic item produced by a verifier."""

    severity: str
    category: str
    message: str
    deduction: int | None = None
    proposed_fix: str | None = None
    location: str | None = None
    verifier: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "severity", _as_str(self.severity, "Finding.severity", max_len=64).lower()
        )
        object.__setattr__(
            self, "category", _as_str(self.category, "Finding.category", max_len=_MAX_NAME)
        )
        object.__setattr__(
            self, "message", _as_str(self.message, "Finding.message", max_len=_MAX_MESSAGE)
        )
        if self.deduction is not None:
            object.__setattr__(
                self, "deduction", _as_int(self.deduction, "Finding.deduction", minimum=0)
            )
        object.__setattr__(
            self,
            "proposed_fix",
            _as_optional_str(self.proposed_fix, "Finding.proposed_fix", max_len=_MAX_MESSAGE),
        )
        object.__setattr__(
            self, "location", _as_optional_str(self.location, "Finding.location", max_len=1024)
        )
        object.__setattr__(
            self, "verifier", _as_optional_str(self.verifier, "Finding.verifier", max_len=_MAX_NAME)
        )

    @property
    def known_severity(self) -> Severity | None:
        try:
            return Severity(self.severity)
        except ValueError:
            return None

    @property
    def rank(self) -> int:
        # Unknown severities order like minor ones, matching their default deduction.
        rank = severity_rank(self.severity)
        return SEVERITY_RANK[Severity.MINOR.value] if rank is None else rank

    def is_at_least(self, severity: Severity) -> bool:
        return self.rank >= severity.rank

    def identity(self) -> tuple[str, str, str]:
        return (self.severity, self.category, self.message)

    def sort_key(self) -> tuple[int, str, str, str, str]:
        return (
            -self.rank,
            self.category,
            self.message,
            self.location or "",
            self.verifier or "",
        )

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
            "deduction": self.deduction,
        }
        if self.proposed_fix is not None:
            payload["proposed_fix"] = self.proposed_fix
        if self.location is not None:
            payload["location"] = self.location
        if self.verifier is not None:
            payload["verifier"] = self.verifier
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Finding:
        parsed = _expect_object(
            data,
            "Finding",
            required={"severity", "category", "message"},
            optional={"deduction", "proposed_fix", "location", "verifier"},
        )
        deduction = parsed.get("deduction")
        return cls(
            severity=_as_str(parsed["severity"], "Finding.severity"),
            category=_as_str(parsed["category"], "Finding.category"),
            message=_as_str(parsed["message"], "Finding.message", max_len=_MAX_MESSAGE),
            deduction=(
                None if deduction is None else _as_int(deduction, "Finding.deduction", minimum=0)
            ),
            proposed_fix=_as_optional_str(parsed.get("proposed_fix"), "Finding.proposed_fix"),
            location=_as_optional_str(parsed.get("location"), "Finding.location"),
            verifier=_as_optional_str(parsed.get("verifier"), "Finding.verifier"),
        )


def sort_findings(findings: Iterable[Finding]) -> tuple[Finding, ...]:
    """Return findings ordered most severe first, then lexically."""

    parsed: list[Finding] = []
    for index, item in enumerate(findings):
        if not isinstance(item, Finding):
            _fail(f"findings[{index}]", f"expected Finding, got {type(item).__name__}")
        parsed.append(item)
    parsed.sort(key=lambda item: item.sort_key())
    return tuple(parsed)


@dataclass(frozen=True, slots=True)
class ExecutionMetadata:
    """Raw facts about one verifier execution."""

    exit_code: int | None = None
    duration_ms: int = 0
    timed_out: bool = False
    command: tuple[str, ...] = ()
    tool_version: str | None = None

    def __post_init__(self) -> None:
        if self.exit_code is not None:
            object.__setattr__(self, "exit_code", _as_int(self.exit_code, "metadata.exit_code"))
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, "metadata.duration_ms", minimum=0)
        )
        object.__setattr__(self, "timed_out", _as_bool(self.timed_out, "metadata.timed_out"))
        object.__setattr__(
            self,
            "command",
            tuple(
                _as_str(item, f"metadata.command[{index}]", strip=False)
                for index, item in enumerate(_as_sequence(self.command, "metadata.command"))
            ),
        )
        object.__setattr__(
            self,
            "tool_version",
            _as_optional_str(self.tool_version, "metadata.tool_version", max_len=512),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "command": list(self.command),
            "tool_version": self.tool_version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ExecutionMetadata:
        parsed = _expect_object(
            data,
            "ExecutionMetadata",
            required=set(),
            optional={"exit_code", "duration_ms", "timed_out", "command", "tool_version"},
        )
        exit_code = parsed.get("exit_code")
        return cls(
            exit_code=None if exit_code is None else _as_int(exit_code, "metadata.exit_code"),
            duration_ms=_as_int(parsed.get("duration_ms", 0), "metadata.duration_ms", minimum=0),
            timed_out=_as_bool(parsed.get("timed_out", False), "metadata.timed_out"),
            command=tuple(
                _as_str(item, "metadata.command[]", strip=False)
                for item in _as_sequence(parsed.get("command", []), "metadata.command")
            ),
            tool_version=_as_optional_str(parsed.get("tool_version"), "metadata.tool_version"),
        )


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of one verifier run against one artifact attempt."""

    verifier: str
    artifact_ref: str
    passed: bool
    findings: tuple[Finding, ...] = ()
    metrics: Mapping[str, float] = field(default_factory=dict)
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)

    def __post_init__(self) -> None:
        verifier = _as_str(self.verifier, "VerificationResult.verifier", max_len=_MAX_NAME)
        object.__setattr__(self, "verifier", verifier)
        object.__setattr__(
            self,
            "artifact_ref",
            _as_str(self.artifact_ref, "VerificationResult.artifact_ref", max_len=4096),
        )
        object.__setattr__(self, "passed", _as_bool(self.passed, "VerificationResult.passed"))
        stamped = (
            item if item.verifier is not None else replace(item, verifier=verifier)
            for item in _as_sequence(self.findings, "VerificationResult.findings")
        )
        object.__setattr__(self, "findings", sort_findings(stamped))
        object.__setattr__(
            self, "metrics", _as_metrics(self.metrics, "VerificationResult.metrics")
        )
        if not isinstance(self.metadata, ExecutionMetadata):
            _fail("VerificationResult.metadata", "must be ExecutionMetadata")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "verifier": self.verifier,
            "artifact_ref": self.artifact_ref,
            "passed": self.passed,
            "findings": [item.to_dict() for item in self.findings],
            "metrics": dict(self.metrics),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> VerificationResult:
        parsed = _expect_object(
            data,
            "VerificationResult",
            required={"verifier", "artifact_ref", "passed"},
            optional={"findings", "metrics", "metadata"},
        )
        return cls(
            verifier=_as_str(parsed["verifier"], "VerificationResult.verifier"),
            artifact_ref=_as_str(parsed["artifact_ref"], "VerificationResult.artifact_ref"),
            passed=_as_bool(parsed["passed"], "VerificationResult.passed"),
            findings=_parse_findings(parsed.get("findings", []), "VerificationResult.findings"),
            metrics=_as_metrics(parsed.get("metrics", {}), "VerificationResult.metrics"),
            metadata=ExecutionMetadata.from_dict(
                _expect_mapping(parsed.get("metadata", {}), "VerificationResult.metadata")
            ),
        )


@dataclass(frozen=True, slots=True)
class Plan:
    """Ordered steps intended for a task; fixed once execution begins."""

    steps: tuple[str, ...]
    summary: str | None = None

    def __post_init__(self) -> None:
        steps = _as_sequence(self.steps, "Plan.steps")
        if not steps:
            _fail("Plan.steps", "must not be empty")
        if len(steps) > _MAX_COLLECTION:
            _fail("Plan.steps", f"too many items (>{_MAX_COLLECTION})")
        object.__setattr__(
            self,
            "steps",
            tuple(
                _as_str(item, f"Plan.steps[{index}]", max_len=_MAX_MESSAGE)
                for index, item in enumerate(steps)
            ),
        )
        object.__setattr__(
            self, "summary", _as_optional_str(self.summary, "Plan.summary", max_len=_MAX_MESSAGE)
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {"steps": list(self.steps), "summary": self.summary}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Plan:
        parsed = _expect_object(data, "Plan", required={"steps"}, optional={"summary"})
        return cls(
            steps=tuple(_as_sequence(parsed["steps"], "Plan.steps")),  # type: ignore[arg-type]
            summary=_as_optional_str(parsed.get("summary"), "Plan.summary"),
        )


@dataclass(frozen=True, slots=True)
class Attempt:
    """One Execute → Verify → Score pass over a task's artifact."""

    number: int
    artifact_ref: str
    results: tuple[VerificationResult, ...] = ()
    verified: bool = False
    decision: GateDecision | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "number", _as_int(self.number, "Attempt.number", minimum=1))
        object.__setattr__(
            self, "artifact_ref", _as_str(self.artifact_ref, "Attempt.artifact_ref", max_len=4096)
        )
        results = tuple(_as_sequence(self.results, "Attempt.results"))
        for index, item in enumerate(results):
            if not isinstance(item, VerificationResult):
                _fail(f"Attempt.results[{index}]", "expected VerificationResult")
        object.__setattr__(self, "results", results)
        object.__setattr__(self, "verified", _as_bool(self.verified, "Attempt.verified"))
        if self.decision is not None:
            object.__setattr__(
                self, "decision", _as_enum(GateDecision, self.decision, "Attempt.decision")
            )
        if self.results and not self.verified:
            _fail("Attempt.verified", "must be true when results are present")

    @property
    def findings(self) -> tuple[Finding, ...]:
        return tuple(item for result in self.results for item in result.findings)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "number": self.number,
            "artifact_ref": self.artifact_ref,
            "results": [item.to_dict() for item in self.results],
            "verified": self.verified,
            "decision": self.decision.value if self.decision is not None else None,
        }


@dataclass(frozen=True, slots=True)
class TaskManifest:
    """Creation-time facts about a task, persisted with its first session record."""

    task_id: str
    artifact_ref: str
    kind: ArtifactKind
    track: Track
    created_at: datetime
    plan: Plan | None = None
    title: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "task_id", check_task_id(self.task_id, "TaskManifest.task_id"))
        object.__setattr__(
            self,
            "artifact_ref",
            _as_str(self.artifact_ref, "TaskManifest.artifact_ref", max_len=4096),
        )
        object.__setattr__(self, "kind", parse_artifact_kind(self.kind))
        object.__setattr__(self, "track", parse_track(self.track))
        object.__setattr__(
            self, "created_at", _as_datetime(self.created_at, "TaskManifest.created_at")
        )
        if self.plan is not None and not isinstance(self.plan, Plan):
            _fail("TaskManifest.plan", "must be a Plan")
        object.__setattr__(
            self, "title", _as_optional_str(self.title, "TaskManifest.title", max_len=512)
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "artifact_ref": self.artifact_ref,
            "kind": self.kind.value,
            "track": self.track.value,
            "created_at": _datetime_to_iso8601z(self.created_at),
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskManifest:
        parsed = _expect_object(
            data,
            "TaskManifest",
            required={"task_id", "artifact_ref", "kind", "track", "created_at"},
            optional={"plan", "title"},
        )
        plan_raw = parsed.get("plan")
        return cls(
            task_id=_as_str(parsed["task_id"], "TaskManifest.task_id"),
            artifact_ref=_as_str(parsed["artifact_ref"], "TaskManifest.artifact_ref"),
            kind=parse_artifact_kind(parsed["kind"]),
            track=parse_track(parsed["track"]),
            created_at=_as_datetime(parsed["created_at"], "TaskManifest.created_at"),
            plan=(
                None
                if plan_raw is None
                else Plan.from_dict(_expect_mapping(plan_raw, "TaskManifest.plan"))
            ),
            title=_as_optional_str(parsed.get("title"), "TaskManifest.title"),
        )


@dataclass(frozen=True, slots=True)
class Task:
    """Immutable snapshot of one task; every transition produces a new value."""

    id: str
    artifact_ref: str
    kind: ArtifactKind
    track: Track
    stage: TaskStage
    created_at: datetime
    plan: Plan | None = None
    title: str | None = None
    attempts: tuple[Attempt, ...] = ()
    retries: int = 0
    sequence: int = 0
    committed_with_warnings: bool = False
    note: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", check_task_id(self.id, "Task.id"))
        object.__setattr__(
            self, "artifact_ref", _as_str(self.artifact_ref, "Task.artifact_ref", max_len=4096)
        )
        object.__setattr__(self, "kind", parse_artifact_kind(self.kind))
        object.__setattr__(self, "track", parse_track(self.track))
        object.__setattr__(self, "stage", _as_enum(TaskStage, self.stage, "Task.stage"))
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "Task.created_at"))
        object.__setattr__(self, "attempts", tuple(self.attempts))
        object.__setattr__(self, "retries", _as_int(self.retries, "Task.retries", minimum=0))
        object.__setattr__(self, "sequence", _as_int(self.sequence, "Task.sequence", minimum=0))
        object.__setattr__(self, "note", _as_optional_str(self.note, "Task.note"))

    @classmethod
    def from_manifest(cls, manifest: TaskManifest, *, stage: TaskStage) -> Task:
        return cls(
            id=manifest.task_id,
            artifact_ref=manifest.artifact_ref,
            kind=manifest.kind,
            track=manifest.track,
            stage=stage,
            created_at=manifest.created_at,
            plan=manifest.plan,
            title=manifest.title,
        )

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def attempt_number(self) -> int:
        return self.retries + 1

    @property
    def current_attempt(self) -> Attempt | None:
        return self.attempts[-1] if self.attempts else None

    @property
    def manifest(self) -> TaskManifest:
        return TaskManifest(
            task_id=self.id,
            artifact_ref=self.artifact_ref,
            kind=self.kind,
            track=self.track,
            created_at=self.created_at,
            plan=self.plan,
            title=self.title,
        )

    def evolve(self, **changes: Any) -> Task:
        return replace(self, **changes)

    def with_current_attempt(self, attempt: Attempt) -> Task:
        if not self.attempts:
            _fail("Task.attempts", "no attempt in progress")
        return replace(self, attempts=(*self.attempts[:-1], attempt))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "artifact_ref": self.artifact_ref,
            "kind": self.kind.value,
            "track": self.track.value,
            "stage": self.stage.value,
            "created_at": _datetime_to_iso8601z(self.created_at),
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "title": self.title,
            "attempts": [item.to_dict() for item in self.attempts],
            "retries": self.retries,
            "sequence": self.sequence,
            "committed_with_warnings": self.committed_with_warnings,
            "note": self.note,
        }


@dataclass(frozen=True, slots=True)
class SessionRecord:
    """One immutable line of a task's audit log."""

    task_id: str
    sequence: int
    event: RecordEvent
    stage: TaskStage
    timestamp: datetime
    previous_stage: TaskStage | None = None
    attempt: int = 1
    decision: GateDecision | None = None
    score: int | None = None
    findings: tuple[Finding, ...] = ()
    results: tuple[VerificationResult, ...] = ()
    artifact_ref: str | None = None
    committed_with_warnings: bool = False
    note: str | None = None
    manifest: TaskManifest | None = None
    schema_version: int = SESSION_RECORD_SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "task_id", check_task_id(self.task_id, "SessionRecord.task_id"))
        object.__setattr__(
            self, "sequence", _as_int(self.sequence, "SessionRecord.sequence", minimum=1)
        )
        object.__setattr__(self, "event", _as_enum(RecordEvent, self.event, "SessionRecord.event"))
        object.__setattr__(self, "stage", _as_enum(TaskStage, self.stage, "SessionRecord.stage"))
        object.__setattr__(
            self, "timestamp", _as_datetime(self.timestamp, "SessionRecord.timestamp")
        )
        if self.previous_stage is not None:
            object.__setattr__(
                self,
                "previous_stage",
                _as_enum(TaskStage, self.previous_stage, "SessionRecord.previous_stage"),
            )
        object.__setattr__(
            self, "attempt", _as_int(self.attempt, "SessionRecord.attempt", minimum=1)
        )
        if self.decision is not None:
            object.__setattr__(
                self, "decision", _as_enum(GateDecision, self.decision, "SessionRecord.decision")
            )
        if self.score is not None:
            score = _as_int(self.score, "SessionRecord.score", minimum=SCORE_MIN)
            if score > SCORE_MAX:
                _fail("SessionRecord.score", f"must be <= {SCORE_MAX}")
            object.__setattr__(self, "score", score)
        object.__setattr__(self, "findings", sort_findings(self.findings))
        object.__setattr__(self, "results", tuple(self.results))
        object.__setattr__(
            self,
            "artifact_ref",
            _as_optional_str(self.artifact_ref, "SessionRecord.artifact_ref", max_len=4096),
        )
        object.__setattr__(
            self,
            "committed_with_warnings",
            _as_bool(self.committed_with_warnings, "SessionRecord.committed_with_warnings"),
        )
        object.__setattr__(self, "note", _as_optional_str(self.note, "SessionRecord.note"))
        object.__setattr__(
            self,
            "schema_version",
            _as_int(self.schema_version, "SessionRecord.schema_version", minimum=1),
        )

        if self.event is RecordEvent.START:
            if self.manifest is None:
                _fail("SessionRecord.manifest", "start records must carry a task manifest")
            if self.previous_stage is not None:
                _fail("SessionRecord.previous_stage", "start records have no previous stage")
            if self.manifest.task_id != self.task_id:
                _fail("SessionRecord.manifest.task_id", "must match SessionRecord.task_id")
        else:
            if self.manifest is not None:
                _fail("SessionRecord.manifest", "only start records carry a task manifest")
            if self.previous_stage is None:
                _fail("SessionRecord.previous_stage", "required for non-start records")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "sequence": self.sequence,
            "event": self.event.value,
            "stage": self.stage.value,
            "previous_stage": (
                self.previous_stage.value if self.previous_stage is not None else None
            ),
            "attempt": self.attempt,
            "decision": self.decision.value if self.decision is not None else None,
            "score": self.score,
            "findings": [item.to_dict() for item in self.findings],
            "results": [item.to_dict() for item in self.results],
            "artifact_ref": self.artifact_ref,
            "committed_with_warnings": self.committed_with_warnings,
            "note": self.note,
            "manifest": self.manifest.to_dict() if self.manifest is not None else None,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
        }

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> SessionRecord:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail("SessionRecord", f"invalid JSON: {exc}")
        return cls.from_dict(_expect_mapping(parsed, "SessionRecord"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SessionRecord:
        parsed = _expect_object(
            data,
            "SessionRecord",
            required={"task_id", "sequence", "event", "stage", "timestamp"},
            optional={
                "schema_version",
                "previous_stage",
                "attempt",
                "decision",
                "score",
                "findings",
                "results",
                "artifact_ref",
                "committed_with_warnings",
                "note",
                "manifest",
            },
        )
        previous_raw = parsed.get("previous_stage")
        decision_raw = parsed.get("decision")
        score_raw = parsed.get("score")
        manifest_raw = parsed.get("manifest")
        results_raw = _as_sequence(parsed.get("results", []), "SessionRecord.results")
        return cls(
            task_id=_as_str(parsed["task_id"], "SessionRecord.task_id"),
            sequence=_as_int(parsed["sequence"], "SessionRecord.sequence", minimum=1),
            event=_as_enum(RecordEvent, parsed["event"], "SessionRecord.event"),
            stage=_as_enum(TaskStage, parsed["stage"], "SessionRecord.stage"),
            timestamp=_as_datetime(parsed["timestamp"], "SessionRecord.timestamp"),
            previous_stage=(
                None
                if previous_raw is None
                else _as_enum(TaskStage, previous_raw, "SessionRecord.previous_stage")
            ),
            attempt=_as_int(parsed.get("attempt", 1), "SessionRecord.attempt", minimum=1),
            decision=(
                None
                if decision_raw is None
                else _as_enum(GateDecision, decision_raw, "SessionRecord.decision")
            ),
            score=None if score_raw is None else _as_int(score_raw, "SessionRecord.score"),
            findings=_parse_findings(parsed.get("findings", []), "SessionRecord.findings"),
            results=tuple(
                VerificationResult.from_dict(
                    _expect_mapping(item, f"SessionRecord.results[{index}]")
                )
                for index, item in enumerate(results_raw)
            ),
            artifact_ref=_as_optional_str(parsed.get("artifact_ref"), "SessionRecord.artifact_ref"),
            committed_with_warnings=_as_bool(
                parsed.get("committed_with_warnings", False),
                "SessionRecord.committed_with_warnings",
            ),
            note=_as_optional_str(parsed.get("note"), "SessionRecord.note"),
            manifest=(
                None
                if manifest_raw is None
                else TaskManifest.from_dict(_expect_mapping(manifest_raw, "SessionRecord.manifest"))
            ),
            schema_version=_as_int(
                parsed.get("schema_version", SESSION_RECORD_SCHEMA_VERSION),
                "SessionRecord.schema_version",
                minimum=1,
            ),
        )


# ------------------------
# Validation helpers
# ------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    mapping = _expect_mapping(value, path)
    parsed: dict[str, object] = {}
    for key, item in mapping.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, Iterable) and not isinstance(value, (str, bytes, Mapping)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_metrics(value: object, path: str) -> dict[str, float]:
    mapping = _expect_mapping(value, path)
    parsed: dict[str, float] = {}
    for key in sorted(mapping, key=str):
        if not isinstance(key, str) or not key.strip():
            _fail(path, "metric names must be non-empty strings")
        item = mapping[key]
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            _fail(f"{path}.{key}", f"expected number, got {type(item).__name__}")
        number = float(item)
        if not math.isfinite(number):
            _fail(f"{path}.{key}", "must be finite")
        parsed[key.strip()] = number
    return parsed


def _parse_findings(value: object, path: str) -> tuple[Finding, ...]:
    return tuple(
        Finding.from_dict(_expect_mapping(item, f"{path}[{index}]"))
        for index, item in enumerate(_as_sequence(value, path))
    )


__all__ = [
    "ArtifactKind",
    "Attempt",
    "ExecutionMetadata",
    "Finding",
    "GateDecision",
    "InvalidTrackError",
    "JSONScalar",
    "JSONValue",
    "Plan",
    "RecordEvent",
    "SessionRecord",
    "Severity",
    "TERMINAL_STAGES",
    "Task",
    "TaskManifest",
    "TaskStage",
    "Track",
    "VerificationResult",
    "parse_artifact_kind",
    "parse_track",
    "severity_rank",
    "sort_findings",
    "check_task_id",
]
