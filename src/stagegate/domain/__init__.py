"""
stagegate — domain layer

File: src/stagegate/domain/__init__.py
Last updated: 2026-10-19

Purpose
- Value objects shared by every plane: tasks, plans, attempts, findings, verification
  results and session records.

Functional requirements
- Domain objects are immutable, validated on construction and JSON-serializable.
- No IO side effects at this layer.
"""

from stagegate.domain import ids
from stagegate.domain.models import (
    TERMINAL_STAGES,
    ArtifactKind,
    Attempt,
    ExecutionMetadata,
    Finding,
    GateDecision,
    InvalidTrackError,
    Plan,
    RecordEvent,
    SessionRecord,
    Severity,
    Task,
    TaskManifest,
    TaskStage,
    Track,
    VerificationResult,
    parse_artifact_kind,
    parse_track,
    sort_findings,
)

__all__ = [
    "TERMINAL_STAGES",
    "ArtifactKind",
    "Attempt",
    "ExecutionMetadata",
    "Finding",
    "GateDecision",
    "InvalidTrackError",
    "Plan",
    "RecordEvent",
    "SessionRecord",
    "Severity",
    "Task",
    "TaskManifest",
    "TaskStage",
    "Track",
    "VerificationResult",
    "ids",
    "parse_artifact_kind",
    "parse_track",
    "sort_findings",
]
