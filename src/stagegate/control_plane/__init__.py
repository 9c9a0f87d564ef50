"""
stagegate — control plane public API.

File: src/stagegate/control_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Export the stage scheduler, its collaborators and the replay/baseline helpers.
"""

from stagegate.control_plane.bootstrap import (
    build_gate,
    build_scheduler,
    build_scorer,
    build_verifiers,
)
from stagegate.control_plane.executor import ExecutionOutcome, PassthroughExecutor, TaskExecutor
from stagegate.control_plane.feedback import (
    BaselineComparison,
    FixupPackage,
    build_fixup_package,
    compare_to_baseline,
    latest_scored_attempt,
)
from stagegate.control_plane.replay import ReplayError, replay_history
from stagegate.control_plane.scheduler import (
    PLAN_SKIPPED_NOTE,
    TRANSITIONS,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    SchedulerError,
    SchedulerLimits,
    StageScheduler,
    can_transition,
)

__all__ = [
    "BaselineComparison",
    "ExecutionOutcome",
    "FixupPackage",
    "InvalidTransitionError",
    "MaxAttemptsExceededError",
    "PLAN_SKIPPED_NOTE",
    "PassthroughExecutor",
    "ReplayError",
    "SchedulerError",
    "SchedulerLimits",
    "StageScheduler",
    "TRANSITIONS",
    "TaskExecutor",
    "build_fixup_package",
    "build_gate",
    "build_scheduler",
    "build_scorer",
    "build_verifiers",
    "can_transition",
    "compare_to_baseline",
    "latest_scored_attempt",
    "replay_history",
]
