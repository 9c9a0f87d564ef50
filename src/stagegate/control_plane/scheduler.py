"""
stagegate — stage scheduler

File: src/stagegate/control_plane/scheduler.py
Last updated: 2026-10-19

Purpose
- Drive one task through Plan → Execute → Verify → Score → Commit/Retry/Escalate,
  persisting every transition before it takes effect.

What should be included in this file
- The explicit stage transition table.
- ``StageScheduler`` with ``start`` / ``advance`` / ``retry`` / ``cancel`` / ``drive`` /
  ``resume``.
- Scheduler error types.

Functional requirements
- Every transition appends exactly one session record. If the append fails the caller
  keeps the previous task value; the new value is only returned after the record is
  durable.
- ``advance`` on a terminal task returns it unchanged, writes nothing and runs nothing.
- BLOCK moves to Retrying while retries remain and straight to Escalated once
  ``max_attempts`` retries have been spent.
- WARN commits with the ``committed_with_warnings`` flag set.
- Cancellation is checked at stage boundaries and moves the task to Abandoned.

Non-functional requirements
- Decision events are logged through structlog with keyword fields.
- Appends made from ``advance`` run in a worker thread so fsync never stalls the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from stagegate.constants import DEFAULT_MAX_ATTEMPTS, DEFAULT_VERIFIER_TIMEOUT_SECONDS
from stagegate.control_plane.executor import PassthroughExecutor, TaskExecutor
from stagegate.control_plane.feedback import FixupPackage, build_fixup_package
from stagegate.domain.ids import generate_task_id
from stagegate.domain.models import (
    ArtifactKind,
    Attempt,
    GateDecision,
    Plan,
    RecordEvent,
    SessionRecord,
    Task,
    TaskStage,
    Track,
    parse_artifact_kind,
    parse_track,
)
from stagegate.observability.logging import correlation_scope

if TYPE_CHECKING:
    from stagegate.persistence.session_recorder import SessionRecorder
    from stagegate.quality.gate import GatePolicy
    from stagegate.quality.rubric import RubricScorer
    from stagegate.utils.concurrency import CancellationToken
    from stagegate.verification_plane.runner import VerificationRunner

Clock = Callable[[], datetime]

PLAN_SKIPPED_NOTE: Final[str] = "plan stage skipped: no plan supplied"

TRANSITIONS: Final[Mapping[TaskStage, frozenset[TaskStage]]] = MappingProxyType(
    {
        TaskStage.PLANNED: frozenset({TaskStage.EXECUTING, TaskStage.ABANDONED}),
        TaskStage.EXECUTING: frozenset({TaskStage.VERIFYING, TaskStage.ABANDONED}),
        TaskStage.VERIFYING: frozenset({TaskStage.SCORED, TaskStage.ABANDONED}),
        TaskStage.SCORED: frozenset(
            {
                TaskStage.COMMITTED,
                TaskStage.RETRYING,
                TaskStage.ESCALATED,
                TaskStage.ABANDONED,
            }
        ),
        TaskStage.RETRYING: frozenset(
            {TaskStage.EXECUTING, TaskStage.ESCALATED, TaskStage.ABANDONED}
        ),
        TaskStage.COMMITTED: frozenset(),
        TaskStage.ESCALATED: frozenset(),
        TaskStage.ABANDONED: frozenset(),
    }
)

INITIAL_STAGES: Final[frozenset[TaskStage]] = frozenset({TaskStage.PLANNED, TaskStage.EXECUTING})


def can_transition(source: TaskStage, target: TaskStage) -> bool:
    return target in TRANSITIONS[source]


class SchedulerError(RuntimeError):
    """Base class for scheduler misuse and policy errors."""


class InvalidTransitionError(SchedulerError):
    def __init__(self, task: Task, action: str) -> None:
        self.task = task
        self.action = action
        super().__init__(f"{task.id}: cannot {action} a task in stage {task.stage.value!r}")


class MaxAttemptsExceededError(SchedulerError):
    """Raised by ``retry`` when the retry budget is spent; ``task`` is already Escalated."""

    def __init__(self, task: Task, max_attempts: int) -> None:
        self.task = task
        self.max_attempts = max_attempts
        super().__init__(
            f"{task.id}: retry limit of {max_attempts} reached; task escalated for review"
        )


@dataclass(frozen=True, slots=True)
class SchedulerLimits:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    verifier_timeout_seconds: float = DEFAULT_VERIFIER_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ValueError("max_attempts must be an integer")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.verifier_timeout_seconds <= 0:
            raise ValueError("verifier_timeout_seconds must be > 0")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class StageScheduler:
    """Single-task stage machine over injected recorder, runner, scorer and gate."""

    def __init__(
        self,
        *,
        recorder: SessionRecorder,
        runner: VerificationRunner,
        scorer: RubricScorer,
        gate: GatePolicy,
        executor: TaskExecutor | None = None,
        limits: SchedulerLimits | None = None,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._recorder = recorder
        self._runner = runner
        self._scorer = scorer
        self._gate = gate
        self._executor: TaskExecutor = executor if executor is not None else PassthroughExecutor()
        self._limits = limits if limits is not None else SchedulerLimits()
        self._clock: Clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def recorder(self) -> SessionRecorder:
        return self._recorder

    @property
    def scorer(self) -> RubricScorer:
        return self._scorer

    @property
    def gate(self) -> GatePolicy:
        return self._gate

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    def start(
        self,
        artifact_ref: str,
        *,
        kind: ArtifactKind | str,
        track: Track | str,
        plan: Plan | None = None,
        title: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        """Create and persist a new task.

        Without a plan the task starts in Executing and its creation record says so.
        """

        parsed_track = parse_track(track)
        parsed_kind = parse_artifact_kind(kind)
        stage = TaskStage.PLANNED if plan is not None else TaskStage.EXECUTING
        task = Task(
            id=task_id if task_id is not None else generate_task_id(),
            artifact_ref=artifact_ref,
            kind=parsed_kind,
            track=parsed_track,
            stage=stage,
            created_at=self._clock(),
            plan=plan,
            title=title,
        )
        note = None if plan is not None else PLAN_SKIPPED_NOTE
        return self._commit(
            task.evolve(note=note),
            previous=None,
            event=RecordEvent.START,
            artifact_ref=task.artifact_ref,
            manifest=task.manifest,
        )

    async def advance(self, task: Task, *, cancel_token: CancellationToken | None = None) -> Task:
        """Run the side effect of the task's next stage and persist the transition."""

        if task.is_terminal:
            return task
        if cancel_token is not None and cancel_token.is_cancelled:
            return await asyncio.to_thread(self.cancel, task, cancel_token.reason or "cancelled")

        with correlation_scope(task_id=task.id, attempt=task.attempt_number):
            if task.stage is TaskStage.PLANNED:
                steps = len(task.plan.steps) if task.plan is not None else 0
                return await self._commit_async(
                    task.evolve(stage=TaskStage.EXECUTING, note=f"plan accepted: {steps} step(s)"),
                    previous=task,
                    event=RecordEvent.ADVANCE,
                )
            if task.stage is TaskStage.EXECUTING:
                return await self._execute(task)
            if task.stage is TaskStage.VERIFYING:
                return await self._verify(task, cancel_token)
            if task.stage is TaskStage.SCORED:
                return await self._decide(task)
            try:
                return await asyncio.to_thread(self.retry, task)
            except MaxAttemptsExceededError as exc:
                return exc.task

    async def drive(
        self,
        task: Task,
        *,
        cancel_token: CancellationToken | None = None,
        stop_at_retrying: bool = True,
    ) -> Task:
        """Advance until the task is terminal, or until it needs fixes when ``stop_at_retrying``."""

        current = task
        while not current.is_terminal:
            if stop_at_retrying and current.stage is TaskStage.RETRYING:
                break
            current = await self.advance(current, cancel_token=cancel_token)
        return current

    def retry(self, task: Task) -> Task:
        """Re-enter Executing for another attempt.

        Raises ``MaxAttemptsExceededError`` (after persisting the escalation) once the
        retry counter would exceed ``max_attempts``.
        """

        if task.stage is not TaskStage.RETRYING:
            raise InvalidTransitionError(task, "retry")
        if task.retries + 1 > self._limits.max_attempts:
            escalated = self._commit(
                task.evolve(
                    stage=TaskStage.ESCALATED,
                    note=f"retry limit reached after {task.attempt_number} attempt(s)",
                ),
                previous=task,
                event=RecordEvent.ESCALATE,
            )
            raise MaxAttemptsExceededError(escalated, self._limits.max_attempts)
        return self._commit(
            task.evolve(
                stage=TaskStage.EXECUTING,
                retries=task.retries + 1,
                note=f"retry {task.retries + 1} of {self._limits.max_attempts}",
            ),
            previous=task,
            event=RecordEvent.RETRY,
        )

    def cancel(self, task: Task, reason: str) -> Task:
        if task.is_terminal:
            raise InvalidTransitionError(task, "cancel")
        return self._commit(
            task.evolve(stage=TaskStage.ABANDONED, note=f"cancelled: {reason}"),
            previous=task,
            event=RecordEvent.CANCEL,
        )

    def resume(self, task_id: str) -> Task:
        """Rebuild an in-flight task from its session history."""

        from stagegate.control_plane.replay import replay_history

        return replay_history(self._recorder.history(task_id), task_id=task_id)

    def score(self, task: Task) -> int | None:
        """Recompute the score of the task's current attempt, if it has been verified."""

        attempt = task.current_attempt
        if attempt is None or not attempt.verified:
            return None
        return self._scorer.compute(attempt.findings, kind=task.kind).value

    def pending_fixups(self, task: Task) -> FixupPackage | None:
        attempt = task.current_attempt
        if attempt is None or attempt.decision is not GateDecision.BLOCK:
            return None
        score = self._scorer.compute(attempt.findings, kind=task.kind)
        return build_fixup_package(task, score, GateDecision.BLOCK)

    async def _execute(self, task: Task) -> Task:
        fixups = self.pending_fixups(task)
        outcome = await self._executor.execute(task, fixups)
        attempt = Attempt(number=task.attempt_number, artifact_ref=outcome.artifact_ref)
        return await self._commit_async(
            task.evolve(
                stage=TaskStage.VERIFYING,
                artifact_ref=outcome.artifact_ref,
                attempts=(*task.attempts, attempt),
                note=outcome.note,
            ),
            previous=task,
            event=RecordEvent.ADVANCE,
            artifact_ref=outcome.artifact_ref,
        )

    async def _verify(self, task: Task, cancel_token: CancellationToken | None) -> Task:
        attempt = task.current_attempt
        if attempt is None:
            raise InvalidTransitionError(task, "verify without an attempt")
        try:
            results = await self._runner.run(
                attempt.artifact_ref,
                task.kind,
                timeout_seconds=self._limits.verifier_timeout_seconds,
                cancel_token=cancel_token,
            )
        except asyncio.CancelledError:
            if cancel_token is not None and cancel_token.is_cancelled:
                return await asyncio.to_thread(
                    self.cancel, task, cancel_token.reason or "cancelled"
                )
            raise

        verified = replace(attempt, results=results, verified=True)
        score = self._scorer.compute(verified.findings, kind=task.kind)
        if score.unknown_severities:
            self._logger.warning(
                "unknown_severities_scored",
                task_id=task.id,
                severities=list(score.unknown_severities),
            )
        return await self._commit_async(
            task.with_current_attempt(verified).evolve(stage=TaskStage.SCORED, note=None),
            previous=task,
            event=RecordEvent.ADVANCE,
            score=score.value,
            findings=verified.findings,
            results=results,
        )

    async def _decide(self, task: Task) -> Task:
        attempt = task.current_attempt
        if attempt is None or not attempt.verified:
            raise InvalidTransitionError(task, "score an unverified attempt of")
        score = self._scorer.compute(attempt.findings, kind=task.kind)
        verdict = self._gate.verdict(score, task.track)
        thresholds = self._gate.thresholds_for(task.track)
        decided = task.with_current_attempt(replace(attempt, decision=verdict.decision))

        event = RecordEvent.ADVANCE
        warned = False
        if verdict.decision is GateDecision.PASS:
            stage = TaskStage.COMMITTED
            note = "committed" + (" (excellent)" if verdict.excellent else "")
        elif verdict.decision is GateDecision.WARN:
            stage = TaskStage.COMMITTED
            warned = True
            note = (
                f"committed with warnings: score {score.value} is below "
                f"{thresholds.pass_at} on the {task.track.value} track"
            )
        elif task.retries >= self._limits.max_attempts:
            stage = TaskStage.ESCALATED
            event = RecordEvent.ESCALATE
            note = (
                f"blocked at score {score.value} after {task.attempt_number} attempt(s); "
                "retry limit reached"
            )
        else:
            stage = TaskStage.RETRYING
            note = (
                f"blocked: score {score.value} is below {thresholds.block_below} "
                f"on the {task.track.value} track"
            )

        self._logger.info(
            "gate_decision",
            task_id=task.id,
            attempt=attempt.number,
            track=task.track.value,
            score=score.value,
            decision=verdict.decision.value,
            excellent=verdict.excellent,
            next_stage=stage.value,
        )
        return await self._commit_async(
            decided.evolve(stage=stage, committed_with_warnings=warned, note=note),
            previous=task,
            event=event,
            decision=verdict.decision,
            score=score.value,
            findings=attempt.findings,
        )

    def _commit(
        self,
        task: Task,
        *,
        previous: Task | None,
        event: RecordEvent,
        **fields: Any,
    ) -> Task:
        record = self._transition_record(task, previous=previous, event=event, **fields)
        self._recorder.append(record)
        return self._committed(task, record, previous)

    async def _commit_async(
        self,
        task: Task,
        *,
        previous: Task | None,
        event: RecordEvent,
        **fields: Any,
    ) -> Task:
        """Like ``_commit``, with the fsynced append run off the event loop."""

        record = self._transition_record(task, previous=previous, event=event, **fields)
        await asyncio.to_thread(self._recorder.append, record)
        return self._committed(task, record, previous)

    def _transition_record(
        self,
        task: Task,
        *,
        previous: Task | None,
        event: RecordEvent,
        **fields: Any,
    ) -> SessionRecord:
        if previous is not None and not can_transition(previous.stage, task.stage):
            raise InvalidTransitionError(previous, f"move to {task.stage.value}")
        return SessionRecord(
            task_id=task.id,
            sequence=(previous.sequence if previous is not None else 0) + 1,
            event=event,
            stage=task.stage,
            previous_stage=previous.stage if previous is not None else None,
            attempt=task.attempt_number,
            timestamp=self._clock(),
            committed_with_warnings=task.committed_with_warnings,
            note=task.note,
            **fields,
        )

    def _committed(self, task: Task, record: SessionRecord, previous: Task | None) -> Task:
        self._logger.info(
            "stage_transition",
            task_id=task.id,
            sequence=record.sequence,
            record_event=record.event.value,
            from_stage=previous.stage.value if previous is not None else None,
            to_stage=task.stage.value,
            attempt=task.attempt_number,
        )
        return task.evolve(sequence=record.sequence)


__all__ = [
    "Clock",
    "INITIAL_STAGES",
    "PLAN_SKIPPED_NOTE",
    "TRANSITIONS",
    "InvalidTransitionError",
    "MaxAttemptsExceededError",
    "SchedulerError",
    "SchedulerLimits",
    "StageScheduler",
    "can_transition",
]
