"""
Session replay.

Rebuilds a ``Task`` value from its ordered session records. The result is identical to
the task the scheduler held after writing the last record, which is what makes
``StageScheduler.resume`` and ``stagegate history`` agree with a live run.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from stagegate.control_plane.scheduler import INITIAL_STAGES, can_transition
from stagegate.domain.models import (
    Attempt,
    RecordEvent,
    SessionRecord,
    Task,
    TaskStage,
)


class ReplayError(ValueError):
    """Raised when a record sequence cannot describe a legal task history."""


def replay_history(records: Iterable[SessionRecord], *, task_id: str | None = None) -> Task:
    task: Task | None = None
    for record in records:
        if task_id is not None and record.task_id != task_id:
            raise ReplayError(
                f"record {record.sequence} belongs to {record.task_id!r}, not {task_id!r}"
            )
        task = _apply(task, record)
    if task is None:
        raise ReplayError(f"no session records for task {task_id!r}")
    return task


def _apply(task: Task | None, record: SessionRecord) -> Task:
    if task is None:
        if record.event is not RecordEvent.START or record.manifest is None:
            raise ReplayError(f"{record.task_id}: history must begin with a start record")
        if record.stage not in INITIAL_STAGES:
            raise ReplayError(f"{record.task_id}: cannot start in stage {record.stage.value!r}")
        started = Task.from_manifest(record.manifest, stage=record.stage)
        return started.evolve(sequence=record.sequence, note=record.note)

    if record.event is RecordEvent.START:
        raise ReplayError(f"{task.id}: duplicate start record at sequence {record.sequence}")
    if record.sequence != task.sequence + 1:
        raise ReplayError(
            f"{task.id}: expected sequence {task.sequence + 1}, found {record.sequence}"
        )
    if record.previous_stage is not task.stage:
        raise ReplayError(
            f"{task.id}: record {record.sequence} starts from "
            f"{record.previous_stage.value if record.previous_stage else None!r} "
            f"but the task is in {task.stage.value!r}"
        )
    if not can_transition(task.stage, record.stage):
        raise ReplayError(
            f"{task.id}: illegal transition {task.stage.value} -> {record.stage.value}"
        )

    updated = task
    if record.stage is TaskStage.VERIFYING:
        artifact_ref = record.artifact_ref or task.artifact_ref
        attempt = Attempt(number=record.attempt, artifact_ref=artifact_ref)
        updated = task.evolve(artifact_ref=artifact_ref, attempts=(*task.attempts, attempt))
    elif record.stage is TaskStage.SCORED:
        current = _require_attempt(task, record)
        updated = task.with_current_attempt(
            replace(current, results=record.results, verified=True)
        )
    elif record.previous_stage is TaskStage.SCORED and record.decision is not None:
        current = _require_attempt(task, record)
        updated = task.with_current_attempt(replace(current, decision=record.decision))
    elif record.event is RecordEvent.RETRY:
        updated = task.evolve(retries=record.attempt - 1)

    return updated.evolve(
        stage=record.stage,
        sequence=record.sequence,
        committed_with_warnings=record.committed_with_warnings,
        note=record.note,
    )


def _require_attempt(task: Task, record: SessionRecord) -> Attempt:
    current = task.current_attempt
    if current is None:
        raise ReplayError(f"{task.id}: record {record.sequence} has no attempt to update")
    return current


__all__ = ["ReplayError", "replay_history"]
