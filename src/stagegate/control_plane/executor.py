"""Execute-stage collaborators: the seam between the scheduler and whatever produces artifacts."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from stagegate.observability.logging import default_log_redactor
from stagegate.utils.fs import PathLike, atomic_write, ensure_directory

if TYPE_CHECKING:
    from stagegate.control_plane.feedback import FixupPackage
    from stagegate.domain.models import Task

FIXUP_SUFFIX = ".fixups.json"


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    artifact_ref: str
    note: str | None = None


@runtime_checkable
class TaskExecutor(Protocol):
    """Produces (or re-produces) the artifact for one attempt.

    ``fixups`` is ``None`` on the first attempt and the previous BLOCK's package on
    every retry.
    """

    async def execute(self, task: Task, fixups: FixupPackage | None) -> ExecutionOutcome: ...


class PassthroughExecutor:
    """Keeps the artifact reference unchanged and hands fix-ups off as JSON files.

    The orchestrator never edits artifacts; an external author picks the hand-off file
    up from ``<handoff_dir>/<task_id>.fixups.json``.
    """

    def __init__(self, handoff_dir: PathLike | None = None) -> None:
        self._handoff_dir = Path(handoff_dir) if handoff_dir is not None else None

    @property
    def handoff_dir(self) -> Path | None:
        return self._handoff_dir

    def handoff_path(self, task_id: str) -> Path | None:
        if self._handoff_dir is None:
            return None
        return self._handoff_dir / f"{task_id}{FIXUP_SUFFIX}"

    async def execute(self, task: Task, fixups: FixupPackage | None) -> ExecutionOutcome:
        path = self.handoff_path(task.id)
        if fixups is None or path is None:
            return ExecutionOutcome(artifact_ref=task.artifact_ref)
        await asyncio.to_thread(self._write_handoff, path, fixups)
        return ExecutionOutcome(artifact_ref=task.artifact_ref, note=f"fix-ups written to {path}")

    @staticmethod
    def _write_handoff(path: Path, fixups: FixupPackage) -> None:
        ensure_directory(path.parent)
        payload = default_log_redactor(fixups.to_dict())  # type: ignore[arg-type]
        atomic_write(path, json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n")


__all__ = ["ExecutionOutcome", "PassthroughExecutor", "TaskExecutor"]
