"""
stagegate — unit tests for the JSONL session recorder

File: tests/unit/persistence/test_session_recorder.py
Last updated: 2026-10-19

Purpose
- Verify append-only semantics, sequence continuity, torn-tail recovery and
  per-task write serialization.
"""

from __future__ import annotations

import os
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stagegate.domain.models import (
    ArtifactKind,
    RecordEvent,
    SessionRecord,
    TaskManifest,
    TaskStage,
    Track,
)
from stagegate.persistence.session_recorder import (
    SessionConflictError,
    SessionCorruptError,
    SessionRecorder,
    SessionWriteError,
)

_BASE_TS = datetime(2026, 10, 19, 8, 0, 0, tzinfo=UTC)


def _start(task_id: str = "task-a") -> SessionRecord:
    return SessionRecord(
        task_id=task_id,
        sequence=1,
        event=RecordEvent.START,
        stage=TaskStage.EXECUTING,
        timestamp=_BASE_TS,
        manifest=TaskManifest(
            task_id=task_id,
            artifact_ref="model.R",
            kind=ArtifactKind.NUMERIC_SCRIPT,
            track=Track.EXPLORATION,
            created_at=_BASE_TS,
        ),
    )


def _advance(sequence: int, task_id: str = "task-a") -> SessionRecord:
    return SessionRecord(
        task_id=task_id,
        sequence=sequence,
        event=RecordEvent.ADVANCE,
        stage=TaskStage.VERIFYING,
        previous_stage=TaskStage.EXECUTING,
        timestamp=_BASE_TS + timedelta(seconds=sequence),
        note=f"record {sequence}",
    )


def test_append_and_history_roundtrip(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path / "sessions", fsync=False)
    assert not recorder.exists("task-a")
    assert recorder.history("task-a") == ()

    records = [_start(), _advance(2), _advance(3)]
    for record in records:
        recorder.append(record)

    assert recorder.exists("task-a")
    assert recorder.history("task-a") == tuple(records)
    assert recorder.last_sequence("task-a") == 3
    assert recorder.task_ids() == ("task-a",)
    lines = recorder.path_for("task-a").read_text(encoding="utf-8").splitlines()
    assert lines == [record.to_json() for record in records]


def test_sequence_must_follow_last_record(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    recorder.append(_start())

    with pytest.raises(SessionConflictError) as excinfo:
        recorder.append(_advance(3))
    assert (excinfo.value.expected, excinfo.value.actual) == (2, 3)
    with pytest.raises(SessionConflictError):
        recorder.append(_advance(1))
    assert len(recorder.history("task-a")) == 1


def test_second_recorder_sees_external_appends(tmp_path: Path) -> None:
    first = SessionRecorder(tmp_path, fsync=False)
    second = SessionRecorder(tmp_path, fsync=False)
    first.append(_start())
    second.append(_advance(2))

    with pytest.raises(SessionConflictError):
        first.append(_advance(2))
    first.append(_advance(3))
    assert [record.sequence for record in second.history("task-a")] == [1, 2, 3]


def test_torn_trailing_line_is_ignored_then_truncated(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    recorder.append(_start())
    recorder.append(_advance(2))
    path = recorder.path_for("task-a")
    with path.open("ab") as handle:
        handle.write(b'{"task_id": "task-a", "seque')

    reopened = SessionRecorder(tmp_path, fsync=False)
    assert [record.sequence for record in reopened.history("task-a")] == [1, 2]

    reopened.append(_advance(3))
    assert [record.sequence for record in reopened.history("task-a")] == [1, 2, 3]
    assert path.read_bytes().endswith(b"\n")


def test_garbage_in_the_middle_is_corruption(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    recorder.append(_start())
    path = recorder.path_for("task-a")
    with path.open("ab") as handle:
        handle.write(b"not json\n")
        handle.write((_advance(2).to_json() + "\n").encode("utf-8"))

    with pytest.raises(SessionCorruptError, match=":2:"):
        SessionRecorder(tmp_path, fsync=False).history("task-a")


def test_sequence_gap_on_disk_is_corruption(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    recorder.append(_start())
    with recorder.path_for("task-a").open("ab") as handle:
        handle.write((_advance(5).to_json() + "\n").encode("utf-8"))

    with pytest.raises(SessionCorruptError, match="sequence gap"):
        recorder.history("task-a")


def test_failed_write_leaves_no_partial_record(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    recorder.append(_start())
    before = recorder.path_for("task-a").read_bytes()

    def _short_write(fd: int, data: bytes) -> int:
        return real_write(fd, data[: len(data) // 2])

    real_write = os.write
    monkeypatch.setattr("stagegate.persistence.session_recorder.os.write", _short_write)
    with pytest.raises(SessionWriteError, match="not durably written"):
        recorder.append(_advance(2))
    monkeypatch.undo()

    assert recorder.path_for("task-a").read_bytes() == before
    recorder.append(_advance(2))
    assert recorder.last_sequence("task-a") == 2


def test_concurrent_appends_for_one_task_are_serialized(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    recorder.append(_start())
    accepted: list[int] = []
    conflicts: list[int] = []
    barrier = threading.Barrier(8)

    def _writer(index: int) -> None:
        barrier.wait()
        try:
            recorder.append(_advance(2))
        except SessionConflictError:
            conflicts.append(index)
        else:
            accepted.append(index)

    threads = [threading.Thread(target=_writer, args=(index,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(accepted) == 1
    assert len(conflicts) == 7
    assert recorder.last_sequence("task-a") == 2


def test_distinct_tasks_have_independent_logs(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=True)
    recorder.append(_start("task-a"))
    recorder.append(_start("task-b"))
    recorder.append(_advance(2, task_id="task-b"))

    assert recorder.task_ids() == ("task-a", "task-b")
    assert recorder.last_sequence("task-a") == 1
    assert recorder.last_sequence("task-b") == 2


def test_unsafe_task_ids_are_rejected(tmp_path: Path) -> None:
    recorder = SessionRecorder(tmp_path, fsync=False)
    with pytest.raises(ValueError, match="task_id"):
        recorder.path_for("../escape")
