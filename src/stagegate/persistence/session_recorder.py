"""
stagegate — session recorder

File: src/stagegate/persistence/session_recorder.py
Last updated: 2026-10-19

Purpose
- Durable, append-only audit log of every task transition, one JSONL file per task.

What should be included in this file
- ``append`` / ``history`` / ``iter_history`` / ``task_ids``; no update or delete surface.
- Typed errors for write failures, sequence conflicts and corrupt logs.

Functional requirements
- Each record is written with a single ``write`` on an ``O_APPEND`` descriptor and then
  fsynced; a failed write is truncated away and reported, so callers never advance a
  task whose record is not on disk.
- Appends for one task ID are serialized (thread lock plus ``flock``); appends for
  different task IDs proceed concurrently.
- A record's ``sequence`` must be exactly ``last + 1``.
- A torn trailing line left by a crash is ignored on read and removed before the next
  append; any other unparseable line is corruption.

Non-functional requirements
- Reading streams line by line; the last sequence number is cached per task and only
  re-read when the file size changes.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Final

from stagegate.domain.models import SessionRecord, check_task_id
from stagegate.utils.fs import PathLike, ensure_directory, fsync_directory

if os.name != "nt":
    import fcntl

LOG_SUFFIX: Final[str] = ".jsonl"
_READ_CHUNK: Final[int] = 65_536

logger = logging.getLogger(__name__)


class SessionRecorderError(RuntimeError):
    """Base class for session store failures."""


class SessionWriteError(SessionRecorderError):
    """Raised when a record could not be durably written."""


class SessionConflictError(SessionRecorderError):
    """Raised when a record's sequence does not follow the stored history."""

    def __init__(self, task_id: str, expected: int, actual: int) -> None:
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{task_id}: expected sequence {expected}, got {actual}; "
            "another writer advanced this task"
        )


class SessionCorruptError(SessionRecorderError):
    """Raised when a stored line cannot be parsed or breaks sequence continuity."""

    def __init__(self, path: Path, line_no: int, reason: str) -> None:
        self.path = path
        self.line_no = line_no
        super().__init__(f"{path}:{line_no}: {reason}")


class SessionRecorder:
    """JSONL session store rooted at ``log_dir``."""

    def __init__(self, log_dir: PathLike, *, fsync: bool = True) -> None:
        self._log_dir = ensure_directory(log_dir)
        self._fsync = fsync
        self._registry_lock = threading.Lock()
        self._task_locks: dict[str, threading.Lock] = {}
        self._tail_cache: dict[str, tuple[int, int]] = {}

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def path_for(self, task_id: str) -> Path:
        return self._log_dir / f"{check_task_id(task_id)}{LOG_SUFFIX}"

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).is_file()

    def task_ids(self) -> tuple[str, ...]:
        return tuple(
            sorted(path.name[: -len(LOG_SUFFIX)] for path in self._log_dir.glob(f"*{LOG_SUFFIX}"))
        )

    def append(self, record: SessionRecord) -> SessionRecord:
        """Durably append ``record``; on any exception nothing new is visible on disk."""

        if not isinstance(record, SessionRecord):
            raise TypeError(f"expected SessionRecord, got {type(record).__name__}")
        path = self.path_for(record.task_id)
        payload = (record.to_json() + "\n").encode("utf-8")

        with self._task_lock(record.task_id):
            created = not path.exists()
            try:
                fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_APPEND, 0o644)
            except OSError as exc:
                raise SessionWriteError(f"{path}: cannot open session log: {exc}") from exc
            try:
                with _exclusive_file_lock(fd):
                    base_length, last_sequence, needs_newline = self._tail_state(
                        record.task_id, fd, path
                    )
                    if record.sequence != last_sequence + 1:
                        raise SessionConflictError(
                            record.task_id, last_sequence + 1, record.sequence
                        )
                    data = b"\n" + payload if needs_newline else payload
                    self._write_durably(fd, path, data, rollback_length=base_length)
                    self._tail_cache[record.task_id] = (base_length + len(data), record.sequence)
            finally:
                os.close(fd)
            if created and self._fsync:
                fsync_directory(self._log_dir)

        logger.debug(
            "session record appended",
            extra={"task_id": record.task_id, "sequence": record.sequence, "stage": record.stage},
        )
        return record

    def history(self, task_id: str) -> tuple[SessionRecord, ...]:
        return tuple(self.iter_history(task_id))

    def iter_history(self, task_id: str) -> Iterator[SessionRecord]:
        """Stream records in sequence order; unknown task IDs yield nothing."""

        path = self.path_for(task_id)
        if not path.exists():
            return
        expected_sequence = 1
        with path.open("rb") as handle:
            pending: bytes | None = None
            pending_line_no = 0
            for line_no, raw in enumerate(handle, start=1):
                if pending is not None:
                    yield self._parse_line(
                        path, pending_line_no, pending, task_id, expected_sequence
                    )
                    expected_sequence += 1
                pending, pending_line_no = raw, line_no
            if pending is None:
                return
            if pending.endswith(b"\n"):
                yield self._parse_line(path, pending_line_no, pending, task_id, expected_sequence)
                return
            try:
                record = self._parse_line(
                    path, pending_line_no, pending, task_id, expected_sequence
                )
            except SessionCorruptError:
                logger.warning(
                    "ignoring torn trailing session record",
                    extra={"task_id": task_id, "line": pending_line_no},
                )
                return
            yield record

    def last_sequence(self, task_id: str) -> int:
        path = self.path_for(task_id)
        if not path.exists():
            return 0
        with path.open("rb") as handle:
            _, last, _ = self._tail_state(task_id, handle.fileno(), path)
        return last

    def _task_lock(self, task_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._task_locks[task_id] = lock
            return lock

    def _tail_state(self, task_id: str, fd: int, path: Path) -> tuple[int, int, bool]:
        """Return ``(length_to_keep, last_sequence, needs_newline)`` for the open log.

        A torn tail is truncated here when the descriptor is writable.
        """

        size = os.fstat(fd).st_size
        cached = self._tail_cache.get(task_id)
        if cached is not None and cached[0] == size:
            return size, cached[1], False
        if size == 0:
            return 0, 0, False

        data = _read_all(fd, size)
        last_newline = data.rfind(b"\n")
        complete = data[: last_newline + 1] if last_newline >= 0 else b""
        tail = data[last_newline + 1 :]

        keep = len(complete)
        needs_newline = False
        last_sequence = _last_sequence_in(complete, path)
        if tail:
            tail_sequence = _try_sequence(tail)
            if tail_sequence is not None:
                keep = size
                needs_newline = True
                last_sequence = tail_sequence
            else:
                logger.warning(
                    "truncating torn trailing session record",
                    extra={"task_id": task_id, "torn_bytes": len(tail)},
                )
                with suppress(OSError):
                    os.ftruncate(fd, keep)
        if not needs_newline:
            self._tail_cache[task_id] = (keep, last_sequence)
        return keep, last_sequence, needs_newline

    def _write_durably(self, fd: int, path: Path, data: bytes, *, rollback_length: int) -> None:
        try:
            written = os.write(fd, data)
            if written != len(data):
                raise OSError(f"short write: {written} of {len(data)} bytes")
            if self._fsync:
                os.fsync(fd)
        except OSError as exc:
            with suppress(OSError):
                os.ftruncate(fd, rollback_length)
            raise SessionWriteError(f"{path}: record was not durably written: {exc}") from exc

    @staticmethod
    def _parse_line(
        path: Path,
        line_no: int,
        raw: bytes,
        task_id: str,
        expected_sequence: int,
    ) -> SessionRecord:
        try:
            record = SessionRecord.from_json(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise SessionCorruptError(path, line_no, f"unparseable record: {exc}") from exc
        if record.task_id != task_id:
            raise SessionCorruptError(
                path, line_no, f"record belongs to task {record.task_id!r}"
            )
        if record.sequence != expected_sequence:
            raise SessionCorruptError(
                path,
                line_no,
                f"sequence gap: expected {expected_sequence}, found {record.sequence}",
            )
        return record


@contextmanager
def _exclusive_file_lock(fd: int) -> Iterator[None]:
    if os.name == "nt":
        yield
        return
    fcntl.flock(fd, fcntl.LOCK_EX)
    try:
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)


def _read_all(fd: int, size: int) -> bytes:
    chunks: list[bytes] = []
    offset = 0
    while offset < size:
        chunk = os.pread(fd, min(_READ_CHUNK, size - offset), offset)
        if not chunk:
            break
        chunks.append(chunk)
        offset += len(chunk)
    return b"".join(chunks)


def _last_sequence_in(complete: bytes, path: Path) -> int:
    lines = complete.rstrip(b"\n").rsplit(b"\n", 1)
    last_line = lines[-1] if lines else b""
    if not last_line.strip():
        return 0
    sequence = _try_sequence(last_line)
    if sequence is None:
        line_no = complete.count(b"\n")
        raise SessionCorruptError(path, line_no, "last complete record is unparseable")
    return sequence


def _try_sequence(raw: bytes) -> int | None:
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    sequence = parsed.get("sequence")
    if isinstance(sequence, bool) or not isinstance(sequence, int):
        return None
    return sequence


__all__ = [
    "LOG_SUFFIX",
    "SessionConflictError",
    "SessionCorruptError",
    "SessionRecorder",
    "SessionRecorderError",
    "SessionWriteError",
]
