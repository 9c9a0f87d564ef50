"""Persistence: the append-only JSONL session store."""

from stagegate.persistence.session_recorder import (
    SessionConflictError,
    SessionCorruptError,
    SessionRecorder,
    SessionRecorderError,
    SessionWriteError,
)

__all__ = [
    "SessionConflictError",
    "SessionCorruptError",
    "SessionRecorder",
    "SessionRecorderError",
    "SessionWriteError",
]
