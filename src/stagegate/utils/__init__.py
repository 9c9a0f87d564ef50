"""Utility exports for filesystem and concurrency helpers."""

from stagegate.utils.concurrency import BoundedSemaphore, CancellationToken, run_with_timeout
from stagegate.utils.fs import atomic_write, ensure_directory, fsync_directory, temp_directory

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "atomic_write",
    "ensure_directory",
    "fsync_directory",
    "run_with_timeout",
    "temp_directory",
]
