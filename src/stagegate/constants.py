"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
SESSION_RECORD_SCHEMA_VERSION: Final[int] = 1
RUBRIC_TABLE_SCHEMA_VERSION: Final[int] = 1
FIXUP_PACKAGE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
DEFAULT_CONFIG_FILE: Final[str] = "stagegate.toml"
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
SESSIONS_DIR: Final[PurePosixPath] = STATE_DIR / "sessions"
HANDOFF_DIR: Final[PurePosixPath] = STATE_DIR / "handoff"
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Scoring bounds.
SCORE_MIN: Final[int] = 0
SCORE_MAX: Final[int] = 100

# Retry policy.
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_VERIFIER_TIMEOUT_SECONDS: Final[float] = 600.0

# Severity ordering used for fix-up selection and deterministic sorting.
SEVERITY_RANK: Final[dict[str, int]] = {
    "info": 0,
    "minor": 1,
    "major": 2,
    "critical": 3,
}

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_VERIFIER_TIMEOUT_SECONDS",
    "FIXUP_PACKAGE_SCHEMA_VERSION",
    "HANDOFF_DIR",
    "LOGS_DIR",
    "RUBRIC_TABLE_SCHEMA_VERSION",
    "SCORE_MAX",
    "SCORE_MIN",
    "SESSIONS_DIR",
    "SESSION_RECORD_SCHEMA_VERSION",
    "SEVERITY_RANK",
    "STATE_DIR",
]
