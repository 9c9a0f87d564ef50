"""Time-ordered identifiers for tasks and logging sessions.

IDs are ``<prefix>-<ULID>``: 48 bits of millisecond timestamp followed by 80 random
bits, rendered as 26 Crockford Base32 characters so that IDs sort by creation time.
Validation of stored IDs lives with the domain models (``models.check_task_id``); this
module only mints them.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_RANDOM_BYTES: Final[int] = 10

TASK_ID_PREFIX: Final[str] = "task"
SESSION_ID_PREFIX: Final[str] = "sess"

RandomSource = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomSource | None = None,
) -> str:
    """Return a 26-character ULID; both inputs are injectable for deterministic tests."""

    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(stamp, bool) or not isinstance(stamp, int):
        raise ValueError(f"timestamp_ms: expected integer, got {type(stamp).__name__}")
    if not 0 <= stamp <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms: must be within 0..{ULID_MAX_TIMESTAMP_MS}, got {stamp}")

    entropy = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes: must return exactly {_RANDOM_BYTES} bytes")

    value = (stamp << 80) | int.from_bytes(entropy, "big")
    chars = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def generate_task_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return f"{TASK_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def generate_session_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return f"{SESSION_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "SESSION_ID_PREFIX",
    "TASK_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "RandomSource",
    "generate_session_id",
    "generate_task_id",
    "generate_ulid",
]
