"""Task and session ID minting."""

from __future__ import annotations

import pytest

from stagegate.domain import ids
from stagegate.domain.models import check_task_id


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_ulid_encoding_bounds() -> None:
    assert ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes) == "0" * ids.ULID_LENGTH
    highest = ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS, randbytes=_ff_bytes)
    assert highest == "7" + "Z" * (ids.ULID_LENGTH - 1)


def test_ulids_sort_by_timestamp_and_do_not_collide() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_zero_bytes)
    assert earlier < later
    assert len({ids.generate_ulid() for _ in range(5_000)}) == 5_000


def test_minted_ids_carry_their_prefix_and_are_valid_task_ids() -> None:
    task_id = ids.generate_task_id(timestamp_ms=1, randbytes=_ff_bytes)
    session_id = ids.generate_session_id(timestamp_ms=1, randbytes=_ff_bytes)

    assert task_id.startswith("task-")
    assert session_id.startswith("sess-")
    assert len(task_id) == len("task-") + ids.ULID_LENGTH
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in task_id.removeprefix("task-"))
    assert check_task_id(task_id) == task_id


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"timestamp_ms": -1}, "timestamp_ms: must be within"),
        ({"timestamp_ms": ids.ULID_MAX_TIMESTAMP_MS + 1}, "timestamp_ms: must be within"),
        ({"timestamp_ms": True}, "timestamp_ms: expected integer"),
        ({"randbytes": lambda size: b"\x00" * (size - 1)}, "exactly 10 bytes"),
    ],
)
def test_invalid_inputs_are_rejected(kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.generate_ulid(**kwargs)  # type: ignore[arg-type]
