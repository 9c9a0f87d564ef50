"""Executable CLI entrypoint for ``stagegate``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    BLOCKED = 1
    ERROR = 2


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m stagegate`` and the ``stagegate`` script."""

    try:
        from stagegate.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.ERROR)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        _emit_failure(exc, _is_known_failure(exc))
        return int(ExitCode.ERROR)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.ERROR)


def _is_known_failure(exc: BaseException) -> bool:
    """Return True when the failure is a known, user-facing error type."""

    known = _load_known_error_types()
    return any(isinstance(item, known) for item in _iter_exception_chain(exc))


def _load_known_error_types() -> tuple[type[BaseException], ...]:
    from stagegate.config.loader import ConfigLoadError
    from stagegate.config.schema import ConfigValidationError
    from stagegate.control_plane.replay import ReplayError
    from stagegate.control_plane.scheduler import SchedulerError
    from stagegate.persistence.session_recorder import SessionRecorderError

    return (
        ConfigLoadError,
        ConfigValidationError,
        ReplayError,
        SchedulerError,
        SessionRecorderError,
        OSError,
    )


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
        elif current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return items


def _emit_failure(exc: BaseException, known: bool) -> None:
    if not known:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(f"error: {str(exc).strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
