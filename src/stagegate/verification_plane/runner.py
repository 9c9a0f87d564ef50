"""
stagegate — verification runner

File: src/stagegate/verification_plane/runner.py
Last updated: 2026-10-19

Purpose
- Run every verifier that applies to an artifact kind under a hard per-verifier
  deadline and collect their results in a stable order.

Functional requirements
- A verifier that times out, raises a ``VerifierError`` or crashes in any other way
  yields a failed result carrying one Critical finding with deduction 100.
- ``asyncio.CancelledError`` is never converted; it propagates to the scheduler.
- Results are returned in verifier registration order regardless of completion order.

Non-functional requirements
- Fan-out is bounded by ``max_concurrency``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from typing import Any, Final

import structlog

from stagegate.constants import DEFAULT_VERIFIER_TIMEOUT_SECONDS
from stagegate.domain.models import (
    ArtifactKind,
    ExecutionMetadata,
    Finding,
    Severity,
    VerificationResult,
    parse_artifact_kind,
)
from stagegate.observability.logging import correlation_scope
from stagegate.utils.concurrency import BoundedSemaphore, CancellationToken, run_with_timeout
from stagegate.verification_plane.verifiers.base import (
    Verifier,
    VerifierCrashError,
    VerifierTimeoutError,
    truncate_text,
)

FAILURE_DEDUCTION: Final[int] = 100
DEFAULT_GRACE_SECONDS: Final[float] = 10.0
# Keeps the whole message under the Finding.message limit.
MAX_FAILURE_DETAIL_CHARS: Final[int] = 2048


def timeout_finding(verifier: str, timeout_seconds: float) -> Finding:
    return Finding(
        severity=Severity.CRITICAL,
        category="verifier-timeout",
        message=f"verifier {verifier!r} did not finish within {timeout_seconds:.3f}s",
        deduction=FAILURE_DEDUCTION,
        proposed_fix=(
            "Make the artifact finish within the time limit or raise the verifier timeout."
        ),
    )


def crash_finding(verifier: str, exc: BaseException) -> Finding:
    detail = truncate_text(str(exc) or type(exc).__name__, MAX_FAILURE_DETAIL_CHARS)
    return Finding(
        severity=Severity.CRITICAL,
        category="verifier-crash",
        message=f"verifier {verifier!r} failed: {type(exc).__name__}: {detail}",
        deduction=FAILURE_DEDUCTION,
        proposed_fix="Check that the verifier toolchain is installed and the artifact is readable.",
    )


class VerificationRunner:
    """Fan an artifact out to the verifiers registered for its kind."""

    def __init__(
        self,
        verifiers: Sequence[Verifier],
        *,
        default_timeout_seconds: float = DEFAULT_VERIFIER_TIMEOUT_SECONDS,
        max_concurrency: int = 4,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        if grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        names = [verifier.name for verifier in verifiers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate verifier names: {duplicates}")
        self._verifiers = tuple(verifiers)
        self._default_timeout_seconds = default_timeout_seconds
        self._max_concurrency = max_concurrency
        self._grace_seconds = grace_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def verifiers(self) -> tuple[Verifier, ...]:
        return self._verifiers

    def select(self, kind: ArtifactKind | str) -> tuple[Verifier, ...]:
        parsed = parse_artifact_kind(kind)
        return tuple(verifier for verifier in self._verifiers if parsed in verifier.kinds)

    async def run(
        self,
        artifact_ref: str,
        kind: ArtifactKind | str,
        *,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[VerificationResult, ...]:
        parsed_kind = parse_artifact_kind(kind)
        selected = self.select(parsed_kind)
        if not selected:
            return ()
        timeout = timeout_seconds if timeout_seconds is not None else self._default_timeout_seconds
        semaphore = BoundedSemaphore(self._max_concurrency)

        async def guarded(verifier: Verifier) -> VerificationResult:
            async with semaphore.permit():
                return await self._run_one(
                    verifier, artifact_ref, parsed_kind, timeout, cancel_token
                )

        results = await asyncio.gather(*(guarded(verifier) for verifier in selected))
        return tuple(results)

    async def _run_one(
        self,
        verifier: Verifier,
        artifact_ref: str,
        kind: ArtifactKind,
        timeout_seconds: float,
        cancel_token: CancellationToken | None,
    ) -> VerificationResult:
        started = time.monotonic()
        with correlation_scope(verifier=verifier.name):
            try:
                return await run_with_timeout(
                    verifier.verify(artifact_ref, kind, timeout_seconds),
                    timeout_seconds + self._grace_seconds,
                    cancel_token,
                )
            except asyncio.CancelledError:
                raise
            except (TimeoutError, VerifierTimeoutError):
                finding = timeout_finding(verifier.name, timeout_seconds)
                timed_out = True
            except VerifierCrashError as exc:
                finding = crash_finding(verifier.name, exc)
                timed_out = False
            except Exception as exc:  # noqa: BLE001
                finding = crash_finding(verifier.name, exc)
                timed_out = False

            self._logger.warning(
                "verifier_failure_recorded",
                verifier=verifier.name,
                artifact_ref=artifact_ref,
                category=finding.category,
                detail=finding.message,
            )
            return VerificationResult(
                verifier=verifier.name,
                artifact_ref=artifact_ref,
                passed=False,
                findings=(finding,),
                metadata=ExecutionMetadata(
                    duration_ms=int((time.monotonic() - started) * 1000),
                    timed_out=timed_out,
                ),
            )


__all__ = [
    "FAILURE_DEDUCTION",
    "MAX_FAILURE_DETAIL_CHARS",
    "VerificationRunner",
    "crash_finding",
    "timeout_finding",
]
