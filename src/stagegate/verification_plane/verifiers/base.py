"""
stagegate — verifier contract

File: src/stagegate/verification_plane/verifiers/base.py
Last updated: 2026-10-19

Purpose
- Define what a verifier is, how command-backed verifiers spawn their tools, and how
  built-in verifiers are registered.

What should be included in this file
- ``Verifier`` protocol and the typed ``VerifierError`` family.
- ``CommandSpec`` / ``CommandResult`` and the pluggable async ``CommandExecutor``.
- ``CommandVerifier``: shared run → parse → result flow for external toolchains.
- ``VerifierRegistry`` with a decorator for built-ins.

Functional requirements
- A verifier never mutates the artifact; tool output goes to a scratch directory.
- A verifier never hangs: commands carry a hard timeout and are killed on expiry.
- Timeouts and launch failures surface as ``VerifierTimeoutError`` /
  ``VerifierCrashError`` so the runner can turn them into Critical findings.

Non-functional requirements
- Captured tool output is bounded and optionally redacted before it is parsed.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Final, Protocol, TypeVar, runtime_checkable

from stagegate.domain.models import (
    ArtifactKind,
    ExecutionMetadata,
    Finding,
    Severity,
    VerificationResult,
)
from stagegate.utils.fs import temp_directory

TextRedactor = Callable[[str], str]
VerifierFactory = Callable[..., "Verifier"]

VERSION_QUERY_TIMEOUT_SECONDS: Final[float] = 5.0
_MAX_OUTPUT_CHARS: Final[int] = 200_000


class VerifierError(RuntimeError):
    """Base class for verifier failures that are not findings about the artifact."""

    def __init__(self, verifier: str, message: str) -> None:
        self.verifier = verifier
        super().__init__(f"{verifier}: {message}")


class VerifierTimeoutError(VerifierError):
    def __init__(self, verifier: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(verifier, f"timed out after {timeout_seconds:.3f}s")


class VerifierCrashError(VerifierError):
    pass


@runtime_checkable
class Verifier(Protocol):
    """A pluggable check over one artifact."""

    name: str
    kinds: frozenset[ArtifactKind]

    async def verify(
        self,
        artifact_ref: str,
        kind: ArtifactKind,
        timeout_seconds: float,
    ) -> VerificationResult: ...


@dataclass(slots=True)
class CommandSpec:
    """Portable command invocation used by command-backed verifiers."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    inherit_env: bool = True

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv or any(not isinstance(item, str) or not item for item in argv):
            raise ValueError("CommandSpec.argv: expected a non-empty sequence of strings")
        self.argv = argv
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds: must be > 0")
        self.allowed_exit_codes = tuple(sorted(set(self.allowed_exit_codes))) or (0,)
        self.env = {key: self.env[key] for key in sorted(self.env)}

    def build_env(self) -> dict[str, str] | None:
        if self.inherit_env:
            if not self.env:
                return None
            env = dict(os.environ)
            env.update(self.env)
            return env
        return dict(self.env)


@dataclass(slots=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.timed_out and self.exit_code is not None:
            raise ValueError("CommandResult.exit_code: must be None when timed_out is true")

    def is_success(self, spec: CommandSpec | None = None) -> bool:
        if self.timed_out or self.error is not None or self.exit_code is None:
            return False
        if spec is None:
            return self.exit_code == 0
        return self.exit_code in spec.allowed_exit_codes

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


@runtime_checkable
class CommandExecutor(Protocol):
    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Run commands as local subprocesses with bounded capture and hard timeouts."""

    def __init__(
        self,
        *,
        max_output_chars: int | None = _MAX_OUTPUT_CHARS,
        redactor: TextRedactor | None = None,
    ) -> None:
        self._max_output_chars = max_output_chars
        self._redactor: TextRedactor = redactor if redactor is not None else _identity

    async def run(self, spec: CommandSpec) -> CommandResult:
        started_ns = time.monotonic_ns()
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=self._redactor(str(exc)),
            )

        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process, spec.timeout_seconds
            )
            timed_out = False
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes, stderr_bytes = exc.stdout, exc.stderr
            timed_out = True
            exit_code = None

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=self._capture(stdout_bytes),
            stderr=self._capture(stderr_bytes),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
        )

    def _capture(self, raw: bytes) -> str:
        return self._redactor(truncate_text(_normalize_output_text(raw), self._max_output_chars))


class CommandVerifier:
    """Shared flow for verifiers that shell out to an external toolchain.

    Subclasses provide ``build_command`` and ``parse_findings``; ``inspect_outputs`` may
    add findings about files the tool was expected to produce in the scratch directory.
    """

    name: ClassVar[str] = "command"
    kinds: ClassVar[frozenset[ArtifactKind]] = frozenset()
    tool_name: ClassVar[str] = "tool"

    def __init__(self, *, executor: CommandExecutor | None = None) -> None:
        self._executor: CommandExecutor = (
            executor if executor is not None else LocalSubprocessExecutor()
        )
        self._tool_versions: dict[tuple[str, ...], str] = {}

    def build_command(self, artifact: Path, workdir: Path, timeout_seconds: float) -> CommandSpec:
        raise NotImplementedError

    def parse_findings(
        self, result: CommandResult, artifact: Path, workdir: Path
    ) -> Iterable[Finding]:
        return ()

    def inspect_outputs(
        self, result: CommandResult, artifact: Path, workdir: Path
    ) -> Iterable[Finding]:
        return ()

    def collect_metrics(self, findings: Sequence[Finding]) -> dict[str, float]:
        return {
            "error_count": float(sum(1 for item in findings if item.is_at_least(Severity.MAJOR))),
            "warning_count": float(
                sum(1 for item in findings if not item.is_at_least(Severity.MAJOR))
            ),
        }

    def version_command(self, spec: CommandSpec) -> tuple[str, ...]:
        return (spec.argv[0], "--version")

    async def verify(
        self,
        artifact_ref: str,
        kind: ArtifactKind,
        timeout_seconds: float,
    ) -> VerificationResult:
        artifact = Path(artifact_ref)
        if not artifact.is_file():
            return VerificationResult(
                verifier=self.name,
                artifact_ref=artifact_ref,
                passed=False,
                findings=(missing_artifact_finding(artifact_ref),),
            )

        with temp_directory(prefix=f"stagegate-{self.name}-") as workdir:
            spec = self.build_command(artifact.resolve(), workdir, timeout_seconds)
            result = await self._executor.run(spec)
            if result.timed_out:
                raise VerifierTimeoutError(self.name, spec.timeout_seconds or timeout_seconds)
            if result.error is not None:
                raise VerifierCrashError(
                    self.name, f"could not launch {spec.argv[0]}: {result.error}"
                )

            findings = list(self.parse_findings(result, artifact, workdir))
            succeeded = result.is_success(spec)
            if not succeeded and not any(item.is_at_least(Severity.CRITICAL) for item in findings):
                findings.append(
                    Finding(
                        severity=Severity.CRITICAL,
                        category=f"{self.name}.exit-status",
                        message=f"{spec.argv[0]} exited with status {result.exit_code}",
                        proposed_fix=(
                            f"Re-run `{' '.join(spec.argv)}` locally and fix the first error."
                        ),
                    )
                )
            findings.extend(self.inspect_outputs(result, artifact, workdir))
            tool_version = await self._tool_version(spec)

        return VerificationResult(
            verifier=self.name,
            artifact_ref=artifact_ref,
            passed=succeeded and not any(item.is_at_least(Severity.CRITICAL) for item in findings),
            findings=tuple(_dedupe(findings)),
            metrics=self.collect_metrics(findings),
            metadata=ExecutionMetadata(
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                timed_out=False,
                command=spec.argv,
                tool_version=tool_version,
            ),
        )

    async def _tool_version(self, spec: CommandSpec) -> str:
        command = self.version_command(spec)
        cached = self._tool_versions.get(command)
        if cached is not None:
            return cached
        result = await self._executor.run(
            CommandSpec(argv=command, timeout_seconds=VERSION_QUERY_TIMEOUT_SECONDS)
        )
        version = "unavailable"
        if not result.timed_out and result.error is None:
            for line in result.output.splitlines():
                if line.strip():
                    version = line.strip()
                    break
        self._tool_versions[command] = version
        return version


def missing_artifact_finding(artifact_ref: str) -> Finding:
    return Finding(
        severity=Severity.CRITICAL,
        category="artifact-missing",
        message=f"artifact does not exist or is not a regular file: {artifact_ref}",
        proposed_fix="Produce the artifact at the recorded path before re-submitting.",
    )


@dataclass(frozen=True, slots=True)
class VerifierRegistration:
    name: str
    factory: VerifierFactory


class VerifierRegistry:
    """Name → factory registry; iteration order is lexical."""

    def __init__(self) -> None:
        self._registrations: dict[str, VerifierRegistration] = {}

    def register(self, name: str, factory: VerifierFactory) -> None:
        normalized = name.strip()
        if not normalized:
            raise ValueError("verifier name must be non-empty")
        if not callable(factory):
            raise ValueError("factory: must be callable")
        if normalized in self._registrations:
            raise ValueError(f"verifier {normalized!r} is already registered")
        self._registrations[normalized] = VerifierRegistration(name=normalized, factory=factory)

    def contains(self, name: str) -> bool:
        return name.strip() in self._registrations

    def create(self, name: str, **options: Any) -> Verifier:
        registration = self._registrations.get(name.strip())
        if registration is None:
            known = ", ".join(self.registered_names())
            raise ValueError(f"unknown verifier {name!r}; registered: [{known}]")
        verifier = registration.factory(**options)
        if not isinstance(verifier, Verifier):
            raise ValueError(f"factory for {name!r} did not return a Verifier")
        return verifier

    def registered_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._registrations))


VerifierType = TypeVar("VerifierType")

DEFAULT_VERIFIER_REGISTRY = VerifierRegistry()


def register_builtin_verifier(
    name: str,
    *,
    registry: VerifierRegistry | None = None,
) -> Callable[[type[VerifierType]], type[VerifierType]]:
    """Class decorator registering a built-in verifier under ``name``."""

    target = registry if registry is not None else DEFAULT_VERIFIER_REGISTRY

    def decorator(verifier_cls: type[VerifierType]) -> type[VerifierType]:
        target.register(name, verifier_cls)
        return verifier_cls

    return decorator


@dataclass(slots=True)
class _CommandTimeoutError(Exception):
    stdout: bytes
    stderr: bytes


async def _communicate_with_timeout(
    process: asyncio.subprocess.Process,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate()
        return await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as exc:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise


def _dedupe(findings: Iterable[Finding]) -> list[Finding]:
    seen: set[tuple[str, str, str, str]] = set()
    unique: list[Finding] = []
    for item in findings:
        key = (item.severity, item.category, item.message, item.location or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def _identity(text: str) -> str:
    return text


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "DEFAULT_VERIFIER_REGISTRY",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "CommandVerifier",
    "LocalSubprocessExecutor",
    "Verifier",
    "VerifierCrashError",
    "VerifierError",
    "VerifierRegistry",
    "VerifierTimeoutError",
    "missing_artifact_finding",
    "register_builtin_verifier",
    "truncate_text",
]
