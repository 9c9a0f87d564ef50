"""
Script Execution Verifier — verification stage.

Functional requirements:
- Runs a numeric script with the interpreter configured for its suffix
  (R, Julia, Python, Stata batch mode).
- Interpreter errors are Critical; interpreter warnings are Minor.
- Stata batch runs never fail their exit status, so the ``r(NNN);`` return codes in
  the batch log are what mark a failure.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from types import MappingProxyType
from typing import Final

from stagegate.domain.models import ArtifactKind, Finding, Severity
from stagegate.verification_plane.verifiers.base import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    CommandVerifier,
    VerifierCrashError,
    register_builtin_verifier,
)

DEFAULT_INTERPRETERS: Final[Mapping[str, tuple[str, ...]]] = MappingProxyType(
    {
        ".r": ("Rscript", "--vanilla"),
        ".jl": ("julia", "--startup-file=no"),
        ".py": ("python3",),
        ".do": ("stata-mp", "-b", "do"),
    }
)

_R_ERROR_RE: Final[re.Pattern[str]] = re.compile(
    r"^Error(?:\s+in\s+(?P<where>.+?))?\s*:\s*(?P<message>.*)$"
)
_R_WARNING_RE: Final[re.Pattern[str]] = re.compile(
    r"^Warning(?:\s+message)?s?(?:\s+in\s+.+?)?\s*:\s*(?P<message>.*)$"
)
_JULIA_ERROR_RE: Final[re.Pattern[str]] = re.compile(r"^ERROR:\s*(?P<message>.+)$")
_JULIA_WARNING_RE: Final[re.Pattern[str]] = re.compile(r"^(?:┌\s*)?Warning:\s*(?P<message>.+)$")
_PY_TRACEBACK_RE: Final[re.Pattern[str]] = re.compile(r"^Traceback \(most recent call last\):$")
_PY_EXCEPTION_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<type>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt))(?::\s*(?P<message>.*))?$"
)
_PY_WARNING_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>.+?):(?P<line>\d+):\s*(?P<type>\w*Warning):\s*(?P<message>.+)$"
)
_STATA_RC_RE: Final[re.Pattern[str]] = re.compile(r"^r\((?P<code>\d+)\);$")

Parser = Callable[[str, str], list[Finding]]


@register_builtin_verifier("script-execution")
class ScriptExecutionVerifier(CommandVerifier):
    """Execute a numeric script end to end and grade its diagnostics."""

    name = "script-execution"
    kinds = frozenset({ArtifactKind.NUMERIC_SCRIPT, ArtifactKind.EXPLORATION_ARTIFACT})
    tool_name = "interpreter"

    def __init__(
        self,
        *,
        executor: CommandExecutor | None = None,
        interpreters: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        super().__init__(executor=executor)
        merged = dict(DEFAULT_INTERPRETERS)
        for suffix, argv in (interpreters or {}).items():
            normalized = suffix.lower() if suffix.startswith(".") else f".{suffix.lower()}"
            command = tuple(argv)
            if not command:
                raise ValueError(f"interpreters.{suffix}: command must not be empty")
            merged[normalized] = command
        self._interpreters: Mapping[str, tuple[str, ...]] = MappingProxyType(merged)

    @property
    def interpreters(self) -> Mapping[str, tuple[str, ...]]:
        return self._interpreters

    def build_command(self, artifact: Path, workdir: Path, timeout_seconds: float) -> CommandSpec:
        suffix = artifact.suffix.lower()
        interpreter = self._interpreters.get(suffix)
        if interpreter is None:
            known = ", ".join(sorted(self._interpreters))
            raise VerifierCrashError(
                self.name,
                f"no interpreter configured for {suffix or 'files without a suffix'!r}; "
                f"configured: {known}",
            )
        # Stata batch mode writes <stem>.log into the working directory.
        cwd = workdir if suffix == ".do" else artifact.parent
        return CommandSpec(
            argv=(*interpreter, str(artifact)),
            cwd=str(cwd),
            timeout_seconds=timeout_seconds,
        )

    def parse_findings(
        self, result: CommandResult, artifact: Path, workdir: Path
    ) -> Iterable[Finding]:
        suffix = artifact.suffix.lower()
        location = artifact.name
        if suffix == ".do":
            text = result.output
            log_path = workdir / f"{artifact.stem}.log"
            if log_path.is_file():
                text = f"{text}\n{log_path.read_text(encoding='utf-8', errors='replace')}"
            return parse_stata_output(text, location)
        parser = _PARSERS.get(suffix)
        if parser is None:
            return ()
        return parser(result.output, location)


def parse_r_output(text: str, location: str) -> list[Finding]:
    findings: list[Finding] = []
    lines = [line.rstrip() for line in text.splitlines()]
    for index, line in enumerate(lines):
        stripped = line.strip()
        error = _R_ERROR_RE.match(stripped)
        if error is not None:
            message = error.group("message") or _next_nonblank(lines, index)
            findings.append(
                Finding(
                    severity=Severity.CRITICAL,
                    category="r-error",
                    message=message or stripped,
                    location=location,
                    proposed_fix="Fix the R error and re-run the script with Rscript --vanilla.",
                )
            )
            continue
        warning = _R_WARNING_RE.match(stripped)
        if warning is not None:
            message = warning.group("message") or _next_nonblank(lines, index)
            findings.append(
                Finding(
                    severity=Severity.MINOR,
                    category="r-warning",
                    message=message or stripped,
                    location=location,
                )
            )
    return findings


def parse_julia_output(text: str, location: str) -> list[Finding]:
    findings: list[Finding] = []
    for line in text.splitlines():
        stripped = line.strip()
        error = _JULIA_ERROR_RE.match(stripped)
        if error is not None:
            findings.append(
                Finding(
                    severity=Severity.CRITICAL,
                    category="julia-error",
                    message=error.group("message"),
                    location=location,
                    proposed_fix="Fix the Julia error shown in the stack trace.",
                )
            )
            continue
        warning = _JULIA_WARNING_RE.match(stripped)
        if warning is not None:
            findings.append(
                Finding(
                    severity=Severity.MINOR,
                    category="julia-warning",
                    message=warning.group("message"),
                    location=location,
                )
            )
    return findings


def parse_python_output(text: str, location: str) -> list[Finding]:
    findings: list[Finding] = []
    in_traceback = False
    for line in text.splitlines():
        stripped = line.strip()
        if _PY_TRACEBACK_RE.match(stripped):
            in_traceback = True
            continue
        if in_traceback and not line.startswith((" ", "\t")):
            exception = _PY_EXCEPTION_RE.match(stripped)
            if exception is not None:
                in_traceback = False
                findings.append(
                    Finding(
                        severity=Severity.CRITICAL,
                        category="python-exception",
                        message=stripped,
                        location=location,
                        proposed_fix=(
                            f"Handle or fix the {exception.group('type')} raised by the script."
                        ),
                    )
                )
                continue
        warning = _PY_WARNING_RE.match(stripped)
        if warning is not None:
            findings.append(
                Finding(
                    severity=Severity.MINOR,
                    category="python-warning",
                    message=f"{warning.group('type')}: {warning.group('message')}",
                    location=f"{Path(warning.group('path')).name}:{warning.group('line')}",
                )
            )
    return findings


def parse_stata_output(text: str, location: str) -> list[Finding]:
    findings: list[Finding] = []
    previous = ""
    for line in text.splitlines():
        stripped = line.strip()
        match = _STATA_RC_RE.match(stripped)
        if match is not None:
            code = match.group("code")
            detail = f": {previous}" if previous else ""
            findings.append(
                Finding(
                    severity=Severity.CRITICAL,
                    category="stata-error",
                    message=f"Stata returned r({code}){detail}",
                    location=location,
                    proposed_fix=f"Look up `help r({code})` and fix the failing command.",
                )
            )
        if stripped:
            previous = stripped
    return findings


def _next_nonblank(lines: Sequence[str], index: int) -> str:
    for line in lines[index + 1 :]:
        if line.strip():
            return line.strip()
    return ""


_PARSERS: Final[Mapping[str, Parser]] = MappingProxyType(
    {
        ".r": parse_r_output,
        ".jl": parse_julia_output,
        ".py": parse_python_output,
    }
)


__all__ = [
    "DEFAULT_INTERPRETERS",
    "ScriptExecutionVerifier",
    "parse_julia_output",
    "parse_python_output",
    "parse_r_output",
    "parse_stata_output",
]
