"""
Document Build Verifier — verification stage.

Functional requirements:
- Compiles LaTeX sources with latexmk into a scratch output directory.
- Hard errors are Critical; undefined references and citations are Major; overfull
  boxes are Minor; underfull boxes are Info.
- A missing PDF after a clean exit is Critical when output is required.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Final

from stagegate.domain.models import ArtifactKind, Finding, Severity
from stagegate.verification_plane.verifiers.base import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    CommandVerifier,
    register_builtin_verifier,
)

DEFAULT_LATEX_COMMAND: Final[tuple[str, ...]] = (
    "latexmk",
    "-pdf",
    "-interaction=nonstopmode",
    "-halt-on-error",
    "-file-line-error",
)

_FILE_LINE_ERROR_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s][^:]*\.(?:tex|sty|cls|bib|bbl)):(?P<line>\d+):\s*(?P<message>.+)$"
)
_BANG_ERROR_RE: Final[re.Pattern[str]] = re.compile(r"^!\s+(?P<message>.+)$")
_UNDEFINED_RE: Final[re.Pattern[str]] = re.compile(
    r"Warning:\s+(?P<what>Reference|Citation)\s+[`'\"](?P<key>[^'`\"]+)['`\"]"
    r".*?undefined(?:\s+on input line (?P<line>\d+))?"
)
_BOX_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<kind>Overfull|Underfull)\s+\\(?P<box>[hv])box\s+(?P<detail>.+?)"
    r"(?:\s+(?:in paragraph\s+)?at lines?\s+(?P<line>\d+)(?:--\d+)?)?\s*$"
)

_FIX_HINTS: Final[dict[str, str]] = {
    "latex-error": "Fix the reported LaTeX error at the given line and rebuild.",
    "undefined-reference": "Define the missing \\label or correct the \\ref key.",
    "undefined-citation": "Add the entry to the bibliography or correct the \\cite key.",
    "overfull-box": "Rephrase, hyphenate or resize content so it fits the text block.",
    "missing-output": "Ensure the document compiles to a PDF without halting.",
}


@register_builtin_verifier("document-build")
class DocumentBuildVerifier(CommandVerifier):
    """Compile a LaTeX document and grade the build log."""

    name = "document-build"
    kinds = frozenset({ArtifactKind.DOCUMENT, ArtifactKind.MANUSCRIPT})
    tool_name = "latexmk"

    def __init__(
        self,
        *,
        executor: CommandExecutor | None = None,
        command: Sequence[str] | None = None,
        require_output: bool = True,
    ) -> None:
        super().__init__(executor=executor)
        resolved = tuple(command) if command else DEFAULT_LATEX_COMMAND
        self._command = resolved
        self._require_output = require_output

    def build_command(self, artifact: Path, workdir: Path, timeout_seconds: float) -> CommandSpec:
        return CommandSpec(
            argv=(*self._command, f"-outdir={workdir}", artifact.name),
            cwd=str(artifact.parent),
            timeout_seconds=timeout_seconds,
        )

    def parse_findings(
        self, result: CommandResult, artifact: Path, workdir: Path
    ) -> Iterable[Finding]:
        # latexmk echoes every pass; only the final log reflects the finished build.
        log_path = workdir / f"{artifact.stem}.log"
        if log_path.is_file():
            text = log_path.read_text(encoding="utf-8", errors="replace")
        else:
            text = result.output
        return parse_latex_log(text, default_location=artifact.name)

    def inspect_outputs(
        self, result: CommandResult, artifact: Path, workdir: Path
    ) -> Iterable[Finding]:
        if not self._require_output or not result.is_success():
            return ()
        if (workdir / f"{artifact.stem}.pdf").is_file():
            return ()
        return (
            Finding(
                severity=Severity.CRITICAL,
                category="missing-output",
                message=f"build finished without producing {artifact.stem}.pdf",
                proposed_fix=_FIX_HINTS["missing-output"],
            ),
        )


def parse_latex_log(text: str, *, default_location: str | None = None) -> list[Finding]:
    """Extract findings from latexmk / pdflatex output."""

    findings: list[Finding] = []
    saw_file_line_error = False
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        match = _FILE_LINE_ERROR_RE.match(line)
        if match is not None:
            saw_file_line_error = True
            findings.append(
                _finding(
                    Severity.CRITICAL,
                    "latex-error",
                    match.group("message").strip(),
                    f"{Path(match.group('path')).name}:{match.group('line')}",
                )
            )
            continue

        undefined = _UNDEFINED_RE.search(line)
        if undefined is not None:
            what = undefined.group("what").lower()
            location = default_location
            if undefined.group("line") and default_location:
                location = f"{default_location}:{undefined.group('line')}"
            findings.append(
                _finding(
                    Severity.MAJOR,
                    f"undefined-{what}",
                    f"{what} '{undefined.group('key')}' is undefined",
                    location,
                )
            )
            continue

        box = _BOX_RE.match(line)
        if box is not None:
            overfull = box.group("kind") == "Overfull"
            location = default_location
            if box.group("line") and default_location:
                location = f"{default_location}:{box.group('line')}"
            findings.append(
                _finding(
                    Severity.MINOR if overfull else Severity.INFO,
                    "overfull-box" if overfull else "underfull-box",
                    f"{box.group('kind')} \\{box.group('box')}box {box.group('detail')}",
                    location,
                )
            )
            continue

        bang = _BANG_ERROR_RE.match(line)
        if bang is not None and not saw_file_line_error:
            findings.append(
                _finding(Severity.CRITICAL, "latex-error", bang.group("message"), default_location)
            )

    return findings


def _finding(severity: Severity, category: str, message: str, location: str | None) -> Finding:
    return Finding(
        severity=severity,
        category=category,
        message=message,
        location=location,
        proposed_fix=_FIX_HINTS.get(category),
    )


__all__ = ["DEFAULT_LATEX_COMMAND", "DocumentBuildVerifier", "parse_latex_log"]
