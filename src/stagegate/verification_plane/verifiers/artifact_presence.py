"""In-process artifact check: the file exists, is non-empty and carries no placeholder markers."""

from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path
from typing import Final

from stagegate.domain.models import (
    ArtifactKind,
    ExecutionMetadata,
    Finding,
    Severity,
    VerificationResult,
)
from stagegate.verification_plane.verifiers.base import (
    missing_artifact_finding,
    register_builtin_verifier,
)

_MARKER_RE: Final[re.Pattern[str]] = re.compile(r"\b(?:TODO|FIXME)\b", re.IGNORECASE)
_BINARY_SNIFF_BYTES: Final[int] = 8192


@register_builtin_verifier("artifact-presence")
class ArtifactPresenceVerifier:
    name = "artifact-presence"
    kinds = frozenset(ArtifactKind)

    def __init__(
        self,
        *,
        scan_markers: bool = True,
        max_scan_bytes: int = 2_000_000,
        max_marker_findings: int = 20,
    ) -> None:
        self._scan_markers = scan_markers
        self._max_scan_bytes = max_scan_bytes
        self._max_marker_findings = max_marker_findings

    async def verify(
        self,
        artifact_ref: str,
        kind: ArtifactKind,
        timeout_seconds: float,
    ) -> VerificationResult:
        started_ns = time.monotonic_ns()
        findings = await asyncio.to_thread(self._inspect, Path(artifact_ref))
        return VerificationResult(
            verifier=self.name,
            artifact_ref=artifact_ref,
            passed=not any(item.is_at_least(Severity.CRITICAL) for item in findings),
            findings=tuple(findings),
            metrics={
                "placeholder_markers": float(
                    sum(1 for item in findings if item.category == "placeholder-marker")
                )
            },
            metadata=ExecutionMetadata(
                exit_code=None,
                duration_ms=max(0, (time.monotonic_ns() - started_ns) // 1_000_000),
            ),
        )

    def _inspect(self, path: Path) -> list[Finding]:
        if not path.is_file():
            return [missing_artifact_finding(str(path))]
        if path.stat().st_size == 0:
            return [
                Finding(
                    severity=Severity.CRITICAL,
                    category="artifact-empty",
                    message=f"artifact is empty: {path}",
                    proposed_fix="Regenerate the artifact; an empty file is never a valid result.",
                )
            ]
        if not self._scan_markers:
            return []

        with path.open("rb") as handle:
            raw = handle.read(self._max_scan_bytes)
        if b"\x00" in raw[:_BINARY_SNIFF_BYTES]:
            return []

        findings: list[Finding] = []
        text = raw.decode("utf-8", errors="replace")
        for line_no, line in enumerate(text.splitlines(), start=1):
            if _MARKER_RE.search(line) is None:
                continue
            findings.append(
                Finding(
                    severity=Severity.MINOR,
                    category="placeholder-marker",
                    message=line.strip()[:200],
                    location=f"{path.name}:{line_no}",
                    proposed_fix="Resolve the placeholder or remove the marker.",
                )
            )
            if len(findings) >= self._max_marker_findings:
                break
        return findings


__all__ = ["ArtifactPresenceVerifier"]
