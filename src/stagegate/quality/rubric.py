"""
stagegate — rubric scorer

File: src/stagegate/quality/rubric.py
Last updated: 2026-10-19

Purpose
- Turn an attempt's findings into a single 0-100 score using a declarative
  severity → deduction table.

What should be included in this file
- ``RubricTable`` (injected data), ``Score`` and the pure ``RubricScorer``.
- YAML rubric file loading with per-artifact-kind overlays.

Functional requirements
- ``score = clamp(100 - sum(deduction), 0, 100)``.
- An explicit ``Finding.deduction`` wins over the table.
- Unknown severities never error; they cost ``unknown_severity_deduction`` and are listed
  on the resulting ``Score``.

Non-functional requirements
- Deterministic and independent of finding order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Final, cast

import yaml

from stagegate.constants import RUBRIC_TABLE_SCHEMA_VERSION, SCORE_MAX, SCORE_MIN
from stagegate.domain.models import ArtifactKind, Finding, parse_artifact_kind

if TYPE_CHECKING:
    from stagegate.domain.models import Attempt

DEFAULT_DEDUCTIONS: Final[Mapping[str, int]] = MappingProxyType(
    {"critical": 100, "major": 5, "minor": 1, "info": 0}
)
DEFAULT_UNKNOWN_SEVERITY_DEDUCTION: Final[int] = 1

_RUBRIC_FILE_KEYS: Final[frozenset[str]] = frozenset(
    {"schema_version", "unknown_severity_deduction", "default", "kinds"}
)


@dataclass(frozen=True, slots=True)
class RubricTable:
    """Severity → deduction mapping."""

    deductions: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_DEDUCTIONS))
    unknown_severity_deduction: int = DEFAULT_UNKNOWN_SEVERITY_DEDUCTION

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "deductions", MappingProxyType(_parse_deductions(self.deductions, "deductions"))
        )
        object.__setattr__(
            self,
            "unknown_severity_deduction",
            _as_deduction(self.unknown_severity_deduction, "unknown_severity_deduction"),
        )

    def deduction_for(self, finding: Finding) -> tuple[int, bool]:
        """Return ``(deduction, severity_is_unknown)`` for one finding."""

        known = finding.severity in self.deductions
        if finding.deduction is not None:
            return finding.deduction, not known
        if known:
            return self.deductions[finding.severity], False
        return self.unknown_severity_deduction, True

    def with_overrides(
        self,
        overrides: Mapping[str, object],
        *,
        unknown_severity_deduction: int | None = None,
    ) -> RubricTable:
        merged = dict(self.deductions)
        merged.update(_parse_deductions(overrides, "overrides"))
        return RubricTable(
            deductions=merged,
            unknown_severity_deduction=(
                self.unknown_severity_deduction
                if unknown_severity_deduction is None
                else unknown_severity_deduction
            ),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "deductions": {key: self.deductions[key] for key in sorted(self.deductions)},
            "unknown_severity_deduction": self.unknown_severity_deduction,
        }


@dataclass(frozen=True, slots=True)
class Score:
    """Computed quality score. Never stored on a task, always derived."""

    value: int
    total_deduction: int
    finding_count: int
    unknown_severities: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not SCORE_MIN <= self.value <= SCORE_MAX:
            raise ValueError(f"Score.value: must be within {SCORE_MIN}..{SCORE_MAX}")

    @property
    def is_perfect(self) -> bool:
        return self.value == SCORE_MAX

    def to_dict(self) -> dict[str, object]:
        return {
            "value": self.value,
            "total_deduction": self.total_deduction,
            "finding_count": self.finding_count,
            "unknown_severities": list(self.unknown_severities),
        }


def clamp_score(total_deduction: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, SCORE_MAX - total_deduction))


class RubricScorer:
    """Pure scorer over an injected default table and optional per-kind tables."""

    __slots__ = ("_table", "_tables_by_kind")

    def __init__(
        self,
        table: RubricTable | None = None,
        *,
        tables_by_kind: Mapping[ArtifactKind | str, RubricTable] | None = None,
    ) -> None:
        self._table = table if table is not None else RubricTable()
        self._tables_by_kind: dict[ArtifactKind, RubricTable] = {
            parse_artifact_kind(kind): value for kind, value in (tables_by_kind or {}).items()
        }

    @property
    def table(self) -> RubricTable:
        return self._table

    def table_for(self, kind: ArtifactKind | str | None = None) -> RubricTable:
        if kind is None:
            return self._table
        return self._tables_by_kind.get(parse_artifact_kind(kind), self._table)

    def compute(
        self,
        findings: Iterable[Finding],
        *,
        kind: ArtifactKind | str | None = None,
    ) -> Score:
        table = self.table_for(kind)
        total = 0
        count = 0
        unknown: set[str] = set()
        for finding in findings:
            deduction, is_unknown = table.deduction_for(finding)
            total += deduction
            count += 1
            if is_unknown:
                unknown.add(finding.severity)
        return Score(
            value=clamp_score(total),
            total_deduction=total,
            finding_count=count,
            unknown_severities=tuple(sorted(unknown)),
        )

    def score_attempt(self, attempt: Attempt, *, kind: ArtifactKind | str | None = None) -> Score:
        return self.compute(attempt.findings, kind=kind)


def load_rubric_file(path: Path | str, *, base: RubricTable | None = None) -> RubricScorer:
    """Load a YAML rubric file into a scorer.

    Expected layout::

        schema_version: 1
        unknown_severity_deduction: 1
        default: {critical: 100, major: 5, minor: 1, info: 0}
        kinds:
          manuscript: {major: 10}

    ``default`` overlays ``base`` and each ``kinds`` entry overlays ``default``.
    """

    source = Path(path)
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise ValueError(f"{source}: invalid YAML ({exc})") from exc

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, Mapping):
        raise ValueError(f"{source}: expected top-level YAML mapping, got {type(loaded).__name__}")

    unknown_keys = sorted(str(key) for key in loaded if key not in _RUBRIC_FILE_KEYS)
    if unknown_keys:
        raise ValueError(f"{source}: unexpected fields: {unknown_keys}")

    version = loaded.get("schema_version", RUBRIC_TABLE_SCHEMA_VERSION)
    if version != RUBRIC_TABLE_SCHEMA_VERSION:
        raise ValueError(
            f"{source}.schema_version: unsupported version {version!r}; "
            f"expected {RUBRIC_TABLE_SCHEMA_VERSION}"
        )

    unknown_raw = loaded.get("unknown_severity_deduction")
    unknown_deduction = (
        None
        if unknown_raw is None
        else _as_deduction(unknown_raw, f"{source}.unknown_severity_deduction")
    )
    default_raw = loaded.get("default", {})
    if not isinstance(default_raw, Mapping):
        raise ValueError(f"{source}.default: expected mapping")
    default_table = (base or RubricTable()).with_overrides(
        default_raw, unknown_severity_deduction=unknown_deduction
    )

    kinds_raw = loaded.get("kinds", {})
    if not isinstance(kinds_raw, Mapping):
        raise ValueError(f"{source}.kinds: expected mapping")
    tables_by_kind: dict[ArtifactKind | str, RubricTable] = {}
    for kind_name, overrides in kinds_raw.items():
        location = f"{source}.kinds.{kind_name}"
        if not isinstance(overrides, Mapping):
            raise ValueError(f"{location}: expected mapping")
        try:
            kind = parse_artifact_kind(kind_name)
        except ValueError as exc:
            raise ValueError(f"{location}: {exc}") from exc
        tables_by_kind[kind] = default_table.with_overrides(overrides)

    return RubricScorer(default_table, tables_by_kind=tables_by_kind)


def _parse_deductions(value: Mapping[str, object] | object, path: str) -> dict[str, int]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected mapping, got {type(value).__name__}")
    parsed: dict[str, int] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError(f"{path}: severity names must be non-empty strings")
        parsed[key.strip().lower()] = _as_deduction(item, f"{path}.{key}")
    return parsed


def _as_deduction(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{path}: must be >= 0")
    return value


__all__ = [
    "DEFAULT_DEDUCTIONS",
    "DEFAULT_UNKNOWN_SEVERITY_DEDUCTION",
    "RubricScorer",
    "RubricTable",
    "Score",
    "clamp_score",
    "load_rubric_file",
]
