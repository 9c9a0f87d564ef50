"""
stagegate — configuration schema and validation.

File: src/stagegate/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Collect every issue before failing; never return a partially applied config.
- Support the built-in ``strict`` and ``quick`` profile overlays.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from stagegate.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_VERIFIER_TIMEOUT_SECONDS,
    HANDOFF_DIR,
    LOGS_DIR,
    SCORE_MAX,
    SCORE_MIN,
    SESSIONS_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "quick")
TRACK_NAMES: Final[tuple[str, ...]] = ("production", "exploration")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)
# Settings whose names mention secrets but whose values are not.
_NON_SECRET_KEYS: Final[frozenset[str]] = frozenset({"redact_secrets"})

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("rubric", "table_path"),
    ("session", "log_dir"),
    ("session", "handoff_dir"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    max_attempts: int
    verifier_timeout_seconds: float
    max_concurrency: int
    grace_seconds: float


class RubricConfig(TypedDict, total=False):
    deductions: dict[str, int]
    unknown_severity_deduction: int
    table_path: str


class ThresholdConfig(TypedDict):
    block_below: int
    pass_at: int
    excellence_at: int


class GateConfig(TypedDict):
    production: ThresholdConfig
    exploration: ThresholdConfig


class SessionConfig(TypedDict):
    log_dir: str
    handoff_dir: str
    fsync: bool


class VerifiersConfig(TypedDict):
    enabled: list[str]
    options: dict[str, dict[str, object]]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    scheduler: dict[str, object]
    rubric: dict[str, object]
    gate: dict[str, object]
    session: dict[str, object]
    verifiers: dict[str, object]
    observability: dict[str, object]


class StagegateConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    rubric: RubricConfig
    gate: GateConfig
    session: SessionConfig
    verifiers: VerifiersConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[StagegateConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "scheduler": {
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "verifier_timeout_seconds": DEFAULT_VERIFIER_TIMEOUT_SECONDS,
        "max_concurrency": 4,
        "grace_seconds": 10.0,
    },
    "rubric": {
        "deductions": {"critical": 100, "major": 5, "minor": 1, "info": 0},
        "unknown_severity_deduction": 1,
    },
    "gate": {
        "production": {"block_below": 80, "pass_at": 90, "excellence_at": 90},
        "exploration": {"block_below": 60, "pass_at": 60, "excellence_at": 90},
    },
    "session": {
        "log_dir": SESSIONS_DIR.as_posix(),
        "handoff_dir": HANDOFF_DIR.as_posix(),
        "fsync": True,
    },
    "verifiers": {
        "enabled": ["artifact-presence", "document-build", "script-execution"],
        "options": {},
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": LOGS_DIR.as_posix(),
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "scheduler": {"max_attempts": 2},
            "gate": {"production": {"block_below": 85, "pass_at": 95}},
        },
        "quick": {
            "scheduler": {"max_attempts": 1, "verifier_timeout_seconds": 120.0},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> StagegateConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade stagegate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the stagegate runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None or not profile.strip():
        return materialized
    selected = profile.strip()

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    merged = merge_config(materialized, overlay_raw)
    return assert_valid_config(merged, active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and ``stagegate config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "scheduler": _validate_scheduler,
        "rubric": _validate_rubric,
        "gate": _validate_gate,
        "session": _validate_session,
        "verifiers": _validate_verifiers,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, {*sections, "profiles"}, "", issues)
    _require_keys(payload, set(sections), "", issues)

    out: dict[str, Any] = {}
    for key in sorted(sections):
        _section(
            payload,
            key=key,
            path="",
            issues=issues,
            validator=sections[key],
            out=out,
            partial=False,
        )

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues, sections)
    else:
        out["profiles"] = {}
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    validator: _SectionValidator,
    out: dict[str, Any],
    partial: bool,
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, section_path, issues, partial)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_scheduler(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"max_attempts", "verifier_timeout_seconds", "max_concurrency", "grace_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_attempts" in payload:
        parsed_attempts = _as_int(
            payload["max_attempts"], _join(path, "max_attempts"), issues, minimum=0
        )
        if parsed_attempts is not None:
            out["max_attempts"] = parsed_attempts
    if "verifier_timeout_seconds" in payload:
        parsed_timeout = _as_float(
            payload["verifier_timeout_seconds"],
            _join(path, "verifier_timeout_seconds"),
            issues,
            exclusive_minimum=0.0,
        )
        if parsed_timeout is not None:
            out["verifier_timeout_seconds"] = parsed_timeout
    if "max_concurrency" in payload:
        parsed_concurrency = _as_int(
            payload["max_concurrency"], _join(path, "max_concurrency"), issues, minimum=1
        )
        if parsed_concurrency is not None:
            out["max_concurrency"] = parsed_concurrency
    if "grace_seconds" in payload:
        parsed_grace = _as_float(
            payload["grace_seconds"], _join(path, "grace_seconds"), issues, minimum=0.0
        )
        if parsed_grace is not None:
            out["grace_seconds"] = parsed_grace
    return out


def _validate_rubric(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"deductions", "unknown_severity_deduction", "table_path"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, {"deductions", "unknown_severity_deduction"}, path, issues)

    out: dict[str, Any] = {}
    if "deductions" in payload:
        deductions_path = _join(path, "deductions")
        deductions = _as_object(payload["deductions"], deductions_path, issues)
        if deductions is not None:
            parsed: dict[str, int] = {}
            for severity in sorted(deductions):
                severity_path = _join(deductions_path, severity)
                if not _NAME_PATTERN.fullmatch(severity):
                    issues.add(severity_path, "severity names must match ^[a-z][a-z0-9_-]*$")
                    continue
                value = _as_int(deductions[severity], severity_path, issues, minimum=0)
                if value is not None:
                    parsed[severity] = value
            out["deductions"] = parsed
    if "unknown_severity_deduction" in payload:
        parsed_unknown = _as_int(
            payload["unknown_severity_deduction"],
            _join(path, "unknown_severity_deduction"),
            issues,
            minimum=0,
        )
        if parsed_unknown is not None:
            out["unknown_severity_deduction"] = parsed_unknown
    if "table_path" in payload:
        parsed_table = _as_path_text(payload["table_path"], _join(path, "table_path"), issues)
        if parsed_table is not None:
            out["table_path"] = parsed_table
    return out


def _validate_gate(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    for key in sorted(payload):
        if key not in TRACK_NAMES:
            expected = ", ".join(TRACK_NAMES)
            issues.add(_join(path, key), f"unknown track; expected one of: {expected}")
    if not partial:
        _require_keys(payload, set(TRACK_NAMES), path, issues)

    out: dict[str, Any] = {}
    for track in TRACK_NAMES:
        if track not in payload:
            continue
        track_path = _join(path, track)
        track_obj = _as_object(payload[track], track_path, issues)
        if track_obj is None:
            continue
        out[track] = _validate_thresholds(track_obj, track_path, issues, partial=partial)
    return out


def _validate_thresholds(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"block_below", "pass_at", "excellence_at"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key not in payload:
            continue
        parsed = _as_int(
            payload[key], _join(path, key), issues, minimum=SCORE_MIN, maximum=SCORE_MAX
        )
        if parsed is not None:
            out[key] = parsed

    block_below = out.get("block_below")
    pass_at = out.get("pass_at")
    if not partial and block_below is not None and pass_at is not None and block_below > pass_at:
        issues.add(_join(path, "block_below"), "must be <= pass_at")
    return out


def _validate_session(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_dir", "handoff_dir", "fsync"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("log_dir", "handoff_dir"):
        if key in payload:
            parsed_path = _as_path_text(payload[key], _join(path, key), issues)
            if parsed_path is not None:
                out[key] = parsed_path
    if "fsync" in payload:
        parsed_fsync = _as_bool(payload["fsync"], _join(path, "fsync"), issues)
        if parsed_fsync is not None:
            out["fsync"] = parsed_fsync
    return out


def _validate_verifiers(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"enabled", "options"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "enabled" in payload:
        enabled_path = _join(path, "enabled")
        raw_enabled = payload["enabled"]
        if not isinstance(raw_enabled, list):
            issues.add(enabled_path, f"expected array, got {type(raw_enabled).__name__}")
        else:
            names: list[str] = []
            for index, item in enumerate(raw_enabled):
                item_path = f"{enabled_path}[{index}]"
                parsed_name = _as_str(item, item_path, issues)
                if parsed_name is None:
                    continue
                if not _NAME_PATTERN.fullmatch(parsed_name):
                    issues.add(item_path, "verifier names must match ^[a-z][a-z0-9_-]*$")
                elif parsed_name in names:
                    issues.add(item_path, f"duplicate verifier {parsed_name!r}")
                else:
                    names.append(parsed_name)
            if not names and not partial:
                issues.add(enabled_path, "at least one verifier must be enabled")
            out["enabled"] = names
    if "options" in payload:
        options_path = _join(path, "options")
        options = _as_object(payload["options"], options_path, issues)
        if options is not None:
            parsed_options: dict[str, dict[str, object]] = {}
            for name in sorted(options):
                option_obj = _as_object(options[name], _join(options_path, name), issues)
                if option_obj is not None:
                    parsed_options[name] = _deep_copy_mapping(option_obj)
            out["options"] = parsed_options
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_log_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if parsed_log_level is not None:
            out["log_level"] = parsed_log_level
    if "log_format" in payload:
        parsed_log_format = _as_enum(
            payload["log_format"],
            _join(path, "log_format"),
            issues,
            allowed_values=("json", "text"),
        )
        if parsed_log_format is not None:
            out["log_format"] = parsed_log_format
    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir
    if "redact_secrets" in payload:
        parsed_redact = _as_bool(payload["redact_secrets"], _join(path, "redact_secrets"), issues)
        if parsed_redact is not None:
            out["redact_secrets"] = parsed_redact
    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    sections: Mapping[str, _SectionValidator],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    overlay_sections = {key: value for key, value in sections.items() if key != "meta"}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(overlay_sections), profile_path, issues)
        overlay: dict[str, Any] = {}
        for key in sorted(overlay_sections):
            _section(
                profile_obj,
                key=key,
                path=profile_path,
                issues=issues,
                validator=overlay_sections[key],
                out=overlay,
                partial=True,
            )
        out[profile_name] = overlay
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    exclusive_minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if exclusive_minimum is not None and parsed <= exclusive_minimum:
        issues.add(path, f"must be > {exclusive_minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in stagegate config")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized in _NON_SECRET_KEYS:
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_deep_copy_value(item) for item in value)
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            out[key] = "<redacted>" if _looks_sensitive_key(key) else _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "StagegateConfig",
    "TRACK_NAMES",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
