"""
stagegate — runtime config loader.

File: src/stagegate/config/loader.py
Last updated: 2026-10-19

Purpose
- Resolve the effective configuration once, at process start, from an ordered stack of
  layers: built-in defaults, ``stagegate.toml``, a named profile, ``STAGEGATE_*``
  environment variables, the ``--state-dir`` layout and explicit command-line values.
- Remember which layers contributed so ``stagegate config`` can explain a value.

Functional requirements
- Later layers win. The file is validated on its own before a profile is applied, and
  the fully merged result is validated again, so a bad value is never partially applied.
- Environment values are coerced to the type of the value they replace.
- Relative paths resolve against the directory holding the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from stagegate.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from stagegate.constants import DEFAULT_CONFIG_FILE

ENV_PREFIX: Final[str] = "STAGEGATE_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

# Sections whose values never come from single environment variables.
_ENV_EXCLUDED: Final[tuple[tuple[str, ...], ...]] = (
    ("meta",),
    ("profiles",),
    ("verifiers", "options"),
)
# Optional fields have no default value to infer a type from.
_ENV_OPTIONAL_FIELDS: Final[dict[tuple[str, ...], type]] = {("rubric", "table_path"): str}

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """The config file could not be read or an override could not be coerced."""


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    """One contribution to the effective config, in application order."""

    name: str
    payload: Mapping[str, Any]
    origin: str | None = None

    def describe(self) -> str:
        return self.name if self.origin is None else f"{self.name}:{self.origin}"


@dataclass(frozen=True, slots=True)
class ResolvedConfig:
    config: dict[str, Any]
    layers: tuple[ConfigLayer, ...] = field(default_factory=tuple)
    profile: str | None = None

    @property
    def sources(self) -> tuple[str, ...]:
        return tuple(layer.describe() for layer in self.layers)


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    state_dir: str | Path | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config (CLI > state dir > env > profile > file)."""

    return resolve_config(
        config_path,
        profile=profile,
        state_dir=state_dir,
        cli_overrides=cli_overrides,
        environ=environ,
    ).config


def resolve_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    state_dir: str | Path | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ResolvedConfig:
    env_map = os.environ if environ is None else environ
    cli_map = dict(cli_overrides or {})
    path = (
        (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
        if config_path is None
        else Path(config_path).expanduser().resolve()
    )

    layers = [ConfigLayer("defaults", default_config())]
    file_payload = _read_toml(path, required=config_path is not None)
    if file_payload is not None:
        layers.append(ConfigLayer("file", file_payload, origin=path.as_posix()))
    config = assert_valid_config(merge_config(layers[0].payload, file_payload or {}))

    selected = _select_profile(profile, cli_map.pop("profile", None), env_map)
    if selected is not None:
        overlay = config.get("profiles", {}).get(selected, {})
        config = apply_profile_overlay(config, selected)
        layers.append(ConfigLayer("profile", overlay, origin=selected))

    overrides: list[ConfigLayer] = []
    env_payload, env_names = _environment_layer(config, env_map)
    if env_names:
        overrides.append(ConfigLayer("env", env_payload, origin=",".join(env_names)))
    if state_dir is not None:
        state_root = Path(state_dir).expanduser().resolve()
        overrides.append(
            ConfigLayer("state-dir", state_dir_layout(state_root), origin=state_root.as_posix())
        )
    if cli_map:
        overrides.append(ConfigLayer("cli", _dotted_to_nested(cli_map)))

    for layer in overrides:
        config = merge_config(config, layer.payload)
    layers.extend(overrides)
    config = assert_valid_config(config, active_profile=selected)
    config = assert_valid_config(
        normalize_paths(config, base_dir=path.parent), active_profile=selected
    )
    return ResolvedConfig(config=config, layers=tuple(layers), profile=selected)


def state_dir_layout(state_root: Path) -> dict[str, Any]:
    """Session logs, fix-up hand-offs and process logs all live under one directory."""

    return {
        "session": {
            "log_dir": (state_root / "sessions").as_posix(),
            "handoff_dir": (state_root / "handoff").as_posix(),
        },
        "observability": {"log_dir": (state_root / "logs").as_posix()},
    }


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Anchor relative path fields, including those inside profiles, at ``base_dir``."""

    out = merge_config({}, config)
    targets: list[tuple[str, ...]] = list(PATH_FIELDS)
    profiles = out.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            targets.extend(("profiles", name, *field_path) for field_path in PATH_FIELDS)

    for field_path in targets:
        *parents, leaf = field_path
        section = _walk(out, tuple(parents))
        if section is not None and isinstance(section.get(leaf), str):
            section[leaf] = _anchor(section[leaf], base_dir)
    return out


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Canonical JSON of the redacted config; identical inputs give identical text."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper().replace("-", "_") for part in path)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any] | None:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, from_cli: object, environ: Mapping[str, str]
) -> str | None:
    if from_cli is not None and not isinstance(from_cli, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    for candidate in (explicit, from_cli, environ.get(PROFILE_ENV_VAR)):
        if candidate is not None:
            return candidate.strip() or None
    return None


def _environment_layer(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> tuple[dict[str, Any], tuple[str, ...]]:
    typed_fields = dict(_ENV_OPTIONAL_FIELDS)
    for path, value in _scalar_leaves(config):
        if not any(path[: len(prefix)] == prefix for prefix in _ENV_EXCLUDED):
            typed_fields[path] = type(value)

    payload: dict[str, Any] = {}
    used: list[str] = []
    for path in sorted(typed_fields):
        name = env_name_for_path(path)
        raw = environ.get(name)
        if raw is None:
            continue
        value = _coerce(raw.strip(), typed_fields[path], f"{name} -> {'.'.join(path)}")
        _set_path(payload, path, value)
        used.append(name)
    return payload, tuple(used)


def _scalar_leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> list[tuple[tuple[str, ...], object]]:
    leaves: list[tuple[tuple[str, ...], object]] = []
    for key, value in payload.items():
        path = (*prefix, key)
        if isinstance(value, Mapping):
            leaves.extend(_scalar_leaves(value, path))
        elif isinstance(value, (bool, int, float, str)):
            leaves.append((path, value))
    return leaves


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


_COERCERS: Final[dict[type, tuple[Callable[[str], object], str]]] = {
    bool: (_parse_bool, "must be a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "must be an integer"),
    float: (float, "must be a number"),
    str: (str, "must be a string"),
}


def _coerce(raw: str, target: type, label: str) -> object:
    convert, expectation = _COERCERS[target]
    try:
        return convert(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{label} {expectation}") from exc


def _dotted_to_nested(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(overrides):
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _set_path(nested, path, overrides[key])
    return nested


def _set_path(root: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    section = _walk(root, path[:-1], create=True)
    if section is None:
        raise ConfigLoadError(f"override {'.'.join(path)!r} conflicts with a scalar value")
    section[path[-1]] = value


def _walk(
    root: dict[str, Any], path: tuple[str, ...], *, create: bool = False
) -> dict[str, Any] | None:
    cursor = root
    for part in path:
        child = cursor.get(part)
        if not isinstance(child, dict):
            if not create or child is not None:
                return None
            child = cursor[part] = {}
        cursor = child
    return cursor


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "ConfigLayer",
    "ConfigLoadError",
    "ResolvedConfig",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
    "resolve_config",
    "state_dir_layout",
]
