"""
stagegate — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Profile selection from argument, CLI override and ``STAGEGATE_PROFILE``.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from stagegate.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    resolve_config,
)
from stagegate.config.schema import ConfigValidationError

REPO_ROOT = Path(__file__).resolve().parents[3]


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    default_path = tmp_path / "default.toml"
    config_path = tmp_path / "stagegate.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[scheduler]
max_attempts = 4
""".strip(),
    )
    env = {"STAGEGATE_SCHEDULER_MAX_ATTEMPTS": "6"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path, environ=env, cli_overrides={"scheduler.max_attempts": 7}
    )

    assert default_loaded["scheduler"]["max_attempts"] == 3
    assert file_loaded["scheduler"]["max_attempts"] == 4
    assert env_loaded["scheduler"]["max_attempts"] == 6
    assert cli_loaded["scheduler"]["max_attempts"] == 7


def test_defaults_match_documented_values(tmp_path: Path) -> None:
    config_path = tmp_path / "empty.toml"
    _write_config(config_path, "")

    loaded = load_config(config_path, environ={})

    assert loaded["scheduler"] == {
        "grace_seconds": 10.0,
        "max_attempts": 3,
        "max_concurrency": 4,
        "verifier_timeout_seconds": 600.0,
    }
    assert loaded["gate"]["production"] == {"block_below": 80, "excellence_at": 90, "pass_at": 90}
    assert loaded["gate"]["exploration"]["block_below"] == 60
    assert loaded["rubric"]["deductions"]["major"] == 5


def test_env_values_are_coerced_to_the_default_type(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "STAGEGATE_SCHEDULER_VERIFIER_TIMEOUT_SECONDS": "45",
            "STAGEGATE_SESSION_FSYNC": "off",
            "STAGEGATE_GATE_PRODUCTION_PASS_AT": "92",
            "STAGEGATE_OBSERVABILITY_LOG_LEVEL": "DEBUG",
        },
    )

    assert loaded["scheduler"]["verifier_timeout_seconds"] == 45.0
    assert isinstance(loaded["scheduler"]["verifier_timeout_seconds"], float)
    assert loaded["session"]["fsync"] is False
    assert loaded["gate"]["production"]["pass_at"] == 92
    assert loaded["observability"]["log_level"] == "DEBUG"


@pytest.mark.parametrize(
    ("name", "value", "match"),
    [
        ("STAGEGATE_SCHEDULER_MAX_ATTEMPTS", "three", "must be an integer"),
        ("STAGEGATE_SCHEDULER_GRACE_SECONDS", "soon", "must be a number"),
        ("STAGEGATE_SESSION_FSYNC", "maybe", "must be a boolean"),
    ],
)
def test_bad_env_values_are_load_errors(tmp_path: Path, name: str, value: str, match: str) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match=match):
        load_config(config_path, environ={name: value})


def test_env_name_mapping_is_deterministic() -> None:
    assert env_name_for_path(("scheduler", "max_attempts")) == "STAGEGATE_SCHEDULER_MAX_ATTEMPTS"
    assert env_name_for_path(("gate", "production", "pass_at")) == (
        "STAGEGATE_GATE_PRODUCTION_PASS_AT"
    )
    assert env_name_for_path(("verifiers", "script-execution")) == (
        "STAGEGATE_VERIFIERS_SCRIPT_EXECUTION"
    )


def test_profiles_overlay_and_selection_sources(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")

    strict = load_config(config_path, profile="strict", environ={})
    quick = load_config(config_path, environ={"STAGEGATE_PROFILE": "quick"})
    via_cli = load_config(
        config_path, cli_overrides={"profile": "strict"}, environ={"STAGEGATE_PROFILE": "quick"}
    )

    assert strict["scheduler"]["max_attempts"] == 2
    assert strict["gate"]["production"] == {"block_below": 85, "excellence_at": 90, "pass_at": 95}
    assert quick["scheduler"]["max_attempts"] == 1
    assert quick["scheduler"]["verifier_timeout_seconds"] == 120.0
    assert via_cli["scheduler"]["max_attempts"] == 2


def test_env_overrides_apply_on_top_of_the_profile(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        profile="quick",
        environ={"STAGEGATE_SCHEDULER_MAX_ATTEMPTS": "5"},
    )

    assert loaded["scheduler"]["max_attempts"] == 5
    assert loaded["scheduler"]["verifier_timeout_seconds"] == 120.0


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        load_config(config_path, profile="nightly", environ={})


def test_custom_profile_from_file(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(
        config_path,
        """
[profiles.nightly.scheduler]
max_concurrency = 8

[profiles.nightly.verifiers]
enabled = ["artifact-presence"]
""".strip(),
    )

    loaded = load_config(config_path, profile="nightly", environ={})

    assert loaded["scheduler"]["max_concurrency"] == 8
    assert loaded["verifiers"]["enabled"] == ["artifact-presence"]


def test_paths_are_normalized_relative_to_the_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path.resolve() / "project" / "conf"
    config_path = config_dir / "stagegate.toml"
    _write_config(
        config_path,
        """
[rubric]
table_path = "../rubric.yaml"

[session]
log_dir = "state/sessions"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["rubric"]["table_path"] == (config_dir.parent / "rubric.yaml").as_posix()
    assert loaded["session"]["log_dir"] == (config_dir / "state" / "sessions").as_posix()
    assert loaded["observability"]["log_dir"] == (config_dir / "logs").as_posix()


def test_table_path_can_come_from_the_environment(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")

    loaded = load_config(config_path, environ={"STAGEGATE_RUBRIC_TABLE_PATH": "tables/r.yaml"})

    assert loaded["rubric"]["table_path"] == (tmp_path.resolve() / "tables" / "r.yaml").as_posix()


def test_missing_explicit_file_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[scheduler\nmax_attempts = 1")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_invalid_file_values_report_every_issue(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(
        config_path,
        """
[scheduler]
max_attempts = -1
max_concurrency = 0

[gate.production]
block_below = 95
pass_at = 90
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    paths = {issue.path for issue in excinfo.value.issues}
    assert {
        "scheduler.max_attempts",
        "scheduler.max_concurrency",
        "gate.production.block_below",
    } <= paths


def test_dump_effective_config_is_deterministic_and_redacted(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(
        config_path,
        """
[verifiers.options.script-execution]
api_token = "abc123"
""".strip(),
    )

    loaded = load_config(config_path, environ={})
    first = dump_effective_config(loaded)
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    dumped = json.loads(first)
    assert dumped["verifiers"]["options"]["script-execution"]["api_token"] == "<redacted>"
    assert "abc123" not in first


def test_repository_config_file_loads() -> None:
    loaded = load_config(REPO_ROOT / "stagegate.toml", environ={})

    assert loaded["verifiers"]["enabled"] == [
        "artifact-presence",
        "document-build",
        "script-execution",
    ]
    assert loaded["verifiers"]["options"]["script-execution"]["interpreters"] == {
        ".py": ["python3"]
    }
    assert loaded["session"]["log_dir"] == (REPO_ROOT / "state" / "sessions").as_posix()


def test_resolved_config_lists_contributing_layers_in_order(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "[scheduler]\nmax_attempts = 4\n")

    resolved = resolve_config(
        config_path,
        profile="quick",
        state_dir=tmp_path / "state",
        cli_overrides={"scheduler.max_concurrency": 2},
        environ={"STAGEGATE_SESSION_FSYNC": "no", "STAGEGATE_GATE_PRODUCTION_PASS_AT": "91"},
    )

    state_root = (tmp_path / "state").resolve().as_posix()
    assert resolved.sources == (
        "defaults",
        f"file:{config_path.resolve().as_posix()}",
        "profile:quick",
        "env:STAGEGATE_GATE_PRODUCTION_PASS_AT,STAGEGATE_SESSION_FSYNC",
        f"state-dir:{state_root}",
        "cli",
    )
    assert resolved.profile == "quick"
    assert resolved.config["scheduler"]["max_concurrency"] == 2
    assert resolved.config["session"]["fsync"] is False


def test_absent_default_file_is_not_a_source(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    resolved = resolve_config(environ={})

    assert resolved.sources == ("defaults",)
    assert resolved.profile is None


def test_state_dir_places_every_directory_and_yields_to_explicit_values(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, '[session]\nlog_dir = "elsewhere"\n')
    state_root = (tmp_path / "state").resolve()

    loaded = load_config(config_path, state_dir=state_root, environ={})
    pinned = load_config(
        config_path,
        state_dir=state_root,
        cli_overrides={"session.handoff_dir": "/srv/handoff"},
        environ={},
    )

    assert loaded["session"]["log_dir"] == (state_root / "sessions").as_posix()
    assert loaded["session"]["handoff_dir"] == (state_root / "handoff").as_posix()
    assert loaded["observability"]["log_dir"] == (state_root / "logs").as_posix()
    assert pinned["session"]["handoff_dir"] == "/srv/handoff"
    assert pinned["session"]["log_dir"] == (state_root / "sessions").as_posix()


def test_conflicting_cli_overrides_are_load_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "stagegate.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match="conflicts with a scalar value"):
        load_config(
            config_path,
            cli_overrides={"scheduler": 1, "scheduler.max_attempts": 2},
            environ={},
        )
