"""
stagegate — unit tests for config schema validation

File: tests/unit/config/test_schema.py
Last updated: 2026-10-19

Purpose
- Validate the built-in defaults, structured issue reporting, profile overlays and redaction.
"""

from __future__ import annotations

import pytest

from stagegate.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def test_defaults_validate_and_define_builtin_profiles() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert tuple(sorted(result.config["profiles"])) == tuple(sorted(BUILTIN_PROFILE_NAMES))


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["scheduler"]["max_attempts"] = 99
    assert default_config()["scheduler"]["max_attempts"] == 3


def test_issues_are_collected_with_field_paths() -> None:
    payload = merge_config(
        default_config(),
        {
            "scheduler": {"max_attempts": "3", "verifier_timeout_seconds": 0},
            "gate": {"staging": {"block_below": 1, "pass_at": 2, "excellence_at": 3}},
            "verifiers": {"enabled": ["artifact-presence", "artifact-presence", "Bad Name"]},
            "observability": {"log_format": "xml"},
        },
    )

    result = validate_config(payload)

    assert not result.is_valid
    assert result.config is None
    messages = {issue.path: issue.message for issue in result.issues}
    assert messages["scheduler.max_attempts"] == "expected integer, got str"
    assert messages["scheduler.verifier_timeout_seconds"] == "must be > 0.0"
    assert messages["gate.staging"].startswith("unknown track")
    assert messages["verifiers.enabled[1]"] == "duplicate verifier 'artifact-presence'"
    assert "verifiers.enabled[2]" in messages
    assert messages["observability.log_format"].startswith("invalid value 'xml'")


def test_missing_sections_and_unknown_fields() -> None:
    payload = default_config()
    del payload["session"]  # type: ignore[misc]
    payload["scheduler"]["retries"] = 1  # type: ignore[typeddict-unknown-key]

    result = validate_config(payload)

    paths = [issue.path for issue in result.issues]
    assert "session" in paths
    assert "scheduler.retries" in paths


def test_secret_like_keys_are_rejected_outright() -> None:
    payload = merge_config(default_config(), {"session": {"api_token": "abc"}})
    result = validate_config(payload)
    (issue,) = result.issues
    assert issue.path == "session.api_token"
    assert "secret" in issue.message


@pytest.mark.parametrize(
    ("thresholds", "path"),
    [
        ({"block_below": 95, "pass_at": 90, "excellence_at": 90}, "gate.production.block_below"),
        ({"block_below": 80, "pass_at": 101, "excellence_at": 90}, "gate.production.pass_at"),
        (
            {"block_below": 80, "pass_at": 90, "excellence_at": True},
            "gate.production.excellence_at",
        ),
    ],
)
def test_threshold_violations(thresholds: dict[str, object], path: str) -> None:
    payload = merge_config(default_config(), {"gate": {"production": thresholds}})
    result = validate_config(payload)
    assert [issue.path for issue in result.issues] == [path]


def test_profile_overlays_validate_partially_and_apply() -> None:
    config = validate_config(default_config()).config
    assert config is not None

    strict = apply_profile_overlay(config, "strict")
    assert strict["scheduler"]["max_attempts"] == 2
    assert strict["gate"]["production"]["pass_at"] == 95
    assert strict["gate"]["exploration"] == config["gate"]["exploration"]
    assert apply_profile_overlay(config, None) == config


def test_profile_overlay_cannot_break_the_merged_config() -> None:
    payload = merge_config(
        default_config(),
        {"profiles": {"sloppy": {"gate": {"production": {"block_below": 99}}}}},
    )
    config = validate_config(payload).config
    assert config is not None

    with pytest.raises(ConfigValidationError) as excinfo:
        apply_profile_overlay(config, "sloppy")
    assert excinfo.value.issues[0].path == "gate.production.block_below"


def test_invalid_profile_names_are_reported() -> None:
    payload = merge_config(default_config(), {"profiles": {"Nightly": {}}})
    result = validate_config(payload)
    assert [issue.path for issue in result.issues] == ["profiles.Nightly"]


def test_schema_version_mismatch_includes_migration_guidance() -> None:
    payload = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})
    (issue,) = validate_config(payload).issues
    assert issue.path == "meta.schema_version"
    assert "upgrade the stagegate runtime" in issue.message
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_redact_config_masks_sensitive_keys_recursively() -> None:
    redacted = redact_config(
        {
            "verifiers": {"options": {"document-build": {"clientSecret": "s", "engine": "x"}}},
            "items": [{"password": "p"}],
        }
    )
    assert redacted["verifiers"]["options"]["document-build"] == {
        "clientSecret": "<redacted>",
        "engine": "x",
    }
    assert redacted["items"] == [{"password": "<redacted>"}]
    assert redact_config("not a mapping") == {}


def test_redact_config_keeps_the_redaction_switch_readable() -> None:
    redacted = redact_config(default_config())

    assert redacted["observability"]["redact_secrets"] is True
    assert redact_config({"observability": {"redact_secrets": False}}) == {
        "observability": {"redact_secrets": False}
    }
