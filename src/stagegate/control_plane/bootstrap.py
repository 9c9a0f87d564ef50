"""
stagegate — scheduler bootstrap

File: src/stagegate/control_plane/bootstrap.py
Last updated: 2026-10-19

Purpose
- Turn a validated effective config into a fully wired ``StageScheduler``.

Functional requirements
- Rubric, thresholds, verifier set and limits are built once, at process start.
- Any wiring failure (unknown verifier, bad verifier options, unreadable rubric file) is a
  ``ConfigValidationError`` listing every problem; nothing is partially constructed.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from stagegate.config.schema import ConfigValidationError, ConfigValidationIssue
from stagegate.control_plane.executor import PassthroughExecutor, TaskExecutor
from stagegate.control_plane.scheduler import Clock, SchedulerLimits, StageScheduler
from stagegate.domain.models import parse_track
from stagegate.persistence.session_recorder import SessionRecorder
from stagegate.quality.gate import GatePolicy, TrackThresholds
from stagegate.quality.rubric import RubricScorer, RubricTable, load_rubric_file
from stagegate.verification_plane.runner import VerificationRunner
from stagegate.verification_plane.verifiers import DEFAULT_VERIFIER_REGISTRY, VerifierRegistry
from stagegate.verification_plane.verifiers.base import Verifier


def build_scorer(rubric: Mapping[str, Any]) -> RubricScorer:
    table = RubricTable(
        deductions=rubric["deductions"],
        unknown_severity_deduction=rubric["unknown_severity_deduction"],
    )
    table_path = rubric.get("table_path")
    if not table_path:
        return RubricScorer(table)
    try:
        return load_rubric_file(Path(table_path), base=table)
    except (OSError, ValueError) as exc:
        raise ConfigValidationError(
            (ConfigValidationIssue("rubric.table_path", str(exc)),)
        ) from exc


def build_gate(gate: Mapping[str, Any]) -> GatePolicy:
    try:
        return GatePolicy(
            {parse_track(track): TrackThresholds(**values) for track, values in gate.items()}
        )
    except ValueError as exc:
        raise ConfigValidationError((ConfigValidationIssue("gate", str(exc)),)) from exc


def build_verifiers(
    verifiers: Mapping[str, Any],
    *,
    registry: VerifierRegistry | None = None,
) -> list[Verifier]:
    source = registry if registry is not None else DEFAULT_VERIFIER_REGISTRY
    enabled: list[str] = list(verifiers.get("enabled", []))
    options: Mapping[str, Mapping[str, Any]] = verifiers.get("options", {})

    issues: list[ConfigValidationIssue] = []
    for name in sorted(options):
        if name not in enabled:
            issues.append(
                ConfigValidationIssue(f"verifiers.options.{name}", "verifier is not enabled")
            )

    built: list[Verifier] = []
    for index, name in enumerate(enabled):
        if not source.contains(name):
            known = ", ".join(source.registered_names())
            issues.append(
                ConfigValidationIssue(
                    f"verifiers.enabled[{index}]", f"unknown verifier {name!r}; known: {known}"
                )
            )
            continue
        try:
            built.append(source.create(name, **dict(options.get(name, {}))))
        except (TypeError, ValueError) as exc:
            issues.append(ConfigValidationIssue(f"verifiers.options.{name}", str(exc)))

    if issues:
        raise ConfigValidationError(issues)
    return built


def build_scheduler(
    config: Mapping[str, Any],
    *,
    executor: TaskExecutor | None = None,
    registry: VerifierRegistry | None = None,
    clock: Clock | None = None,
    logger: Any | None = None,
) -> StageScheduler:
    """Wire a scheduler from an effective config produced by ``load_config``."""

    scheduler_cfg = config["scheduler"]
    session_cfg = config["session"]

    runner = VerificationRunner(
        build_verifiers(config["verifiers"], registry=registry),
        default_timeout_seconds=scheduler_cfg["verifier_timeout_seconds"],
        max_concurrency=scheduler_cfg["max_concurrency"],
        grace_seconds=scheduler_cfg["grace_seconds"],
    )
    return StageScheduler(
        recorder=SessionRecorder(session_cfg["log_dir"], fsync=session_cfg["fsync"]),
        runner=runner,
        scorer=build_scorer(config["rubric"]),
        gate=build_gate(config["gate"]),
        executor=(
            executor if executor is not None else PassthroughExecutor(session_cfg["handoff_dir"])
        ),
        limits=SchedulerLimits(
            max_attempts=scheduler_cfg["max_attempts"],
            verifier_timeout_seconds=scheduler_cfg["verifier_timeout_seconds"],
        ),
        clock=clock,
        logger=logger,
    )


__all__ = ["build_gate", "build_scheduler", "build_scorer", "build_verifiers"]
