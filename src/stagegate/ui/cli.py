"""Command-line interface router for stagegate."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from stagegate.config import (
    ConfigLoadError,
    ConfigValidationError,
    ResolvedConfig,
    redact_config,
    resolve_config,
)
from stagegate.control_plane import (
    ReplayError,
    SchedulerError,
    StageScheduler,
    build_scheduler,
    build_scorer,
    compare_to_baseline,
    replay_history,
)
from stagegate.domain.ids import generate_session_id
from stagegate.domain.models import (
    ArtifactKind,
    Finding,
    InvalidTrackError,
    Plan,
    SessionRecord,
    Task,
    TaskStage,
    Track,
    parse_artifact_kind,
)
from stagegate.observability.logging import LoggingHandle, setup_logging, shutdown_logging
from stagegate.persistence import SessionRecorder, SessionRecorderError
from stagegate.ui.render import CLIRenderer, create_renderer
from stagegate.utils.concurrency import CancellationToken

_BLOCKED_STAGES: Final[frozenset[TaskStage]] = frozenset(
    {TaskStage.RETRYING, TaskStage.ESCALATED, TaskStage.ABANDONED}
)
_USER_ERRORS: Final[tuple[type[Exception], ...]] = (
    ConfigLoadError,
    ConfigValidationError,
    InvalidTrackError,
    ReplayError,
    SchedulerError,
    SessionRecorderError,
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="stagegate",
        description=(
            "stagegate — quality-gated task orchestrator.\n\n"
            "Common workflows:\n"
            "  stagegate run paper.tex --kind manuscript --track production\n"
            "  stagegate advance <task-id>         Re-enter after fixes\n"
            "  stagegate history <task-id>         Show the audit trail\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to stagegate TOML config (default: ./stagegate.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--state-dir",
        default=None,
        help="Directory for session logs, hand-off files and process logs.",
    )
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)
    kinds = ", ".join(kind.value for kind in ArtifactKind)
    tracks = ", ".join(track.value for track in Track)

    # start ---------------------------------------------------------------
    start_parser = subparsers.add_parser(
        "start",
        parents=[common],
        help="Create a task for an artifact",
        description=(
            "Create and persist a task. Without --plan-step the plan stage is skipped.\n\n"
            "Examples:\n"
            "  stagegate start model.R --kind numeric-script --track exploration\n"
            "  stagegate start paper.tex --kind manuscript --track production \\\n"
            "      --plan-step 'fix tables' --plan-step 'rebuild'\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_task_arguments(start_parser, kinds=kinds, tracks=tracks)
    start_parser.set_defaults(handler=_cmd_start)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Create a task and advance it until it settles",
        description=(
            "Start a task and advance it until it is committed, escalated, abandoned or\n"
            "waiting for fixes (Retrying).\n\n"
            "Examples:\n"
            "  stagegate run analysis.jl --kind exploration-artifact --track exploration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_task_arguments(run_parser, kinds=kinds, tracks=tracks)
    run_parser.set_defaults(handler=_cmd_run)

    # advance -------------------------------------------------------------
    advance_parser = subparsers.add_parser(
        "advance",
        parents=[common],
        help="Advance a task by one stage",
        description=(
            "Resume a task from its session log and run its next stage.\n\n"
            "Examples:\n"
            "  stagegate advance <task-id>\n"
            "  stagegate advance <task-id> --until-settled\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    advance_parser.add_argument("task_id", help="Task ID printed by start/run")
    advance_parser.add_argument(
        "--until-settled",
        action="store_true",
        default=False,
        help="Keep advancing until the task is terminal or waiting for fixes",
    )
    advance_parser.set_defaults(handler=_cmd_advance)

    # history -------------------------------------------------------------
    history_parser = subparsers.add_parser(
        "history",
        parents=[common],
        help="Show the session records of a task",
        description=(
            "Print every recorded transition of a task.\n\n"
            "Examples:\n"
            "  stagegate history <task-id>\n"
            "  stagegate history <task-id> --baseline <other-task-id>\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    history_parser.add_argument("task_id", help="Task ID")
    history_parser.add_argument(
        "--baseline", default=None, help="Compare the latest score against another task"
    )
    history_parser.set_defaults(handler=_cmd_history)

    # cancel --------------------------------------------------------------
    cancel_parser = subparsers.add_parser(
        "cancel",
        parents=[common],
        help="Abandon an in-flight task",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    cancel_parser.add_argument("task_id", help="Task ID")
    cancel_parser.add_argument("--reason", required=True, help="Recorded cancellation cause")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def _add_task_arguments(parser: argparse.ArgumentParser, *, kinds: str, tracks: str) -> None:
    parser.add_argument("artifact", help="Path or identifier of the artifact to gate")
    parser.add_argument("--kind", required=True, help=f"Artifact kind ({kinds})")
    parser.add_argument("--track", required=True, help=f"Quality track ({tracks})")
    parser.add_argument(
        "--plan-step",
        action="append",
        dest="plan_steps",
        default=None,
        help="Planned step (repeatable); omit to skip the plan stage",
    )
    parser.add_argument("--title", default=None, help="Optional human-readable title")


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except _USER_ERRORS as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_start(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _logging_session(config, args):
        scheduler = build_scheduler(config)
        task = _start_task(scheduler, args)
    _emit_task(args, "start", task, scheduler, exit_code=0)
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _logging_session(config, args):
        scheduler = build_scheduler(config)
        started = _start_task(scheduler, args)
        task = _run_with_cancellation(lambda token: scheduler.drive(started, cancel_token=token))
    exit_code = _exit_code_for(task)
    _emit_task(args, "run", task, scheduler, exit_code=exit_code)
    return exit_code


def _cmd_advance(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _logging_session(config, args):
        scheduler = build_scheduler(config)
        resumed = _resume(scheduler, args.task_id)
        if args.until_settled:
            task = _run_with_cancellation(lambda token: _settle(scheduler, resumed, token))
        else:
            task = _run_with_cancellation(
                lambda token: scheduler.advance(resumed, cancel_token=token)
            )
    exit_code = _exit_code_for(task)
    _emit_task(args, "advance", task, scheduler, exit_code=exit_code)
    return exit_code


def _cmd_cancel(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _logging_session(config, args):
        scheduler = build_scheduler(config)
        task = scheduler.cancel(_resume(scheduler, args.task_id), args.reason)
    _emit_task(args, "cancel", task, scheduler, exit_code=0)
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    recorder = SessionRecorder(config["session"]["log_dir"], fsync=False)
    records = _require_history(recorder, args.task_id)
    task = replay_history(records, task_id=args.task_id)

    comparison = None
    if args.baseline:
        baseline_records = _require_history(recorder, args.baseline)
        baseline = replay_history(baseline_records, task_id=args.baseline)
        try:
            comparison = compare_to_baseline(task, baseline, build_scorer(config["rubric"]))
        except ValueError as exc:
            raise CLIError(str(exc)) from exc

    if args.json:
        _emit_json(
            {
                "command": "history",
                "task_id": task.id,
                "stage": task.stage.value,
                "records": [record.to_dict() for record in records],
                "baseline": comparison.to_dict() if comparison is not None else None,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Task", task.id)
    renderer.kv("Stage", task.stage.value)
    renderer.table(
        ("#", "timestamp", "event", "stage", "attempt", "decision", "score", "note"),
        [_record_row(record) for record in records],
        title="Session records:",
    )
    if args.verbose:
        for record in records:
            if record.findings:
                _render_findings(renderer, record, title=f"Findings at record {record.sequence}:")
    if comparison is not None:
        renderer.section(f"Baseline {comparison.baseline_id}:")
        renderer.kv("Score", f"{comparison.score} (baseline {comparison.baseline_score})")
        renderer.kv("Delta", f"{comparison.delta:+d}")
        renderer.items([_finding_text(item) for item in comparison.new_findings], prefix="+ ")
        renderer.items([_finding_text(item) for item in comparison.resolved_findings], prefix="- ")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    resolved = _resolve_config(args)
    redacted = redact_config(resolved.config)
    if args.json:
        _emit_json(
            {
                "command": "config",
                "active_profile": resolved.profile,
                "sources": list(resolved.sources),
                "config": redacted,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", resolved.profile or "(default)")
    renderer.kv("Sources", " > ".join(reversed(resolved.sources)))
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _start_task(scheduler: StageScheduler, args: argparse.Namespace) -> Task:
    artifact = Path(args.artifact).expanduser()
    artifact_ref = str(artifact.resolve()) if artifact.exists() else args.artifact
    try:
        plan = Plan(steps=tuple(args.plan_steps)) if args.plan_steps else None
    except ValueError as exc:
        raise CLIError(str(exc)) from exc
    return scheduler.start(
        artifact_ref, kind=_kind(args.kind), track=args.track, plan=plan, title=args.title
    )


def _kind(raw: str) -> ArtifactKind:
    try:
        return parse_artifact_kind(raw)
    except ValueError as exc:
        raise CLIError(str(exc)) from exc


def _resume(scheduler: StageScheduler, task_id: str) -> Task:
    if not scheduler.recorder.exists(task_id):
        raise CLIError(f"unknown task: {task_id}")
    return scheduler.resume(task_id)


def _require_history(recorder: SessionRecorder, task_id: str) -> list[SessionRecord]:
    if not recorder.exists(task_id):
        raise CLIError(f"unknown task: {task_id}")
    return list(recorder.history(task_id))


async def _settle(scheduler: StageScheduler, task: Task, token: CancellationToken) -> Task:
    # Always move at least one stage so a Retrying task re-enters Execute.
    advanced = await scheduler.advance(task, cancel_token=token)
    return await scheduler.drive(advanced, cancel_token=token)


def _run_with_cancellation(operation: Callable[[CancellationToken], Awaitable[Task]]) -> Task:
    async def _main() -> Task:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted (SIGINT)")
        try:
            return await operation(token)
        finally:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(_main())


def _exit_code_for(task: Task) -> int:
    return 1 if task.stage in _BLOCKED_STAGES else 0


@contextlib.contextmanager
def _logging_session(
    config: Mapping[str, Any], args: argparse.Namespace
) -> Iterator[LoggingHandle]:
    observability = dict(config["observability"])
    if args.verbose:
        observability["log_level"] = "DEBUG"
    handle: LoggingHandle = setup_logging(observability, session_id=generate_session_id())
    try:
        yield handle
    finally:
        shutdown_logging(handle)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    return _resolve_config(args).config


def _resolve_config(args: argparse.Namespace) -> ResolvedConfig:
    try:
        return resolve_config(
            args.config_path, profile=args.profile, state_dir=args.state_dir or None
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc


def _emit_task(
    args: argparse.Namespace,
    command: str,
    task: Task,
    scheduler: StageScheduler,
    *,
    exit_code: int,
) -> None:
    attempt = task.current_attempt
    score = scheduler.score(task)
    decision = attempt.decision.value if attempt is not None and attempt.decision else None
    if args.json:
        _emit_json(
            {
                "command": command,
                "exit_code": exit_code,
                "score": score,
                "decision": decision,
                "task": task.to_dict(),
            }
        )
        return

    renderer = _get_renderer(args)
    renderer.kv("Task", task.id)
    renderer.kv("Stage", task.stage.value)
    renderer.kv("Track", task.track.value)
    renderer.kv("Kind", task.kind.value)
    renderer.kv("Attempt", task.attempt_number)
    if score is not None:
        renderer.kv("Score", score)
    if decision is not None:
        renderer.kv("Decision", decision)
    if task.committed_with_warnings:
        renderer.warning("committed with warnings")
    if task.note:
        renderer.kv("Note", task.note)
    if attempt is not None and attempt.findings and (exit_code != 0 or args.verbose):
        renderer.table(
            ("severity", "category", "message", "proposed fix"),
            [
                (item.severity, item.category, item.message, item.proposed_fix or "")
                for item in attempt.findings
            ],
            title="Findings:",
        )
    if task.stage is TaskStage.RETRYING:
        renderer.next_steps([f"stagegate advance {task.id}"])
    elif not task.is_terminal:
        renderer.next_steps([f"stagegate advance {task.id} --until-settled"])


def _render_findings(renderer: CLIRenderer, record: SessionRecord, *, title: str) -> None:
    renderer.table(
        ("severity", "category", "message", "proposed fix"),
        [
            (item.severity, item.category, item.message, item.proposed_fix or "")
            for item in record.findings
        ],
        title=title,
    )


def _record_row(record: SessionRecord) -> tuple[str, ...]:
    return (
        str(record.sequence),
        record.timestamp.isoformat(timespec="seconds"),
        record.event.value,
        record.stage.value,
        str(record.attempt),
        record.decision.value if record.decision is not None else "",
        "" if record.score is None else str(record.score),
        record.note or "",
    )


def _finding_text(finding: Finding) -> str:
    return f"[{finding.severity}] {finding.category}: {finding.message}"


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


__all__ = ["CLIError", "build_parser", "run_cli"]
