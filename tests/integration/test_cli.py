"""
stagegate — CLI integration contracts

File: tests/integration/test_cli.py
Last updated: 2026-10-19

Purpose
- Drive every subcommand against real artifacts and real verifiers (artifact presence and
  script execution through the current interpreter).
- Verify exit codes, JSON payloads and the session logs left behind in the state dir.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from stagegate.main import ExitCode, cli_entrypoint
from stagegate.ui.cli import run_cli

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

pytestmark = pytest.mark.integration


def _write(path: Path, contents: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")
    return path


def _workspace(tmp_path: Path) -> tuple[Path, list[str]]:
    config = _write(
        tmp_path / "stagegate.toml",
        f"""
[verifiers]
enabled = ["artifact-presence", "script-execution"]

[verifiers.options.script-execution.interpreters]
".py" = [{json.dumps(sys.executable)}]

[scheduler]
verifier_timeout_seconds = 60.0
grace_seconds = 1.0

[session]
fsync = false
""".lstrip(),
    )
    common = ["--config", str(config), "--state-dir", str(tmp_path / "state"), "--json"]
    return config, common


def _invoke(
    capsys: pytest.CaptureFixture[str], *argv: str
) -> tuple[int, dict[str, object] | None, str]:
    code = run_cli(list(argv))
    captured = capsys.readouterr()
    payload = json.loads(captured.out) if captured.out.strip().startswith("{") else None
    return code, payload, captured.err


def test_run_commits_a_clean_script(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _, common = _workspace(tmp_path)
    script = _write(tmp_path / "clean.py", "print('ok')\n")

    code, payload, _ = _invoke(
        capsys, "run", str(script), "--kind", "numeric-script", "--track", "production", *common
    )

    assert code == ExitCode.SUCCESS
    assert payload is not None
    assert payload["command"] == "run"
    assert payload["exit_code"] == 0
    assert payload["score"] == 100
    assert payload["decision"] == "pass"
    task = payload["task"]
    assert isinstance(task, dict)
    assert task["stage"] == "committed"
    assert task["artifact_ref"] == str(script.resolve())

    session_log = tmp_path / "state" / "sessions" / f"{task['id']}.jsonl"
    lines = session_log.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["stage"] for line in lines] == [
        "executing",
        "verifying",
        "scored",
        "committed",
    ]
    assert any((tmp_path / "state" / "logs").iterdir())


def test_blocked_run_retries_after_fixes(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _, common = _workspace(tmp_path)
    script = _write(tmp_path / "fit.py", "1 / 0\n")

    code, payload, _ = _invoke(
        capsys, "run", str(script), "--kind", "numeric-script", "--track", "production", *common
    )
    assert code == ExitCode.BLOCKED
    assert payload is not None
    assert (payload["score"], payload["decision"]) == (0, "block")
    task_id = payload["task"]["id"]  # type: ignore[index]
    handoff = tmp_path / "state" / "handoff" / f"{task_id}.fixups.json"
    assert not handoff.exists()

    _write(script, "print('fixed')\n")

    code, payload, _ = _invoke(capsys, "advance", task_id, *common)
    assert code == ExitCode.SUCCESS
    assert payload is not None
    assert payload["task"]["stage"] == "executing"  # type: ignore[index]
    assert payload["task"]["retries"] == 1  # type: ignore[index]

    code, payload, _ = _invoke(capsys, "advance", task_id, "--until-settled", *common)
    assert code == ExitCode.SUCCESS
    assert payload is not None
    assert payload["task"]["stage"] == "committed"  # type: ignore[index]
    assert payload["score"] == 100
    fixups = json.loads(handoff.read_text(encoding="utf-8"))
    assert [item["category"] for item in fixups["required_fixes"]] == ["python-exception"]

    code, payload, _ = _invoke(capsys, "history", task_id, *common)
    assert code == 0
    assert payload is not None
    records = payload["records"]
    assert isinstance(records, list)
    assert [record["event"] for record in records].count("retry") == 1
    assert records[-1]["stage"] == "committed"


def test_retry_budget_from_environment_escalates(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    _, common = _workspace(tmp_path)
    script = _write(tmp_path / "fit.py", "raise RuntimeError('diverged')\n")
    monkeypatch.setenv("STAGEGATE_SCHEDULER_MAX_ATTEMPTS", "0")

    code, payload, _ = _invoke(
        capsys, "run", str(script), "--kind", "numeric-script", "--track", "exploration", *common
    )

    assert code == ExitCode.BLOCKED
    assert payload is not None
    assert payload["task"]["stage"] == "escalated"  # type: ignore[index]


def test_history_compares_against_a_baseline(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _, common = _workspace(tmp_path)
    clean = _write(tmp_path / "clean.py", "print('ok')\n")
    broken = _write(tmp_path / "broken.py", "1 / 0\n")
    args = ("--kind", "numeric-script", "--track", "production", *common)

    _, baseline_payload, _ = _invoke(capsys, "run", str(clean), *args)
    _, blocked_payload, _ = _invoke(capsys, "run", str(broken), *args)
    assert baseline_payload is not None and blocked_payload is not None
    baseline_id = baseline_payload["task"]["id"]  # type: ignore[index]
    blocked_id = blocked_payload["task"]["id"]  # type: ignore[index]

    code, payload, _ = _invoke(capsys, "history", blocked_id, "--baseline", baseline_id, *common)

    assert code == 0
    assert payload is not None
    assert payload["stage"] == "retrying"
    comparison = payload["baseline"]
    assert isinstance(comparison, dict)
    assert (comparison["score"], comparison["baseline_score"], comparison["delta"]) == (
        0,
        100,
        -100,
    )
    assert [item["category"] for item in comparison["new_findings"]] == ["python-exception"]
    assert comparison["resolved_findings"] == []


def test_start_with_plan_then_cancel(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _, common = _workspace(tmp_path)
    paper = _write(tmp_path / "paper.tex", "\\documentclass{article}\n")

    code, payload, _ = _invoke(
        capsys,
        "start",
        str(paper),
        "--kind",
        "manuscript",
        "--track",
        "production",
        "--plan-step",
        "outline",
        "--plan-step",
        "draft",
        "--title",
        "Paper",
        *common,
    )
    assert code == 0
    assert payload is not None
    task = payload["task"]
    assert isinstance(task, dict)
    assert task["stage"] == "planned"
    assert task["plan"] == {"steps": ["outline", "draft"], "summary": None}
    assert payload["score"] is None

    code, payload, _ = _invoke(capsys, "cancel", task["id"], "--reason", "superseded", *common)
    assert code == 0
    assert payload is not None
    assert payload["task"]["stage"] == "abandoned"  # type: ignore[index]
    assert payload["task"]["note"] == "cancelled: superseded"  # type: ignore[index]

    code, _, err = _invoke(capsys, "cancel", task["id"], "--reason", "again", *common)
    assert code == ExitCode.ERROR
    assert "cannot cancel" in err

    code, payload, _ = _invoke(capsys, "advance", task["id"], *common)
    assert code == ExitCode.BLOCKED
    assert payload is not None
    assert payload["task"]["stage"] == "abandoned"  # type: ignore[index]


@pytest.mark.parametrize(
    ("argv", "message"),
    [
        (("advance", "task-missing"), "unknown task: task-missing"),
        (("history", "task-missing"), "unknown task: task-missing"),
        (("start", "x.tex", "--kind", "document", "--track", "staging"), "staging"),
        (("start", "x.tex", "--kind", "slides", "--track", "production"), "slides"),
    ],
)
def test_user_errors_exit_with_code_two(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    argv: tuple[str, ...],
    message: str,
) -> None:
    _, common = _workspace(tmp_path)
    code, _, err = _invoke(capsys, *argv, *common)
    assert code == ExitCode.ERROR
    assert err.startswith("error: ")
    assert message in err


def test_missing_config_file_is_an_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, _, err = _invoke(capsys, "config", "--config", str(tmp_path / "absent.toml"))
    assert code == ExitCode.ERROR
    assert "config file not found" in err


def test_config_command_reports_profile_and_redacts(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _, common = _workspace(tmp_path)

    code, payload, _ = _invoke(capsys, "config", "--profile", "strict", *common)

    assert code == 0
    assert payload is not None
    assert payload["active_profile"] == "strict"
    sources = payload["sources"]
    assert isinstance(sources, list)
    assert sources[0] == "defaults"
    state_root = (tmp_path / "state").resolve().as_posix()
    assert sources[2:] == ["profile:strict", f"state-dir:{state_root}"]
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["scheduler"]["max_attempts"] == 2
    assert config["session"]["log_dir"] == (tmp_path / "state" / "sessions").resolve().as_posix()
    assert config["observability"]["redact_secrets"] is True


def test_text_output_lists_next_steps(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("COLUMNS", "200")
    config, _ = _workspace(tmp_path)
    script = _write(tmp_path / "fit.py", "1 / 0\n")

    code = run_cli(
        [
            "run",
            str(script),
            "--kind",
            "numeric-script",
            "--track",
            "production",
            "--config",
            str(config),
            "--state-dir",
            str(tmp_path / "state"),
            "--no-color",
        ]
    )
    out = capsys.readouterr().out

    assert code == 1
    assert "Stage: retrying" in out
    assert "python-exception" in out
    assert "stagegate advance" in out


def test_entrypoint_normalizes_argparse_exits(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "quality-gated task orchestrator" in capsys.readouterr().out
    assert cli_entrypoint(["no-such-command"]) == ExitCode.ERROR


def test_module_invocation_runs_in_a_subprocess(tmp_path: Path) -> None:
    config, _ = _workspace(tmp_path)
    script = _write(tmp_path / "clean.py", "print('ok')\n")
    env = os.environ.copy()
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_PATH) if not existing else f"{SRC_PATH}{os.pathsep}{existing}"

    completed = subprocess.run(
        [
            sys.executable,
            "-m",
            "stagegate",
            "run",
            str(script),
            "--kind",
            "exploration-artifact",
            "--track",
            "exploration",
            "--config",
            str(config),
            "--state-dir",
            str(tmp_path / "state"),
            "--json",
        ],
        cwd=tmp_path,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["task"]["stage"] == "committed"
    assert payload["task"]["kind"] == "exploration-artifact"
