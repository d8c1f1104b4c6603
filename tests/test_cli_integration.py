import json
import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from foreman.cli import cli
from foreman.config import load_config, save_config
from foreman.errors import ExternalToolFailure
from foreman.workspace import GitWorkspace


def _prepare_project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, test_command: str = "true") -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    monkeypatch.chdir(repo)
    monkeypatch.setenv("FOREMAN_HOME", str(tmp_path / "home"))

    init_result = CliRunner().invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output

    config_path = repo / "foreman.toml"
    config = load_config(config_path)
    config.executor.kind = "command"
    config.project.test_command = test_command
    config.pipeline.create_branch = False
    config.logging.level = "warning"
    save_config(config_path, config)

    templates_dir = repo / "templates" / "pipelines"
    templates_dir.mkdir(parents=True)
    (templates_dir / "quick.json").write_text(
        json.dumps(
            {
                "name": "quick",
                "stages": [
                    {"id": "intake"},
                    {"id": "plan", "enabled": False},
                    {"id": "test", "config": {"max_iterations": 2}},
                    {"id": "pr", "gate": "manual"},
                ],
            }
        ),
        encoding="utf-8",
    )
    return repo


def test_init_writes_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_project(tmp_path, monkeypatch)

    assert (repo / "foreman.toml").exists()
    assert (repo / ".foreman" / "pipeline-artifacts").is_dir()


def test_start_requires_goal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)

    result = CliRunner().invoke(cli, ["start"])

    assert result.exit_code != 0
    assert "Goal is required" in result.output


def test_start_dry_run_prints_plan_without_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_project(tmp_path, monkeypatch)

    result = CliRunner().invoke(
        cli, ["start", "--goal", "Update lodash to 4.17.21", "--pipeline", "quick", "--dry-run"]
    )

    assert result.exit_code == 0, result.output
    assert "Branch: fix/update-lodash-to-4-17-21" in result.output
    assert result.output.index("intake") < result.output.index("test") < result.output.index("pr ")
    assert not (repo / ".foreman" / "pipeline-state.md").exists()
    assert not (tmp_path / "home" / "heartbeats").exists()


def test_start_runs_pipeline_and_status_reports_it(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)
    runner = CliRunner()

    run_result = runner.invoke(
        cli, ["start", "--goal", "Add health endpoint", "--pipeline", "quick", "--skip-gates"]
    )
    assert run_result.exit_code == 0, run_result.output
    assert "Pipeline complete: pipeline-add-health-endpoint (fix/add-health-endpoint)" in run_result.output

    status_result = runner.invoke(cli, ["status", "--json"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["status"] == "complete"
    assert payload["completed_stages"] == ["intake", "test", "pr"]


def test_start_reports_failed_pipeline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch, test_command="false")
    runner = CliRunner()

    result = runner.invoke(cli, ["start", "--issue", "77", "--goal", "Fix flaky job", "--pipeline", "quick"])

    assert result.exit_code == 1
    assert "Pipeline failed: pipeline-77 at stage test" in result.output
    status_result = runner.invoke(cli, ["status"])
    assert "Pipeline: quick (failed)" in status_result.output


def test_status_without_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 1
    assert "No pipeline state found" in result.output


def test_templates_lists_builtin_and_project_templates(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)
    runner = CliRunner()

    listing = runner.invoke(cli, ["templates"])
    shown = runner.invoke(cli, ["templates", "--show", "quick"])

    assert listing.exit_code == 0
    assert {"quick", "standard", "full", "fast"} <= set(listing.output.split())
    assert json.loads(shown.output)["name"] == "quick"


def test_heartbeat_commands(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)
    runner = CliRunner()

    write_result = runner.invoke(
        cli,
        [
            "heartbeat", "write", "pipeline-123",
            "--pid", str(os.getpid()),
            "--issue", "123",
            "--stage", "build",
            "--iteration", "3",
            "--activity", "running tests",
        ],
    )
    assert write_result.exit_code == 0, write_result.output

    check_result = runner.invoke(cli, ["heartbeat", "check", "pipeline-123"])
    assert check_result.exit_code == 0
    assert "Job pipeline-123 alive" in check_result.output

    list_result = runner.invoke(cli, ["heartbeat", "list", "--json"])
    entries = json.loads(list_result.output)
    assert [entry["job_id"] for entry in entries] == ["pipeline-123"]
    assert entries[0]["alive"] is True
    assert entries[0]["iteration"] == 3

    clear_result = runner.invoke(cli, ["heartbeat", "clear", "pipeline-123"])
    assert "Cleared heartbeat for pipeline-123" in clear_result.output

    missing_result = runner.invoke(cli, ["heartbeat", "check", "pipeline-123"])
    assert missing_result.exit_code == 1
    assert "No heartbeat found for job pipeline-123" in missing_result.output


def test_checkpoint_commands(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)
    runner = CliRunner()

    save_result = runner.invoke(
        cli,
        [
            "checkpoint", "save",
            "--stage", "build",
            "--iteration", "5",
            "--tests-passing",
            "--files-modified", "src/auth.ts,src/middleware.ts",
            "--sha", "abc1234",
        ],
    )
    assert save_result.exit_code == 0, save_result.output

    restore_result = runner.invoke(cli, ["checkpoint", "restore", "--stage", "build"])
    payload = json.loads(restore_result.output)
    assert payload["iteration"] == 5
    assert payload["tests_passing"] is True
    assert payload["files_modified"] == ["src/auth.ts", "src/middleware.ts"]
    assert payload["git_sha"] == "abc1234"

    list_result = runner.invoke(cli, ["checkpoint", "list"])
    assert "build" in list_result.output

    missing_result = runner.invoke(cli, ["checkpoint", "restore", "--stage", "nonexistent"])
    assert missing_result.exit_code == 1
    assert "No checkpoint found for stage: nonexistent" in missing_result.output

    clear_result = runner.invoke(cli, ["checkpoint", "clear", "--all"])
    assert "Cleared 1 checkpoint(s)" in clear_result.output


def test_quality_commands_exit_non_zero_on_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _prepare_project(tmp_path, monkeypatch)
    artifacts = repo / ".foreman" / "pipeline-artifacts"
    runner = CliRunner()

    (artifacts / "test-results.json").write_text(json.dumps({"failed_count": 2}), encoding="utf-8")
    gate_result = runner.invoke(cli, ["quality", "gate"])
    validate_result = runner.invoke(cli, ["quality", "validate"])
    assert gate_result.exit_code == 1
    assert validate_result.exit_code == 1
    assert json.loads(gate_result.output)["passed"] is False

    (artifacts / "test-results.json").write_text(json.dumps({"failed_count": 0}), encoding="utf-8")
    (artifacts / "coverage.json").write_text(json.dumps({"pct": 92}), encoding="utf-8")
    assert runner.invoke(cli, ["quality", "validate"]).exit_code == 0
    assert json.loads(runner.invoke(cli, ["quality", "score"]).output)["gate_pass"] is True
    assert json.loads(runner.invoke(cli, ["quality", "audit"]).output)["scores"]["security"] == 100
    assert json.loads(runner.invoke(cli, ["quality", "completion"]).output)["decision"] == "complete"

    report_result = runner.invoke(cli, ["quality", "report"])
    assert report_result.exit_code == 0
    assert (artifacts / "quality-report.md").exists()
    assert (artifacts / "quality-report.json").exists()


def test_daemon_queue_pause_and_stop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)
    runner = CliRunner()

    assert "Queued 42" in runner.invoke(cli, ["daemon", "enqueue", "42"]).output
    assert "Queued goal-add-dark-mode" in runner.invoke(
        cli, ["daemon", "enqueue", "--goal", "Add dark mode"]
    ).output
    assert runner.invoke(cli, ["daemon", "enqueue"]).exit_code == 1
    duplicate = runner.invoke(cli, ["daemon", "enqueue", "42"])
    assert duplicate.exit_code == 1
    assert "42 is already queued" in duplicate.output

    status = json.loads(runner.invoke(cli, ["daemon", "status", "--json"]).output)
    assert status["queued"] == ["42", "goal-add-dark-mode"]
    assert status["active_count"] == 0

    runner.invoke(cli, ["daemon", "pause", "--reason", "release freeze"])
    assert "PAUSED: release freeze" in runner.invoke(cli, ["daemon", "status"]).output

    runner.invoke(cli, ["daemon", "resume"])
    assert "PAUSED" not in runner.invoke(cli, ["daemon", "status"]).output

    stop_result = runner.invoke(cli, ["daemon", "stop"])
    assert stop_result.exit_code == 0
    assert (tmp_path / "home" / "daemon" / "shutdown.flag").exists()


def test_heartbeat_check_honours_zero_timeout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)
    runner = CliRunner()
    runner.invoke(cli, ["heartbeat", "write", "pipeline-9", "--pid", str(os.getpid())])
    heartbeat_path = tmp_path / "home" / "heartbeats" / "pipeline-9.json"
    payload = json.loads(heartbeat_path.read_text(encoding="utf-8"))
    updated = datetime.fromisoformat(payload["updated_at"].replace("Z", "+00:00"))
    payload["updated_at"] = (updated - timedelta(seconds=10)).isoformat()
    heartbeat_path.write_text(json.dumps(payload), encoding="utf-8")

    default_result = runner.invoke(cli, ["heartbeat", "check", "pipeline-9"])
    zero_result = runner.invoke(cli, ["heartbeat", "check", "pipeline-9", "--timeout", "0"])

    assert default_result.exit_code == 0
    assert zero_result.exit_code == 1
    assert "timeout: 0s" in zero_result.output


def test_quality_commands_report_git_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _prepare_project(tmp_path, monkeypatch)

    def failing_status(self: GitWorkspace) -> list[str]:
        raise ExternalToolFailure("fatal: index file corrupt", tool="git", exit_code=128)

    monkeypatch.setattr(GitWorkspace, "dirty_paths", failing_status)
    runner = CliRunner()

    for command in (["quality", "validate"], ["quality", "gate"], ["quality", "report"]):
        result = runner.invoke(cli, command)
        assert result.exit_code == 1
        assert "Error: fatal: index file corrupt" in result.output
        assert not isinstance(result.exception, ExternalToolFailure)
