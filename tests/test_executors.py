import asyncio
import json
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from foreman.backends import AgentBackend, BackendExecutionError, BackendTimeoutError
from foreman.config import ForemanConfig
from foreman.errors import ConfigError, ExternalToolFailure
from foreman.executors import (
    AgentStageExecutor,
    CommandStageExecutor,
    ExecutorRegistry,
    StageContext,
    StageExecutor,
    StageOutcome,
    extract_coverage_percent,
    run_command,
)
from foreman.templates import StageSpec


class RecordingBackend(AgentBackend):
    name = "fake"

    def __init__(self, reply: str = "stage done") -> None:
        self.reply = reply
        self.prompts: list[str] = []
        self.models: list[str | None] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.prompts.append(user_prompt)
        self.models.append(model)
        yield self.reply


class FailingBackend(AgentBackend):
    name = "fake"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, model
        raise BackendExecutionError("agent crashed", tool="fake", exit_code=1)
        yield ""  # pragma: no cover


class SlowBackend(AgentBackend):
    name = "fake"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, model
        await asyncio.sleep(5)
        yield "late"


class PassingVerifier(StageExecutor):
    def __init__(self) -> None:
        self.calls = 0

    def run(self, context: StageContext) -> StageOutcome:
        self.calls += 1
        return StageOutcome(success=True, tests_passing=True, message="tests passed")


def _context(tmp_path: Path, stage: StageSpec, **overrides: Any) -> StageContext:
    values: dict[str, Any] = {
        "job_id": "pipeline-42",
        "stage": stage,
        "iteration": 1,
        "max_iterations": 3,
        "goal": "Add rate limiting",
        "workdir": tmp_path,
        "artifacts_dir": tmp_path / ".foreman" / "pipeline-artifacts",
        "issue": "42",
    }
    values.update(overrides)
    return StageContext(**values)


def test_run_command_prefers_exec_mode_for_simple_commands(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    observed: dict[str, Any] = {}

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        observed["payload"] = args[0]
        observed["shell"] = kwargs.get("shell")
        return subprocess.CompletedProcess(args=args[0], returncode=0, stdout="ok\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    result = run_command("python -c \"print('ok')\"", tmp_path)

    assert result["exit_code"] == 0
    assert result["used_shell"] is False
    assert observed["shell"] is False
    assert isinstance(observed["payload"], list)


def test_run_command_uses_shell_for_shell_operators(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    observed: dict[str, Any] = {}

    def fake_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        observed["payload"] = args[0]
        observed["shell"] = kwargs.get("shell")
        return subprocess.CompletedProcess(args=args[0], returncode=0, stdout="ok\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    result = run_command("pytest -q && echo done", tmp_path)

    assert result["used_shell"] is True
    assert observed["shell"] is True
    assert isinstance(observed["payload"], str)


def test_run_command_rejects_empty_and_missing_commands(tmp_path: Path) -> None:
    with pytest.raises(ExternalToolFailure) as empty:
        run_command("   ", tmp_path)
    assert empty.value.retriable is False

    with pytest.raises(ExternalToolFailure, match="Command not found") as missing:
        run_command("definitely-not-a-real-binary-foreman", tmp_path)
    assert missing.value.retriable is False


def test_extract_coverage_percent_formats() -> None:
    assert extract_coverage_percent("Name  Stmts  Miss  Cover\nTOTAL   120   12   90%") == 90.0
    assert extract_coverage_percent('noise\n{"coverage_percent": 88.5}\n') == 88.5
    assert extract_coverage_percent("3 passed") is None


def test_command_executor_records_test_artifacts(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.project.test_command = "echo TOTAL 10 1 90%"
    context = _context(tmp_path, StageSpec(id="test"))

    outcome = CommandStageExecutor(config).run(context)

    assert outcome.success is True
    assert outcome.tests_passing is True
    results = json.loads((context.artifacts_dir / "test-results.json").read_text(encoding="utf-8"))
    coverage = json.loads((context.artifacts_dir / "coverage.json").read_text(encoding="utf-8"))
    assert results["failed_count"] == 0
    assert coverage == {"pct": 90.0}


def test_command_executor_raises_on_failing_tests(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.project.test_command = "echo '2 failed, 10 passed' && exit 1"
    context = _context(tmp_path, StageSpec(id="build"))

    with pytest.raises(ExternalToolFailure) as excinfo:
        CommandStageExecutor(config).run(context)

    assert excinfo.value.exit_code == 1
    results = json.loads((context.artifacts_dir / "test-results.json").read_text(encoding="utf-8"))
    assert results["failed_count"] == 2


def test_command_executor_uses_stage_command_and_skips_unconfigured_stages(tmp_path: Path) -> None:
    executor = CommandStageExecutor(ForemanConfig.default())

    assert executor.command_for(StageSpec(id="deploy", config={"command": "make deploy"})) == "make deploy"
    assert executor.command_for(StageSpec(id="plan")) is None
    outcome = executor.run(_context(tmp_path, StageSpec(id="plan")))
    assert outcome.success is True
    assert outcome.message == "no command configured"


def test_agent_executor_builds_stage_prompt(tmp_path: Path) -> None:
    backend = RecordingBackend()
    executor = AgentStageExecutor(ForemanConfig.default(), backend=backend)

    outcome = executor.run(
        _context(tmp_path, StageSpec(id="plan"), model="sonnet", previous_error="lint failed")
    )

    assert outcome.success is True
    assert outcome.message == "stage done"
    prompt = backend.prompts[0]
    assert "Goal: Add rate limiting" in prompt
    assert "Issue: #42" in prompt
    assert "Stage: plan" in prompt
    assert "lint failed" in prompt
    assert backend.models == ["sonnet"]


def test_agent_executor_verifies_test_stages(tmp_path: Path) -> None:
    verifier = PassingVerifier()
    executor = AgentStageExecutor(ForemanConfig.default(), backend=RecordingBackend(), verifier=verifier)

    outcome = executor.run(_context(tmp_path, StageSpec(id="build")))

    assert verifier.calls == 1
    assert outcome.tests_passing is True


def test_agent_executor_propagates_backend_failures(tmp_path: Path) -> None:
    executor = AgentStageExecutor(ForemanConfig.default(), backend=FailingBackend())

    with pytest.raises(ExternalToolFailure, match="agent crashed"):
        executor.run(_context(tmp_path, StageSpec(id="plan")))


def test_agent_executor_times_out(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.executor.timeout_seconds = 0.05
    executor = AgentStageExecutor(config, backend=SlowBackend())

    with pytest.raises(BackendTimeoutError, match="timed out"):
        executor.run(_context(tmp_path, StageSpec(id="plan")))


def test_registry_selects_executor_per_stage() -> None:
    config = ForemanConfig.default()
    command = PassingVerifier()
    agent = PassingVerifier()
    registry = ExecutorRegistry(config, executors={"command": command, "agent": agent})

    assert registry.for_stage(StageSpec(id="build")) is agent
    assert registry.for_stage(StageSpec(id="test", config={"executor": "command"})) is command
    with pytest.raises(ConfigError, match="Unknown executor"):
        registry.for_stage(StageSpec(id="pr", config={"executor": "robot"}))
