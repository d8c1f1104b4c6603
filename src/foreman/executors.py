from __future__ import annotations

import asyncio
import json
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from foreman.backends import AgentBackend, BackendTimeoutError, ClaudeCodeBackend
from foreman.config import ForemanConfig
from foreman.errors import ConfigError, ExternalToolFailure
from foreman.state.files import atomic_write_json
from foreman.templates import StageSpec
from foreman.workspace import GitWorkspace

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
COVERAGE_PATTERN = re.compile(r"\b(\d{1,3}(?:\.\d+)?)%")
FAILED_COUNT_PATTERN = re.compile(r"\b(\d+) failed\b")
TEST_STAGES = {"build", "test"}

logger = structlog.get_logger(__name__)

STAGE_PROMPTS: dict[str, str] = {
    "intake": "Read the issue, restate the goal, and list acceptance criteria in goal.md.",
    "plan": "Write a step-by-step implementation plan as a checklist of subtasks in goal.md.",
    "design": "Describe the technical design: components, interfaces, and risks.",
    "build": "Implement the next unchecked subtask, run the tests, and fix failures.",
    "test": "Run the test suite and fix any failing tests.",
    "review": "Review the diff for correctness, security and maintainability; fix issues found.",
    "compound_quality": "Probe edge cases and negative paths; add tests for any gaps.",
    "pr": "Commit the work and open a pull request describing the change.",
    "merge": "Merge the approved pull request.",
    "deploy": "Deploy the merged change.",
    "validate": "Validate the deployed change against the acceptance criteria.",
    "monitor": "Watch post-deploy signals and report regressions.",
}


@dataclass(slots=True)
class StageContext:
    job_id: str
    stage: StageSpec
    iteration: int
    max_iterations: int
    goal: str
    workdir: Path
    artifacts_dir: Path
    issue: str = ""
    model: str | None = None
    previous_error: str = ""


@dataclass(slots=True)
class StageOutcome:
    success: bool
    tests_passing: bool = False
    files_modified: list[str] = field(default_factory=list)
    lines_changed: int = 0
    message: str = ""


class StageExecutor(ABC):
    @abstractmethod
    def run(self, context: StageContext) -> StageOutcome:
        """Run one iteration of a stage; raise ``ExternalToolFailure`` on tool errors."""


def run_command(command: str, cwd: Path, timeout_seconds: float | None = None) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        raise ExternalToolFailure("Command is empty.", retriable=False)
    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    payload: str | list[str] = command_text
    if not used_shell:
        try:
            payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
    try:
        proc = subprocess.run(
            payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise ExternalToolFailure(
            f"Command not found: {command_text}", tool=command_text, retriable=False
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalToolFailure(
            f"Command timed out after {timeout_seconds:.0f}s: {command_text}", tool=command_text
        ) from exc
    return {
        "command": command_text,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-2000:],
        "stderr_tail": proc.stderr.strip()[-2000:],
        "used_shell": used_shell,
    }


def extract_coverage_percent(output: str) -> float | None:
    for line in output.splitlines():
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("coverage_percent"), (int, float)):
            return float(min(100, max(0, payload["coverage_percent"])))
    total_lines = [line for line in output.splitlines() if line.strip().startswith("TOTAL")]
    candidates = COVERAGE_PATTERN.findall(total_lines[-1] if total_lines else "")
    if not candidates:
        return None
    return min(100.0, max(0.0, float(candidates[-1])))


class CommandStageExecutor(StageExecutor):
    """Runs a shell command per stage and records test artifacts."""

    def __init__(self, config: ForemanConfig) -> None:
        self.config = config

    def command_for(self, stage: StageSpec) -> str | None:
        command = stage.config.get("command")
        if isinstance(command, str) and command.strip():
            return command
        if stage.id in TEST_STAGES:
            return self.config.project.test_command
        return None

    def _record_test_results(self, context: StageContext, result: dict[str, Any]) -> None:
        output = f"{result['stdout_tail']}\n{result['stderr_tail']}"
        failed_match = FAILED_COUNT_PATTERN.search(output)
        if result["exit_code"] == 0:
            failed_count = 0
        else:
            failed_count = int(failed_match.group(1)) if failed_match else 1
        atomic_write_json(
            context.artifacts_dir / "test-results.json",
            {
                "failed_count": failed_count,
                "exit_code": result["exit_code"],
                "command": result["command"],
                "stage": context.stage.id,
                "iteration": context.iteration,
            },
        )
        coverage = extract_coverage_percent(output)
        if coverage is not None:
            atomic_write_json(context.artifacts_dir / "coverage.json", {"pct": coverage})

    def run(self, context: StageContext) -> StageOutcome:
        command = self.command_for(context.stage)
        if command is None:
            return StageOutcome(success=True, message="no command configured")
        result = run_command(command, context.workdir, self.config.executor.timeout_seconds)
        if context.stage.id in TEST_STAGES:
            self._record_test_results(context, result)
        workspace = GitWorkspace(context.workdir)
        files = workspace.changed_files("HEAD")
        lines = workspace.lines_changed("HEAD")
        if result["exit_code"] != 0:
            raise ExternalToolFailure(
                f"{command} exited with {result['exit_code']}: "
                f"{(result['stderr_tail'] or result['stdout_tail'])[-300:]}",
                tool=command,
                exit_code=result["exit_code"],
            )
        return StageOutcome(
            success=True,
            tests_passing=context.stage.id in TEST_STAGES,
            files_modified=files,
            lines_changed=lines,
            message=f"{command} passed",
        )


class AgentStageExecutor(StageExecutor):
    """Drives an agent CLI with a stage prompt, then verifies with the test command."""

    system_prompt = (
        "You are an autonomous software delivery agent working inside a git worktree. "
        "Complete only the current pipeline stage and leave the tree in a committed state."
    )

    def __init__(
        self,
        config: ForemanConfig,
        backend: AgentBackend | None = None,
        verifier: StageExecutor | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.verifier = verifier or CommandStageExecutor(config)

    def _backend_for(self, workdir: Path) -> AgentBackend:
        if self.backend is not None:
            return self.backend
        return ClaudeCodeBackend(binary=self.config.executor.agent_binary, working_directory=workdir)

    def build_prompt(self, context: StageContext) -> str:
        lines = [
            f"Goal: {context.goal}",
            f"Stage: {context.stage.id} ({context.stage.description})",
            f"Iteration: {context.iteration}/{context.max_iterations}",
            STAGE_PROMPTS.get(context.stage.id, "Complete this stage."),
        ]
        if context.issue:
            lines.insert(1, f"Issue: #{context.issue}")
        if context.previous_error:
            lines.append(f"The previous iteration failed with:\n{context.previous_error}")
        return "\n".join(lines)

    async def _collect(self, backend: AgentBackend, context: StageContext) -> str:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(
                self.system_prompt,
                self.build_prompt(context),
                {"job_id": context.job_id, "artifacts_dir": str(context.artifacts_dir)},
                model=context.model,
            ):
                chunks.append(chunk)
            return chunks

        timeout = self.config.executor.timeout_seconds
        try:
            chunks = await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Agent run timed out after {timeout:.0f}s", tool=backend.name
            ) from exc
        return "".join(chunks).strip()

    def run(self, context: StageContext) -> StageOutcome:
        backend = self._backend_for(context.workdir)
        output = asyncio.run(self._collect(backend, context))
        logger.info(
            "agent_stage_finished",
            job_id=context.job_id,
            stage=context.stage.id,
            iteration=context.iteration,
            output_chars=len(output),
        )
        if context.stage.id in TEST_STAGES:
            outcome = self.verifier.run(context)
            outcome.message = output[-500:] or outcome.message
            return outcome
        workspace = GitWorkspace(context.workdir)
        return StageOutcome(
            success=True,
            files_modified=workspace.changed_files("HEAD"),
            lines_changed=workspace.lines_changed("HEAD"),
            message=output[-500:],
        )


class ExecutorRegistry:
    """Selects an executor per stage from ``stage.config['executor']`` or the default kind."""

    def __init__(self, config: ForemanConfig, executors: dict[str, StageExecutor] | None = None) -> None:
        self.config = config
        self.executors = executors or {
            "command": CommandStageExecutor(config),
            "agent": AgentStageExecutor(config),
        }

    def for_stage(self, stage: StageSpec) -> StageExecutor:
        kind = stage.config.get("executor") or self.config.executor.kind
        try:
            return self.executors[kind]
        except KeyError as exc:
            raise ConfigError(f"Unknown executor '{kind}' for stage '{stage.id}'") from exc
