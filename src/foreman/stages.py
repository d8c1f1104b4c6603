from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from foreman.advisor import ConfiguredAdvisor, IssueAnalysis, ModelAdvisor
from foreman.branches import branch_name, unique_slug
from foreman.checkpoint import CheckpointStore
from foreman.config import ForemanConfig
from foreman.env import Environment
from foreman.errors import ConfigError, ExternalToolFailure, ForemanError, GateFailure, NotFoundError
from foreman.executors import ExecutorRegistry, StageContext, StageOutcome
from foreman.heartbeat import HeartbeatStore
from foreman.quality import QualityGate
from foreman.state.files import atomic_write_json, atomic_write_text, read_json_or_default
from foreman.state.pipeline import PipelineState, PipelineStateStore, StageStatus
from foreman.templates import PipelineTemplate, StageSpec
from foreman.workspace import GitWorkspace

MAX_ITERATION_RECORDS = 200

logger = structlog.get_logger(__name__)

Reporter = Callable[[str], None]


class StageFailed(ForemanError):
    """Raised when a stage exhausts its iterations or hits a non-retriable error."""


def job_id_for(issue: str | None, goal: str) -> str:
    if issue:
        return f"pipeline-{issue}"
    return f"pipeline-{unique_slug(goal, 30) or 'task'}"


@dataclass(slots=True)
class RunRequest:
    goal: str
    template: PipelineTemplate
    issue: str = ""
    job_id: str = ""
    completed_stages: list[str] = field(default_factory=list)
    skip_gates: bool = False
    resume: bool = False
    branch: str | None = None
    budget: float | None = None


@dataclass(slots=True)
class DryRunPlan:
    template: str
    job_id: str
    branch: str
    stages: list[StageSpec]
    total_stages: int

    def render(self) -> str:
        gates = sum(1 for stage in self.stages if stage.gate == "manual")
        lines = [
            f"Pipeline: {self.template}",
            f"Job: {self.job_id}",
            f"Branch: {self.branch}",
            f"Stages: {len(self.stages)} enabled of {self.total_stages} ({gates} manual gate(s))",
        ]
        for position, stage in enumerate(self.stages, start=1):
            lines.append(f"  {position}. {stage.id:<18} {stage.gate:<7} {stage.description}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "template": self.template,
            "job_id": self.job_id,
            "branch": self.branch,
            "stages": [stage.id for stage in self.stages],
        }


@dataclass(slots=True)
class RunResult:
    job_id: str
    status: str
    branch: str
    stage_progress: dict[str, StageStatus]
    failed_stage: str | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "complete"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StageMachine:
    """Runs one job's enabled stages in template order."""

    def __init__(
        self,
        env: Environment,
        config: ForemanConfig,
        *,
        executors: ExecutorRegistry | None = None,
        advisor: ModelAdvisor | None = None,
        heartbeats: HeartbeatStore | None = None,
        checkpoints: CheckpointStore | None = None,
        quality: QualityGate | None = None,
        workspace: GitWorkspace | None = None,
        reporter: Reporter | None = None,
        pid: int | None = None,
    ) -> None:
        self.env = env
        self.config = config
        self.paths = env.paths
        self.workspace = workspace or GitWorkspace(env.paths.project_root)
        self.executors = executors or ExecutorRegistry(config)
        self.advisor = advisor or ConfiguredAdvisor(config.models, config.pipeline)
        self.heartbeats = heartbeats or HeartbeatStore(env)
        self.checkpoints = checkpoints or CheckpointStore(env, self.workspace)
        self.quality = quality or QualityGate(
            env,
            config.quality,
            config.weights,
            workspace=self.workspace,
            base_branch=config.project.base_branch,
        )
        self.state_store = PipelineStateStore(env.paths.pipeline_state_file)
        self.reporter = reporter or (lambda message: None)
        self.pid = pid if pid is not None else os.getpid()

    def plan(self, request: RunRequest) -> DryRunPlan:
        return DryRunPlan(
            template=request.template.name,
            job_id=request.job_id or job_id_for(request.issue, request.goal),
            branch=self._branch_for(request),
            stages=request.template.enabled_stages,
            total_stages=len(request.template.stages),
        )

    def _branch_for(self, request: RunRequest) -> str:
        if request.branch:
            return request.branch
        return branch_name(
            request.goal,
            prefix=self.config.pipeline.branch_prefix,
            max_length=self.config.pipeline.branch_max_length,
        )

    def _resolve_completed(self, request: RunRequest, enabled: list[StageSpec]) -> set[str]:
        enabled_ids = [stage.id for stage in enabled]
        completed = {item.strip() for item in request.completed_stages if item.strip()}
        unknown = sorted(completed - set(enabled_ids))
        if unknown:
            raise ConfigError(f"Unknown completed stage(s): {', '.join(unknown)}")
        if not request.resume:
            return completed
        if self.state_store.exists():
            try:
                previous = self.state_store.load()
            except NotFoundError:
                previous = None
            if previous is not None and previous.pipeline == request.template.name:
                completed.update(s for s in previous.completed_stages if s in enabled_ids)
        latest = self.checkpoints.latest()
        if latest is not None and latest.stage in enabled_ids:
            completed.update(enabled_ids[: enabled_ids.index(latest.stage)])
        return completed

    def _save(self, state: PipelineState) -> None:
        state.updated_at = self.env.now_iso()
        self.state_store.save(state)

    def _log(self, state: PipelineState, stage: str, message: str) -> None:
        state.add_log(f"### {stage} ({self.env.now().strftime('%H:%M:%S')})")
        state.add_log(message)
        self.reporter(f"[{stage}] {message}")

    def _set_stage(self, state: PipelineState, stage: StageSpec, status: StageStatus) -> None:
        state.stage_progress[stage.id] = status
        state.current_stage = stage.id
        state.current_stage_description = stage.description
        self._save(state)

    def _consume_skip_marker(self, stage_id: str) -> bool:
        marker = self.paths.skip_stage_marker
        if not marker.exists():
            return False
        entries = [line.strip() for line in marker.read_text(encoding="utf-8").splitlines()]
        if stage_id not in entries:
            return False
        entries.remove(stage_id)
        remaining = [entry for entry in entries if entry]
        if remaining:
            atomic_write_text(marker, "\n".join(remaining) + "\n")
        else:
            marker.unlink(missing_ok=True)
        return True

    def _wait_for_operator(self, state: PipelineState, stage: StageSpec, request: RunRequest) -> None:
        marker = self.paths.human_message_marker
        if not marker.exists():
            return
        message = marker.read_text(encoding="utf-8").strip()
        previous_status = state.status
        state.status = "paused"
        self._log(state, stage.id, f"Waiting for operator: {message}")
        self._save(state)
        logger.warning("waiting_for_operator", job_id=state.job_id, stage=stage.id)
        while marker.exists():
            self.heartbeats.write(
                state.job_id,
                pid=self.pid,
                issue=_issue_number(request.issue),
                stage=stage.id,
                iteration=0,
                activity="waiting for operator",
            )
            self.env.sleep(self.config.pipeline.human_poll_seconds)
        state.status = previous_status
        self._save(state)

    def _await_approval(self, state: PipelineState, stage: StageSpec, request: RunRequest) -> None:
        atomic_write_text(
            self.paths.human_message_marker,
            f"Stage '{stage.id}' of {state.job_id} awaits approval. "
            "Delete this file to continue.\n",
        )
        self._wait_for_operator(state, stage, request)

    def _max_iterations(self, stage: StageSpec, request: RunRequest) -> int:
        configured = stage.config.get("max_iterations")
        if isinstance(configured, int) and configured > 0:
            return configured
        if stage.id == "build":
            return self.advisor.estimate_iterations(IssueAnalysis(goal=request.goal))
        return self.config.pipeline.default_max_iterations

    def _record_iteration(self, stage: StageSpec, iteration: int, outcome: StageOutcome) -> None:
        history = read_json_or_default(self.paths.iterations_file, [])
        if not isinstance(history, list):
            history = []
        history.append(
            {
                "stage": stage.id,
                "iteration": iteration,
                "lines_changed": outcome.lines_changed,
                "tests_passing": outcome.tests_passing,
                "at": self.env.now_iso(),
            }
        )
        atomic_write_json(self.paths.iterations_file, history[-MAX_ITERATION_RECORDS:])

    def _starting_iteration(self, state: PipelineState, stage: StageSpec, max_iterations: int) -> int:
        try:
            checkpoint = self.checkpoints.restore(stage.id)
        except NotFoundError:
            return 1
        start = min(max_iterations, checkpoint.iteration + 1)
        self._log(
            state,
            stage.id,
            f"Resuming from checkpoint at iteration {checkpoint.iteration} "
            f"(tests passing: {str(checkpoint.tests_passing).lower()})",
        )
        return start

    def _run_stage(self, state: PipelineState, stage: StageSpec, request: RunRequest) -> None:
        executor = self.executors.for_stage(stage)
        max_iterations = self._max_iterations(stage, request)
        start = self._starting_iteration(state, stage, max_iterations)
        complexity = IssueAnalysis(goal=request.goal).complexity
        recommendation = self.advisor.recommend_model(stage.id, complexity, request.budget)
        previous_error = ""
        for iteration in range(start, max_iterations + 1):
            self.heartbeats.write(
                state.job_id,
                pid=self.pid,
                issue=_issue_number(request.issue),
                stage=stage.id,
                iteration=iteration,
                activity=f"{stage.id} iteration {iteration}/{max_iterations}",
            )
            context = StageContext(
                job_id=state.job_id,
                stage=stage,
                iteration=iteration,
                max_iterations=max_iterations,
                goal=request.goal,
                workdir=self.paths.project_root,
                artifacts_dir=self.paths.artifacts_dir,
                issue=request.issue,
                model=recommendation.model,
                previous_error=previous_error,
            )
            logger.info(
                "stage_iteration",
                job_id=state.job_id,
                stage=stage.id,
                iteration=iteration,
                model=recommendation.model,
            )
            try:
                outcome = executor.run(context)
            except ExternalToolFailure as exc:
                previous_error = str(exc)
                failed = StageOutcome(
                    success=False, lines_changed=self.workspace.lines_changed("HEAD")
                )
                self._record_iteration(stage, iteration, failed)
                self.checkpoints.save(stage.id, iteration=iteration, loop_state=previous_error[:200])
                logger.warning(
                    "stage_iteration_failed", stage=stage.id, iteration=iteration, error=previous_error
                )
                if not exc.retriable:
                    raise StageFailed(f"Stage {stage.id} failed: {exc}") from exc
                if stage.config.get("completion_check"):
                    verdict = self.quality.completion()
                    if verdict.decision == "escalate":
                        raise StageFailed(f"Stage {stage.id} escalated: {verdict.reasoning}") from exc
                continue

            self._record_iteration(stage, iteration, outcome)
            self.checkpoints.save(
                stage.id,
                iteration=iteration,
                tests_passing=outcome.tests_passing,
                files_modified=outcome.files_modified,
                loop_state=outcome.message[:200],
            )
            success = outcome.success
            if stage.config.get("completion_check"):
                verdict = self.quality.completion()
                if verdict.decision == "complete":
                    success = True
                elif verdict.decision == "continue" and iteration < max_iterations:
                    previous_error = verdict.reasoning
                    continue
            if not success:
                previous_error = outcome.message
                continue
            if stage.config.get("quality_gate") and not request.skip_gates:
                gate = self.quality.gate()
                if not gate.passed:
                    raise GateFailure(
                        f"Quality gate failed for stage {stage.id}: "
                        f"score {gate.score.overall_score} (threshold {gate.score.threshold})",
                        verdict=gate.to_dict(),
                    )
            self._log(state, stage.id, f"complete after {iteration} iteration(s)")
            return

        raise StageFailed(
            f"Stage {stage.id} failed after {max_iterations} iteration(s)"
            + (f": {previous_error}" if previous_error else "")
        )

    def _cleanup(self, job_id: str) -> None:
        self.checkpoints.clear_all()
        self.paths.skip_stage_marker.unlink(missing_ok=True)
        self.paths.human_message_marker.unlink(missing_ok=True)
        self.heartbeats.clear(job_id, missing_ok=True)

    def run(self, request: RunRequest) -> RunResult:
        template = request.template
        enabled = template.enabled_stages
        if not enabled:
            raise ConfigError(f"Template '{template.name}' has no enabled stages.")
        if not request.goal.strip():
            raise ConfigError("Goal is required")
        completed = self._resolve_completed(request, enabled)
        job_id = request.job_id or job_id_for(request.issue, request.goal)
        branch = self._branch_for(request)
        now = self.env.now_iso()
        state = PipelineState(
            pipeline=template.name,
            goal=request.goal,
            job_id=job_id,
            status="running",
            issue=request.issue,
            branch=branch,
            stage_progress={
                stage.id: "complete" if stage.id in completed else "pending" for stage in enabled
            },
            started_at=now,
        )
        if not request.resume:
            self.checkpoints.clear_all()
            atomic_write_json(self.paths.iterations_file, [])
        self._save(state)
        logger.info("pipeline_started", job_id=job_id, template=template.name, branch=branch)

        try:
            if self.config.pipeline.create_branch and self.workspace.git_enabled:
                self.workspace.ensure_branch(branch)
            for stage in enabled:
                if state.stage_progress[stage.id] == "complete":
                    continue
                if self._consume_skip_marker(stage.id):
                    self._set_stage(state, stage, "skipped")
                    self._log(state, stage.id, "skipped by operator marker")
                    self._save(state)
                    continue
                self._wait_for_operator(state, stage, request)
                self._set_stage(state, stage, "running")
                try:
                    self._run_stage(state, stage, request)
                    if stage.gate == "manual" and not request.skip_gates:
                        self._await_approval(state, stage, request)
                except (StageFailed, GateFailure, ConfigError, ExternalToolFailure) as exc:
                    return self._fail(state, stage, exc)
                self.checkpoints.clear(stage.id)
                self._set_stage(state, stage, "complete")
        except ExternalToolFailure as exc:
            return self._fail(state, None, exc)
        except KeyboardInterrupt:
            state.status = "interrupted"
            self._save(state)
            raise

        state.status = "complete"
        self._save(state)
        self._cleanup(job_id)
        logger.info("pipeline_complete", job_id=job_id)
        return RunResult(
            job_id=job_id,
            status="complete",
            branch=branch,
            stage_progress=dict(state.stage_progress),
            message=f"{len(enabled)} stage(s) processed",
        )

    def _fail(
        self, state: PipelineState, stage: StageSpec | None, exc: Exception
    ) -> RunResult:
        if stage is not None:
            state.stage_progress[stage.id] = "failed"
            self._log(state, stage.id, f"failed: {exc}")
        state.status = "failed"
        self._save(state)
        self.heartbeats.clear(state.job_id, missing_ok=True)
        logger.error(
            "pipeline_failed",
            job_id=state.job_id,
            stage=stage.id if stage else None,
            error=str(exc),
        )
        return RunResult(
            job_id=state.job_id,
            status="failed",
            branch=state.branch,
            stage_progress=dict(state.stage_progress),
            failed_stage=stage.id if stage else None,
            message=str(exc),
        )

    def status(self) -> PipelineState:
        return self.state_store.load()


def _issue_number(issue: str) -> int | None:
    return int(issue) if issue.isdigit() else None
