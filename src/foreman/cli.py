from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from foreman.checkpoint import CheckpointStore
from foreman.config import CONFIG_FILENAME, ForemanConfig, load_config, save_config
from foreman.env import Environment
from foreman.errors import ForemanError, NotFoundError, StaleWorkerError
from foreman.heartbeat import HeartbeatStore
from foreman.log import configure_logging
from foreman.quality import QualityGate
from foreman.scheduler import GhIssueSource, Scheduler
from foreman.stages import RunRequest, StageMachine
from foreman.templates import available_templates, load_template

T = TypeVar("T")


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: ForemanConfig
    env: Environment

    @property
    def templates_dir(self) -> Path:
        return self.project_root / self.config.pipeline.templates_dir


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load_runtime(project_root: Path, config_value: str) -> Runtime:
    project_root = project_root.resolve()
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging.level, config.logging.json)
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        env=Environment.default(project_root),
    )


def _runtime(ctx: click.Context) -> Runtime:
    root = ctx.find_root()
    if not isinstance(root.obj, Runtime):
        params = root.params
        root.obj = _load_runtime(
            Path(params.get("project_root") or "."), params.get("config_value") or CONFIG_FILENAME
        )
    return root.obj


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@click.group()
@click.option(
    "--project-root",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def cli(project_root: Path, config_value: str) -> None:
    """Foreman pipeline orchestration CLI."""


@cli.command("init")
@click.pass_context
def init_command(ctx: click.Context) -> None:
    runtime = _runtime(ctx)
    save_config(runtime.config_path, runtime.config)
    runtime.env.paths.artifacts_dir.mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized Foreman in {runtime.project_root}")
    click.echo(f"Config: {runtime.config_path}")


@cli.command("start")
@click.option("--issue", default=None)
@click.option("--goal", default=None)
@click.option("--pipeline", "template_name", default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--skip-gates", is_flag=True, default=False)
@click.option("--completed-stages", default=None)
@click.option("--resume", is_flag=True, default=False)
@click.option("--job-id", default=None)
@click.option("--branch", default=None)
@click.pass_context
def start_command(
    ctx: click.Context,
    issue: str | None,
    goal: str | None,
    template_name: str | None,
    dry_run: bool,
    skip_gates: bool,
    completed_stages: str | None,
    resume: bool,
    job_id: str | None,
    branch: str | None,
) -> None:
    if not (goal and goal.strip()) and not issue:
        raise click.ClickException("Goal is required (pass --goal or --issue)")
    runtime = _runtime(ctx)
    try:
        template = load_template(
            template_name or runtime.config.pipeline.template,
            project_dir=runtime.templates_dir,
            user_dir=runtime.env.paths.user_templates_dir,
        )
        request = RunRequest(
            goal=(goal or f"Issue #{issue}").strip(),
            template=template,
            issue=issue or "",
            job_id=job_id or "",
            completed_stages=_split_csv(completed_stages),
            skip_gates=skip_gates,
            resume=resume,
            branch=branch,
        )
        machine = StageMachine(runtime.env, runtime.config, reporter=click.echo)
        if dry_run:
            click.echo(machine.plan(request).render())
            return
        result = machine.run(request)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc

    if not result.succeeded:
        raise click.ClickException(
            f"Pipeline failed: {result.job_id} at stage {result.failed_stage}: {result.message}"
        )
    click.echo(f"Pipeline complete: {result.job_id} ({result.branch})")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def status_command(ctx: click.Context, as_json: bool) -> None:
    runtime = _runtime(ctx)
    machine = StageMachine(runtime.env, runtime.config)
    try:
        state = machine.status()
    except NotFoundError as exc:
        raise click.ClickException("No pipeline state found") from exc
    if as_json:
        _echo_json(
            {
                "pipeline": state.pipeline,
                "goal": state.goal,
                "job_id": state.job_id,
                "status": state.status,
                "current_stage": state.current_stage,
                "current_stage_description": state.current_stage_description,
                "stage_progress": dict(state.stage_progress),
                "completed_stages": state.completed_stages,
                "branch": state.branch,
                "updated_at": state.updated_at,
            }
        )
        return
    click.echo(f"Pipeline: {state.pipeline} ({state.status})")
    click.echo(f"Goal: {state.goal}")
    if state.branch:
        click.echo(f"Branch: {state.branch}")
    if state.current_stage:
        click.echo(f"Current stage: {state.current_stage} - {state.current_stage_description}")
    for stage, status in state.stage_progress.items():
        click.echo(f"  {stage:<18} {status}")


@cli.command("templates")
@click.option("--show", "show_name", default=None)
@click.pass_context
def templates_command(ctx: click.Context, show_name: str | None) -> None:
    runtime = _runtime(ctx)
    user_dir = runtime.env.paths.user_templates_dir
    if show_name:
        try:
            template = load_template(show_name, project_dir=runtime.templates_dir, user_dir=user_dir)
        except ForemanError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json(template.to_dict())
        return
    for name in available_templates(runtime.templates_dir, user_dir):
        click.echo(name)


@cli.group("heartbeat")
def heartbeat_group() -> None:
    """Per-job liveness records."""


@heartbeat_group.command("write")
@click.argument("job_id")
@click.option("--pid", type=int, default=None)
@click.option("--issue", type=int, default=None)
@click.option("--stage", default="")
@click.option("--iteration", type=int, default=0)
@click.option("--activity", default="")
@click.pass_context
def heartbeat_write_command(
    ctx: click.Context,
    job_id: str,
    pid: int | None,
    issue: int | None,
    stage: str,
    iteration: int,
    activity: str,
) -> None:
    store = HeartbeatStore(_runtime(ctx).env)
    store.write(
        job_id,
        pid=pid if pid is not None else os.getppid(),
        issue=issue,
        stage=stage,
        iteration=iteration,
        activity=activity,
    )


@heartbeat_group.command("check")
@click.argument("job_id")
@click.option("--timeout", "timeout_seconds", type=int, default=None)
@click.pass_context
def heartbeat_check_command(ctx: click.Context, job_id: str, timeout_seconds: int | None) -> None:
    runtime = _runtime(ctx)
    timeout = timeout_seconds
    if timeout is None:
        timeout = runtime.config.health.heartbeat_timeout_seconds
    try:
        age = HeartbeatStore(runtime.env).check(job_id, timeout)
    except NotFoundError as exc:
        raise click.ClickException(f"No heartbeat found for job {job_id}") from exc
    except StaleWorkerError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Job {job_id} alive ({age}s ago)")


@heartbeat_group.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def heartbeat_list_command(ctx: click.Context, as_json: bool) -> None:
    runtime = _runtime(ctx)
    statuses = HeartbeatStore(runtime.env).list(runtime.config.health.heartbeat_timeout_seconds)
    if as_json:
        _echo_json([status.to_dict() for status in statuses])
        return
    if not statuses:
        click.echo("No active heartbeats")
        return
    for status in statuses:
        beat = status.heartbeat
        flag = "" if status.alive else "  [STALE]" if status.stale else "  [DEAD]"
        click.echo(
            f"{beat.job_id:<28} {beat.stage or '-':<12} iter {beat.iteration:<3} "
            f"pid {beat.pid:<7} {status.age_seconds if status.age_seconds is not None else '?'}s ago"
            f"{flag}"
        )


@heartbeat_group.command("clear")
@click.argument("job_id", required=False)
@click.option("--all", "clear_all", is_flag=True, default=False)
@click.pass_context
def heartbeat_clear_command(ctx: click.Context, job_id: str | None, clear_all: bool) -> None:
    store = HeartbeatStore(_runtime(ctx).env)
    if clear_all:
        click.echo(f"Cleared {store.clear_all()} heartbeat(s)")
        return
    if not job_id:
        raise click.ClickException("Job id is required (or pass --all)")
    if store.clear(job_id):
        click.echo(f"Cleared heartbeat for {job_id}")
    else:
        click.echo(f"Warning: no heartbeat found for {job_id}")


@cli.group("checkpoint")
def checkpoint_group() -> None:
    """Per-stage resumable snapshots."""


@checkpoint_group.command("save")
@click.option("--stage", required=True)
@click.option("--iteration", type=int, default=0)
@click.option("--tests-passing", is_flag=True, default=False)
@click.option("--files-modified", default="")
@click.option("--sha", "git_sha", default=None)
@click.option("--loop-state", default="")
@click.pass_context
def checkpoint_save_command(
    ctx: click.Context,
    stage: str,
    iteration: int,
    tests_passing: bool,
    files_modified: str,
    git_sha: str | None,
    loop_state: str,
) -> None:
    checkpoint = CheckpointStore(_runtime(ctx).env).save(
        stage,
        iteration=iteration,
        tests_passing=tests_passing,
        files_modified=_split_csv(files_modified),
        git_sha=git_sha,
        loop_state=loop_state,
    )
    click.echo(f"Checkpoint saved for stage {checkpoint.stage} (iteration {checkpoint.iteration})")


@checkpoint_group.command("restore")
@click.option("--stage", required=True)
@click.pass_context
def checkpoint_restore_command(ctx: click.Context, stage: str) -> None:
    try:
        checkpoint = CheckpointStore(_runtime(ctx).env).restore(stage)
    except NotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(checkpoint.to_dict())


@checkpoint_group.command("list")
@click.pass_context
def checkpoint_list_command(ctx: click.Context) -> None:
    checkpoints = CheckpointStore(_runtime(ctx).env).list()
    if not checkpoints:
        click.echo("No checkpoints found")
        return
    for checkpoint in checkpoints:
        click.echo(
            f"{checkpoint.stage:<18} iter {checkpoint.iteration:<3} "
            f"tests {'pass' if checkpoint.tests_passing else 'fail'}  "
            f"{checkpoint.git_sha[:7]}  {checkpoint.saved_at}"
        )


@checkpoint_group.command("clear")
@click.option("--stage", default=None)
@click.option("--all", "clear_all", is_flag=True, default=False)
@click.pass_context
def checkpoint_clear_command(ctx: click.Context, stage: str | None, clear_all: bool) -> None:
    store = CheckpointStore(_runtime(ctx).env)
    if clear_all:
        click.echo(f"Cleared {store.clear_all()} checkpoint(s)")
        return
    if not stage:
        raise click.ClickException("Stage is required (or pass --all)")
    if store.clear(stage):
        click.echo(f"Cleared checkpoint for stage {stage}")
    else:
        click.echo(f"Warning: no checkpoint found for stage {stage}")


def _quality_gate(ctx: click.Context) -> QualityGate:
    runtime = _runtime(ctx)
    return QualityGate(
        runtime.env,
        runtime.config.quality,
        runtime.config.weights,
        base_branch=runtime.config.project.base_branch,
    )


def _run_quality(ctx: click.Context, action: Callable[[QualityGate], T]) -> T:
    try:
        return action(_quality_gate(ctx))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.group("quality")
def quality_group() -> None:
    """Quality validation, audit and scoring."""


@quality_group.command("validate")
@click.pass_context
def quality_validate_command(ctx: click.Context) -> None:
    result = _run_quality(ctx, QualityGate.validate)
    _echo_json(result.to_dict())
    if not result.passed:
        ctx.exit(1)


@quality_group.command("audit")
@click.pass_context
def quality_audit_command(ctx: click.Context) -> None:
    _echo_json(_run_quality(ctx, QualityGate.audit).to_dict())


@quality_group.command("completion")
@click.pass_context
def quality_completion_command(ctx: click.Context) -> None:
    _echo_json(_run_quality(ctx, QualityGate.completion).to_dict())


@quality_group.command("score")
@click.pass_context
def quality_score_command(ctx: click.Context) -> None:
    _echo_json(_run_quality(ctx, QualityGate.score).to_dict())


@quality_group.command("gate")
@click.pass_context
def quality_gate_command(ctx: click.Context) -> None:
    verdict = _run_quality(ctx, QualityGate.gate)
    _echo_json(verdict.to_dict())
    if not verdict.passed:
        ctx.exit(1)


@quality_group.command("report")
@click.pass_context
def quality_report_command(ctx: click.Context) -> None:
    paths = _run_quality(ctx, QualityGate.report)
    click.echo(f"Report: {paths['markdown']}")
    click.echo(f"JSON: {paths['json']}")


def _scheduler(ctx: click.Context) -> Scheduler:
    runtime = _runtime(ctx)
    source = GhIssueSource(runtime.config.daemon.watch_label, runtime.project_root)
    config_path = runtime.config_path if runtime.config_path.exists() else None
    return Scheduler(runtime.env, runtime.config, source, config_path=config_path)


@cli.group("daemon")
def daemon_group() -> None:
    """Issue-driven scheduler loop."""


@daemon_group.command("start")
@click.option("--max-cycles", type=int, default=None)
@click.pass_context
def daemon_start_command(ctx: click.Context, max_cycles: int | None) -> None:
    scheduler = _scheduler(ctx)
    try:
        scheduler.start(os.getpid())
        cycles = scheduler.run_forever(max_cycles=max_cycles)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Daemon stopped after {cycles} cycle(s)")


@daemon_group.command("once")
@click.pass_context
def daemon_once_command(ctx: click.Context) -> None:
    try:
        report = _scheduler(ctx).run_cycle()
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(report.to_dict())


@daemon_group.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def daemon_status_command(ctx: click.Context, as_json: bool) -> None:
    try:
        payload = _scheduler(ctx).status()
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        _echo_json(payload)
        return
    click.echo(
        f"Active: {payload['active_count']}/{payload['max_concurrent_pipelines']}  "
        f"Queued: {len(payload['queued'])}  Completed: {len(payload['completed'])}"
    )
    if payload["paused"]:
        click.echo(f"PAUSED: {payload['pause_reason']}")
    for job in payload["active_jobs"]:
        flag = "  [STALE]" if job["stale"] else ""
        click.echo(f"  {job['id']:<28} pid {job['pid']}  since {job['started_at']}{flag}")


@daemon_group.command("enqueue")
@click.argument("ref", required=False)
@click.option("--goal", default=None)
@click.pass_context
def daemon_enqueue_command(ctx: click.Context, ref: str | None, goal: str | None) -> None:
    try:
        item_ref = _scheduler(ctx).enqueue(ref, goal=goal)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Queued {item_ref}")


@daemon_group.command("pause")
@click.option("--reason", default="paused by operator")
@click.pass_context
def daemon_pause_command(ctx: click.Context, reason: str) -> None:
    _scheduler(ctx).pause(reason)
    click.echo("Daemon admission paused.")


@daemon_group.command("resume")
@click.pass_context
def daemon_resume_command(ctx: click.Context) -> None:
    _scheduler(ctx).resume()
    click.echo("Daemon admission resumed.")


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    _scheduler(ctx).request_shutdown()
    click.echo("Shutdown requested.")
