from __future__ import annotations

import json
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from foreman.branches import unique_slug
from foreman.checkpoint import CheckpointStore
from foreman.config import ForemanConfig
from foreman.env import HOME_ENV_VAR, Environment, parse_timestamp
from foreman.errors import ConcurrencyLimitError, ConfigError, ExternalToolFailure, NotFoundError
from foreman.heartbeat import HeartbeatStore
from foreman.stages import job_id_for
from foreman.state.daemon import DaemonState, DaemonStateStore, Job
from foreman.workspace import GitWorkspace

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)


class WorkSource(ABC):
    @abstractmethod
    def fetch(self) -> list[WorkItem]:
        """Return items currently eligible for a pipeline run."""


class StaticWorkSource(WorkSource):
    def __init__(self, items: list[WorkItem] | None = None) -> None:
        self.items = list(items or [])

    def fetch(self) -> list[WorkItem]:
        return list(self.items)


class GhIssueSource(WorkSource):
    """Open issues carrying the watch label, fetched through the ``gh`` CLI."""

    def __init__(self, label: str, repo_root: Path, limit: int = 100) -> None:
        self.label = label
        self.repo_root = repo_root
        self.limit = limit

    def fetch(self) -> list[WorkItem]:
        command = [
            "gh", "issue", "list",
            "--label", self.label,
            "--state", "open",
            "--json", "number,title,body,labels",
            "--limit", str(self.limit),
        ]
        try:
            proc = subprocess.run(command, cwd=self.repo_root, text=True, capture_output=True)
        except FileNotFoundError as exc:
            raise ExternalToolFailure("gh CLI not found", tool="gh", retriable=False) from exc
        if proc.returncode != 0:
            raise ExternalToolFailure(
                proc.stderr.strip() or "gh issue list failed", tool="gh", exit_code=proc.returncode
            )
        try:
            payload = json.loads(proc.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ExternalToolFailure(f"Unexpected gh output: {exc}", tool="gh") from exc
        return [
            WorkItem(
                id=str(item["number"]),
                title=str(item.get("title") or ""),
                body=str(item.get("body") or ""),
                labels=[str(label.get("name")) for label in item.get("labels") or []],
            )
            for item in payload
            if isinstance(item, dict) and "number" in item
        ]


@dataclass(slots=True)
class CycleReport:
    polled: list[str] = field(default_factory=list)
    admitted: list[str] = field(default_factory=list)
    reaped: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    paused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "polled": list(self.polled),
            "admitted": list(self.admitted),
            "reaped": list(self.reaped),
            "stale": list(self.stale),
            "paused": self.paused,
        }


class Scheduler:
    """Polls for work and keeps at most ``max_concurrent_pipelines`` executors running."""

    def __init__(
        self,
        env: Environment,
        config: ForemanConfig,
        work_source: WorkSource,
        *,
        config_path: Path | None = None,
        heartbeats: HeartbeatStore | None = None,
        python: str = sys.executable,
    ) -> None:
        self.env = env
        self.config = config
        self.work_source = work_source
        self.config_path = config_path
        self.heartbeats = heartbeats or HeartbeatStore(env)
        self.python = python
        self.store = DaemonStateStore(env.paths.daemon_state_file)
        self.workspace = GitWorkspace(env.paths.project_root)

    @property
    def max_concurrent(self) -> int:
        return self.config.daemon.max_concurrent_pipelines

    def load(self) -> DaemonState:
        return self.store.load()

    def start(self, pid: int) -> DaemonState:
        def _mark(state: DaemonState) -> None:
            state.pid = pid
            state.started_at = self.env.now_iso()

        self.env.paths.shutdown_flag.unlink(missing_ok=True)
        return self.store.update(_mark)

    def poll(self) -> list[str]:
        try:
            items = self.work_source.fetch()
        except ExternalToolFailure as exc:
            logger.warning("poll_failed", error=str(exc))
            return []
        added: list[str] = []

        def _merge(state: DaemonState) -> None:
            known = state.known_refs()
            for item in items:
                if item.id in known or item.id in added:
                    continue
                state.queued.append(item.id)
                state.titles[item.id] = item.title
                added.append(item.id)
            state.last_poll = self.env.now_iso()

        self.store.update(_merge)
        if added:
            logger.info("work_queued", refs=added)
        return added

    def enqueue(self, ref: str | None = None, *, goal: str | None = None) -> str:
        if not ref and not goal:
            raise ConfigError("Goal is required")
        item_ref = ref or f"goal-{unique_slug(goal or '', 40)}"

        def _add(state: DaemonState) -> None:
            if item_ref in state.queued:
                raise ConfigError(f"{item_ref} is already queued")
            if any(job.issue_or_goal == item_ref for job in state.active_jobs):
                raise ConfigError(f"{item_ref} is already running")
            state.queued.append(item_ref)
            state.titles[item_ref] = goal or state.titles.get(item_ref, f"Issue #{item_ref}")

        self.store.update(_add)
        return item_ref

    def _claim_slot(self, state: DaemonState) -> None:
        if state.active_count >= self.max_concurrent:
            raise ConcurrencyLimitError(
                f"All {self.max_concurrent} pipeline slot(s) are in use."
            )

    def _prepare_worktree(self, ref: str) -> tuple[Path, str | None]:
        root = self.env.paths.project_root
        if not (self.config.daemon.use_worktrees and self.workspace.git_enabled):
            return root, None
        slug = unique_slug(ref, 40) or "job"
        path = root / self.config.daemon.worktree_dir / f"daemon-{slug}"
        branch = f"daemon/{slug}"
        self.workspace.add_worktree(path, branch, self.config.project.base_branch)
        return path, branch

    def build_command(self, job: Job, branch: str | None) -> list[str]:
        argv = [self.python, "-m", "foreman", "--project-root", job.worktree_path]
        if self.config_path is not None:
            argv.extend(["--config", str(self.config_path)])
        argv.extend(["start", "--pipeline", self.config.pipeline.template, "--job-id", job.id])
        if job.issue_or_goal.isdigit():
            argv.extend(["--issue", job.issue_or_goal])
        argv.extend(["--goal", job.title or job.issue_or_goal])
        if branch:
            argv.extend(["--branch", branch])
        if self.config.daemon.skip_gates:
            argv.append("--skip-gates")
        return argv

    def spawn(self, job: Job, branch: str | None = None) -> int:
        log_path = self.env.paths.daemon_logs_dir / f"{job.id}.log"
        job.log_path = str(log_path)
        return self.env.spawner.spawn(
            self.build_command(job, branch),
            cwd=Path(job.worktree_path),
            log_path=log_path,
            env={HOME_ENV_VAR: str(self.env.paths.home)},
        )

    def _start_job(self, state: DaemonState, ref: str) -> Job:
        self._claim_slot(state)
        title = state.titles.get(ref, "")
        issue = ref if ref.isdigit() else None
        job = Job(
            id=job_id_for(issue, title or ref),
            issue_or_goal=ref,
            status="active",
            started_at=self.env.now_iso(),
            title=title,
        )
        try:
            worktree, branch = self._prepare_worktree(ref)
            job.worktree_path = str(worktree)
            job.pid = self.spawn(job, branch)
        except (OSError, ExternalToolFailure) as exc:
            job.status = "completed"
            job.result = "failure"
            job.duration = 0
            job.finished_at = self.env.now_iso()
            job.error = f"spawn failed: {exc}"
            self._record_completion(state, job)
            logger.error("spawn_failed", job_id=job.id, error=str(exc))
            return job
        state.active_jobs.append(job)
        logger.info("job_spawned", job_id=job.id, pid=job.pid, worktree=job.worktree_path)
        return job

    def admit(self) -> list[Job]:
        admitted: list[Job] = []

        def _admit(state: DaemonState) -> None:
            if state.paused:
                return
            while state.active_count < self.max_concurrent and state.queued and not state.paused:
                ref = state.queued.pop(0)
                if any(job.issue_or_goal == ref for job in state.active_jobs):
                    continue
                admitted.append(self._start_job(state, ref))

        self.store.update(_admit)
        return admitted

    def _record_completion(self, state: DaemonState, job: Job) -> None:
        state.completed.append(job)
        state.completed = state.completed[-self.config.daemon.completed_history :]
        if job.result == "success":
            state.consecutive_failures = 0
            return
        state.consecutive_failures += 1
        if state.consecutive_failures >= self.config.daemon.max_consecutive_failures:
            state.paused = True
            state.pause_reason = (
                f"{state.consecutive_failures} consecutive failures; "
                "run 'foreman daemon resume' to continue"
            )
            logger.error("circuit_open", consecutive_failures=state.consecutive_failures)

    def _cleanup_job(self, job: Job) -> None:
        self.heartbeats.clear(job.id, missing_ok=True)
        if job.result == "success" and job.worktree_path:
            worktree_env = Environment(
                paths=self.env.paths.with_project_root(Path(job.worktree_path)),
                clock=self.env.clock,
                sleep=self.env.sleep,
                spawner=self.env.spawner,
            )
            CheckpointStore(worktree_env).clear_all()

    def reap(self) -> list[Job]:
        reaped: list[Job] = []

        def _reap(state: DaemonState) -> None:
            still_active: list[Job] = []
            for job in state.active_jobs:
                log_path = Path(job.log_path) if job.log_path else None
                code = self.env.spawner.poll(job.pid or 0, log_path)
                if code is None:
                    still_active.append(job)
                    continue
                started = parse_timestamp(job.started_at)
                now = self.env.now()
                job.status = "completed"
                job.result = "success" if code == 0 else "failure"
                job.duration = int((now - started).total_seconds()) if started else None
                job.finished_at = self.env.now_iso()
                if code != 0:
                    job.error = f"exit code {code}"
                self._cleanup_job(job)
                self._record_completion(state, job)
                reaped.append(job)
                logger.info(
                    "job_reaped", job_id=job.id, result=job.result, duration=job.duration
                )
            state.active_jobs = still_active

        self.store.update(_reap)
        return reaped

    def stale_jobs(self, state: DaemonState | None = None) -> list[str]:
        state = state or self.load()
        timeout = self.config.health.heartbeat_timeout_seconds
        stale: list[str] = []
        for job in state.active_jobs:
            try:
                heartbeat = self.heartbeats.read(job.id)
            except NotFoundError:
                started = parse_timestamp(job.started_at)
                if started and (self.env.now() - started).total_seconds() > timeout:
                    stale.append(job.id)
                continue
            if self.heartbeats.status(heartbeat, timeout).stale:
                stale.append(job.id)
        for job_id in stale:
            logger.warning("stale_worker", job_id=job_id, timeout_seconds=timeout)
        return stale

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        report.polled = self.poll()
        report.admitted = [job.id for job in self.admit()]
        report.reaped = [job.id for job in self.reap()]
        state = self.load()
        report.stale = self.stale_jobs(state)
        report.paused = state.paused
        return report

    def shutdown_requested(self) -> bool:
        return self.env.paths.shutdown_flag.exists()

    def request_shutdown(self) -> None:
        flag = self.env.paths.shutdown_flag
        flag.parent.mkdir(parents=True, exist_ok=True)
        flag.write_text(self.env.now_iso() + "\n", encoding="utf-8")

    def run_forever(self, max_cycles: int | None = None) -> int:
        cycles = 0
        while not self.shutdown_requested():
            report = self.run_cycle()
            cycles += 1
            logger.info("cycle_complete", cycle=cycles, **report.to_dict())
            if max_cycles is not None and cycles >= max_cycles:
                break
            waited = 0.0
            while waited < self.config.daemon.poll_interval_seconds:
                if self.shutdown_requested():
                    break
                step = min(1.0, self.config.daemon.poll_interval_seconds - waited)
                self.env.sleep(step)
                waited += step
        self.env.paths.shutdown_flag.unlink(missing_ok=True)
        return cycles

    def pause(self, reason: str = "paused by operator") -> DaemonState:
        def _pause(state: DaemonState) -> None:
            state.paused = True
            state.pause_reason = reason

        return self.store.update(_pause)

    def resume(self) -> DaemonState:
        def _resume(state: DaemonState) -> None:
            state.paused = False
            state.pause_reason = ""
            state.consecutive_failures = 0

        return self.store.update(_resume)

    def status(self) -> dict[str, Any]:
        state = self.load()
        stale = set(self.stale_jobs(state))
        payload = state.to_dict()
        payload["active_count"] = state.active_count
        payload["max_concurrent_pipelines"] = self.max_concurrent
        for job in payload["active_jobs"]:
            job["stale"] = job["id"] in stale
        return payload
