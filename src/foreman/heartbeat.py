from __future__ import annotations

import subprocess
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import structlog

from foreman.env import Environment, parse_timestamp, pid_exists
from foreman.errors import NotFoundError, StaleWorkerError
from foreman.state.files import atomic_write_json, read_json

DEFAULT_TIMEOUT_SECONDS = 120

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Heartbeat:
    job_id: str
    pid: int
    issue: int | None
    stage: str
    iteration: int
    last_activity: str
    memory_mb: int
    cpu_pct: int
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("job_id")
        return payload

    @classmethod
    def from_dict(cls, job_id: str, data: dict[str, Any]) -> Heartbeat:
        issue = data.get("issue")
        return cls(
            job_id=job_id,
            pid=int(data.get("pid") or 0),
            issue=int(issue) if isinstance(issue, int) or str(issue).isdigit() else None,
            stage=str(data.get("stage") or ""),
            iteration=int(data.get("iteration") or 0),
            last_activity=str(data.get("last_activity") or ""),
            memory_mb=int(data.get("memory_mb") or 0),
            cpu_pct=int(data.get("cpu_pct") or 0),
            updated_at=str(data.get("updated_at") or ""),
        )


@dataclass(slots=True)
class HeartbeatStatus:
    heartbeat: Heartbeat
    age_seconds: int | None
    stale: bool
    alive: bool

    def to_dict(self) -> dict[str, Any]:
        payload = {"job_id": self.heartbeat.job_id, **self.heartbeat.to_dict()}
        payload["age_seconds"] = self.age_seconds
        payload["stale"] = self.stale
        payload["alive"] = self.alive
        return payload


def sample_process(pid: int) -> tuple[int, int]:
    """Return ``(memory_mb, cpu_pct)`` for ``pid``, zeros when unavailable."""
    try:
        proc = subprocess.run(
            ["ps", "-o", "rss=,%cpu=", "-p", str(pid)],
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        return 0, 0
    parts = proc.stdout.split()
    if proc.returncode != 0 or len(parts) < 2:
        return 0, 0
    try:
        return int(parts[0]) // 1024, int(float(parts[1]))
    except ValueError:
        return 0, 0


class HeartbeatStore:
    def __init__(
        self,
        env: Environment,
        *,
        sampler: Callable[[int], tuple[int, int]] = sample_process,
    ) -> None:
        self.env = env
        self.directory = env.paths.heartbeats_dir
        self._sampler = sampler

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def write(
        self,
        job_id: str,
        *,
        pid: int,
        issue: int | None = None,
        stage: str = "",
        iteration: int = 0,
        activity: str = "",
    ) -> Heartbeat:
        memory_mb, cpu_pct = self._sampler(pid)
        heartbeat = Heartbeat(
            job_id=job_id,
            pid=pid,
            issue=issue,
            stage=stage,
            iteration=iteration,
            last_activity=activity,
            memory_mb=memory_mb,
            cpu_pct=cpu_pct,
            updated_at=self.env.now_iso(),
        )
        atomic_write_json(self._path(job_id), heartbeat.to_dict())
        return heartbeat

    def read(self, job_id: str) -> Heartbeat:
        data = read_json(self._path(job_id))
        if not isinstance(data, dict):
            raise NotFoundError(f"Invalid heartbeat for job {job_id}")
        return Heartbeat.from_dict(job_id, data)

    def age_seconds(self, heartbeat: Heartbeat) -> int | None:
        updated = parse_timestamp(heartbeat.updated_at)
        if updated is None:
            return None
        return int((self.env.now() - updated).total_seconds())

    def check(self, job_id: str, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS) -> int:
        """Return the heartbeat age in seconds or raise when missing or stale."""
        heartbeat = self.read(job_id)
        age = self.age_seconds(heartbeat)
        if age is None:
            raise NotFoundError(f"Invalid timestamp in heartbeat for job {job_id}")
        if age > timeout_seconds:
            raise StaleWorkerError(
                f"Job {job_id} stale ({age}s ago, timeout: {timeout_seconds}s)",
                age_seconds=age,
                timeout_seconds=timeout_seconds,
            )
        return age

    def status(
        self, heartbeat: Heartbeat, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    ) -> HeartbeatStatus:
        age = self.age_seconds(heartbeat)
        stale = age is None or age > timeout_seconds
        return HeartbeatStatus(
            heartbeat=heartbeat,
            age_seconds=age,
            stale=stale,
            alive=pid_exists(heartbeat.pid) and not stale,
        )

    def list(self, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS) -> list[HeartbeatStatus]:
        if not self.directory.exists():
            return []
        statuses: list[HeartbeatStatus] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                heartbeat = self.read(path.stem)
            except NotFoundError:
                logger.warning("heartbeat_unreadable", path=str(path))
                continue
            statuses.append(self.status(heartbeat, timeout_seconds))
        return statuses

    def clear(self, job_id: str, *, missing_ok: bool = False) -> bool:
        try:
            self._path(job_id).unlink()
        except FileNotFoundError:
            if missing_ok:
                return False
            logger.warning("heartbeat_missing", job_id=job_id)
            return False
        return True

    def clear_all(self) -> int:
        if not self.directory.exists():
            return 0
        removed = 0
        for path in self.directory.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed
