from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from foreman.errors import NotFoundError
from foreman.state.files import atomic_write_json, read_json

JobStatus = Literal["queued", "active", "completed"]
JobResult = Literal["success", "failure"]

SCHEMA_VERSION = 1


@dataclass(slots=True)
class Job:
    id: str
    issue_or_goal: str
    status: JobStatus = "queued"
    worktree_path: str = ""
    pid: int | None = None
    started_at: str = ""
    result: JobResult | None = None
    duration: int | None = None
    title: str = ""
    log_path: str = ""
    finished_at: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass(slots=True)
class DaemonState:
    active_jobs: list[Job] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    completed: list[Job] = field(default_factory=list)
    titles: dict[str, str] = field(default_factory=dict)
    started_at: str = ""
    last_poll: str = ""
    pid: int | None = None
    consecutive_failures: int = 0
    paused: bool = False
    pause_reason: str = ""

    @property
    def active_count(self) -> int:
        return len(self.active_jobs)

    def known_refs(self) -> set[str]:
        refs = set(self.queued)
        refs.update(job.issue_or_goal for job in self.active_jobs)
        refs.update(job.issue_or_goal for job in self.completed)
        return refs

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "pid": self.pid,
            "started_at": self.started_at,
            "last_poll": self.last_poll,
            "active_jobs": [job.to_dict() for job in self.active_jobs],
            "queued": list(self.queued),
            "completed": [job.to_dict() for job in self.completed],
            "titles": dict(self.titles),
            "consecutive_failures": self.consecutive_failures,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DaemonState:
        return cls(
            active_jobs=[Job.from_dict(item) for item in data.get("active_jobs", [])],
            queued=[str(item) for item in data.get("queued", [])],
            completed=[Job.from_dict(item) for item in data.get("completed", [])],
            titles={str(key): str(value) for key, value in (data.get("titles") or {}).items()},
            started_at=str(data.get("started_at") or ""),
            last_poll=str(data.get("last_poll") or ""),
            pid=data.get("pid"),
            consecutive_failures=int(data.get("consecutive_failures") or 0),
            paused=data.get("paused") is True,
            pause_reason=str(data.get("pause_reason") or ""),
        )


class DaemonStateStore:
    """Single-writer store; every mutation is a read-modify-write with atomic replace."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> DaemonState:
        try:
            data = read_json(self.path)
        except NotFoundError:
            if self.path.exists():
                raise
            return DaemonState()
        if not isinstance(data, dict):
            raise NotFoundError(f"Invalid daemon state in {self.path}")
        return DaemonState.from_dict(data)

    def save(self, state: DaemonState) -> None:
        atomic_write_json(self.path, state.to_dict())

    def update(self, mutate: Callable[[DaemonState], Any]) -> DaemonState:
        state = self.load()
        mutate(state)
        self.save(state)
        return state
