from __future__ import annotations

import os
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

HOME_ENV_VAR = "FOREMAN_HOME"
COMPLETION_MARKER = "Pipeline complete:"
FAILURE_MARKER = "Pipeline failed:"

Clock = Callable[[], datetime]
Sleeper = Callable[[float], None]


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def isoformat(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


def parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def pid_exists(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def default_home() -> Path:
    configured = os.environ.get(HOME_ENV_VAR)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".foreman"


@dataclass(slots=True)
class Paths:
    project_root: Path
    home: Path

    @property
    def state_dir(self) -> Path:
        return self.project_root / ".foreman"

    @property
    def pipeline_state_file(self) -> Path:
        return self.state_dir / "pipeline-state.md"

    @property
    def artifacts_dir(self) -> Path:
        return self.state_dir / "pipeline-artifacts"

    @property
    def checkpoints_dir(self) -> Path:
        return self.artifacts_dir / "checkpoints"

    @property
    def skip_stage_marker(self) -> Path:
        return self.artifacts_dir / "skip-stage.txt"

    @property
    def human_message_marker(self) -> Path:
        return self.artifacts_dir / "human-message.txt"

    @property
    def iterations_file(self) -> Path:
        return self.artifacts_dir / "iterations.json"

    @property
    def heartbeats_dir(self) -> Path:
        return self.home / "heartbeats"

    @property
    def user_templates_dir(self) -> Path:
        return self.home / "pipelines"

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def daemon_state_file(self) -> Path:
        return self.daemon_dir / "daemon-state.json"

    @property
    def daemon_logs_dir(self) -> Path:
        return self.daemon_dir / "logs"

    @property
    def shutdown_flag(self) -> Path:
        return self.daemon_dir / "shutdown.flag"

    def with_project_root(self, project_root: Path) -> Paths:
        return Paths(project_root=project_root, home=self.home)


class Spawner(ABC):
    @abstractmethod
    def spawn(
        self,
        argv: list[str],
        *,
        cwd: Path,
        log_path: Path,
        env: dict[str, str] | None = None,
    ) -> int:
        """Start a detached process and return its pid."""

    @abstractmethod
    def poll(self, pid: int, log_path: Path | None = None) -> int | None:
        """Return the exit code of ``pid`` or ``None`` while it is still running."""


class ProcessSpawner(Spawner):
    """Spawns executor processes with ``subprocess.Popen``."""

    def __init__(self) -> None:
        self._processes: dict[int, subprocess.Popen[bytes]] = {}

    def spawn(
        self,
        argv: list[str],
        *,
        cwd: Path,
        log_path: Path,
        env: dict[str, str] | None = None,
    ) -> int:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        merged_env = os.environ.copy()
        if env:
            merged_env.update(env)
        with log_path.open("ab") as log_handle:
            process = subprocess.Popen(
                argv,
                cwd=cwd,
                env=merged_env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self._processes[process.pid] = process
        return process.pid

    def poll(self, pid: int, log_path: Path | None = None) -> int | None:
        process = self._processes.get(pid)
        if process is not None:
            code = process.poll()
            if code is not None:
                self._processes.pop(pid, None)
            return code
        if pid_exists(pid):
            return None
        return self._exit_code_from_log(log_path)

    @staticmethod
    def _exit_code_from_log(log_path: Path | None) -> int:
        # Processes started by an earlier daemon cannot be waited on.
        if log_path is None or not log_path.exists():
            return 1
        tail = log_path.read_text(encoding="utf-8", errors="replace")[-4000:]
        if COMPLETION_MARKER in tail and FAILURE_MARKER not in tail.split(COMPLETION_MARKER)[-1]:
            return 0
        return 1


@dataclass(slots=True)
class Environment:
    paths: Paths
    clock: Clock = utcnow
    sleep: Sleeper = time.sleep
    spawner: Spawner = field(default_factory=ProcessSpawner)

    @classmethod
    def default(cls, project_root: Path, home: Path | None = None) -> Environment:
        return cls(
            paths=Paths(project_root=project_root.resolve(), home=home or default_home())
        )

    def now(self) -> datetime:
        return self.clock()

    def now_iso(self) -> str:
        return isoformat(self.clock())
