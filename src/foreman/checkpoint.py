from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import structlog

from foreman.env import Environment
from foreman.errors import NotFoundError
from foreman.state.files import atomic_write_json, read_json
from foreman.workspace import GitWorkspace

CHECKPOINT_SUFFIX = "-checkpoint.json"

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Checkpoint:
    stage: str
    iteration: int
    tests_passing: bool
    files_modified: list[str] = field(default_factory=list)
    git_sha: str = "unknown"
    loop_state: str = ""
    saved_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        files = data.get("files_modified") or []
        return cls(
            stage=str(data.get("stage") or ""),
            iteration=int(data.get("iteration") or 0),
            tests_passing=data.get("tests_passing") is True,
            files_modified=[str(item) for item in files] if isinstance(files, list) else [],
            git_sha=str(data.get("git_sha") or "unknown"),
            loop_state=str(data.get("loop_state") or ""),
            saved_at=str(data.get("saved_at") or ""),
        )


class CheckpointStore:
    """Per-stage resumable snapshots kept under the job's artifacts directory."""

    def __init__(self, env: Environment, workspace: GitWorkspace | None = None) -> None:
        self.env = env
        self.directory = env.paths.checkpoints_dir
        self.workspace = workspace or GitWorkspace(env.paths.project_root)

    def _path(self, stage: str) -> Path:
        return self.directory / f"{stage}{CHECKPOINT_SUFFIX}"

    def save(
        self,
        stage: str,
        *,
        iteration: int,
        tests_passing: bool = False,
        files_modified: list[str] | None = None,
        git_sha: str | None = None,
        loop_state: str = "",
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            stage=stage,
            iteration=iteration,
            tests_passing=tests_passing,
            files_modified=list(files_modified or []),
            git_sha=git_sha or self.workspace.current_sha(),
            loop_state=loop_state,
            saved_at=self.env.now_iso(),
        )
        atomic_write_json(self._path(stage), checkpoint.to_dict())
        logger.info("checkpoint_saved", stage=stage, iteration=iteration)
        return checkpoint

    def restore(self, stage: str) -> Checkpoint:
        path = self._path(stage)
        if not path.exists():
            raise NotFoundError(f"No checkpoint found for stage: {stage}")
        data = read_json(path)
        if not isinstance(data, dict):
            raise NotFoundError(f"Corrupt checkpoint for stage: {stage}")
        return Checkpoint.from_dict(data)

    def list(self) -> list[Checkpoint]:
        if not self.directory.exists():
            return []
        checkpoints: list[Checkpoint] = []
        for path in sorted(self.directory.glob(f"*{CHECKPOINT_SUFFIX}")):
            stage = path.name[: -len(CHECKPOINT_SUFFIX)]
            try:
                checkpoints.append(self.restore(stage))
            except NotFoundError:
                logger.warning("checkpoint_unreadable", path=str(path))
        return checkpoints

    def latest(self) -> Checkpoint | None:
        checkpoints = self.list()
        if not checkpoints:
            return None
        return max(checkpoints, key=lambda item: item.saved_at)

    def clear(self, stage: str) -> bool:
        try:
            self._path(stage).unlink()
        except FileNotFoundError:
            return False
        return True

    def clear_all(self) -> int:
        if not self.directory.exists():
            return 0
        removed = 0
        for path in self.directory.glob(f"*{CHECKPOINT_SUFFIX}"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed
