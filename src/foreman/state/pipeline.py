from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from foreman.errors import NotFoundError
from foreman.state.files import atomic_write_text

StageStatus = Literal["pending", "running", "complete", "failed", "skipped"]
PipelineStatus = Literal["pending", "running", "paused", "complete", "failed", "interrupted"]

QUOTED_KEYS = ("goal", "issue", "branch", "current_stage_description", "stage_progress", "completed_stages")
MAX_LOG_ENTRIES = 200


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _unquote(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith('"'):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return raw.strip('"')
        return str(value)
    return raw


@dataclass(slots=True)
class PipelineState:
    pipeline: str
    goal: str
    job_id: str = ""
    status: PipelineStatus = "pending"
    issue: str = ""
    branch: str = ""
    current_stage: str = ""
    current_stage_description: str = ""
    stage_progress: dict[str, StageStatus] = field(default_factory=dict)
    started_at: str = ""
    updated_at: str = ""
    log: list[str] = field(default_factory=list)

    @property
    def completed_stages(self) -> list[str]:
        return [stage for stage, status in self.stage_progress.items() if status == "complete"]

    def add_log(self, entry: str) -> None:
        self.log.append(entry)
        self.log = self.log[-MAX_LOG_ENTRIES:]

    def render(self) -> str:
        progress = " ".join(f"{stage}:{status}" for stage, status in self.stage_progress.items())
        lines = [
            "---",
            f"pipeline: {self.pipeline}",
            f"goal: {_quote(self.goal)}",
            f"job_id: {self.job_id}",
            f"status: {self.status}",
            f"issue: {_quote(self.issue)}",
            f"branch: {_quote(self.branch)}",
            f"current_stage: {self.current_stage}",
            f"current_stage_description: {_quote(self.current_stage_description)}",
            f"stage_progress: {_quote(progress)}",
            f"completed_stages: {_quote(','.join(self.completed_stages))}",
            f"started_at: {self.started_at}",
            f"updated_at: {self.updated_at}",
            "stages:",
        ]
        lines.extend(f"  {stage}: {status}" for stage, status in self.stage_progress.items())
        lines.extend(["---", "", "## Log"])
        lines.extend(self.log)
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, text: str) -> PipelineState:
        lines = text.splitlines()
        if not lines or lines[0].strip() != "---":
            raise NotFoundError("Pipeline state is missing its front matter.")
        values: dict[str, str] = {}
        stages: dict[str, StageStatus] = {}
        index = 1
        in_stages = False
        while index < len(lines) and lines[index].strip() != "---":
            line = lines[index]
            index += 1
            if in_stages and line.startswith("  ") and ":" in line:
                stage, status = line.strip().split(":", maxsplit=1)
                stages[stage.strip()] = status.strip()  # type: ignore[assignment]
                continue
            in_stages = False
            if ":" not in line:
                continue
            key, raw = line.split(":", maxsplit=1)
            key = key.strip()
            if key == "stages":
                in_stages = True
                continue
            values[key] = _unquote(raw) if key in QUOTED_KEYS else raw.strip()

        if not stages and values.get("stage_progress"):
            for pair in values["stage_progress"].split():
                stage, _, status = pair.partition(":")
                stages[stage] = status  # type: ignore[assignment]

        log_lines: list[str] = []
        remainder = lines[index + 1 :]
        if "## Log" in remainder:
            log_lines = [line for line in remainder[remainder.index("## Log") + 1 :] if line]

        return cls(
            pipeline=values.get("pipeline", ""),
            goal=values.get("goal", ""),
            job_id=values.get("job_id", ""),
            status=values.get("status", "pending"),  # type: ignore[arg-type]
            issue=values.get("issue", ""),
            branch=values.get("branch", ""),
            current_stage=values.get("current_stage", ""),
            current_stage_description=values.get("current_stage_description", ""),
            stage_progress=stages,
            started_at=values.get("started_at", ""),
            updated_at=values.get("updated_at", ""),
            log=log_lines,
        )


class PipelineStateStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> PipelineState:
        if not self.path.exists():
            raise NotFoundError(f"No pipeline state at {self.path}")
        return PipelineState.parse(self.path.read_text(encoding="utf-8"))

    def save(self, state: PipelineState) -> None:
        atomic_write_text(self.path, state.render())
