from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from foreman.errors import ConfigError

GatePolicy = Literal["auto", "manual"]

STAGE_DESCRIPTIONS: dict[str, str] = {
    "intake": "Fetching issue details and setting up the workspace",
    "plan": "Creating an implementation plan",
    "design": "Drafting the technical design",
    "build": "Writing code until the tests pass",
    "test": "Running the test suite",
    "review": "Reviewing the change for quality and security",
    "compound_quality": "Running adversarial and negative quality checks",
    "pr": "Opening a pull request",
    "merge": "Merging the pull request",
    "deploy": "Deploying the change",
    "validate": "Validating the deployment",
    "monitor": "Monitoring post-deploy health",
}
KNOWN_STAGES = tuple(STAGE_DESCRIPTIONS)


@dataclass(frozen=True, slots=True)
class StageSpec:
    id: str
    enabled: bool = True
    gate: GatePolicy = "auto"
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        return STAGE_DESCRIPTIONS.get(self.id, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "enabled": self.enabled, "gate": self.gate, "config": dict(self.config)}


@dataclass(frozen=True, slots=True)
class PipelineTemplate:
    name: str
    stages: tuple[StageSpec, ...]
    description: str = ""

    @property
    def enabled_stages(self) -> list[StageSpec]:
        return [stage for stage in self.stages if stage.enabled]

    def stage(self, stage_id: str) -> StageSpec:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise ConfigError(f"Unknown stage '{stage_id}' in template '{self.name}'")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "stages": [stage.to_dict() for stage in self.stages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineTemplate:
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError("Pipeline template is missing a name.")
        raw_stages = data.get("stages")
        if not isinstance(raw_stages, list) or not raw_stages:
            raise ConfigError(f"Pipeline template '{name}' has no stages.")
        stages: list[StageSpec] = []
        seen: set[str] = set()
        for raw in raw_stages:
            if not isinstance(raw, dict):
                raise ConfigError(f"Pipeline template '{name}' has a malformed stage entry.")
            stage_id = raw.get("id")
            if stage_id not in STAGE_DESCRIPTIONS:
                raise ConfigError(f"Unknown stage '{stage_id}' in template '{name}'")
            if stage_id in seen:
                raise ConfigError(f"Duplicate stage '{stage_id}' in template '{name}'")
            gate = raw.get("gate", "auto")
            if gate not in {"auto", "manual"}:
                raise ConfigError(f"Invalid gate '{gate}' for stage '{stage_id}'")
            config = raw.get("config") or {}
            if not isinstance(config, dict):
                raise ConfigError(f"Stage '{stage_id}' config must be an object.")
            seen.add(stage_id)
            stages.append(
                StageSpec(id=stage_id, enabled=bool(raw.get("enabled", True)), gate=gate, config=config)
            )
        return cls(name=name, stages=tuple(stages), description=str(data.get("description", "")))


def _stages(*entries: tuple[str, bool, GatePolicy, dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {"id": stage_id, "enabled": enabled, "gate": gate, "config": config}
        for stage_id, enabled, gate, config in entries
    ]


BUILTIN_TEMPLATES: dict[str, dict[str, Any]] = {
    "fast": {
        "name": "fast",
        "description": "Quick fixes with no manual gates",
        "stages": _stages(
            ("intake", True, "auto", {}),
            ("build", True, "auto", {"max_iterations": 10, "completion_check": True}),
            ("test", True, "auto", {}),
            ("pr", True, "auto", {}),
        ),
    },
    "standard": {
        "name": "standard",
        "description": "Plan, build, test and review with an approval before the PR",
        "stages": _stages(
            ("intake", True, "auto", {}),
            ("plan", True, "auto", {}),
            ("build", True, "auto", {"completion_check": True}),
            ("test", True, "auto", {}),
            ("review", True, "auto", {"quality_gate": True}),
            ("pr", True, "manual", {}),
        ),
    },
    "full": {
        "name": "full",
        "description": "Every stage through deployment and monitoring",
        "stages": _stages(
            ("intake", True, "auto", {}),
            ("plan", True, "auto", {}),
            ("design", True, "manual", {}),
            ("build", True, "auto", {"completion_check": True}),
            ("test", True, "auto", {}),
            ("review", True, "auto", {}),
            ("compound_quality", True, "auto", {"quality_gate": True}),
            ("pr", True, "manual", {}),
            ("merge", True, "manual", {}),
            ("deploy", True, "manual", {}),
            ("validate", True, "auto", {}),
            ("monitor", True, "auto", {}),
        ),
    },
    "hotfix": {
        "name": "hotfix",
        "description": "Minimal path for urgent production fixes",
        "stages": _stages(
            ("intake", True, "auto", {}),
            ("plan", False, "auto", {}),
            ("build", True, "auto", {"max_iterations": 5}),
            ("test", True, "auto", {}),
            ("pr", True, "auto", {}),
            ("merge", True, "manual", {}),
        ),
    },
    "autonomous": {
        "name": "autonomous",
        "description": "Daemon-driven runs with automatic gates",
        "stages": _stages(
            ("intake", True, "auto", {}),
            ("plan", True, "auto", {}),
            ("build", True, "auto", {"completion_check": True}),
            ("test", True, "auto", {}),
            ("review", True, "auto", {"quality_gate": True}),
            ("pr", True, "auto", {}),
        ),
    },
}


def template_search_paths(name: str, project_dir: Path, user_dir: Path) -> list[Path]:
    return [project_dir / f"{name}.json", user_dir / f"{name}.json"]


def load_template(name: str, *, project_dir: Path, user_dir: Path) -> PipelineTemplate:
    for path in template_search_paths(name, project_dir, user_dir):
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid pipeline template {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid pipeline template {path}: expected an object")
        data.setdefault("name", name)
        return PipelineTemplate.from_dict(data)
    if name in BUILTIN_TEMPLATES:
        return PipelineTemplate.from_dict(BUILTIN_TEMPLATES[name])
    raise ConfigError(f"Pipeline template not found: {name}")


def available_templates(project_dir: Path, user_dir: Path) -> list[str]:
    names = set(BUILTIN_TEMPLATES)
    for directory in (project_dir, user_dir):
        if directory.is_dir():
            names.update(path.stem for path in directory.glob("*.json"))
    return sorted(names)
