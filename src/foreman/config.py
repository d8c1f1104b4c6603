from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from foreman.errors import ConfigError

ExecutorKind = Literal["agent", "command"]

CONFIG_FILENAME = "foreman.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    base_branch: str = "main"


@dataclass(slots=True)
class PipelineConfig:
    template: str = "standard"
    templates_dir: str = "templates/pipelines"
    branch_prefix: str = "fix/"
    branch_max_length: int = 50
    create_branch: bool = True
    default_max_iterations: int = 3
    build_max_iterations: int = 20
    human_poll_seconds: float = 5.0


@dataclass(slots=True)
class DaemonConfig:
    watch_label: str = "ready-to-build"
    poll_interval_seconds: float = 60.0
    max_concurrent_pipelines: int = 2
    max_consecutive_failures: int = 3
    completed_history: int = 200
    skip_gates: bool = True
    use_worktrees: bool = True
    worktree_dir: str = ".worktrees"


@dataclass(slots=True)
class HealthConfig:
    heartbeat_timeout_seconds: int = 120


@dataclass(slots=True)
class QualityConfig:
    coverage_threshold: int = 70
    gate_threshold: int = 70
    secret_threshold: int = 3
    audit_penalty: int = 25
    diff_base: str = ""


@dataclass(slots=True)
class WeightsConfig:
    test_pass: float = 0.30
    coverage: float = 0.20
    security: float = 0.20
    architecture: float = 0.15
    correctness: float = 0.15

    def as_dict(self) -> dict[str, float]:
        return {item.name: float(getattr(self, item.name)) for item in fields(self)}


@dataclass(slots=True)
class ExecutorConfig:
    kind: ExecutorKind = "agent"
    agent_binary: str = "claude"
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class ModelsConfig:
    default_model: str = "opus"
    fast_model: str = "sonnet"
    complex_model: str = "opus"
    complexity_threshold: int = 7


@dataclass(slots=True)
class LoggingConfig:
    level: str = "info"
    json: bool = False


SECTIONS: dict[str, type] = {
    "project": ProjectConfig,
    "pipeline": PipelineConfig,
    "daemon": DaemonConfig,
    "health": HealthConfig,
    "quality": QualityConfig,
    "weights": WeightsConfig,
    "executor": ExecutorConfig,
    "models": ModelsConfig,
    "logging": LoggingConfig,
}


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    weights: WeightsConfig = field(default_factory=WeightsConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ForemanConfig:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        sections: dict[str, Any] = {}
        for name, section_type in SECTIONS.items():
            values = data.get(name, {})
            if not isinstance(values, dict):
                raise ConfigError(f"Config section [{name}] must be a table.")
            try:
                sections[name] = section_type(**values)
            except TypeError as exc:
                raise ConfigError(f"Invalid key in config section [{name}]: {exc}") from exc
        config = cls(**sections)
        config.validate()
        return config

    def to_dict(self) -> dict[str, dict[str, Any]]:
        data: dict[str, dict[str, Any]] = {}
        for name in SECTIONS:
            section = getattr(self, name)
            data[name] = {item.name: getattr(section, item.name) for item in fields(section)}
        return data

    def validate(self) -> None:
        if self.daemon.max_concurrent_pipelines < 1:
            raise ConfigError("daemon.max_concurrent_pipelines must be at least 1.")
        if self.daemon.max_consecutive_failures < 1:
            raise ConfigError("daemon.max_consecutive_failures must be at least 1.")
        if self.daemon.poll_interval_seconds <= 0:
            raise ConfigError("daemon.poll_interval_seconds must be positive.")
        if self.health.heartbeat_timeout_seconds <= 0:
            raise ConfigError("health.heartbeat_timeout_seconds must be positive.")
        if self.pipeline.default_max_iterations < 1 or self.pipeline.build_max_iterations < 1:
            raise ConfigError("pipeline max_iterations values must be at least 1.")
        if self.pipeline.branch_max_length < 1:
            raise ConfigError("pipeline.branch_max_length must be at least 1.")
        if self.executor.kind not in {"agent", "command"}:
            raise ConfigError(f"Unsupported executor kind: {self.executor.kind}")
        weights = self.weights.as_dict()
        if any(value < 0 for value in weights.values()) or sum(weights.values()) <= 0:
            raise ConfigError("Quality weights must be non-negative and not all zero.")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    return ForemanConfig.from_dict(data)


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
