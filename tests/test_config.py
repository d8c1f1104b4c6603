import tomllib
from pathlib import Path

import pytest

from foreman import __version__
from foreman.config import ForemanConfig, dumps_toml, load_config, save_config
from foreman.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.project.name = "foreman-test"
    config.project.test_command = "python -m pytest -q"
    config.pipeline.template = "fast"
    config.pipeline.branch_prefix = "auto"
    config.daemon.max_concurrent_pipelines = 4
    config.daemon.poll_interval_seconds = 15.0
    config.health.heartbeat_timeout_seconds = 300
    config.quality.coverage_threshold = 85
    config.weights.security = 0.25
    config.executor.kind = "command"
    config.logging.json = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "foreman-test"
    assert loaded.project.test_command == "python -m pytest -q"
    assert loaded.pipeline.template == "fast"
    assert loaded.pipeline.branch_prefix == "auto"
    assert loaded.daemon.max_concurrent_pipelines == 4
    assert loaded.daemon.poll_interval_seconds == 15.0
    assert loaded.health.heartbeat_timeout_seconds == 300
    assert loaded.quality.coverage_threshold == 85
    assert loaded.weights.security == 0.25
    assert loaded.executor.kind == "command"
    assert loaded.logging.json is True
    assert loaded.daemon.max_consecutive_failures == 3


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == ForemanConfig.default()
    assert loaded.health.heartbeat_timeout_seconds == 120
    assert loaded.daemon.max_concurrent_pipelines == 2


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ForemanConfig.default())

    for section in ("project", "pipeline", "daemon", "health", "quality", "weights", "executor"):
        assert f"[{section}]" in rendered
    assert "max_concurrent_pipelines = 2" in rendered
    assert "poll_interval_seconds = 60.0" in rendered
    assert "test_pass = 0.3" in rendered
    assert 'watch_label = "ready-to-build"' in rendered


def test_unknown_section_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text("[bogus]\nvalue = 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown config section"):
        load_config(config_path)


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text("[daemon]\nmax_pipelines = 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match=r"\[daemon\]"):
        load_config(config_path)


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ConfigError, match="max_concurrent_pipelines"):
        ForemanConfig.from_dict({"daemon": {"max_concurrent_pipelines": 0}})
    with pytest.raises(ConfigError, match="executor kind"):
        ForemanConfig.from_dict({"executor": {"kind": "robot"}})
    with pytest.raises(ConfigError, match="weights"):
        ForemanConfig.from_dict({"weights": {"test_pass": -1.0}})


def test_malformed_toml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text("[daemon\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid config file"):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
