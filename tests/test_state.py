import json
from pathlib import Path

import pytest

from foreman.errors import NotFoundError
from foreman.state import (
    DaemonState,
    DaemonStateStore,
    Job,
    PipelineState,
    PipelineStateStore,
    atomic_write_json,
    read_json,
    read_json_or_default,
)


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.json"

    atomic_write_json(target, {"version": 1})
    atomic_write_json(target, {"version": 2})

    assert read_json(target) == {"version": 2}
    assert [path.name for path in target.parent.iterdir()] == ["state.json"]


def test_read_json_reports_missing_and_corrupt_files(tmp_path: Path) -> None:
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json", encoding="utf-8")

    with pytest.raises(NotFoundError):
        read_json(tmp_path / "missing.json")
    with pytest.raises(NotFoundError, match="Corrupt JSON"):
        read_json(corrupt)
    assert read_json_or_default(corrupt, []) == []


def test_pipeline_state_render_and_parse_roundtrip(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path / ".foreman" / "pipeline-state.md")
    state = PipelineState(
        pipeline="standard",
        goal='Fix "login" timeout: retry twice',
        job_id="pipeline-42",
        status="running",
        issue="42",
        branch="fix/login-timeout",
        current_stage="build",
        current_stage_description="Writing code until the tests pass",
        stage_progress={"intake": "complete", "plan": "skipped", "build": "running", "pr": "pending"},
        started_at="2026-01-01T00:00:00+00:00",
    )
    state.add_log("### intake (00:00:01)")
    state.add_log("complete after 1 iteration(s)")

    store.save(state)
    loaded = store.load()

    assert loaded.goal == state.goal
    assert loaded.issue == "42"
    assert loaded.branch == "fix/login-timeout"
    assert list(loaded.stage_progress) == ["intake", "plan", "build", "pr"]
    assert loaded.stage_progress["build"] == "running"
    assert loaded.completed_stages == ["intake"]
    assert loaded.log == state.log


def test_pipeline_state_rendering_is_human_readable() -> None:
    state = PipelineState(
        pipeline="fast",
        goal="Update lodash",
        status="complete",
        stage_progress={"intake": "complete", "build": "complete"},
    )

    rendered = state.render()

    assert rendered.startswith("---\npipeline: fast\n")
    assert 'completed_stages: "intake,build"' in rendered
    assert "  build: complete" in rendered
    assert "## Log" in rendered


def test_pipeline_state_log_is_bounded() -> None:
    state = PipelineState(pipeline="fast", goal="x")

    for index in range(250):
        state.add_log(f"entry {index}")

    assert len(state.log) == 200
    assert state.log[0] == "entry 50"


def test_missing_pipeline_state_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        PipelineStateStore(tmp_path / "pipeline-state.md").load()


def test_daemon_state_store_update_persists(tmp_path: Path) -> None:
    path = tmp_path / "daemon" / "daemon-state.json"
    store = DaemonStateStore(path)

    assert store.load() == DaemonState()

    def _mutate(state: DaemonState) -> None:
        state.queued.append("17")
        state.active_jobs.append(Job(id="pipeline-9", issue_or_goal="9", status="active", pid=321))
        state.completed.append(Job(id="pipeline-3", issue_or_goal="3", status="completed"))

    store.update(_mutate)
    loaded = store.load()

    assert loaded.queued == ["17"]
    assert loaded.active_count == 1
    assert loaded.active_jobs[0].pid == 321
    assert loaded.known_refs() == {"17", "9", "3"}
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1


def test_corrupt_daemon_state_is_not_silently_reset(tmp_path: Path) -> None:
    path = tmp_path / "daemon-state.json"
    path.write_text("garbage", encoding="utf-8")

    with pytest.raises(NotFoundError):
        DaemonStateStore(path).load()
