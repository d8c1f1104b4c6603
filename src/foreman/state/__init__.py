from foreman.state.daemon import DaemonState, DaemonStateStore, Job
from foreman.state.files import atomic_write_json, atomic_write_text, read_json, read_json_or_default
from foreman.state.pipeline import PipelineState, PipelineStateStore

__all__ = [
    "DaemonState",
    "DaemonStateStore",
    "Job",
    "PipelineState",
    "PipelineStateStore",
    "atomic_write_json",
    "atomic_write_text",
    "read_json",
    "read_json_or_default",
]
