from foreman.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from foreman.backends.claude import ClaudeCodeBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
]
