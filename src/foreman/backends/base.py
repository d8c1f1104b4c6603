from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from foreman.errors import ExternalToolFailure


class BackendExecutionError(ExternalToolFailure):
    """Raised when an agent backend process fails."""


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent run exceeds the configured timeout."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Run an agent and stream textual chunks."""
