from __future__ import annotations

from typing import Any


class ForemanError(RuntimeError):
    """Base class for orchestration failures surfaced to operators."""


class ConfigError(ForemanError):
    """Raised for invalid configuration, unknown templates or unknown stage ids."""


class NotFoundError(ForemanError):
    """Raised when a checkpoint, heartbeat or state file is missing on read."""


class StaleWorkerError(ForemanError):
    """Raised when a heartbeat is older than its liveness timeout."""

    def __init__(self, message: str, *, age_seconds: int, timeout_seconds: int) -> None:
        super().__init__(message)
        self.age_seconds = age_seconds
        self.timeout_seconds = timeout_seconds


class GateFailure(ForemanError):
    """Raised when the quality gate rejects a stage."""

    def __init__(self, message: str, *, verdict: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.verdict = verdict or {}


class ExternalToolFailure(ForemanError):
    """Raised when a tool invoked by a stage exits unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code
        self.retriable = retriable


class ConcurrencyLimitError(ForemanError):
    """Raised when a job is admitted while every pipeline slot is taken."""
