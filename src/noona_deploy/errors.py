"""Exception taxonomy for the deployment engine."""

from __future__ import annotations

from typing import Any


class DeployError(Exception):
    """Base class for all deployment engine errors."""


class InvalidConfiguration(DeployError, ValueError):
    """Raised when the build scheduler is constructed with unusable capacity values."""


class InvalidJob(DeployError, TypeError):
    """Raised when a job is enqueued without a callable run function."""


class RuntimeOperationFailed(DeployError):
    """A container runtime operation failed.

    Carries the adapter operation name, the runtime status code (if any) and
    an operation-specific ``context`` mapping. ``records`` holds flattened
    progress lines from build/push/pull streams so they can be shown in log
    tails.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "unknown",
        code: int | str | None = None,
        reason: str | None = None,
        context: dict[str, Any] | None = None,
        records: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.code = code
        self.reason = reason
        self.context = context or {}
        self.records = records or []


class HealthCheckTimeout(RuntimeOperationFailed):
    """The health endpoint never reported healthy before the deadline."""

    def __init__(self, message: str, *, attempts: int, remediation: str, **kwargs: Any) -> None:
        super().__init__(message, operation=kwargs.pop("operation", "waitForHealth"), **kwargs)
        self.attempts = attempts
        self.remediation = remediation


class PartialRemovalFailure(DeployError):
    """Some targeted resources could not be removed."""

    def __init__(self, summary: Any, message: str = "Some resources could not be removed.") -> None:
        super().__init__(message)
        self.summary = summary


class UnsupportedService(DeployError):
    """Start was requested for a service other than the orchestrator."""

    def __init__(self, service: str) -> None:
        super().__init__(f"Start is not supported for service '{service}'")
        self.service = service


class ConfirmationRequired(DeployError):
    """A destructive operation was invoked without explicit confirmation."""
