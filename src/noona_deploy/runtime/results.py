"""Normalized result envelopes returned by every runtime adapter call."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

from noona_deploy.errors import HealthCheckTimeout, RuntimeOperationFailed


@dataclass
class OperationError:
    operation: str
    message: str
    code: int | str | None = None
    reason: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    details: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "operation": self.operation,
            "message": self.message,
            "code": self.code,
            "reason": self.reason,
            "context": {k: v for k, v in self.context.items() if _is_plain(v)},
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass
class OperationResult:
    ok: bool
    data: Any = None
    error: OperationError | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def success(cls, data: Any = None, warnings: list[str] | None = None) -> OperationResult:
        return cls(ok=True, data=data, warnings=list(warnings or []))

    @classmethod
    def failure(cls, operation: str, error: BaseException, context: dict[str, Any] | None = None) -> OperationResult:
        return cls(ok=False, error=normalize_error(operation, error, context))

    def raise_for_error(self) -> None:
        """Raise the taxonomy exception matching a failed result."""
        if self.ok or self.error is None:
            return
        err = self.error
        records = err.context.get("records") or []
        if err.operation == "waitForHealth":
            raise HealthCheckTimeout(
                err.message,
                attempts=int(err.context.get("attempts", 0)),
                remediation=str(err.context.get("remediation", "")),
                code=err.code,
                reason=err.reason,
                context=err.context,
                records=records,
            )
        raise RuntimeOperationFailed(
            err.message,
            operation=err.operation,
            code=err.code,
            reason=err.reason,
            context=err.context,
            records=records,
        )


@dataclass
class RemovalError:
    operation: str
    target: str
    message: str
    code: int | str | None = None


@dataclass
class RemovalSummary:
    containers: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    volumes: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    errors: list[RemovalError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def removed_count(self) -> int:
        return len(self.containers) + len(self.images) + len(self.volumes) + len(self.networks)

    def record_error(self, operation: str, target: str, error: BaseException) -> None:
        normalized = normalize_error(operation, error)
        self.errors.append(RemovalError(operation, target, normalized.message, normalized.code))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _is_plain(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool, list, dict))


def normalize_error(operation: str, error: BaseException, context: dict[str, Any] | None = None) -> OperationError:
    """Flatten any exception into an OperationError."""
    context = dict(context or {})
    code: int | str | None = None
    reason: str | None = None
    message = ""

    if isinstance(error, RuntimeOperationFailed):
        message = error.message
        code = error.code
        reason = error.reason
        for key, value in error.context.items():
            context.setdefault(key, value)
        if error.records:
            context.setdefault("records", list(error.records))
    elif isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        reason = error.response.reason_phrase
        message = str(error)
    elif isinstance(error, OSError):
        code = error.errno
        message = error.strerror or str(error)
    else:
        message = str(error)

    return OperationError(
        operation=operation,
        message=message or type(error).__name__ or "Unknown error",
        code=code,
        reason=reason,
        context=context,
    )
