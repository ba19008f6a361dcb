"""Build scheduling types."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Union

ReportEntry = Union[str, dict[str, Any], None]
Report = Callable[[ReportEntry], None]
JobFn = Callable[[Report], Union[Awaitable[Any], Any]]


@dataclass
class Job:
    id: str
    run: JobFn
    future: asyncio.Future[Any]


@dataclass(frozen=True)
class JobResult:
    id: str
    status: Literal["fulfilled", "rejected"]
    logs: tuple[str, ...]
    started_at: float
    finished_at: float
    duration_ms: int
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"
