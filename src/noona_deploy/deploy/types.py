"""Deployment domain types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from noona_deploy.infrastructure.config import (
    DEFAULT_BOOT_MODE,
    DEFAULT_DEBUG_LEVEL,
    DEFAULT_SUBPROCESSES_PER_WORKER,
    DEFAULT_WORKER_THREADS,
)
from noona_deploy.runtime.results import RemovalSummary
from noona_deploy.scheduling.types import JobResult

DebugLevel = Literal["false", "true", "super"]
BootMode = Literal["minimal", "super"]
LifecycleStatus = Literal["success", "failed", "partial", "cancelled"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BuildSchedulerSettings(_CamelModel):
    worker_threads: int = Field(default=DEFAULT_WORKER_THREADS, ge=1)
    subprocesses_per_worker: int = Field(default=DEFAULT_SUBPROCESSES_PER_WORKER, ge=1)


class DeployDefaults(_CamelModel):
    debug_level: DebugLevel = DEFAULT_DEBUG_LEVEL
    boot_mode: BootMode = DEFAULT_BOOT_MODE


class DeploymentSettings(_CamelModel):
    build_scheduler: BuildSchedulerSettings = Field(default_factory=BuildSchedulerSettings)
    defaults: DeployDefaults = Field(default_factory=DeployDefaults)
    host_docker_socket_override: str | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class LifecycleEvent(BaseModel):
    action: str
    service: str | None = None
    status: LifecycleStatus
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class ContainerSnapshot(_CamelModel):
    id: str
    name: str
    image: str | None = None
    state: str
    status: str
    ports: str
    created_at: str | None = None


@dataclass
class DebugSettings:
    boot_mode: str
    debug_level: str
    requested_debug: str

    def to_dict(self) -> dict[str, str]:
        return {"bootMode": self.boot_mode, "debugLevel": self.debug_level, "requestedDebug": self.requested_debug}


@dataclass
class ServiceOutcome:
    service: str
    ok: bool
    data: Any = None
    error: Any = None


def batch_status(oks: list[bool]) -> LifecycleStatus:
    if oks and all(oks):
        return "success"
    if any(oks):
        return "partial"
    return "failed"


@dataclass
class BatchResult:
    """Per-service outcomes of a verb that loops over services."""

    ok: bool
    results: list[ServiceOutcome] = field(default_factory=list)

    @property
    def status(self) -> LifecycleStatus:
        return batch_status([r.ok for r in self.results])


@dataclass
class BuildResult:
    ok: bool
    summary: list[JobResult] = field(default_factory=list)


@dataclass
class StopResult:
    ok: bool
    rows: list[dict[str, str]] = field(default_factory=list)


@dataclass
class DeleteResult:
    ok: bool
    cancelled: bool = False
    summary: RemovalSummary | None = None
    error: Any = None


@dataclass
class ServiceListing:
    ok: bool
    services: list[str]
    containers: list[ContainerSnapshot] | None = None
    history: list[LifecycleEvent] | None = None
    errors: list[dict[str, str]] = field(default_factory=list)
