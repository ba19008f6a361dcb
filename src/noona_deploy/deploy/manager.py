"""DeployManager — user-facing deployment verbs over the runtime adapter and build queue."""

from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from noona_deploy.deploy.container_options import (
    build_container_row,
    create_container_options,
    format_ports,
    removal_rows,
)
from noona_deploy.deploy.history import LifecycleHistory
from noona_deploy.deploy.settings import SettingsStore
from noona_deploy.deploy.types import (
    BatchResult,
    BuildResult,
    ContainerSnapshot,
    DebugSettings,
    DeleteResult,
    DeploymentSettings,
    ServiceListing,
    ServiceOutcome,
    StopResult,
    batch_status,
)
from noona_deploy.errors import (
    ConfirmationRequired,
    PartialRemovalFailure,
    RuntimeOperationFailed,
    UnsupportedService,
)
from noona_deploy.infrastructure.config import (
    BUILD_LOG_TAIL_LINES,
    DEFAULT_BOOT_MODE,
    DEFAULT_DEBUG_LEVEL,
    FAILED_START_LOG_LINES,
    HEALTH_INTERVAL_S,
    HEALTH_TIMEOUT_S,
    HEAVY_SERVICE,
    LOG_BUFFER_LINES,
    NAME_PREFIX,
    NETWORK_NAME,
    ORCHESTRATOR_SERVICE,
    PROJECT_ROOT,
    REGISTRY_NAMESPACE,
    SERVICES,
    SUPER_HEALTH_INTERVAL_S,
    WARDEN_API_PORT,
    container_name,
    image_name,
)
from noona_deploy.infrastructure.logger import logger
from noona_deploy.reporting import (
    DeploymentLogFile,
    LogReporter,
    LogSink,
    ProgressSink,
    Reporter,
    TeeReporter,
)
from noona_deploy.runtime.docker_host import DockerHost, ResourceSelector, flatten_records
from noona_deploy.runtime.endpoint import SocketDetector
from noona_deploy.runtime.log_stream import LogStream
from noona_deploy.runtime.results import OperationResult, RemovalSummary
from noona_deploy.scheduling.build_queue import BuildQueue
from noona_deploy.scheduling.types import Report, ReportEntry

_STEP_LINE = re.compile(r"^Step\s+\d+", re.IGNORECASE)


def normalize_services(services: str | Iterable[str] | None) -> list[str]:
    """Expand ``"all"``, lower-case names, drop unknown and duplicate entries."""
    if not services:
        return []
    if isinstance(services, str):
        services = [services]
    targets: list[str] = []
    for value in services:
        if not isinstance(value, str):
            continue
        name = value.strip().lower()
        if name == "all":
            return list(SERVICES)
        if name in SERVICES and name not in targets:
            targets.append(name)
    return targets


def _tag_view(sink: ProgressSink | None, view: str) -> ProgressSink | None:
    if sink is None:
        return None

    def emit(update: dict[str, Any]) -> None:
        sink({"view": view, **update})

    return emit


class DeployManager:
    """Build, publish, start and tear down the managed service stack.

    Narration goes through a Reporter (the one passed to a verb, else the
    manager's default) and is mirrored into the deployment log file. Every
    verb records its terminal outcome in the lifecycle history.
    """

    def __init__(
        self,
        docker: DockerHost | None = None,
        *,
        settings: SettingsStore | None = None,
        history: LifecycleHistory | None = None,
        reporter: Reporter | None = None,
        log_file: DeploymentLogFile | None = None,
        root_dir: Path = PROJECT_ROOT,
        namespace: str = REGISTRY_NAMESPACE,
        detector: SocketDetector | None = None,
        platform: str | None = None,
        health_timeout: float = HEALTH_TIMEOUT_S,
    ) -> None:
        self.docker = docker if docker is not None else DockerHost()
        self.root_dir = root_dir
        deployment_dir = root_dir / "deployment"
        self.settings = settings or SettingsStore(deployment_dir / "build.config.json")
        self.history = history or LifecycleHistory(deployment_dir / "lifecycleHistory.json")
        self.namespace = namespace
        self.health_timeout = health_timeout
        self._reporter = reporter or LogReporter()
        self._log_file = log_file if log_file is not None else DeploymentLogFile(deployment_dir / "logs")
        self._detector = detector
        self._platform = platform

    async def aclose(self) -> None:
        await self.docker.aclose()

    def _narrator(self, reporter: Reporter | None) -> TeeReporter:
        return TeeReporter(reporter or self._reporter, self._log_file)

    # ------------------------------------------------------------------
    # settings
    # ------------------------------------------------------------------
    def fetch_settings(self) -> DeploymentSettings:
        return self.settings.fetch()

    def update_settings(self, updates: Mapping[str, Any]) -> DeploymentSettings:
        return self.settings.update(updates)

    def resolve_debug_defaults(
        self,
        debug_level: str | None = None,
        boot_mode: str | None = None,
        settings: DeploymentSettings | None = None,
    ) -> DebugSettings:
        """Effective debug/boot settings. Boot mode ``super`` always runs with debug ``super``."""
        source = settings or self.settings.load()
        resolved_boot = (boot_mode or source.defaults.boot_mode or DEFAULT_BOOT_MODE).lower()
        resolved_debug = (debug_level or source.defaults.debug_level or DEFAULT_DEBUG_LEVEL).lower()
        effective = "super" if resolved_boot == "super" else resolved_debug
        return DebugSettings(boot_mode=resolved_boot, debug_level=effective, requested_debug=resolved_debug)

    # ------------------------------------------------------------------
    # build
    # ------------------------------------------------------------------
    def _ensure_executables(self, service: str, out: Reporter) -> None:
        if service != HEAVY_SERVICE:
            return
        gradlew = self.root_dir / "services" / service / "gradlew"
        try:
            gradlew.chmod(0o755)
        except FileNotFoundError:
            pass
        except OSError as exc:
            out.warn(f"Unable to update permissions for {gradlew}: {exc}")

    def _build_job(
        self,
        service: str,
        no_cache: bool,
        emit: ProgressSink | None,
        out: Reporter,
    ) -> Callable[[Report], Awaitable[dict[str, Any]]]:
        async def run(report: Report) -> dict[str, Any]:
            def forward(entry: ReportEntry) -> None:
                if not entry:
                    return
                if emit is not None:
                    normalized = {"message": entry} if isinstance(entry, str) else entry
                    emit({"type": "update", "service": service, **normalized})
                report(entry)

            forward({"message": "Preparing build context"})
            self._ensure_executables(service, out)

            image = image_name(service, self.namespace)
            dockerfile = self.root_dir / "deployment" / f"{service}.Dockerfile"
            result = await self.docker.build_image(
                str(self.root_dir), str(dockerfile), f"{image}:latest", no_cache=no_cache
            )

            if not result.ok:
                assert result.error is not None
                if emit is not None:
                    emit({
                        "type": "error",
                        "service": service,
                        "message": result.error.message,
                        "details": result.error.to_dict(),
                    })
                result.raise_for_error()

            records = flatten_records(result.data.get("records") or [])
            steps = [line for line in records if _STEP_LINE.match(line)][-3:]
            if steps:
                for line in steps:
                    forward({"message": line})
            elif records:
                forward({"message": f"{service} emitted {len(records)} build log entries."})
            for warning in result.warnings:
                forward({"level": "warn", "message": warning.strip()})

            return {"service": service, "image": image, "records": records, "warnings": list(result.warnings)}

        return run

    async def build(
        self,
        services: str | Iterable[str] | None,
        *,
        use_no_cache: bool = False,
        concurrency: Mapping[str, Any] | None = None,
        on_progress: ProgressSink | None = None,
        reporter: Reporter | None = None,
    ) -> BuildResult:
        """Build images in two phases: every light service, then the heavy one at max capacity."""
        out = self._narrator(reporter)
        targets = normalize_services(services)
        if not targets:
            out.error("No services selected for build.")
            return BuildResult(ok=False)

        worker_threads, subprocesses = self.settings.resolve_build_concurrency(concurrency)
        out.info(
            f"Build worker pool: {worker_threads} thread(s), up to {worker_threads * subprocesses} "
            f"concurrent jobs (subprocess limit {subprocesses})."
        )

        emit = _tag_view(on_progress, "builds")

        queue = BuildQueue(worker_threads, subprocesses, line_logger=out, on_event=emit)
        queue.use_base_capacity()

        standard = [svc for svc in targets if svc != HEAVY_SERVICE]
        jobs = [queue.enqueue(self._build_job(svc, use_no_cache, emit, out), name=svc) for svc in standard]
        await asyncio.gather(*jobs, return_exceptions=True)
        await queue.drain()

        if HEAVY_SERVICE in targets:
            if standard:
                out.info(
                    f"{HEAVY_SERVICE} build deferred until other services complete. "
                    f"Expanding pool to {queue.max_capacity} slots."
                )
            else:
                out.info(f"{HEAVY_SERVICE} build scheduled with expanded pool size {queue.max_capacity}.")
            queue.use_max_capacity()
            heavy = queue.enqueue(self._build_job(HEAVY_SERVICE, use_no_cache, emit, out), name=HEAVY_SERVICE)
            await asyncio.gather(heavy, return_exceptions=True)
            await queue.drain()

        summary = queue.get_results()
        if not summary:
            out.error("No builds were executed.")
            return BuildResult(ok=False)

        out.info("Build Summary")
        failures = 0
        for entry in summary:
            seconds = entry.duration_ms / 1000
            if entry.ok:
                out.success(f"{entry.id} built in {seconds:.2f}s.")
                warnings = (entry.value or {}).get("warnings") or []
                for warning in warnings:
                    out.warn(f"{entry.id}: {warning}")
                if emit is not None:
                    emit({
                        "type": "complete",
                        "service": entry.id,
                        "status": "fulfilled",
                        "duration": entry.duration_ms,
                        "result": entry.value,
                    })
                self.history.record("build", entry.id, "success", {"durationMs": entry.duration_ms, "warnings": warnings})
                continue

            failures += 1
            tail = list(entry.logs[-BUILD_LOG_TAIL_LINES:])
            out.error(f"{entry.id} build failed after {seconds:.2f}s.")
            if entry.error is not None and str(entry.error):
                out.error(f"   -> {entry.error}")
            if tail:
                out.error(f"--- {entry.id} log tail ---")
                for line in tail:
                    out.error(line)
                out.error(f"--- end {entry.id} ---")
            if emit is not None:
                emit({
                    "type": "complete",
                    "service": entry.id,
                    "status": "rejected",
                    "duration": entry.duration_ms,
                    "error": str(entry.error),
                    "logs": list(entry.logs),
                })
            self.history.record(
                "build", entry.id, "failed", {"durationMs": entry.duration_ms, "message": str(entry.error), "logs": tail}
            )

        if failures:
            out.error(f"{failures} build(s) failed. Review logs above for details.")
        else:
            out.success("All builds completed successfully.")

        return BuildResult(ok=failures == 0, summary=summary)

    # ------------------------------------------------------------------
    # registry
    # ------------------------------------------------------------------
    async def _registry_operation(
        self,
        services: str | Iterable[str] | None,
        action: str,
        verb: str,
        operation: Callable[[str], Awaitable[OperationResult]],
        on_progress: ProgressSink | None,
        reporter: Reporter | None,
    ) -> BatchResult:
        out = self._narrator(reporter)
        targets = normalize_services(services)
        if not targets:
            out.error(f"No services selected for {action}.")
            return BatchResult(ok=False)

        results: list[ServiceOutcome] = []
        for svc in targets:
            image = image_name(svc, self.namespace)
            out.info(f"{verb} {svc}...")
            if on_progress is not None:
                on_progress({"type": "start", "service": svc})

            outcome = await operation(f"{image}:latest")
            if outcome.ok:
                out.success(f"{verb} complete: {image}")
                for warning in outcome.warnings:
                    out.warn(warning.strip())
                self.history.record(action, svc, "success", {"reference": f"{image}:latest"})
            else:
                assert outcome.error is not None
                out.error(f"{verb} failed: {image}: {outcome.error.message}")
                self.history.record(action, svc, "failed", {"error": outcome.error.to_dict()})

            if on_progress is not None:
                on_progress({"type": "complete", "service": svc, "ok": outcome.ok, "result": outcome})
            results.append(ServiceOutcome(svc, outcome.ok, data=outcome.data, error=outcome.error))

        return BatchResult(ok=all(r.ok for r in results), results=results)

    async def push(
        self,
        services: str | Iterable[str] | None,
        *,
        on_progress: ProgressSink | None = None,
        reporter: Reporter | None = None,
    ) -> BatchResult:
        return await self._registry_operation(
            services, "push", "Pushing", self.docker.push_image, on_progress, reporter
        )

    async def pull(
        self,
        services: str | Iterable[str] | None,
        *,
        on_progress: ProgressSink | None = None,
        reporter: Reporter | None = None,
    ) -> BatchResult:
        return await self._registry_operation(
            services, "pull", "Pulling", self.docker.pull_image, on_progress, reporter
        )

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------
    async def _ensure_network(self, out: Reporter) -> None:
        inspection = await self.docker.inspect_network(NETWORK_NAME)
        if inspection.ok:
            out.info(f"Using existing Docker network {NETWORK_NAME}.")
            return

        assert inspection.error is not None
        if inspection.error.context.get("notFound"):
            out.info(f"Creating Docker network {NETWORK_NAME}...")
            creation = await self.docker.create_network(NETWORK_NAME)
            creation.raise_for_error()
            out.success(f"Created Docker network {NETWORK_NAME}")
            return

        inspection.raise_for_error()

    async def start(
        self,
        services: str | Iterable[str] | None,
        *,
        debug_level: str | None = None,
        boot_mode: str | None = None,
        on_progress: ProgressSink | None = None,
        on_log: LogSink | None = None,
        host_docker_socket_override: str | None = None,
        bind_host_docker_socket: bool = True,
        reporter: Reporter | None = None,
    ) -> BatchResult:
        """Start services behind a health gate. Only the orchestrator is startable."""
        out = self._narrator(reporter)
        targets = normalize_services(services)
        if not targets:
            out.error("No services selected for start.")
            return BatchResult(ok=False)

        settings = self.settings.load()
        socket_override = None
        if bind_host_docker_socket:
            socket_override = host_docker_socket_override or settings.host_docker_socket_override

        def progress(event: dict[str, Any]) -> None:
            if on_progress is not None:
                on_progress(event)

        results: list[ServiceOutcome] = []
        for svc in targets:
            if svc != ORCHESTRATOR_SERVICE:
                error = UnsupportedService(svc)
                out.error(f"Start is currently supported for the {ORCHESTRATOR_SERVICE} orchestrator. Skipping {svc}.")
                self.history.record("start", svc, "failed", {"message": str(error), "reason": "unsupported-service"})
                results.append(ServiceOutcome(svc, False, error=error))
                continue

            out.info(f"Starting {svc}...")
            log_buffer: deque[str] = deque(maxlen=LOG_BUFFER_LINES)
            log_stream: LogStream | None = None
            debug = self.resolve_debug_defaults(debug_level, boot_mode, settings)

            def on_line(raw: str, service: str = svc) -> None:
                line = raw.strip()
                if not line:
                    return
                log_buffer.append(line)
                if on_log is not None:
                    on_log({"service": service, "line": line})

            try:
                await self._ensure_network(out)
                if debug.boot_mode == "super" and debug.requested_debug != "super":
                    out.info('Forcing DEBUG="super" to match selected boot mode.')

                options = create_container_options(
                    svc,
                    image_name(svc, self.namespace),
                    {"DEBUG": debug.debug_level, "BOOT_MODE": debug.boot_mode},
                    detector=self._detector,
                    platform=self._platform,
                    host_docker_socket_override=socket_override,
                    bind_host_docker_socket=bind_host_docker_socket,
                )

                cleanup = await self.docker.remove_resources(containers=ResourceSelector(names=[options.name]))
                if not cleanup.ok:
                    raise RuntimeOperationFailed(
                        "Unable to remove existing container", operation="removeResources", context={"name": options.name}
                    )

                progress({"type": "start", "service": svc, "step": "launch", "settings": debug.to_dict()})

                started = await self.docker.start_service(options)
                if not started.ok:
                    assert started.error is not None
                    out.error(f"Failed to start {svc}: {started.error.message}")
                    self.history.record(
                        "start", svc, "failed", {"step": "start-service", "error": started.error.to_dict()}
                    )
                    progress({"type": "complete", "service": svc, "ok": False, "error": started.error.message})
                    results.append(ServiceOutcome(svc, False, error=started.error))
                    continue

                inspection = started.data.get("inspection") or {}
                logs = await self.docker.stream_logs(
                    options.name, follow=True, tail=LOG_BUFFER_LINES, on_data=on_line
                )
                if logs.ok:
                    log_stream = logs.data["stream"]
                else:
                    assert logs.error is not None
                    out.warn(f"Unable to stream logs for {options.name}: {logs.error.message}")

                api_port = (options.env.get("WARDEN_API_PORT") or WARDEN_API_PORT).strip()
                health_url = f"http://localhost:{api_port}/health"
                health = await self.docker.wait_for_health(
                    options.name,
                    health_url,
                    interval=SUPER_HEALTH_INTERVAL_S if debug.boot_mode == "super" else HEALTH_INTERVAL_S,
                    timeout=self.health_timeout,
                )

                if not health.ok:
                    assert health.error is not None
                    out.error(f"Failed to start {svc}: {health.error.message}")
                    remediation = health.error.context.get("remediation")
                    if remediation:
                        out.warn(remediation)
                    self.history.record(
                        "start",
                        svc,
                        "failed",
                        {
                            "step": "health-check",
                            "health": health.error.to_dict(),
                            "logs": list(log_buffer)[-FAILED_START_LOG_LINES:],
                        },
                    )
                    progress({"type": "complete", "service": svc, "ok": False, "error": health.error.message})
                    results.append(ServiceOutcome(svc, False, error=health.error))
                    continue

                if log_stream is not None:
                    log_stream.destroy()
                    log_stream = None

                row = build_container_row(
                    inspection,
                    result=(inspection.get("State") or {}).get("Status"),
                    note=f"Health {health.data['status']} after {health.data['attempts']} attempt(s)",
                )
                out.info("Container status")
                out.table([row])
                out.success(f"{svc} started and reported healthy (HTTP {health.data['status']}).")
                self.history.record(
                    "start",
                    svc,
                    "success",
                    {"container": row, "health": {**health.data, "url": health_url}, "settings": debug.to_dict()},
                )
                progress({
                    "type": "complete",
                    "service": svc,
                    "ok": True,
                    "inspection": row,
                    "health": health.data,
                    "settings": debug.to_dict(),
                })
                results.append(ServiceOutcome(svc, True, data={"inspection": row, "health": health.data}))
            except Exception as exc:
                logger.exception("Service start failed", service=svc)
                out.error(f"Failed to start {svc}: {exc}")
                self.history.record(
                    "start",
                    svc,
                    "failed",
                    {
                        "message": str(exc),
                        "settings": debug.to_dict(),
                        "logs": list(log_buffer)[-FAILED_START_LOG_LINES:],
                    },
                )
                progress({"type": "complete", "service": svc, "ok": False, "error": str(exc)})
                results.append(ServiceOutcome(svc, False, error=exc))
            finally:
                if log_stream is not None:
                    log_stream.destroy()

        return BatchResult(ok=all(r.ok for r in results), results=results)

    # ------------------------------------------------------------------
    # stop / clean / delete
    # ------------------------------------------------------------------
    async def stop_all(self, *, reporter: Reporter | None = None) -> StopResult:
        out = self._narrator(reporter)
        out.info("Stopping all running Noona containers...")
        listing = await self.docker.list_containers(filters={"name": [NAME_PREFIX]})
        if not listing.ok:
            assert listing.error is not None
            out.error(f"Failed to list containers: {listing.error.message}")
            self.history.record("stop", None, "failed", {"error": listing.error.to_dict()})
            return StopResult(ok=False)

        containers = listing.data or []
        if not containers:
            out.success("No running Noona containers found.")
            rows = [{"Name": "-", "State": "none", "Ports": "-", "Result": "No running containers"}]
            out.table(rows)
            self.history.record("stop", None, "success", {"stopped": 0})
            return StopResult(ok=True, rows=rows)

        rows: list[dict[str, str]] = []
        oks: list[bool] = []
        for info in containers:
            names = info.get("Names") or []
            name = names[0].lstrip("/") if names else info["Id"]
            outcome = await self.docker.stop_container(name)
            if outcome.ok:
                result = "already stopped" if outcome.data.get("skipped") else "stopped"
            else:
                assert outcome.error is not None
                result = f"error: {outcome.error.message}"
                out.error(f"Failed to stop {name}: {outcome.error.message}")
            oks.append(outcome.ok)
            rows.append({
                "Name": name,
                "State": info.get("State") or info.get("Status") or "unknown",
                "Ports": format_ports(info.get("Ports")),
                "Result": result,
            })

        out.table(rows)
        ok = all(oks)
        if ok:
            out.success("Stop command sent to all running Noona containers.")
        self.history.record("stop", None, batch_status(oks), {"containers": rows})
        return StopResult(ok=ok, rows=rows)

    async def _clean_service(self, service: str) -> RemovalSummary:
        image = image_name(service, self.namespace)
        local = container_name(service)
        networks = ResourceSelector(names=[NETWORK_NAME]) if service == ORCHESTRATOR_SERVICE else None
        removal = await self.docker.remove_resources(
            containers=ResourceSelector(names=[local]),
            images=ResourceSelector(references=[f"{image}:latest", image, f"{local}:latest", local]),
            networks=networks,
        )
        summary = removal.data if isinstance(removal.data, RemovalSummary) else RemovalSummary()
        if not removal.ok:
            raise PartialRemovalFailure(summary)
        return summary

    async def clean(self, services: str | Iterable[str] | None, *, reporter: Reporter | None = None) -> BatchResult:
        out = self._narrator(reporter)
        targets = normalize_services(services)
        if not targets:
            out.error("No services selected for clean.")
            return BatchResult(ok=False)

        results: list[ServiceOutcome] = []
        for svc in targets:
            out.info(f"Cleaning {svc}...")
            try:
                summary = await self._clean_service(svc)
            except PartialRemovalFailure as exc:
                out.error(f"Failed to clean {svc}: {exc}")
                out.table(removal_rows(exc.summary))
                self.history.record(
                    "clean", svc, "failed", {"message": str(exc), "removed": exc.summary.to_dict()}
                )
                results.append(ServiceOutcome(svc, False, data=exc.summary, error=exc))
                continue

            out.info(f"Removed resources for {svc}")
            out.table(removal_rows(summary))
            self.history.record("clean", svc, "success", {"removed": summary.to_dict()})
            out.success(f"Cleaned {svc}")
            results.append(ServiceOutcome(svc, True, data=summary))

        return BatchResult(ok=all(r.ok for r in results), results=results)

    async def delete_all(self, *, confirm: bool = False, reporter: Reporter | None = None) -> DeleteResult:
        """Remove every Noona container, image, volume and network. Requires ``confirm=True``."""
        out = self._narrator(reporter)
        if not confirm:
            out.error("Delete aborted.")
            self.history.record("delete", None, "cancelled", {})
            return DeleteResult(
                ok=False,
                cancelled=True,
                error=ConfirmationRequired("Deleting Noona resources requires explicit confirmation"),
            )

        out.info("Deleting Noona Docker resources...")
        local_prefix = f"{self.namespace}/{NAME_PREFIX}"
        removal = await self.docker.remove_resources(
            containers=ResourceSelector(filters={"name": [NAME_PREFIX]}),
            images=ResourceSelector(match=lambda tag: tag.startswith(local_prefix) or tag.startswith(NAME_PREFIX)),
            volumes=ResourceSelector(filters={"name": [NAME_PREFIX]}),
            networks=ResourceSelector(filters={"name": [NAME_PREFIX]}),
        )
        summary = removal.data if isinstance(removal.data, RemovalSummary) else RemovalSummary()
        out.table(removal_rows(summary))

        if not removal.ok:
            status = "partial" if summary.removed_count else "failed"
            out.error("Some Docker resources could not be deleted.")
            self.history.record("delete", None, status, {"removed": summary.to_dict()})
            return DeleteResult(ok=False, summary=summary, error=removal.error)

        out.success("All local Noona Docker resources deleted.")
        self.history.record("delete", None, "success", {"removed": summary.to_dict()})
        return DeleteResult(ok=True, summary=summary)

    # ------------------------------------------------------------------
    # listing
    # ------------------------------------------------------------------
    async def list_managed_containers(self, *, include_stopped: bool = True) -> list[ContainerSnapshot]:
        result = await self.docker.list_containers(include_stopped=include_stopped, filters={"name": [NAME_PREFIX]})
        result.raise_for_error()
        snapshots: list[ContainerSnapshot] = []
        for info in result.data or []:
            names = info.get("Names") or []
            created = info.get("Created")
            snapshots.append(ContainerSnapshot(
                id=info["Id"],
                name=names[0].lstrip("/") if names else info["Id"],
                image=info.get("Image"),
                state=info.get("State") or info.get("Status") or "unknown",
                status=info.get("Status") or info.get("State") or "unknown",
                ports=format_ports(info.get("Ports")),
                created_at=datetime.fromtimestamp(created, UTC).isoformat() if created else None,
            ))
        return snapshots

    async def list_services(
        self,
        *,
        include_containers: bool = False,
        include_history: bool = False,
        include_stopped: bool = True,
    ) -> ServiceListing:
        listing = ServiceListing(ok=True, services=list(SERVICES))
        if include_containers:
            try:
                listing.containers = await self.list_managed_containers(include_stopped=include_stopped)
            except RuntimeOperationFailed as exc:
                listing.errors.append({"scope": "containers", "message": str(exc) or "Unable to list containers"})
        if include_history:
            listing.history = self.history.read()
        listing.ok = not listing.errors
        return listing
