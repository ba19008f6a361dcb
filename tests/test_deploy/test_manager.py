"""Tests for the deployment verbs, driven through a fake runtime adapter."""

import asyncio
import stat

import pytest

from noona_deploy.deploy.manager import DeployManager, normalize_services
from noona_deploy.deploy.types import DeploymentSettings
from noona_deploy.errors import ConfirmationRequired, PartialRemovalFailure, RuntimeOperationFailed, UnsupportedService
from noona_deploy.infrastructure.config import SERVICES
from noona_deploy.runtime.results import OperationResult, RemovalError, RemovalSummary


class FakeStream:
    def __init__(self):
        self.destroyed = False

    def destroy(self):
        self.destroyed = True


def partial_removal(summary):
    result = OperationResult.failure("removeResources", RuntimeOperationFailed("Some resources could not be removed"))
    result.data = summary
    return result


class FakeDocker:
    """In-memory stand-in for DockerHost; every call returns an OperationResult."""

    def __init__(self):
        self.build_delay = 0.01
        self.failing_builds = set()
        self.failing_pushes = set()
        self.active_builds = 0
        self.peak_builds = 0
        self.build_order = []

        self.network_exists = True
        self.network_error = None
        self.start_result = None
        self.created_networks = []
        self.removals = []
        self.removal_result = None
        self.started = []
        self.log_lines = ["Warden booting", "listening on 4001"]
        self.streams = []
        self.health_result = OperationResult.success({"attempts": 2, "status": 200})
        self.health_calls = []

        self.containers = []
        self.list_result = None
        self.stop_results = {}
        self.closed = False

    @staticmethod
    def _service(tag):
        return tag.split("/noona-")[-1].split(":")[0]

    async def build_image(self, context, dockerfile, tag, *, no_cache=False):
        service = self._service(tag)
        self.build_order.append(("start", service))
        self.active_builds += 1
        self.peak_builds = max(self.peak_builds, self.active_builds)
        try:
            await asyncio.sleep(self.build_delay)
        finally:
            self.active_builds -= 1
            self.build_order.append(("end", service))
        if service in self.failing_builds:
            return OperationResult.failure(
                "buildImage",
                RuntimeOperationFailed("build failed", records=["npm ERR! missing script: build"]),
                {"tag": tag},
            )
        records = [
            {"stream": "Step 1/3 : FROM node:20\n"},
            {"stream": "Step 2/3 : COPY . .\n"},
            {"stream": "Step 3/3 : RUN npm ci\n"},
        ]
        return OperationResult.success({"tag": tag, "records": records})

    async def push_image(self, reference):
        if self._service(reference) in self.failing_pushes:
            return OperationResult.failure("pushImage", RuntimeOperationFailed("denied", code=401), {"ref": reference})
        return OperationResult.success({"reference": reference})

    async def pull_image(self, reference):
        return OperationResult.success({"reference": reference})

    async def inspect_network(self, name):
        if self.network_error is not None:
            return OperationResult.failure("inspectNetwork", self.network_error, {"name": name})
        if self.network_exists:
            return OperationResult.success({"Name": name})
        return OperationResult.failure(
            "inspectNetwork", RuntimeOperationFailed("no such network", code=404), {"name": name, "notFound": True}
        )

    async def create_network(self, name):
        self.created_networks.append(name)
        self.network_exists = True
        return OperationResult.success({"Name": name})

    async def remove_resources(self, *, containers=None, images=None, volumes=None, networks=None):
        self.removals.append({"containers": containers, "images": images, "volumes": volumes, "networks": networks})
        if self.removal_result is not None:
            return self.removal_result
        return OperationResult.success(RemovalSummary())

    async def start_service(self, options):
        self.started.append(options)
        if self.start_result is not None:
            return self.start_result
        inspection = {
            "Name": f"/{options.name}",
            "State": {"Status": "running"},
            "NetworkSettings": {"Networks": {options.network: {}}, "Ports": {}},
        }
        return OperationResult.success({"name": options.name, "inspection": inspection})

    async def stream_logs(self, name, *, follow=True, tail=None, on_data=None):
        for line in self.log_lines:
            on_data(line)
        stream = FakeStream()
        self.streams.append(stream)
        return OperationResult.success({"stream": stream})

    async def wait_for_health(self, name, url, *, interval=2.0, timeout=60.0, expected_status=None):
        self.health_calls.append({"name": name, "url": url, "interval": interval, "timeout": timeout})
        return self.health_result

    async def list_containers(self, *, include_stopped=False, filters=None):
        if self.list_result is not None:
            return self.list_result
        return OperationResult.success(list(self.containers))

    async def stop_container(self, name):
        return self.stop_results.get(name, OperationResult.success({"name": name}))

    async def aclose(self):
        self.closed = True


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def manager(docker, reporter, tmp_path) -> DeployManager:
    return DeployManager(
        docker,
        reporter=reporter,
        root_dir=tmp_path,
        namespace="captainpax",
        detector=lambda env, platform: ["/var/run/docker.sock"],
        platform="linux",
        health_timeout=5.0,
    )


class TestNormalizeServices:
    def test_all_expands(self):
        assert normalize_services("all") == list(SERVICES)
        assert normalize_services(["moon", "ALL"]) == list(SERVICES)

    def test_lowercases_dedupes_and_drops_unknown(self):
        assert normalize_services(["Moon", "moon", "unknown", " SAGE "]) == ["moon", "sage"]

    def test_empty(self):
        assert normalize_services(None) == []
        assert normalize_services([]) == []


class TestDebugDefaults:
    @pytest.mark.parametrize("requested", ["false", "true"])
    def test_super_boot_mode_forces_super_debug(self, manager, requested):
        debug = manager.resolve_debug_defaults(requested, "super")
        assert debug.boot_mode == "super"
        assert debug.debug_level == "super"
        assert debug.requested_debug == requested

    def test_falls_back_to_saved_defaults(self, manager):
        settings = DeploymentSettings.model_validate({"defaults": {"debugLevel": "true", "bootMode": "minimal"}})
        debug = manager.resolve_debug_defaults(settings=settings)
        assert debug.boot_mode == "minimal"
        assert debug.debug_level == "true"


class TestBuild:
    @pytest.mark.asyncio
    async def test_heavy_service_runs_last_with_expanded_pool(self, manager, docker, reporter, tmp_path):
        gradlew = tmp_path / "services" / "raven" / "gradlew"
        gradlew.parent.mkdir(parents=True)
        gradlew.write_text("#!/bin/sh\n")
        gradlew.chmod(0o644)

        events = []
        result = await manager.build(
            ["moon", "sage", "vault", "portal", "raven"],
            concurrency={"workerThreads": 2, "subprocessesPerWorker": 2},
            on_progress=events.append,
        )

        assert result.ok
        assert sorted(entry.id for entry in result.summary) == ["moon", "portal", "raven", "sage", "vault"]
        assert docker.peak_builds == 2

        raven_start = docker.build_order.index(("start", "raven"))
        for svc in ("moon", "sage", "vault", "portal"):
            assert docker.build_order.index(("end", svc)) < raven_start

        assert [e["limit"] for e in events if e["type"] == "capacity"] == [2, 4]
        assert all(e["view"] == "builds" for e in events)
        completes = [e for e in events if e["type"] == "complete"]
        assert {e["service"] for e in completes} == {"moon", "sage", "vault", "portal", "raven"}
        assert all(e["status"] == "fulfilled" for e in completes)

        assert stat.S_IMODE(gradlew.stat().st_mode) == 0o755
        assert any("Expanding pool to 4 slots" in line for line in reporter.lines("info"))
        assert any("Step 3/3" in line for line in reporter.lines("info"))

        history = manager.history.read()
        assert len(history) == 5
        assert {event.status for event in history} == {"success"}

    @pytest.mark.asyncio
    async def test_failed_build_reports_log_tail(self, manager, docker, reporter):
        docker.failing_builds = {"sage"}
        events = []
        result = await manager.build(["moon", "sage"], on_progress=events.append)

        assert not result.ok
        statuses = {entry.id: entry.status for entry in result.summary}
        assert statuses == {"moon": "fulfilled", "sage": "rejected"}
        assert any(e["type"] == "error" and e["service"] == "sage" for e in events)
        assert any("[sage] npm ERR! missing script: build" == line for line in reporter.lines("error"))
        assert "1 build(s) failed. Review logs above for details." in reporter.lines("error")

        failed = [event for event in manager.history.read() if event.status == "failed"]
        assert len(failed) == 1
        assert failed[0].service == "sage"
        assert "[sage] npm ERR! missing script: build" in failed[0].details["logs"]

    @pytest.mark.asyncio
    async def test_no_services_selected(self, manager, docker):
        result = await manager.build(["unknown"])
        assert not result.ok
        assert docker.build_order == []

    @pytest.mark.asyncio
    async def test_narration_mirrored_to_log_file(self, manager, tmp_path):
        await manager.build(["moon"])
        logs = list((tmp_path / "deployment" / "logs").glob("deploy-*.log"))
        assert len(logs) == 1
        assert "All builds completed successfully." in logs[0].read_text()


class TestRegistry:
    @pytest.mark.asyncio
    async def test_push_records_each_service(self, manager, docker):
        docker.failing_pushes = {"sage"}
        events = []
        result = await manager.push(["moon", "sage"], on_progress=events.append)

        assert not result.ok
        assert result.status == "partial"
        assert [(r.service, r.ok) for r in result.results] == [("moon", True), ("sage", False)]
        assert [e["type"] for e in events] == ["start", "complete", "start", "complete"]

        history = manager.history.read()
        assert [(e.action, e.service, e.status) for e in history] == [
            ("push", "moon", "success"),
            ("push", "sage", "failed"),
        ]
        assert history[1].details["error"]["code"] == 401

    @pytest.mark.asyncio
    async def test_pull_uses_latest_tag(self, manager):
        result = await manager.pull("moon")
        assert result.ok
        assert result.results[0].data == {"reference": "captainpax/noona-moon:latest"}


class TestStart:
    @pytest.mark.asyncio
    async def test_unsupported_service(self, manager, docker):
        result = await manager.start(["moon"])

        assert not result.ok
        assert isinstance(result.results[0].error, UnsupportedService)
        assert docker.started == []
        event = manager.history.read()[0]
        assert (event.action, event.service, event.status) == ("start", "moon", "failed")
        assert event.details["reason"] == "unsupported-service"

    @pytest.mark.asyncio
    async def test_orchestrator_starts_healthy(self, manager, docker, reporter):
        docker.network_exists = False
        progress, log_lines = [], []
        result = await manager.start(
            "warden", debug_level="true", boot_mode="super", on_progress=progress.append, on_log=log_lines.append
        )

        assert result.ok
        assert docker.created_networks == ["noona-network"]
        assert docker.removals[0]["containers"].names == ["noona-warden"]

        options = docker.started[0]
        assert options.env["DEBUG"] == "super"
        assert options.env["BOOT_MODE"] == "super"
        assert options.host_config["Binds"] == ["/var/run/docker.sock:/var/run/docker.sock"]

        health = docker.health_calls[0]
        assert health["url"].endswith("/health")
        assert health["interval"] == 1.0
        assert health["timeout"] == 5.0

        assert log_lines[0] == {"service": "warden", "line": "Warden booting"}
        assert docker.streams[0].destroyed
        assert 'Forcing DEBUG="super" to match selected boot mode.' in reporter.lines("info")
        assert reporter.tables[-1][0]["Note"] == "Health 200 after 2 attempt(s)"
        assert [e["type"] for e in progress] == ["start", "complete"]

        event = manager.history.read()[-1]
        assert event.status == "success"
        assert event.details["settings"]["debugLevel"] == "super"

    @pytest.mark.asyncio
    async def test_health_failure_keeps_log_tail(self, manager, docker, reporter):
        docker.health_result = OperationResult.failure(
            "waitForHealth",
            RuntimeOperationFailed("Unexpected status code: 503", code=503),
            {"attempts": 3, "remediation": "Inspect the Warden logs."},
        )
        result = await manager.start("warden")

        assert not result.ok
        assert docker.streams[0].destroyed
        assert docker.health_calls[0]["interval"] == 2.0
        assert "Inspect the Warden logs." in reporter.lines("warn")

        event = manager.history.read()[-1]
        assert event.status == "failed"
        assert event.details["step"] == "health-check"
        assert event.details["logs"] == ["Warden booting", "listening on 4001"]

    @pytest.mark.asyncio
    async def test_network_inspection_failure_is_fatal(self, manager, docker):
        docker.network_error = RuntimeOperationFailed("daemon error", code=500)
        result = await manager.start("warden")

        assert not result.ok
        assert docker.created_networks == []
        assert docker.removals == []
        assert docker.started == []
        assert docker.streams == []
        event = manager.history.read()[-1]
        assert (event.action, event.service, event.status) == ("start", "warden", "failed")
        assert event.details["message"] == "daemon error"

    @pytest.mark.asyncio
    async def test_stale_container_cleanup_failure(self, manager, docker):
        docker.removal_result = partial_removal(RemovalSummary(
            errors=[RemovalError("removeContainer", "/noona-warden", "device or resource busy", 500)],
        ))
        result = await manager.start("warden")

        assert not result.ok
        assert docker.started == []
        assert docker.streams == []
        event = manager.history.read()[-1]
        assert event.status == "failed"
        assert event.details["message"] == "Unable to remove existing container"

    @pytest.mark.asyncio
    async def test_start_service_failure(self, manager, docker, reporter):
        docker.start_result = OperationResult.failure(
            "runContainer", RuntimeOperationFailed("port is already allocated", code=500), {"name": "noona-warden"}
        )
        progress = []
        result = await manager.start("warden", on_progress=progress.append)

        assert not result.ok
        assert len(docker.started) == 1
        assert docker.streams == []
        assert docker.health_calls == []
        assert "Failed to start warden: port is already allocated" in reporter.lines("error")
        assert progress[-1] == {
            "type": "complete", "service": "warden", "ok": False, "error": "port is already allocated",
        }
        event = manager.history.read()[-1]
        assert event.status == "failed"
        assert event.details["step"] == "start-service"
        assert event.details["error"]["operation"] == "runContainer"

    @pytest.mark.asyncio
    async def test_socket_binding_disabled(self, manager, docker):
        await manager.start("warden", bind_host_docker_socket=False)
        assert docker.started[0].host_config["Binds"] == []


class TestStop:
    @pytest.mark.asyncio
    async def test_nothing_running(self, manager, reporter):
        result = await manager.stop_all()
        assert result.ok
        assert result.rows[0]["Result"] == "No running containers"
        assert manager.history.read()[0].status == "success"

    @pytest.mark.asyncio
    async def test_reports_each_container(self, manager, docker):
        docker.containers = [
            {"Id": "a", "Names": ["/noona-warden"], "State": "running", "Ports": []},
            {"Id": "b", "Names": ["/noona-moon"], "State": "exited"},
        ]
        docker.stop_results = {"noona-moon": OperationResult.success({"name": "noona-moon", "skipped": True})}

        result = await manager.stop_all()
        assert result.ok
        assert [(r["Name"], r["Result"]) for r in result.rows] == [
            ("noona-warden", "stopped"),
            ("noona-moon", "already stopped"),
        ]

    @pytest.mark.asyncio
    async def test_listing_failure(self, manager, docker):
        docker.list_result = OperationResult.failure("listContainers", RuntimeOperationFailed("daemon down"))
        result = await manager.stop_all()
        assert not result.ok
        assert manager.history.read()[0].status == "failed"


class TestClean:
    @pytest.mark.asyncio
    async def test_targets_container_and_image_references(self, manager, docker):
        result = await manager.clean(["warden"])

        assert result.ok
        removal = docker.removals[0]
        assert removal["containers"].names == ["noona-warden"]
        assert removal["images"].references == [
            "captainpax/noona-warden:latest",
            "captainpax/noona-warden",
            "noona-warden:latest",
            "noona-warden",
        ]
        assert removal["networks"].names == ["noona-network"]

    @pytest.mark.asyncio
    async def test_partial_removal(self, manager, docker, reporter):
        docker.removal_result = partial_removal(RemovalSummary(
            containers=["/noona-moon"],
            errors=[RemovalError("removeImage", "captainpax/noona-moon:latest", "image is in use", 409)],
        ))
        result = await manager.clean(["moon"])

        assert not result.ok
        outcome = result.results[0]
        assert isinstance(outcome.error, PartialRemovalFailure)
        assert outcome.data.containers == ["/noona-moon"]
        assert {"Type": "error", "Target": "captainpax/noona-moon:latest", "Result": "image is in use"} in (
            reporter.tables[-1]
        )

        event = manager.history.read()[0]
        assert event.status == "failed"
        assert event.details["removed"]["errors"][0]["code"] == 409


class TestDelete:
    @pytest.mark.asyncio
    async def test_requires_confirmation(self, manager, docker):
        result = await manager.delete_all()

        assert not result.ok
        assert result.cancelled
        assert isinstance(result.error, ConfirmationRequired)
        assert docker.removals == []
        event = manager.history.read()[0]
        assert (event.action, event.service, event.status) == ("delete", None, "cancelled")

    @pytest.mark.asyncio
    async def test_confirmed_partial(self, manager, docker):
        docker.removal_result = partial_removal(RemovalSummary(
            containers=["/noona-moon"],
            errors=[RemovalError("removeNetwork", "noona-network", "in use", 403)],
        ))
        result = await manager.delete_all(confirm=True)

        assert not result.ok
        assert result.summary.containers == ["/noona-moon"]
        assert manager.history.read()[0].status == "partial"

        images = docker.removals[0]["images"]
        assert images.match("captainpax/noona-moon:latest")
        assert images.match("noona-raven:latest")
        assert not images.match("redis:7")

    @pytest.mark.asyncio
    async def test_confirmed_success(self, manager):
        result = await manager.delete_all(confirm=True)
        assert result.ok
        assert manager.history.read()[0].status == "success"


class TestListing:
    @pytest.mark.asyncio
    async def test_services_with_containers_and_history(self, manager, docker):
        docker.containers = [{
            "Id": "abc",
            "Names": ["/noona-moon"],
            "Image": "captainpax/noona-moon:latest",
            "State": "running",
            "Status": "Up 2 minutes",
            "Ports": [{"PrivatePort": 3000, "PublicPort": 3000, "Type": "tcp"}],
            "Created": 1700000000,
        }]
        await manager.delete_all()

        listing = await manager.list_services(include_containers=True, include_history=True)
        assert listing.ok
        assert listing.services == list(SERVICES)
        snapshot = listing.containers[0]
        assert snapshot.name == "noona-moon"
        assert snapshot.ports == "localhost:3000 -> 3000/tcp"
        assert snapshot.created_at.startswith("2023-11-14T22:13:20")
        assert [event.action for event in listing.history] == ["delete"]

    @pytest.mark.asyncio
    async def test_container_errors_are_collected(self, manager, docker):
        docker.list_result = OperationResult.failure("listContainers", RuntimeOperationFailed("daemon down"))
        listing = await manager.list_services(include_containers=True)
        assert not listing.ok
        assert listing.containers is None
        assert listing.errors == [{"scope": "containers", "message": "daemon down"}]


class TestSettings:
    def test_update_and_fetch(self, manager, tmp_path):
        manager.update_settings({"defaults": {"bootMode": "super"}})
        assert manager.fetch_settings().defaults.boot_mode == "super"
        assert (tmp_path / "deployment" / "build.config.json").exists()

    @pytest.mark.asyncio
    async def test_aclose_closes_adapter(self, manager, docker):
        await manager.aclose()
        assert docker.closed
