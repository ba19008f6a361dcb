"""DockerHost — normalized wrapper over the Docker Engine HTTP API."""

from __future__ import annotations

import asyncio
import base64
import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from noona_deploy.errors import RuntimeOperationFailed
from noona_deploy.infrastructure.config import ORCHESTRATOR_SERVICE, STOP_TIMEOUT_S
from noona_deploy.infrastructure.logger import logger
from noona_deploy.runtime.build_context import normalize_dockerfile_path, pack_build_context
from noona_deploy.runtime.endpoint import (
    Endpoint,
    NamedPipe,
    SocketDetector,
    TcpEndpoint,
    UnixSocket,
    default_socket_detector,
    resolve_endpoint,
)
from noona_deploy.runtime.log_stream import LogStream, OnLine
from noona_deploy.runtime.results import OperationResult, RemovalSummary

UNIX_BASE_URL = "http://docker"
API_TIMEOUT = httpx.Timeout(30.0, read=None)


@dataclass
class ResourceSelector:
    """Selects runtime resources for bulk removal.

    ``names`` and ``filters`` are passed to the runtime's list call;
    ``match`` is applied locally to names (containers, volumes) or tags
    (images); ``references`` selects images by exact tag.
    """

    names: list[str] | None = None
    filters: dict[str, list[str]] | None = None
    match: Callable[[str], bool] | None = None
    references: list[str] | None = None
    remove_volumes: bool = False

    def is_active(self) -> bool:
        return bool(self.names or self.filters or self.match or self.references)


@dataclass
class HealthCheck:
    url: str
    interval: float = 2.0
    timeout: float = 60.0
    expected_status: int | None = None


@dataclass
class RunOptions:
    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    network: str | None = None
    host_config: dict[str, Any] = field(default_factory=dict)
    exposed_ports: dict[str, dict] = field(default_factory=dict)


def generate_remediation(name: str | None, url: str) -> str:
    """Human-oriented hint for a failed health check."""
    if name and ORCHESTRATOR_SERVICE in name.lower():
        return " ".join([
            "Ensure the Warden container can bind the configured host port (default 4001).",
            "Verify the Docker socket volume (/var/run/docker.sock) is mounted so Warden can inspect other containers.",
            f"Confirm the health endpoint {url} is reachable from the host.",
            "Inspect the Warden logs for startup or dependency errors.",
        ])
    return "Inspect the container logs and verify the Docker network configuration for the service."


def split_reference(reference: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into repository and tag (default ``latest``)."""
    slash = reference.rfind("/")
    colon = reference.rfind(":")
    if colon > slash:
        return reference[:colon], reference[colon + 1:]
    return reference, "latest"


def _filters_param(filters: Mapping[str, list[str]] | None) -> dict[str, str]:
    return {"filters": json.dumps(dict(filters))} if filters else {}


def _strip_slash(name: str) -> str:
    return name[1:] if name.startswith("/") else name


def _client_for(endpoint: Endpoint) -> httpx.AsyncClient | None:
    if isinstance(endpoint, UnixSocket):
        return httpx.AsyncClient(
            transport=httpx.AsyncHTTPTransport(uds=endpoint.path),
            base_url=UNIX_BASE_URL,
            timeout=API_TIMEOUT,
        )
    if isinstance(endpoint, TcpEndpoint):
        return httpx.AsyncClient(base_url=endpoint.base_url, timeout=API_TIMEOUT)
    return None


class DockerHost:
    """Runtime adapter. Every public call returns an OperationResult and
    never raises past this boundary (cancellation excepted)."""

    def __init__(
        self,
        socket_path: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        health_client: httpx.AsyncClient | None = None,
        detector: SocketDetector | None = default_socket_detector,
        env: Mapping[str, str] | None = None,
        platform: str | None = None,
    ) -> None:
        self.endpoint: Endpoint = resolve_endpoint(socket_path, env=env, platform=platform, detector=detector)
        self._client = client if client is not None else _client_for(self.endpoint)
        self._health_client = health_client
        logger.debug("Docker endpoint resolved", endpoint=repr(self.endpoint))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> DockerHost:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # transport helpers
    # ------------------------------------------------------------------
    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            assert isinstance(self.endpoint, NamedPipe)
            raise RuntimeOperationFailed(
                f"No HTTP transport available for named pipe {self.endpoint.path}; inject a client",
                operation="connect",
                context={"endpoint": self.endpoint.path},
            )
        return self._client

    @staticmethod
    async def _api_error(response: httpx.Response) -> RuntimeOperationFailed:
        await response.aread()
        message = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                message = str(body.get("message") or "")
        except ValueError:
            message = response.text.strip()
        return RuntimeOperationFailed(
            message or f"HTTP {response.status_code}",
            operation="request",
            code=response.status_code,
            reason=response.reason_phrase,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        allow: tuple[int, ...] = (),
    ) -> httpx.Response:
        response = await self.client.request(method, path, params=params, json=json_body)
        if response.status_code >= 400 and response.status_code not in allow:
            raise await self._api_error(response)
        return response

    async def _collect_stream(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """Collect newline-delimited JSON progress records from a streaming call."""
        records: list[dict[str, Any]] = []
        async with self.client.stream(method, path, params=params, content=content, headers=headers) as response:
            if response.status_code >= 400:
                raise await self._api_error(response)
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    record = {"stream": line}
                if not isinstance(record, dict):
                    record = {"stream": str(record)}
                records.append(record)
                if record.get("error"):
                    detail = record.get("errorDetail") or {}
                    raise RuntimeOperationFailed(
                        str(record["error"]).strip(),
                        operation="stream",
                        code=detail.get("code"),
                        records=flatten_records(records),
                    )
        return records

    # ------------------------------------------------------------------
    # images
    # ------------------------------------------------------------------
    async def build_image(
        self,
        context: str,
        dockerfile: str | None,
        tag: str,
        build_args: dict[str, str] | None = None,
        no_cache: bool = False,
    ) -> OperationResult:
        try:
            archive = await asyncio.to_thread(pack_build_context, context, dockerfile)
            params: dict[str, Any] = {"t": tag, "nocache": "1" if no_cache else "0"}
            relative = normalize_dockerfile_path(context, dockerfile)
            if relative:
                params["dockerfile"] = relative
            if build_args:
                params["buildargs"] = json.dumps(build_args)
            records = await self._collect_stream(
                "POST", "/build", params=params, content=archive, headers={"Content-Type": "application/x-tar"}
            )
            warnings = [
                r["stream"] for r in records if isinstance(r.get("stream"), str) and "warning" in r["stream"].lower()
            ]
            return OperationResult.success({"records": records}, warnings)
        except Exception as exc:
            logger.debug("buildImage failed", tag=tag, error=str(exc))
            return OperationResult.failure(
                "buildImage", exc, {"context": context, "dockerfile": dockerfile, "tag": tag, "noCache": no_cache}
            )

    async def push_image(self, reference: str) -> OperationResult:
        try:
            repository, tag = split_reference(reference)
            # The daemon insists on an auth header even for anonymous pushes
            auth = base64.urlsafe_b64encode(b"{}").decode("ascii")
            records = await self._collect_stream(
                "POST", f"/images/{repository}/push", params={"tag": tag}, headers={"X-Registry-Auth": auth}
            )
            return OperationResult.success({"records": records})
        except Exception as exc:
            return OperationResult.failure("pushImage", exc, {"reference": reference})

    async def pull_image(self, reference: str) -> OperationResult:
        try:
            repository, tag = split_reference(reference)
            records = await self._collect_stream("POST", "/images/create", params={"fromImage": repository, "tag": tag})
            return OperationResult.success({"records": records})
        except Exception as exc:
            return OperationResult.failure("pullImage", exc, {"reference": reference})

    # ------------------------------------------------------------------
    # containers
    # ------------------------------------------------------------------
    async def run_container(self, options: RunOptions) -> OperationResult:
        try:
            host_config = {"AutoRemove": True, **({"NetworkMode": options.network} if options.network else {})}
            host_config.update(options.host_config)
            body: dict[str, Any] = {
                "Image": options.image,
                "Env": [f"{key}={value}" for key, value in options.env.items()],
                "Hostname": options.name,
                "HostConfig": host_config,
            }
            if options.network:
                body["NetworkingConfig"] = {"EndpointsConfig": {options.network: {}}}
            if options.exposed_ports:
                body["ExposedPorts"] = options.exposed_ports
            response = await self._request("POST", "/containers/create", params={"name": options.name}, json_body=body)
            container_id = response.json()["Id"]
            await self._request("POST", f"/containers/{container_id}/start")
            logger.info("Container started", name=options.name, id=container_id[:12])
            return OperationResult.success({"id": container_id})
        except Exception as exc:
            return OperationResult.failure("runContainer", exc, {"name": options.name, "image": options.image})

    async def inspect_container(self, name: str) -> OperationResult:
        try:
            response = await self._request("GET", f"/containers/{name}/json")
            return OperationResult.success(response.json())
        except Exception as exc:
            return OperationResult.failure("inspectContainer", exc, {"name": name})

    async def start_service(self, options: RunOptions, health_check: HealthCheck | None = None) -> OperationResult:
        result = await self.run_container(options)
        if not result.ok:
            return result

        inspected = await self.inspect_container(options.name)
        if not inspected.ok:
            return inspected

        try:
            inspection = inspected.data
            networks = list(((inspection.get("NetworkSettings") or {}).get("Networks") or {}).keys())
            if options.network and options.network not in networks:
                return OperationResult.failure(
                    "startService",
                    RuntimeOperationFailed(f"Container is not attached to network {options.network}"),
                    {
                        "name": options.name,
                        "requestedNetwork": options.network,
                        "networks": networks,
                        "networkAttached": False,
                        "inspection": inspection,
                    },
                )

            if health_check and health_check.url:
                health = await self.wait_for_health(
                    options.name,
                    health_check.url,
                    interval=health_check.interval,
                    timeout=health_check.timeout,
                    expected_status=health_check.expected_status,
                )
                if not health.ok:
                    assert health.error is not None
                    health.error.context["inspection"] = inspection
                    return health
                return OperationResult.success(
                    {"id": result.data["id"], "inspection": inspection, "health": health.data}
                )

            return OperationResult.success({"id": result.data["id"], "inspection": inspection})
        except Exception as exc:
            return OperationResult.failure("startService", exc, {"name": options.name, "network": options.network})

    async def stream_logs(
        self,
        name: str,
        *,
        follow: bool = True,
        stdout: bool = True,
        stderr: bool = True,
        tail: int | str = 50,
        since: int | None = None,
        on_data: OnLine | None = None,
    ) -> OperationResult:
        try:
            params: dict[str, Any] = {
                "follow": "1" if follow else "0",
                "stdout": "1" if stdout else "0",
                "stderr": "1" if stderr else "0",
                "tail": str(tail),
                "timestamps": "0",
            }
            if since is not None:
                params["since"] = str(since)
            request = self.client.build_request("GET", f"/containers/{name}/logs", params=params)
            response = await self.client.send(request, stream=True)
            if response.status_code >= 400:
                error = await self._api_error(response)
                await response.aclose()
                raise error
            stream = LogStream(response, name, on_data)
            stream.start()
            return OperationResult.success({"stream": stream})
        except Exception as exc:
            return OperationResult.failure("streamLogs", exc, {"name": name, "follow": follow, "tail": tail})

    async def wait_for_health(
        self,
        name: str,
        url: str,
        *,
        interval: float = 2.0,
        timeout: float = 60.0,
        expected_status: int | None = None,
    ) -> OperationResult:
        """Poll ``url`` until it reports healthy or the deadline passes."""
        deadline = time.monotonic() + timeout
        attempts = 0
        last_error: Exception | None = None

        client = self._health_client or httpx.AsyncClient(timeout=max(interval, 1.0))
        try:
            while time.monotonic() <= deadline:
                attempts += 1
                try:
                    response = await client.get(url)
                    healthy = (
                        response.status_code == expected_status if expected_status else response.is_success
                    )
                    if healthy:
                        return OperationResult.success({"attempts": attempts, "status": response.status_code})
                    last_error = RuntimeOperationFailed(
                        f"Unexpected status code: {response.status_code}", code=response.status_code
                    )
                except (httpx.HTTPError, httpx.InvalidURL) as exc:
                    last_error = exc

                if time.monotonic() + interval > deadline:
                    break
                await asyncio.sleep(interval)
        finally:
            if client is not self._health_client:
                await client.aclose()

        context: dict[str, Any] = {
            "name": name,
            "url": url,
            "attempts": attempts,
            "timeout": timeout,
            "remediation": generate_remediation(name, url),
        }
        if last_error is not None and str(last_error):
            context["lastError"] = str(last_error)
        logger.warning("Health check timed out", name=name, url=url, attempts=attempts)
        return OperationResult.failure(
            "waitForHealth", last_error or RuntimeOperationFailed("Health check timed out"), context
        )

    async def stop_container(self, name: str, timeout: int = STOP_TIMEOUT_S) -> OperationResult:
        try:
            response = await self._request(
                "POST", f"/containers/{name}/stop", params={"t": str(timeout)}, allow=(404,)
            )
            if response.status_code in (304, 404):
                return OperationResult.success({"name": name, "skipped": True})
            return OperationResult.success({"name": name})
        except Exception as exc:
            return OperationResult.failure("stopContainer", exc, {"name": name})

    async def list_containers(
        self, *, include_stopped: bool = False, filters: dict[str, list[str]] | None = None
    ) -> OperationResult:
        try:
            params = {"all": "1" if include_stopped else "0", **_filters_param(filters)}
            response = await self._request("GET", "/containers/json", params=params)
            return OperationResult.success(response.json())
        except Exception as exc:
            return OperationResult.failure("listContainers", exc, {"all": include_stopped, "filters": filters})

    # ------------------------------------------------------------------
    # bulk removal
    # ------------------------------------------------------------------
    async def _remove_containers(self, selector: ResourceSelector, summary: RemovalSummary) -> None:
        filters = selector.filters
        if not filters and selector.names:
            filters = {"name": list(selector.names)}
        response = await self._request("GET", "/containers/json", params={"all": "1", **_filters_param(filters)})
        for info in response.json():
            names = [_strip_slash(n) for n in info.get("Names") or []]
            target = (info.get("Names") or [info["Id"]])[0]
            if selector.names and not any(n in selector.names for n in names):
                continue
            if selector.match and not any(selector.match(n) for n in names):
                continue
            try:
                await self._request(
                    "DELETE",
                    f"/containers/{info['Id']}",
                    params={"force": "1", "v": "1" if selector.remove_volumes else "0"},
                )
                summary.containers.append(target)
            except Exception as exc:
                summary.record_error("removeContainer", target, exc)

    async def _remove_images(self, selector: ResourceSelector, summary: RemovalSummary) -> None:
        response = await self._request("GET", "/images/json", params=_filters_param(selector.filters))
        for image in response.json():
            tags = image.get("RepoTags") or []
            if selector.references:
                selected = any(tag in selector.references for tag in tags)
            elif selector.match:
                selected = any(selector.match(tag) for tag in tags)
            else:
                selected = bool(selector.filters)
            if not selected:
                continue
            target = tags[0] if tags else image["Id"]
            try:
                await self._request("DELETE", f"/images/{image['Id']}", params={"force": "1", "noprune": "0"})
                summary.images.append(target)
            except Exception as exc:
                summary.record_error("removeImage", target, exc)

    async def _remove_volumes(self, selector: ResourceSelector, summary: RemovalSummary) -> None:
        response = await self._request("GET", "/volumes", params=_filters_param(selector.filters))
        for volume in response.json().get("Volumes") or []:
            name = volume["Name"]
            if selector.names and name not in selector.names:
                continue
            if selector.match and not selector.match(name):
                continue
            try:
                await self._request("DELETE", f"/volumes/{name}", params={"force": "1"})
                summary.volumes.append(name)
            except Exception as exc:
                summary.record_error("removeVolume", name, exc)

    async def _remove_networks(self, selector: ResourceSelector, summary: RemovalSummary) -> None:
        response = await self._request("GET", "/networks", params=_filters_param(selector.filters))
        for network in response.json():
            name = network["Name"]
            if selector.names and name not in selector.names:
                continue
            if selector.match and not selector.match(name):
                continue
            try:
                await self._request("DELETE", f"/networks/{network['Id']}")
                summary.networks.append(name)
            except Exception as exc:
                summary.record_error("removeNetwork", name, exc)

    async def remove_resources(
        self,
        *,
        containers: ResourceSelector | None = None,
        images: ResourceSelector | None = None,
        volumes: ResourceSelector | None = None,
        networks: ResourceSelector | None = None,
    ) -> OperationResult:
        """Best-effort removal across resource kinds.

        Individual failures are collected in ``summary.errors``; the full
        summary is returned as ``data`` whether or not everything succeeded.
        """
        summary = RemovalSummary()
        steps = (
            ("listContainers", "containers", containers, self._remove_containers),
            ("listImages", "images", images, self._remove_images),
            ("listVolumes", "volumes", volumes, self._remove_volumes),
            ("listNetworks", "networks", networks, self._remove_networks),
        )
        for operation, kind, selector, remove in steps:
            if selector is None or not selector.is_active():
                continue
            try:
                await remove(selector, summary)
            except Exception as exc:
                summary.record_error(operation, kind, exc)

        if summary.errors:
            logger.warning("Resource removal incomplete", errors=len(summary.errors), removed=summary.removed_count)
            result = OperationResult.failure(
                "removeResources", RuntimeOperationFailed("Some resources could not be removed")
            )
            assert result.error is not None
            result.error.details = [vars(err) for err in summary.errors]
            result.data = summary
            return result
        return OperationResult.success(summary)

    # ------------------------------------------------------------------
    # networks
    # ------------------------------------------------------------------
    async def inspect_network(self, name: str) -> OperationResult:
        try:
            response = await self._request("GET", f"/networks/{name}")
            return OperationResult.success(response.json())
        except Exception as exc:
            context: dict[str, Any] = {"name": name}
            if isinstance(exc, RuntimeOperationFailed) and exc.code == 404:
                context["notFound"] = True
            return OperationResult.failure("inspectNetwork", exc, context)

    async def create_network(self, name: str, options: dict[str, Any] | None = None) -> OperationResult:
        try:
            response = await self._request("POST", "/networks/create", json_body={"Name": name, **(options or {})})
            network_id = response.json().get("Id", name)
            details = await self._request("GET", f"/networks/{network_id}")
            return OperationResult.success(details.json())
        except Exception as exc:
            return OperationResult.failure("createNetwork", exc, {"name": name})


def flatten_records(records: list[Any]) -> list[str]:
    """Reduce progress records to their non-empty text lines."""
    lines: list[str] = []
    for record in records:
        if not record:
            continue
        if isinstance(record, str):
            text = record
        elif isinstance(record, dict):
            value = record.get("stream") or record.get("status") or record.get("error")
            text = value if isinstance(value, str) else ""
        else:
            text = str(record)
        text = text.strip()
        if text:
            lines.append(text)
    return lines
