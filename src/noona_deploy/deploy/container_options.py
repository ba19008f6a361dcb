"""Container run options for managed services, and status-row formatting."""

from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import Any

from noona_deploy.infrastructure.config import (
    DOCKER_SOCKET_TARGET,
    NETWORK_NAME,
    ORCHESTRATOR_SERVICE,
    WARDEN_API_PORT,
    container_name,
)
from noona_deploy.runtime.docker_host import RunOptions
from noona_deploy.runtime.endpoint import (
    SocketDetector,
    default_socket_detector,
    is_tcp_docker_socket,
    normalize_docker_socket,
    resolve_socket_binding,
)
from noona_deploy.runtime.results import RemovalSummary

EMPTY_CELL = "-"


@lru_cache(maxsize=1)
def default_socket_binding() -> str:
    """Host socket binding for this process, detected once."""
    return resolve_socket_binding()


def create_container_options(
    service: str,
    image: str,
    env: Mapping[str, Any] | None = None,
    *,
    detector: SocketDetector | None = None,
    platform: str | None = None,
    host_docker_socket_override: str | None = None,
    bind_host_docker_socket: bool = True,
) -> RunOptions:
    """Build run options for ``service`` from its image name (without tag).

    The host runtime socket is bind-mounted into the container, or passed
    through as ``DOCKER_HOST`` for the orchestrator when it is remote.
    """
    normalized_env = {
        key: value for key, value in (env or {}).items() if isinstance(value, str) and value.strip()
    }
    normalized_env.setdefault("SERVICE_NAME", container_name(service))

    host_config: dict[str, Any] = {"Binds": []}
    socket_candidates: list[str] = []

    if bind_host_docker_socket:
        host_socket = None
        if host_docker_socket_override is not None:
            host_socket = normalize_docker_socket(host_docker_socket_override, allow_remote=True)
        if not host_socket:
            if detector is not None or platform is not None:
                host_socket = resolve_socket_binding(
                    detector=detector or default_socket_detector, platform=platform
                )
            else:
                host_socket = default_socket_binding()

        host_socket = host_socket.strip()
        if is_tcp_docker_socket(host_socket):
            socket_candidates.append(host_socket)
            if service == ORCHESTRATOR_SERVICE:
                normalized_env.setdefault("DOCKER_HOST", host_socket)
        elif host_socket:
            host_config["Binds"].append(f"{host_socket}:{DOCKER_SOCKET_TARGET}")
            socket_candidates.append(host_socket)
            if host_socket != DOCKER_SOCKET_TARGET:
                socket_candidates.append(DOCKER_SOCKET_TARGET)

    exposed_ports: dict[str, dict] = {}
    if service == ORCHESTRATOR_SERVICE:
        api_port = (normalized_env.get("WARDEN_API_PORT") or WARDEN_API_PORT).strip()
        port_key = f"{api_port}/tcp"
        host_config["PortBindings"] = {port_key: [{"HostPort": api_port}]}
        exposed_ports[port_key] = {}

        if bind_host_docker_socket and socket_candidates:
            normalized_env.setdefault("NOONA_HOST_DOCKER_SOCKETS", ",".join(socket_candidates))
            normalized_env.setdefault("HOST_DOCKER_SOCKETS", normalized_env["NOONA_HOST_DOCKER_SOCKETS"])

    return RunOptions(
        name=normalized_env["SERVICE_NAME"],
        image=f"{image}:latest",
        env=normalized_env,
        network=NETWORK_NAME,
        host_config=host_config,
        exposed_ports=exposed_ports,
    )


def format_ports(ports: Any) -> str:
    """Render ports from a container listing (list) or an inspection (mapping)."""
    if not ports:
        return EMPTY_CELL

    entries: list[str] = []
    if isinstance(ports, list):
        for port in ports:
            proto = port.get("Type") or "tcp"
            private = f"{port['PrivatePort']}/{proto}" if port.get("PrivatePort") else proto
            if port.get("PublicPort"):
                ip = port.get("IP")
                host = ip if ip and ip != "0.0.0.0" else "localhost"
                entries.append(f"{host}:{port['PublicPort']} -> {private}")
            else:
                entries.append(private)
    elif isinstance(ports, Mapping):
        for internal, bindings in ports.items():
            if not bindings:
                entries.append(internal)
                continue
            for binding in bindings:
                ip = binding.get("HostIp")
                host = ip if ip and ip != "0.0.0.0" else "localhost"
                entries.append(f"{host}:{binding.get('HostPort')} -> {internal}")

    return ", ".join(e for e in entries if e) or EMPTY_CELL


def build_container_row(
    inspection: Mapping[str, Any] | None, *, result: str | None = None, note: str | None = None
) -> dict[str, str]:
    inspection = inspection or {}
    state = inspection.get("State") or {}
    network_settings = inspection.get("NetworkSettings") or {}
    networks = list((network_settings.get("Networks") or {}).keys())
    name = (inspection.get("Name") or "").lstrip("/") or (inspection.get("Config") or {}).get("Hostname")
    return {
        "Name": name or "unknown",
        "State": result or state.get("Status") or "unknown",
        "Health": (state.get("Health") or {}).get("Status") or "n/a",
        "Networks": ", ".join(networks) if networks else EMPTY_CELL,
        "Ports": format_ports(network_settings.get("Ports")),
        "Note": note or "",
    }


def removal_rows(summary: RemovalSummary) -> list[dict[str, str]]:
    rows = [{"Type": "container", "Target": n.lstrip("/"), "Result": "removed"} for n in summary.containers]
    rows += [{"Type": "image", "Target": n, "Result": "removed"} for n in summary.images]
    rows += [{"Type": "volume", "Target": n, "Result": "removed"} for n in summary.volumes]
    rows += [{"Type": "network", "Target": n, "Result": "removed"} for n in summary.networks]
    rows += [{"Type": "error", "Target": e.target, "Result": e.message} for e in summary.errors]
    if not rows:
        rows.append({"Type": "info", "Target": "No matching resources", "Result": EMPTY_CELL})
    return rows
