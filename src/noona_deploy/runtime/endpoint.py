"""Runtime daemon endpoint discovery (unix socket, named pipe, or TCP)."""

from __future__ import annotations

import os
import re
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Union
from urllib.parse import urlparse

from noona_deploy.infrastructure.config import (
    DEFAULT_TCP_PORT,
    DEFAULT_UNIX_SOCKET,
    DEFAULT_WINDOWS_PIPE,
)
from noona_deploy.infrastructure.logger import logger

_REMOTE_SCHEME = re.compile(r"^(tcp|http|https)://", re.IGNORECASE)


@dataclass(frozen=True)
class UnixSocket:
    path: str


@dataclass(frozen=True)
class NamedPipe:
    path: str


@dataclass(frozen=True)
class TcpEndpoint:
    host: str
    port: int = DEFAULT_TCP_PORT
    protocol: str = "tcp"

    @property
    def base_url(self) -> str:
        scheme = "http" if self.protocol in ("tcp", "http") else self.protocol
        return f"{scheme}://{self.host}:{self.port}"


Endpoint = Union[UnixSocket, NamedPipe, TcpEndpoint]

SocketDetector = Callable[[Mapping[str, str], str], Iterable[str]]


def is_windows_pipe_path(value: str) -> bool:
    normalized = value.replace("\\", "/")
    return normalized.lower().startswith("//./pipe/")


def is_tcp_docker_socket(value: str) -> bool:
    return bool(_REMOTE_SCHEME.match(value.strip()))


def normalize_docker_socket(value: object, allow_remote: bool = False) -> str | None:
    """Normalize a socket reference to a plain path (or a remote URL).

    Returns None when the value cannot be used as a socket reference.
    """
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate:
        return None

    lowered = candidate.lower()
    if lowered.startswith("unix://"):
        candidate = candidate[len("unix://"):]
        return candidate if candidate.startswith("/") else None

    if lowered.startswith("npipe://"):
        candidate = candidate[len("npipe://"):]
        if not candidate:
            return None
        candidate = candidate.replace("\\", "/")
        return candidate if is_windows_pipe_path(candidate) else None

    if is_tcp_docker_socket(candidate):
        return candidate if allow_remote else None

    if is_windows_pipe_path(candidate):
        return candidate.replace("\\", "/")

    if candidate.startswith("/"):
        return candidate

    return None


def to_endpoint(socket_path: str) -> Endpoint:
    """Turn a normalized socket path into a tagged endpoint."""
    if is_windows_pipe_path(socket_path):
        return NamedPipe(socket_path)
    return UnixSocket(socket_path)


def parse_tcp_endpoint(value: str) -> TcpEndpoint | None:
    parsed = urlparse(value.strip())
    if not parsed.hostname:
        return None
    try:
        port = parsed.port or DEFAULT_TCP_PORT
    except ValueError:
        return None
    return TcpEndpoint(host=parsed.hostname, port=port, protocol=(parsed.scheme or "tcp").lower())


def platform_default(platform: str) -> str:
    return DEFAULT_WINDOWS_PIPE if platform == "win32" else DEFAULT_UNIX_SOCKET


def default_socket_detector(env: Mapping[str, str], platform: str) -> list[str]:
    """Probe well-known socket locations, most specific first."""
    if platform == "win32":
        return [DEFAULT_WINDOWS_PIPE, "//./pipe/dockerDesktopLinuxEngine"]

    candidates: list[str] = []
    runtime_dir = env.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        candidates.append(str(Path(runtime_dir) / "docker.sock"))
    home = env.get("HOME")
    if home:
        candidates.append(str(Path(home) / ".docker" / "run" / "docker.sock"))
        candidates.append(str(Path(home) / ".colima" / "default" / "docker.sock"))
    candidates.append(DEFAULT_UNIX_SOCKET)

    return [path for path in candidates if os.path.exists(path)]


def _detect(detector: SocketDetector | None, env: Mapping[str, str], platform: str, allow_remote: bool) -> list[str]:
    if detector is None:
        return []
    try:
        raw = detector(env, platform)
    except Exception:
        logger.debug("Docker socket detection failed", platform=platform, exc_info=True)
        return []
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    detected: list[str] = []
    for entry in raw:
        normalized = normalize_docker_socket(entry, allow_remote=allow_remote)
        if normalized:
            detected.append(normalized)
    return detected


def _prefer_for_platform(candidates: list[str], platform: str) -> str | None:
    is_windows = platform == "win32"
    for candidate in candidates:
        if is_windows == is_windows_pipe_path(candidate):
            return candidate
    return None


def resolve_socket_binding(
    detector: SocketDetector | None = default_socket_detector,
    platform: str | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Pick the host socket to hand to the orchestrator container.

    Remote (tcp) candidates are allowed; on POSIX a filesystem socket beats
    a remote one. Never raises.
    """
    platform = platform or sys.platform
    env = os.environ if env is None else env
    candidates = _detect(detector, env, platform, allow_remote=True)

    preferred = _prefer_for_platform(candidates, platform)
    if preferred:
        if platform == "win32" or not is_tcp_docker_socket(preferred):
            return preferred

    if platform != "win32":
        for candidate in candidates:
            if candidate.startswith("/"):
                return candidate
        if preferred:
            return preferred

    return platform_default(platform)


def resolve_endpoint(
    socket_path: str | None = None,
    *,
    env: Mapping[str, str] | None = None,
    platform: str | None = None,
    detector: SocketDetector | None = default_socket_detector,
) -> Endpoint:
    """Decide how to reach the runtime daemon.

    Precedence: explicit socket path, then ``DOCKER_HOST``, then the detector,
    then the platform default. Never raises.
    """
    platform = platform or sys.platform
    env = os.environ if env is None else env

    explicit = normalize_docker_socket(socket_path)
    if explicit:
        return to_endpoint(explicit)

    docker_host = (env.get("DOCKER_HOST") or "").strip()
    if docker_host:
        as_socket = normalize_docker_socket(docker_host)
        if as_socket:
            return to_endpoint(as_socket)
        tcp = parse_tcp_endpoint(docker_host)
        if tcp:
            return tcp
        logger.warning("Ignoring unusable DOCKER_HOST", value=docker_host)

    preferred = _prefer_for_platform(_detect(detector, env, platform, allow_remote=False), platform)
    if preferred:
        return to_endpoint(preferred)

    return to_endpoint(platform_default(platform))
