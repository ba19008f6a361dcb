"""Configuration constants, .env parsing, and deployment defaults."""

from __future__ import annotations

import os
from pathlib import Path


def read_env_file(keys: list[str], env_file: Path | None = None) -> dict[str, str]:
    """Parse a .env file and return values for requested keys.

    Values are NOT loaded into os.environ; callers decide what to do with them.
    """
    path = env_file or Path.cwd() / ".env"
    try:
        content = path.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        if trimmed.startswith("export "):
            trimmed = trimmed[len("export "):].lstrip()
        key, sep, value = trimmed.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key not in wanted:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


def env_value(name: str, default: str, env_config: dict[str, str] | None = None) -> str:
    """Resolve a setting from os.environ, then the .env file, then the default."""
    source = _env_config if env_config is None else env_config
    return os.environ.get(name) or source.get(name) or default


_env_config = read_env_file(["NOONA_ROOT", "NOONA_REGISTRY_NAMESPACE", "WARDEN_API_PORT"])

# Service catalogue
SERVICES: tuple[str, ...] = ("moon", "warden", "raven", "sage", "vault", "portal")
ORCHESTRATOR_SERVICE = "warden"
HEAVY_SERVICE = "raven"
NAME_PREFIX = "noona-"
NETWORK_NAME = "noona-network"
REGISTRY_NAMESPACE: str = env_value("NOONA_REGISTRY_NAMESPACE", "captainpax")
WARDEN_API_PORT: str = env_value("WARDEN_API_PORT", "4001")

# Runtime daemon
DOCKER_SOCKET_TARGET = "/var/run/docker.sock"
DEFAULT_UNIX_SOCKET = "/var/run/docker.sock"
DEFAULT_WINDOWS_PIPE = "//./pipe/docker_engine"
DEFAULT_TCP_PORT = 2375

# Build scheduler and start defaults
DEFAULT_WORKER_THREADS = 4
DEFAULT_SUBPROCESSES_PER_WORKER = 2
DEFAULT_DEBUG_LEVEL = "false"
DEFAULT_BOOT_MODE = "minimal"
DEBUG_LEVELS: tuple[str, ...] = ("false", "true", "super")
BOOT_MODES: tuple[str, ...] = ("minimal", "super")

HEALTH_TIMEOUT_S: float = 120.0
HEALTH_INTERVAL_S: float = 2.0
SUPER_HEALTH_INTERVAL_S: float = 1.0
STOP_TIMEOUT_S = 10

MAX_HISTORY_ENTRIES = 50
LOG_BUFFER_LINES = 50
FAILED_START_LOG_LINES = 20
BUILD_LOG_TAIL_LINES = 10
MAX_DEPLOY_LOG_FILES = 3

# Absolute paths
PROJECT_ROOT: Path = Path(env_value("NOONA_ROOT", str(Path.cwd()))).resolve()
DEPLOYMENT_DIR: Path = PROJECT_ROOT / "deployment"
SETTINGS_PATH: Path = DEPLOYMENT_DIR / "build.config.json"
HISTORY_PATH: Path = DEPLOYMENT_DIR / "lifecycleHistory.json"
LOG_DIR: Path = DEPLOYMENT_DIR / "logs"


def image_name(service: str, namespace: str | None = None) -> str:
    """Registry image name (without tag) for a service."""
    return f"{namespace or REGISTRY_NAMESPACE}/{NAME_PREFIX}{service}"


def container_name(service: str) -> str:
    return f"{NAME_PREFIX}{service}"
