"""Deployment settings persistence (build.config.json)."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable

from noona_deploy.deploy.types import (
    BuildSchedulerSettings,
    DeployDefaults,
    DeploymentSettings,
)
from noona_deploy.infrastructure.config import (
    BOOT_MODES,
    DEBUG_LEVELS,
    DEFAULT_BOOT_MODE,
    DEFAULT_DEBUG_LEVEL,
    SETTINGS_PATH,
)
from noona_deploy.infrastructure.logger import logger
from noona_deploy.runtime.endpoint import normalize_docker_socket

_MISSING = object()


def parse_positive_int(value: object, fallback: int, flag: str | None = None) -> int:
    """Coerce ``value`` to a positive int, or return ``fallback``."""
    if value is None or value == "" or isinstance(value, bool):
        return fallback
    try:
        parsed = int(str(value).strip())
    except ValueError:
        parsed = 0
    if parsed > 0:
        return parsed
    if flag:
        logger.warning("Ignoring invalid value", flag=flag, value=value, fallback=fallback)
    return fallback


def _choice(value: object, allowed: tuple[str, ...], fallback: str) -> str:
    if isinstance(value, bool):
        value = str(value).lower()
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return fallback


def normalize_socket_override(value: object) -> str | None:
    return normalize_docker_socket(value, allow_remote=True) if isinstance(value, str) else None


def _pick(source: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in source and source[key] is not None:
            return source[key]
    return None


def settings_from_raw(raw: object) -> DeploymentSettings:
    """Leniently build settings from a parsed settings file."""
    settings = DeploymentSettings()
    if not isinstance(raw, Mapping):
        return settings

    scheduler = raw.get("buildScheduler") or raw.get("build") or raw
    if isinstance(scheduler, Mapping):
        settings.build_scheduler = BuildSchedulerSettings(
            worker_threads=parse_positive_int(
                _pick(scheduler, "workerThreads", "worker_threads", "workers"),
                settings.build_scheduler.worker_threads,
            ),
            subprocesses_per_worker=parse_positive_int(
                _pick(scheduler, "subprocessesPerWorker", "subprocesses_per_worker", "subprocesses"),
                settings.build_scheduler.subprocesses_per_worker,
            ),
        )

    defaults = raw.get("defaults")
    if isinstance(defaults, Mapping):
        settings.defaults = DeployDefaults(
            debug_level=_choice(_pick(defaults, "debugLevel", "debug_level"), DEBUG_LEVELS, DEFAULT_DEBUG_LEVEL),
            boot_mode=_choice(_pick(defaults, "bootMode", "boot_mode"), BOOT_MODES, DEFAULT_BOOT_MODE),
        )

    if "hostDockerSocketOverride" in raw:
        settings.host_docker_socket_override = normalize_socket_override(raw["hostDockerSocketOverride"])

    return settings


class SettingsStore:
    """Loads settings once per process, writes them back on update."""

    def __init__(self, path: Path = SETTINGS_PATH) -> None:
        self.path = path
        self._cached: DeploymentSettings | None = None

    def load(self) -> DeploymentSettings:
        if self._cached is not None:
            return self._cached

        settings = DeploymentSettings()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            settings = settings_from_raw(raw)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read deployment settings, using defaults", path=str(self.path), error=str(exc))

        self._cached = settings
        return settings

    def invalidate(self) -> None:
        self._cached = None

    def save(self, updater: Callable[[DeploymentSettings], DeploymentSettings]) -> DeploymentSettings:
        current = self.load().model_copy(deep=True)
        updated = settings_from_raw(updater(current).to_json_dict())

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(updated.to_json_dict(), indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

        self.invalidate()
        self._cached = updated
        logger.info("Deployment settings saved", path=str(self.path))
        return updated

    def fetch(self) -> DeploymentSettings:
        return self.load()

    def resolve_build_concurrency(self, overrides: Mapping[str, Any] | None = None) -> tuple[int, int]:
        """Effective (worker_threads, subprocesses_per_worker): override, then stored, then default."""
        overrides = overrides or {}
        stored = self.load().build_scheduler
        return (
            parse_positive_int(_pick(overrides, "workerThreads", "worker_threads"), stored.worker_threads),
            parse_positive_int(
                _pick(overrides, "subprocessesPerWorker", "subprocesses_per_worker"),
                stored.subprocesses_per_worker,
            ),
        )

    def update(self, updates: Mapping[str, Any]) -> DeploymentSettings:
        """Merge ``updates`` into the stored settings; absent fields are kept.

        Accepts nested (``buildScheduler``/``concurrency``, ``defaults``) or
        flat keys, in camelCase or snake_case.
        """
        concurrency = _pick(updates, "concurrency", "buildScheduler", "build_scheduler")
        if not isinstance(concurrency, Mapping):
            concurrency = updates
        defaults = _pick(updates, "defaults")
        if not isinstance(defaults, Mapping):
            defaults = updates

        worker_threads = _pick(concurrency, "workerThreads", "worker_threads")
        if worker_threads is None:
            worker_threads = _pick(updates, "workerThreads", "worker_threads")
        subprocesses = _pick(concurrency, "subprocessesPerWorker", "subprocesses_per_worker")
        if subprocesses is None:
            subprocesses = _pick(updates, "subprocessesPerWorker", "subprocesses_per_worker")
        debug_level = _pick(defaults, "debugLevel", "debug_level")
        if debug_level is None:
            debug_level = _pick(updates, "debugLevel", "debug_level")
        boot_mode = _pick(defaults, "bootMode", "boot_mode")
        if boot_mode is None:
            boot_mode = _pick(updates, "bootMode", "boot_mode")

        override: object = _MISSING
        for source in (updates, defaults):
            for key in ("hostDockerSocketOverride", "host_docker_socket_override"):
                if key in source:
                    override = source[key]
                    break
            if override is not _MISSING:
                break

        def apply(current: DeploymentSettings) -> DeploymentSettings:
            scheduler = current.build_scheduler
            current.build_scheduler = BuildSchedulerSettings(
                worker_threads=parse_positive_int(worker_threads, scheduler.worker_threads, "workerThreads"),
                subprocesses_per_worker=parse_positive_int(
                    subprocesses, scheduler.subprocesses_per_worker, "subprocessesPerWorker"
                ),
            )
            current.defaults = DeployDefaults(
                debug_level=_choice(debug_level, DEBUG_LEVELS, current.defaults.debug_level),
                boot_mode=_choice(boot_mode, BOOT_MODES, current.defaults.boot_mode),
            )
            if override is not _MISSING:
                current.host_docker_socket_override = normalize_socket_override(override)
            return current

        return self.save(apply)
