"""Bounded lifecycle audit log (lifecycleHistory.json)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from noona_deploy.deploy.types import LifecycleEvent, LifecycleStatus
from noona_deploy.infrastructure.config import HISTORY_PATH, MAX_HISTORY_ENTRIES
from noona_deploy.infrastructure.logger import logger


def _jsonable(value: Any) -> Any:
    """Coerce details into something json.dumps accepts."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "to_dict"):
        return _jsonable(value.to_dict())
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    return str(value)


class LifecycleHistory:
    def __init__(self, path: Path = HISTORY_PATH, max_entries: int = MAX_HISTORY_ENTRIES) -> None:
        self.path = path
        self.max_entries = max_entries

    def read(self) -> list[LifecycleEvent]:
        """Return persisted events, oldest first. A missing or unreadable file is empty history."""
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read lifecycle history", path=str(self.path), error=str(exc))
            return []

        if not isinstance(raw, list):
            return []
        events: list[LifecycleEvent] = []
        for entry in raw:
            try:
                events.append(LifecycleEvent.model_validate(entry))
            except ValidationError:
                logger.debug("Skipping malformed lifecycle entry", entry=entry)
        return events

    def record(
        self,
        action: str,
        service: str | None,
        status: LifecycleStatus,
        details: dict[str, Any] | None = None,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            action=action,
            service=service,
            status=status,
            details=_jsonable(details or {}),
            timestamp=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        )
        history = self.read()
        history.append(event)
        trimmed = history[-self.max_entries:]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps([e.model_dump(exclude_none=True) for e in trimmed], indent=2),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Unable to persist lifecycle history", path=str(self.path), error=str(exc))
        return event
