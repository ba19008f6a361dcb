"""Reporter boundary: narration, progress events, and the deployment log file."""

from __future__ import annotations

import re
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence, TextIO

from noona_deploy.infrastructure.config import LOG_DIR, MAX_DEPLOY_LOG_FILES
from noona_deploy.infrastructure.logger import logger

ProgressSink = Callable[[dict[str, Any]], None]
LogSink = Callable[[dict[str, str]], None]

_ANSI = re.compile(r"\x1b\[[0-9;]*m")


class LineLogger(Protocol):
    """Minimal levelled logger the build scheduler writes job lines to."""

    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class Reporter(LineLogger, Protocol):
    """Narration interface consumed by the TUI, CLI and HTTP collaborators."""

    def success(self, message: str) -> None: ...

    def table(self, rows: Sequence[dict[str, Any]], columns: Sequence[str] | None = None) -> None: ...


class LogReporter:
    """Default reporter: narration goes to structlog."""

    def __init__(self, name: str = "deploy") -> None:
        self._log = logger.bind(component=name)

    def info(self, message: str) -> None:
        self._log.info(message)

    def warn(self, message: str) -> None:
        self._log.warning(message)

    def error(self, message: str) -> None:
        self._log.error(message)

    def success(self, message: str) -> None:
        self._log.info(message, outcome="success")

    def table(self, rows: Sequence[dict[str, Any]], columns: Sequence[str] | None = None) -> None:
        for row in rows:
            self._log.info("row", **{k: row.get(k) for k in (columns or row.keys())})


def render_table(rows: Sequence[dict[str, Any]], columns: Sequence[str] | None = None) -> str:
    """Render rows as a plain fixed-width text table."""
    if not rows:
        return ""
    headers = list(columns or rows[0].keys())
    cells = [[str(row.get(h, "")) for h in headers] for row in rows]
    widths = [max(len(h), *(len(c[i]) for c in cells)) for i, h in enumerate(headers)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths))]
    lines.append("  ".join("-" * w for w in widths))
    lines.extend("  ".join(c.ljust(w) for c, w in zip(cell, widths)) for cell in cells)
    return "\n".join(lines)


class ConsoleReporter:
    """Coloured terminal narration for the line CLI."""

    _COLORS = {"info": "\x1b[36m", "warn": "\x1b[33m", "error": "\x1b[31m", "success": "\x1b[32m"}
    _RESET = "\x1b[0m"

    def __init__(self, stream: TextIO | None = None, color: bool | None = None) -> None:
        self._stream = stream or sys.stdout
        self._color = self._stream.isatty() if color is None else color

    def _write(self, kind: str, message: str) -> None:
        if self._color:
            message = f"{self._COLORS[kind]}{message}{self._RESET}"
        print(message, file=self._stream)

    def info(self, message: str) -> None:
        self._write("info", message)

    def warn(self, message: str) -> None:
        self._write("warn", message)

    def error(self, message: str) -> None:
        self._write("error", message)

    def success(self, message: str) -> None:
        self._write("success", message)

    def table(self, rows: Sequence[dict[str, Any]], columns: Sequence[str] | None = None) -> None:
        text = render_table(rows, columns)
        if text:
            print(text, file=self._stream)


class DeploymentLogFile:
    """Per-process deployment log; keeps only the newest few files."""

    def __init__(self, directory: Path = LOG_DIR, keep: int = MAX_DEPLOY_LOG_FILES) -> None:
        self.directory = directory
        self._keep = keep
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            self.directory.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).isoformat().replace(":", "-").replace(".", "-")
            self._path = self.directory / f"deploy-{stamp}.log"
            self._path.write_text(f"# Deployment log started {datetime.now(UTC).isoformat()}\n", encoding="utf-8")
            self._prune()
        return self._path

    def _prune(self) -> None:
        files = sorted(
            (p for p in self.directory.iterdir() if p.is_file()),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for stale in files[self._keep:]:
            try:
                stale.unlink()
            except OSError:
                logger.debug("Could not prune deployment log", path=str(stale))

    def append(self, level: str, message: str) -> None:
        text = _ANSI.sub("", str(message))
        if not text.strip():
            return
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(f"[{datetime.now(UTC).isoformat()}] [{level.upper()}] {text}\n")
        except OSError as exc:
            logger.debug("Deployment log write failed", error=str(exc))


class TeeReporter:
    """Forwards narration to a reporter and mirrors it into the log file."""

    def __init__(self, reporter: Reporter, log_file: DeploymentLogFile | None = None) -> None:
        self._reporter = reporter
        self._log_file = log_file

    def _record(self, level: str, message: str) -> None:
        if self._log_file is not None:
            self._log_file.append(level, message)

    def info(self, message: str) -> None:
        self._record("info", message)
        self._reporter.info(message)

    def warn(self, message: str) -> None:
        self._record("warn", message)
        self._reporter.warn(message)

    def error(self, message: str) -> None:
        self._record("error", message)
        self._reporter.error(message)

    def success(self, message: str) -> None:
        self._record("success", message)
        self._reporter.success(message)

    def table(self, rows: Sequence[dict[str, Any]], columns: Sequence[str] | None = None) -> None:
        self._record("table", render_table(rows, columns))
        self._reporter.table(rows, columns)
