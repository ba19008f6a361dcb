"""Container log streaming over the runtime's attach/log endpoint."""

from __future__ import annotations

import asyncio
import codecs
import re
from typing import Callable

import httpx

from noona_deploy.infrastructure.logger import logger

OnLine = Callable[[str], None]

_HEADER_SIZE = 8
_LINE_SPLIT = re.compile(r"\r?\n")


class LogDemuxer:
    """Splits the runtime's log byte stream into text lines.

    Non-TTY containers multiplex stdout/stderr as 8-byte framed chunks
    (``[stream, 0, 0, 0, size(4, big endian)]``); TTY containers send raw
    bytes. The framing is detected from the first chunk.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._pending_text = ""
        self._multiplexed: bool | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @staticmethod
    def _looks_multiplexed(data: bytes) -> bool:
        return len(data) >= _HEADER_SIZE and data[0] in (0, 1, 2) and data[1:4] == b"\x00\x00\x00"

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        if self._multiplexed is None:
            if len(self._buffer) < _HEADER_SIZE:
                return []
            self._multiplexed = self._looks_multiplexed(self._buffer)

        text = ""
        if self._multiplexed:
            while len(self._buffer) >= _HEADER_SIZE:
                size = int.from_bytes(self._buffer[4:8], "big")
                if len(self._buffer) < _HEADER_SIZE + size:
                    break
                text += self._decoder.decode(self._buffer[_HEADER_SIZE:_HEADER_SIZE + size])
                self._buffer = self._buffer[_HEADER_SIZE + size:]
        else:
            text = self._decoder.decode(self._buffer)
            self._buffer = b""

        return self._split(text)

    def _split(self, text: str) -> list[str]:
        if not text:
            return []
        parts = _LINE_SPLIT.split(self._pending_text + text)
        self._pending_text = parts.pop()
        return [part for part in parts if part]

    def flush(self) -> list[str]:
        leftover = self._decoder.decode(b"" if self._multiplexed else self._buffer, final=True)
        self._buffer = b""
        text = self._pending_text + leftover
        self._pending_text = ""
        return [part for part in _LINE_SPLIT.split(text) if part]


class LogStream:
    """Handle for a running log follow; call ``destroy()`` to stop tailing."""

    def __init__(self, response: httpx.Response, name: str, on_data: OnLine | None = None) -> None:
        self._response = response
        self._name = name
        self._on_data = on_data
        self._demuxer = LogDemuxer()
        self._task: asyncio.Task[None] | None = None
        self.destroyed = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump())

    def _emit(self, lines: list[str]) -> None:
        if not self._on_data:
            return
        for line in lines:
            try:
                self._on_data(line)
            except Exception:
                logger.exception("Log line handler failed", name=self._name)

    async def _pump(self) -> None:
        try:
            async for chunk in self._response.aiter_bytes():
                self._emit(self._demuxer.feed(chunk))
            self._emit(self._demuxer.flush())
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            if not self.destroyed:
                logger.warning("Log stream ended with error", name=self._name, error=str(exc))
        finally:
            await self._response.aclose()

    async def wait_closed(self) -> None:
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)

    def destroy(self) -> None:
        """Stop following the container's logs. Safe to call repeatedly."""
        if self.destroyed:
            return
        self.destroyed = True
        if self._task and not self._task.done():
            self._task.cancel()
