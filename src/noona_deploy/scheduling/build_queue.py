"""BuildQueue — bounded pool of worker routines with two capacity tiers."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from typing import Any, Literal

from noona_deploy.errors import InvalidConfiguration, InvalidJob
from noona_deploy.infrastructure.logger import logger
from noona_deploy.reporting import LineLogger, ProgressSink
from noona_deploy.scheduling.types import Job, JobFn, JobResult, ReportEntry

Level = Literal["info", "warn", "error"]


def _positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


class BuildQueue:
    """Runs build jobs on a pool of worker routines.

    Workers pull jobs from a FIFO channel. The number of live workers never
    exceeds ``limit``: raising the limit spawns workers for queued jobs,
    lowering it makes surplus workers retire once their current job ends.
    Workers exit when the channel is empty, so an idle queue holds no tasks.
    """

    def __init__(
        self,
        worker_threads: int = 4,
        subprocesses_per_worker: int = 2,
        *,
        line_logger: LineLogger | None = None,
        on_event: ProgressSink | None = None,
    ) -> None:
        if not _positive_int(worker_threads):
            raise InvalidConfiguration("worker_threads must be a positive integer")
        if not _positive_int(subprocesses_per_worker):
            raise InvalidConfiguration("subprocesses_per_worker must be a positive integer")

        self.worker_threads = worker_threads
        self.subprocesses_per_worker = subprocesses_per_worker
        self.limit = worker_threads
        self._line_logger = line_logger
        self._on_event = on_event

        self._channel: deque[Job] = deque()
        self._workers = 0
        self._active = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._completed: list[JobResult] = []
        self._idle_waiters: list[asyncio.Future[None]] = []
        self._job_counter = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._channel)

    @property
    def max_capacity(self) -> int:
        return self.worker_threads * self.subprocesses_per_worker

    def is_idle(self) -> bool:
        return self._active == 0 and not self._channel

    def _emit(self, event: dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Build queue event handler failed", event_type=event.get("type"))

    # ------------------------------------------------------------------
    # capacity
    # ------------------------------------------------------------------
    def _set_limit(self, limit: int) -> int:
        self.limit = limit
        logger.debug("Build queue capacity changed", limit=limit)
        self._emit({"type": "capacity", "limit": limit})
        self._spawn_workers()
        return limit

    def use_base_capacity(self) -> int:
        return self._set_limit(self.worker_threads)

    def use_max_capacity(self) -> int:
        return self._set_limit(self.max_capacity)

    def get_current_capacity(self) -> int:
        return self.limit

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------
    def enqueue(self, run: JobFn, name: str | None = None) -> asyncio.Future[Any]:
        """Queue a job; the returned future settles with the job's outcome."""
        if not callable(run):
            raise InvalidJob("enqueue requires a callable run function")

        if not name:
            self._job_counter += 1
        job_id = name or f"job-{self._job_counter}"
        loop = asyncio.get_running_loop()
        job = Job(id=job_id, run=run, future=loop.create_future())
        self._channel.append(job)
        self._emit({"type": "enqueue", "service": job_id, "queueSize": len(self._channel)})
        loop.call_soon(self._spawn_workers)
        return job.future

    async def drain(self) -> None:
        """Wait until no job is running or queued."""
        if self.is_idle():
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    def get_results(self) -> list[JobResult]:
        return list(self._completed)

    def _spawn_workers(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        # Workers that exist but are not running a job will claim queued jobs themselves
        while self._workers < self.limit and len(self._channel) > self._workers - self._active:
            self._workers += 1
            task = loop.create_task(self._worker())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _worker(self) -> None:
        try:
            while self._channel and self._workers <= self.limit:
                job = self._channel.popleft()
                await self._run_job(job)
        finally:
            self._workers -= 1
            if self.is_idle() and self._workers == 0:
                self._signal_idle()
            else:
                self._spawn_workers()

    def _signal_idle(self) -> None:
        self._emit({"type": "idle"})
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _log_line(self, job_id: str, logs: list[str], level: Level, message: str) -> None:
        if not message:
            return
        text = f"[{job_id}] {message}"
        logs.append(text)
        if self._line_logger is not None:
            if level == "error":
                self._line_logger.error(text)
            elif level == "warn":
                self._line_logger.warn(text)
            else:
                self._line_logger.info(text)
        self._emit({"type": "log", "service": job_id, "level": level, "message": message, "text": text})

    async def _run_job(self, job: Job) -> None:
        self._active += 1
        started_at = time.time()
        started = time.monotonic()
        logs: list[str] = []
        self._log_line(job.id, logs, "info", f"started (active {self._active}/{self.limit})")

        def report(entry: ReportEntry) -> None:
            if not entry:
                return
            if isinstance(entry, str):
                level, message = "info", entry
            else:
                level, message = entry.get("level") or "info", entry.get("message") or ""
            if level not in ("info", "warn", "error"):
                level = "info"
            self._log_line(job.id, logs, level, str(message))

        try:
            outcome = job.run(report)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError:
            self._active -= 1
            if not job.future.done():
                job.future.cancel()
            raise
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._log_line(job.id, logs, "error", f"failed after {duration_ms}ms: {str(exc) or type(exc).__name__}")
            for record in getattr(exc, "records", None) or []:
                if isinstance(record, str) and record.strip():
                    self._log_line(job.id, logs, "error", record.strip())
            self._completed.append(
                JobResult(job.id, "rejected", tuple(logs), started_at, time.time(), duration_ms, error=exc)
            )
            self._active -= 1
            if not job.future.done():
                job.future.set_exception(exc)
            return

        duration_ms = int((time.monotonic() - started) * 1000)
        self._log_line(job.id, logs, "info", f"completed in {duration_ms}ms")
        self._completed.append(
            JobResult(job.id, "fulfilled", tuple(logs), started_at, time.time(), duration_ms, value=outcome)
        )
        self._active -= 1
        if not job.future.done():
            job.future.set_result(outcome)
