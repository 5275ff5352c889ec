"""Queue worker for dispatched jobs.

Workers claim jobs from the ledger, run the handler registered for the
job's kind, and map the outcome back onto the ledger:

- success: the job is completed, with the handler's note
- DeferredError (paused execution, stage not ready): re-queued without
  consuming an attempt
- ThrottledError: re-queued after max(retry_after, backoff_seconds)
  until the channel's `max_retries` is exceeded, then parked
- non-retryable error (flow-graph errors): the stage and execution are
  failed and the job is parked
- anything else: retried with the configured RetryPolicy, then parked

Any number of workers may run against the same store; claims are
atomic, and handlers check stage ownership before acting.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from pydrip.config import EngineConfig
from pydrip.engine.errors import DeferredError, ThrottledError
from pydrip.engine.ledger import JobLedger
from pydrip.engine.progression import ExecutionProgression
from pydrip.models import DispatchedJob, JobKind

logger = logging.getLogger(__name__)

JobHandler = Callable[[DispatchedJob], Awaitable[str | None]]


class Worker:
    """Worker that polls the job ledger and runs handlers.

    Design Patterns:
    - Strategy: handlers are registered per job kind
    - Builder: with_poll_interval() for configuration

    Usage:
        worker = engine.worker("worker-1").with_poll_interval(0.5)

        # Process everything available now (tests, cron-style runs)
        await worker.drain()

        # Or run in the background
        handle = await worker.start()
        ...
        await handle.shutdown()
    """

    def __init__(
        self,
        ledger: JobLedger,
        worker_id: str,
        *,
        config: EngineConfig,
        progression: ExecutionProgression,
    ):
        self._ledger = ledger
        self._worker_id = worker_id
        self._config = config
        self._progression = progression
        self._handlers: dict[JobKind, JobHandler] = {}
        self._poll_interval = 1.0

        self._shutdown_event = asyncio.Event()
        self._running = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def with_poll_interval(self, interval: float) -> Worker:
        """Seconds to sleep when the queue is empty (builder pattern)."""
        self._poll_interval = interval
        return self

    def register(self, kind: JobKind, handler: JobHandler) -> Worker:
        """Route jobs of `kind` to `handler`.

        Raises:
            WorkerError: If `kind` already has a handler
        """
        if kind in self._handlers:
            raise WorkerError(f"Worker {self._worker_id}: handler for {kind} already registered")
        self._handlers[kind] = handler
        logger.debug(f"Worker {self._worker_id}: registered handler for {kind}")
        return self

    async def run_once(self) -> DispatchedJob | None:
        """Claim and process a single job.

        Returns:
            The job processed, or None if nothing was claimable
        """
        job = await self._ledger.claim(self._worker_id)
        if job is None:
            return None

        handler = self._handlers.get(job.kind)
        if handler is None:
            await self._ledger.fail(job, f"No handler registered for {job.kind}")
            return job

        logger.debug(
            f"Worker {self._worker_id} processing {job.kind} job {job.job_id} "
            f"(attempt {job.attempts})"
        )
        try:
            note = await handler(job)
        except Exception as e:
            await self._handle_error(job, e)
        else:
            await self._ledger.complete(job, note)
            logger.debug(f"Worker {self._worker_id} completed job {job.job_id}: {note}")
        return job

    async def drain(self, max_jobs: int | None = None) -> int:
        """Process claimable jobs until none are left.

        Deferred jobs become claimable only once their `available_at`
        passes, so draining under a fixed clock always terminates.

        Returns:
            Number of jobs processed
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if await self.run_once() is None:
                break
            processed += 1
        return processed

    async def _handle_error(self, job: DispatchedJob, error: Exception) -> None:
        reason = str(error) or type(error).__name__

        if isinstance(error, DeferredError):
            await self._ledger.defer(job, reason, error.retry_after, release_attempt=True)
            return

        if isinstance(error, ThrottledError):
            limits = self._config.limits_for(error.channel)
            if job.attempts > limits.max_retries:
                await self._ledger.fail(
                    job, f"{reason} (gave up after {limits.max_retries} retries)"
                )
                return
            delay = max(error.retry_after, timedelta(seconds=limits.backoff_seconds))
            await self._ledger.defer(job, reason, delay)
            return

        if hasattr(error, "is_retryable") and not error.is_retryable():
            logger.error(f"Worker {self._worker_id} job {job.job_id} failed: {reason}")
            await self._progression.abort(job, reason)
            await self._ledger.fail(job, reason)
            return

        logger.error(
            f"Worker {self._worker_id} job {job.job_id} raised "
            f"{type(error).__name__}: {reason}"
        )
        delay = self._config.job_retry.delay_for_attempt(job.attempts)
        if delay is None:
            await self._ledger.fail(job, reason)
        else:
            await self._ledger.defer(job, reason, delay)

    async def start(self) -> WorkerHandle:
        """Start the polling loop and return a handle immediately.

        Raises:
            WorkerError: If the worker is already running
        """
        if self._running:
            raise WorkerError(f"Worker {self._worker_id} is already running")
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Worker {self._worker_id} started")
        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    job = await self.run_once()
                except Exception as e:
                    logger.error(f"Worker {self._worker_id} poll error: {e}")
                    job = None

                if job is None:
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(), timeout=self._poll_interval
                        )
                    except TimeoutError:
                        pass
        finally:
            self._running = False
            logger.info(f"Worker {self._worker_id} stopped")

    async def shutdown(self) -> None:
        """Stop after the job in progress, if any."""
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()


class WorkerHandle:
    """Handle for controlling a running worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for its loop to exit."""
        await self._worker.shutdown()
        await self._task
        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Cancel the loop without waiting. Prefer shutdown()."""
        self._task.cancel()


class WorkerError(Exception):
    """Worker operation failed."""

    pass
