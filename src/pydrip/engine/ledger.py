"""Job ledger: the audit trail and work queue for background jobs.

Every unit of background work is a DispatchedJob row. Workers claim
rows with a conditional update, so delivery is at-least-once; handlers
stay idempotent by checking stage ownership before acting.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from pydrip.clock import Clock
from pydrip.models import DispatchedJob, JobPayload, JobState
from pydrip.storage.base import FlowStore

logger = logging.getLogger(__name__)


class JobLedger:
    """Thin policy layer over the store's job table."""

    def __init__(self, store: FlowStore, clock: Clock):
        self._store = store
        self._clock = clock

    def new_job(
        self, payload: JobPayload, available_at: datetime | None = None
    ) -> DispatchedJob:
        """Build (but do not persist) a job, so its id can be used as a claim token."""
        now = self._clock.now()
        return DispatchedJob(
            payload=payload,
            available_at=available_at or now,
            created_at=now,
            updated_at=now,
        )

    async def enqueue(self, job: DispatchedJob) -> DispatchedJob:
        await self._store.enqueue_job(job)
        logger.debug(
            f"Queued {job.kind} job {job.job_id} for stage {job.payload.stage_id} "
            f"(available_at={job.available_at.isoformat()})"
        )
        return job

    async def dispatch(
        self, payload: JobPayload, available_at: datetime | None = None
    ) -> DispatchedJob:
        return await self.enqueue(self.new_job(payload, available_at))

    async def claim(self, worker_id: str) -> DispatchedJob | None:
        return await self._store.claim_job(worker_id, self._clock.now())

    async def complete(self, job: DispatchedJob, note: str | None = None) -> None:
        await self._store.complete_job(job.job_id, self._clock.now(), note)

    async def defer(
        self,
        job: DispatchedJob,
        reason: str,
        delay: timedelta,
        release_attempt: bool = False,
    ) -> None:
        now = self._clock.now()
        await self._store.defer_job(job.job_id, reason, now + delay, now, release_attempt)
        logger.info(f"Deferred {job.kind} job {job.job_id} by {delay}: {reason}")

    async def fail(self, job: DispatchedJob, reason: str) -> None:
        await self._store.fail_job(job.job_id, reason, self._clock.now())
        logger.error(
            f"Parked {job.kind} job {job.job_id} after {job.attempts} attempt(s): {reason}"
        )

    async def history(self, execution_id: str) -> list[DispatchedJob]:
        return await self._store.list_jobs(execution_id=execution_id)

    async def failed_jobs(self, execution_id: str | None = None) -> list[DispatchedJob]:
        return await self._store.list_jobs(state=JobState.FAILED, execution_id=execution_id)

    async def retry_failed(self, job_ids: Sequence[str] | None = None) -> int:
        count = await self._store.requeue_failed_jobs(self._clock.now(), job_ids)
        if count:
            logger.info(f"Requeued {count} failed job(s)")
        return count

    async def clear_failed(self, job_ids: Sequence[str] | None = None) -> int:
        count = await self._store.purge_failed_jobs(job_ids)
        if count:
            logger.info(f"Purged {count} failed job(s)")
        return count
