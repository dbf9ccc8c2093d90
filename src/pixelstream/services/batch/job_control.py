"""Job control surface: start, pause, resume, cancel and query batch jobs.

All operations are scoped to the calling owner. Control mutations lock the
job row, so they serialize with item completions.
"""

from typing import Callable
from uuid import UUID

import structlog

from pixelstream.core.timezone import utcnow
from pixelstream.models.artifact import GeneratedArtifact
from pixelstream.models.batch_job import (
    MAX_BATCH_SIZE,
    MIN_BATCH_SIZE,
    BatchJob,
    InvalidStateTransition,
)
from pixelstream.models.generation_params import ImageParams, VideoParams
from pixelstream.services.batch.job_store import BatchJobStore
from pixelstream.services.entitlements import can_user_generate
from pixelstream.services.exceptions import (
    AccessDenied,
    InvalidCount,
    InvalidState,
    JobNotFound,
    NotOwner,
)
from pixelstream.uow import UnitOfWork

logger = structlog.get_logger(__name__)


class BatchJobControl:
    """Owner-facing operations on batch jobs."""

    def __init__(self, uow_factory: Callable, item_interval_seconds: float = 0.1):
        self.uow_factory = uow_factory
        self.store = BatchJobStore(uow_factory, item_interval_seconds)

    async def _get_owned(self, uow: UnitOfWork, job_id: UUID, owner_id: str, lock: bool) -> BatchJob:
        if lock:
            job = await uow.batch_jobs.get_for_update(job_id)
        else:
            job = await uow.batch_jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFound(f"Batch job {job_id} not found")
        if job.owner_id != owner_id:
            raise NotOwner(f"Batch job {job_id} belongs to another owner")
        return job

    async def start_job(
        self, owner_id: str, total_count: int, params: ImageParams | VideoParams
    ) -> UUID:
        """Create a batch job and schedule its first item.

        Raises:
            AccessDenied: Owner has no subscription and the trial expired
            InvalidCount: total_count outside [1, 1000]
        """
        async with await self.uow_factory() as uow:
            entitlement = await can_user_generate(uow.accounts, owner_id)
        if not entitlement.allowed:
            logger.info("batch.job.access_denied", owner_id=owner_id)
            raise AccessDenied(entitlement.reason)

        if not MIN_BATCH_SIZE <= total_count <= MAX_BATCH_SIZE:
            raise InvalidCount(
                f"Batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
            )

        job = await self.store.create_job(owner_id, total_count, params)
        return job.id

    async def pause_job(self, job_id: UUID, owner_id: str) -> BatchJob:
        """Pause a pending or processing job.

        The item in flight still records its result; no successor is
        dispatched until resume.

        Raises:
            JobNotFound, NotOwner, InvalidState
        """
        async with await self.uow_factory() as uow:
            job = await self._get_owned(uow, job_id, owner_id, lock=True)
            try:
                job.mark_paused()
            except InvalidStateTransition as e:
                raise InvalidState(str(e)) from e
            await uow.batch_jobs.add(job)

        logger.info("batch.job.paused", batch_job_id=str(job_id), current_index=job.current_index)
        return job

    async def resume_job(self, job_id: UUID, owner_id: str) -> BatchJob:
        """Resume a paused job with exactly one successor.

        If items are still queued or executing, parked entries are woken and
        the pipeline continues from them. Otherwise the item at current_index
        is enqueued for immediate dispatch.

        Raises:
            JobNotFound, NotOwner, InvalidState
        """
        scheduled_index = None
        async with await self.uow_factory() as uow:
            job = await self._get_owned(uow, job_id, owner_id, lock=True)
            try:
                job.mark_resumed()
            except InvalidStateTransition as e:
                raise InvalidState(str(e)) from e

            now = utcnow()
            if job.in_flight_count == 0 and job.current_index < job.total_count:
                scheduled_index = job.hand_out_next_index()
                await uow.queue.enqueue(job.id, scheduled_index, run_at=now)
            else:
                await uow.queue.wake_parked(job.id, now)
            await uow.batch_jobs.add(job)

        logger.info(
            "batch.job.resumed",
            batch_job_id=str(job_id),
            current_index=job.current_index,
            scheduled_index=scheduled_index,
            in_flight_count=job.in_flight_count,
        )
        return job

    async def cancel_job(self, job_id: UUID, owner_id: str) -> BatchJob:
        """Cancel an open job. Cancelling a cancelled job is a no-op.

        Queued items release their in-flight slot when dispatched; the item
        in flight finishes but its result is not counted.

        Raises:
            JobNotFound, NotOwner, InvalidState (job already completed)
        """
        async with await self.uow_factory() as uow:
            job = await self._get_owned(uow, job_id, owner_id, lock=True)
            try:
                changed = job.mark_cancelled()
            except InvalidStateTransition as e:
                raise InvalidState(str(e)) from e
            if changed:
                await uow.batch_jobs.add(job)

        if changed:
            logger.info(
                "batch.job.cancelled",
                batch_job_id=str(job_id),
                completed_count=job.completed_count,
                failed_count=job.failed_count,
            )
        return job

    async def get_job_status(self, job_id: UUID, owner_id: str) -> BatchJob:
        """Read-only job snapshot.

        Raises:
            JobNotFound, NotOwner
        """
        async with await self.uow_factory() as uow:
            return await self._get_owned(uow, job_id, owner_id, lock=False)

    async def list_jobs(self, owner_id: str, limit: int = 10) -> list[BatchJob]:
        """Owner's most recent jobs, newest first."""
        async with await self.uow_factory() as uow:
            return await uow.batch_jobs.list_by_owner(owner_id, limit=limit)

    async def list_active_jobs(self, owner_id: str) -> list[BatchJob]:
        """Owner's pending, processing and paused jobs."""
        async with await self.uow_factory() as uow:
            return await uow.batch_jobs.list_open_by_owner(owner_id)

    async def get_job_artifacts(self, job_id: UUID, owner_id: str) -> list[GeneratedArtifact]:
        """Artifacts produced by a job, in completion order.

        Raises:
            JobNotFound, NotOwner
        """
        async with await self.uow_factory() as uow:
            job = await self._get_owned(uow, job_id, owner_id, lock=False)
            return await uow.artifacts.get_by_ids([UUID(value) for value in job.artifact_ids])
