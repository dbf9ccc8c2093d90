"""Serialized batch job mutations and item scheduling.

Every method runs in its own Unit of Work and reads the job through
``get_for_update()``, so concurrent item completions, control requests and
scheduling decisions on the same job are applied one at a time.

Scheduling model:
- ``current_index`` is the next index to hand out. Handing out an index
  enqueues exactly one BatchQueueItem for it and increments ``in_flight_count``.
- A successor for item k is only handed out while ``current_index == k + 1``.
  Both the pre-schedule at item entry and the record step use this guard, so
  whichever runs first schedules k + 1 and the other is a no-op.
- The queue entry is deleted in the transaction that records or releases its
  item. A result whose entry is already gone was recorded before and is ignored.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional
from uuid import UUID

import structlog

from pixelstream.core.timezone import utcnow
from pixelstream.models.artifact import GeneratedArtifact
from pixelstream.models.batch_job import BatchJob, BatchJobStatus
from pixelstream.models.generation_params import ImageParams, VideoParams
from pixelstream.models.queue_item import BatchQueueItem
from pixelstream.uow import UnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class ItemOutcome:
    """Result of processing one item, as reported to record_item_result()."""

    success: bool
    retry_count: int = 0
    artifact: Optional[GeneratedArtifact] = None
    error_message: Optional[str] = None

    @classmethod
    def succeeded(cls, artifact: GeneratedArtifact, retry_count: int = 0) -> "ItemOutcome":
        return cls(success=True, retry_count=retry_count, artifact=artifact)

    @classmethod
    def failed(cls, error_message: str, retry_count: int = 0) -> "ItemOutcome":
        return cls(success=False, retry_count=retry_count, error_message=error_message)


class BatchJobStore:
    """Job Store and Scheduler mutations for batch jobs."""

    def __init__(
        self,
        uow_factory: Callable,
        item_interval_seconds: float = 0.1,
        stale_claim_seconds: float = 900,
    ):
        """Initialize job store.

        Args:
            uow_factory: Factory returned by create_uow_factory()
            item_interval_seconds: Spacing between the start of consecutive items
            stale_claim_seconds: Age after which a claimed entry is presumed dead
        """
        self.uow_factory = uow_factory
        self.item_interval = timedelta(seconds=item_interval_seconds)
        self.stale_claim_after = timedelta(seconds=stale_claim_seconds)

    async def create_job(
        self, owner_id: str, total_count: int, params: ImageParams | VideoParams
    ) -> BatchJob:
        """Create a pending job and enqueue item 0 for immediate dispatch."""
        async with await self.uow_factory() as uow:
            job = BatchJob(
                owner_id=owner_id,
                total_count=total_count,
                generation_params=params.model_dump(mode="json"),
            )
            await uow.batch_jobs.add(job)

            index = job.hand_out_next_index()
            await uow.queue.enqueue(job.id, index, run_at=utcnow())
            await uow.batch_jobs.add(job)

        logger.info(
            "batch.job.started",
            batch_job_id=str(job.id),
            owner_id=owner_id,
            total_count=total_count,
            kind=params.kind,
        )
        return job

    async def _schedule_successor(
        self, uow: UnitOfWork, job: BatchJob, item_index: int
    ) -> int | None:
        """Hand out item_index + 1 if it has not been handed out yet.

        Caller must hold the job row lock.

        Returns:
            The scheduled index, or None if nothing was scheduled
        """
        if not job.is_schedulable:
            return None
        if job.current_index != item_index + 1:
            return None
        if job.current_index >= job.total_count:
            return None

        next_index = job.current_index
        await uow.queue.enqueue(job.id, next_index, run_at=utcnow() + self.item_interval)
        job.hand_out_next_index()
        await uow.batch_jobs.add(job)

        logger.debug(
            "batch.scheduled_next",
            batch_job_id=str(job.id),
            item_index=next_index,
            after_index=item_index,
        )
        return next_index

    async def schedule_next_item(self, job_id: UUID, item_index: int) -> int | None:
        """Pre-schedule the successor of item_index before its work starts.

        Returns:
            The scheduled index, or None if the job is not schedulable, the
            successor was already handed out, or item_index is the last item
        """
        async with await self.uow_factory() as uow:
            job = await uow.batch_jobs.get_for_update(job_id)
            if job is None:
                return None
            return await self._schedule_successor(uow, job, item_index)

    async def record_item_result(
        self, queue_item_id: UUID, job_id: UUID, item_index: int, outcome: ItemOutcome
    ) -> BatchJob | None:
        """Atomically record one item's outcome and schedule its successor.

        In a single transaction:
        1. Lock the job and delete the item's queue entry (a missing entry
           means the result was already recorded: nothing changes)
        2. If the job was cancelled, only release the in-flight slot
        3. Otherwise persist the artifact (on success), update the counters
           and let the counters decide completion
        4. Unless the job is paused or finished, schedule item_index + 1 if
           the pre-schedule did not already do so

        Returns:
            Job snapshot after the mutation, or None if the job does not exist
        """
        async with await self.uow_factory() as uow:
            job = await uow.batch_jobs.get_for_update(job_id)
            if job is None:
                logger.error(
                    "batch.item.job_missing", batch_job_id=str(job_id), item_index=item_index
                )
                return None

            entry = await uow.queue.get_by_id(queue_item_id)
            if entry is None:
                logger.warning(
                    "batch.item.duplicate_result",
                    batch_job_id=str(job_id),
                    item_index=item_index,
                )
                return job
            await uow.queue.remove(entry)

            if job.is_terminal:
                job.release_in_flight()
                await uow.batch_jobs.add(job)
                logger.info(
                    "batch.item.discarded",
                    batch_job_id=str(job_id),
                    item_index=item_index,
                    status=job.status.value,
                )
                return job

            if outcome.success and outcome.artifact is not None:
                await uow.artifacts.add(outcome.artifact)
                job.record_success(outcome.artifact.id, outcome.retry_count)
            else:
                job.record_failure(
                    item_index,
                    outcome.error_message or "Unknown error",
                    outcome.retry_count,
                )

            if job.status != BatchJobStatus.PAUSED:
                await self._schedule_successor(uow, job, item_index)

            await uow.batch_jobs.add(job)

        logger.info(
            "batch.item.recorded",
            batch_job_id=str(job_id),
            item_index=item_index,
            success=outcome.success,
            retry_count=outcome.retry_count,
            status=job.status.value,
            completed_count=job.completed_count,
            failed_count=job.failed_count,
        )
        if job.status == BatchJobStatus.COMPLETED:
            logger.info(
                "batch.job.completed",
                batch_job_id=str(job_id),
                completed_count=job.completed_count,
                failed_count=job.failed_count,
            )
        return job

    async def release_item(self, queue_item_id: UUID, job_id: UUID) -> None:
        """Drop a dispatched item of a cancelled or completed job without running it."""
        async with await self.uow_factory() as uow:
            job = await uow.batch_jobs.get_for_update(job_id)
            entry = await uow.queue.get_by_id(queue_item_id)
            if entry is None:
                return
            await uow.queue.remove(entry)
            if job is not None:
                job.release_in_flight()
                await uow.batch_jobs.add(job)

    async def park_item(self, queue_item_id: UUID) -> None:
        """Return a dispatched item of a paused job to the queue until resume."""
        async with await self.uow_factory() as uow:
            entry = await uow.queue.get_by_id(queue_item_id)
            if entry is not None:
                await uow.queue.unclaim(entry)

    async def claim_due_items(self, limit: int) -> list[BatchQueueItem]:
        """Claim due queue entries for dispatch (claim committed before return)."""
        async with await self.uow_factory() as uow:
            return await uow.queue.claim_due(utcnow(), limit=limit)

    async def recover_orphans(self) -> int:
        """Unclaim entries whose claim is older than the stale threshold.

        A live dispatch finishes well within the threshold, so entries held by
        a sibling process that is still running are left alone.

        Returns:
            Number of entries returned to the queue
        """
        cutoff = utcnow() - self.stale_claim_after
        async with await self.uow_factory() as uow:
            recovered = await uow.queue.release_orphaned_claims(claimed_before=cutoff)

        if recovered > 0:
            logger.info("worker.recovery", orphaned_items_reset=recovered)
        return recovered

    async def requeue_stalled(self, limit: int = 100, dry_run: bool = False) -> list[UUID]:
        """Enqueue the next item of schedulable jobs that have nothing in flight.

        A job stalls only if enqueueing a successor failed after its last
        item was recorded.

        Returns:
            IDs of the jobs that were (or, with dry_run, would be) requeued
        """
        async with await self.uow_factory() as uow:
            stalled = await uow.batch_jobs.list_stalled(limit=limit)
            job_ids = [job.id for job in stalled]

        if dry_run:
            return job_ids

        requeued: list[UUID] = []
        for job_id in job_ids:
            async with await self.uow_factory() as uow:
                job = await uow.batch_jobs.get_for_update(job_id)
                if (
                    job is None
                    or not job.is_schedulable
                    or job.in_flight_count != 0
                    or job.current_index >= job.total_count
                ):
                    continue
                index = job.hand_out_next_index()
                await uow.queue.enqueue(job.id, index, run_at=utcnow())
                await uow.batch_jobs.add(job)

            logger.info("batch.job.requeued", batch_job_id=str(job_id), item_index=index)
            requeued.append(job_id)

        return requeued
