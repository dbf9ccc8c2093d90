"""BatchQueueItem repository for the batch generation engine.

Provides the durable work queue operations with worker coordination via
FOR UPDATE SKIP LOCKED.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pixelstream.models.batch_job import BatchJob, BatchJobStatus
from pixelstream.models.queue_item import BatchQueueItem


class BatchQueueRepository:
    """Repository for BatchQueueItem entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def enqueue(self, batch_job_id: UUID, item_index: int, run_at: datetime) -> BatchQueueItem:
        """Add a queue entry for one item.

        The (batch_job_id, item_index) unique constraint rejects a second
        entry for the same index.

        Args:
            batch_job_id: Owning job
            item_index: Item index within the job
            run_at: Earliest dispatch time (naive UTC)

        Returns:
            Persisted queue entry
        """
        item = BatchQueueItem(batch_job_id=batch_job_id, item_index=item_index, run_at=run_at)
        self.session.add(item)
        await self.session.flush()
        return item

    async def get_by_id(self, item_id: UUID) -> BatchQueueItem | None:
        """Retrieve queue entry by UUID.

        Args:
            item_id: Queue entry's unique identifier

        Returns:
            BatchQueueItem if found, None otherwise
        """
        result = await self.session.execute(
            select(BatchQueueItem)
            .where(BatchQueueItem.id == item_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_job_and_index(self, batch_job_id: UUID, item_index: int) -> BatchQueueItem | None:
        """Retrieve the queue entry for a specific item, if still present."""
        result = await self.session.execute(
            select(BatchQueueItem)
            .where(BatchQueueItem.batch_job_id == batch_job_id)  # type: ignore[arg-type]
            .where(BatchQueueItem.item_index == item_index)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim_due(self, now: datetime, limit: int = 20) -> list[BatchQueueItem]:
        """Claim due, unclaimed entries whose job is not paused.

        Uses FOR UPDATE SKIP LOCKED to ensure concurrent workers receive
        non-overlapping sets of entries. Orders by run_at ASC to dispatch the
        oldest work first. Entries of cancelled or completed jobs are claimed
        too so that their dispatch can release them.

        Query explanation:
        - WHERE run_at <= now AND claimed_at IS NULL: Due and not yet taken
        - AND batch_jobs.status <> 'paused': Paused jobs keep their entries parked
        - ORDER BY run_at ASC, LIMIT: Oldest first, worker batch size
        - FOR UPDATE OF batch_queue_items SKIP LOCKED: Lock entries only

        Args:
            now: Current time (naive UTC)
            limit: Maximum number of entries to claim (default: 20)

        Returns:
            Entries claimed by this worker (claimed_at stamped, flushed)
        """
        result = await self.session.execute(
            select(BatchQueueItem)
            .join(BatchJob, BatchJob.id == BatchQueueItem.batch_job_id)  # type: ignore[arg-type]
            .where(BatchQueueItem.run_at <= now)  # type: ignore[arg-type]
            .where(BatchQueueItem.claimed_at.is_(None))  # type: ignore[union-attr]
            .where(BatchJob.status != BatchJobStatus.PAUSED)  # type: ignore[arg-type]
            .order_by(BatchQueueItem.run_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True, of=BatchQueueItem)
        )
        items = list(result.scalars().all())
        for item in items:
            item.claimed_at = now
            self.session.add(item)
        await self.session.flush()
        return items

    async def unclaim(self, item: BatchQueueItem) -> None:
        """Return a claimed entry to the queue (parked until dispatched again)."""
        item.claimed_at = None
        self.session.add(item)
        await self.session.flush()

    async def remove(self, item: BatchQueueItem) -> None:
        """Delete a queue entry once its item is recorded or released."""
        await self.session.delete(item)
        await self.session.flush()

    async def wake_parked(self, batch_job_id: UUID, now: datetime) -> int:
        """Make every unclaimed entry of a job due immediately.

        Returns:
            Number of entries woken
        """
        result = await self.session.execute(
            update(BatchQueueItem)
            .where(BatchQueueItem.batch_job_id == batch_job_id)  # type: ignore[arg-type]
            .where(BatchQueueItem.claimed_at.is_(None))  # type: ignore[union-attr]
            .values(run_at=now)
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def release_orphaned_claims(self, claimed_before: datetime) -> int:
        """Unclaim entries left claimed by a crashed worker or a failed dispatch.

        Query:
            UPDATE batch_queue_items
            SET claimed_at = NULL
            WHERE claimed_at IS NOT NULL AND claimed_at < :claimed_before

        Args:
            claimed_before: Entries claimed at or after this time are still live

        Returns:
            Number of entries returned to the queue
        """
        result = await self.session.execute(
            update(BatchQueueItem)
            .where(BatchQueueItem.claimed_at.is_not(None))  # type: ignore[union-attr]
            .where(BatchQueueItem.claimed_at < claimed_before)  # type: ignore[operator]
            .values(claimed_at=None)
        )
        return result.rowcount  # type: ignore[attr-defined]
