"""BatchJob repository for the batch generation engine.

Provides data access methods for BatchJob entities, including the row-locking
read used by every state-transition mutation.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelstream.models.batch_job import (
    OPEN_STATUSES,
    SCHEDULABLE_STATUSES,
    BatchJob,
)


class BatchJobRepository:
    """Repository for BatchJob entities.

    Mutations must read the job through get_for_update() so that concurrent
    item completions serialize on the job row.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: BatchJob) -> BatchJob:
        """Persist new batch job to database.

        Args:
            job: BatchJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> BatchJob | None:
        """Retrieve batch job by UUID without locking.

        Args:
            job_id: Job's unique identifier

        Returns:
            BatchJob if found, None otherwise
        """
        result = await self.session.execute(select(BatchJob).where(BatchJob.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: UUID) -> BatchJob | None:
        """Retrieve batch job by UUID holding a row lock until the transaction ends.

        Uses SELECT ... FOR UPDATE so that record/schedule/pause/resume/cancel
        mutations on the same job are serialized (single writer).

        Args:
            job_id: Job's unique identifier

        Returns:
            Locked BatchJob if found, None otherwise
        """
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.id == job_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_owner(self, owner_id: str, limit: int = 10) -> list[BatchJob]:
        """Retrieve the owner's most recent batch jobs (any status).

        Args:
            owner_id: Owner identity
            limit: Maximum number of jobs to return (default: 10)

        Returns:
            Jobs ordered by creation time (newest first)
        """
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.owner_id == owner_id)  # type: ignore[arg-type]
            .order_by(BatchJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_open_by_owner(self, owner_id: str) -> list[BatchJob]:
        """Retrieve the owner's pending, processing and paused jobs (newest first)."""
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.owner_id == owner_id)  # type: ignore[arg-type]
            .where(BatchJob.status.in_(OPEN_STATUSES))  # type: ignore[attr-defined]
            .order_by(BatchJob.created_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_stalled(self, limit: int = 100) -> list[BatchJob]:
        """Retrieve schedulable jobs with unscheduled work but nothing in flight.

        Such jobs can only arise when enqueueing a successor failed; nothing
        will ever schedule their next item unless it is re-enqueued.

        Query explanation:
        - WHERE status IN ('pending', 'processing'): Job is still running
        - AND in_flight_count = 0: No queued or executing item
        - AND current_index < total_count: Items remain to be handed out

        Args:
            limit: Maximum number of jobs to return (default: 100)

        Returns:
            Stalled jobs ordered by last update (oldest first)
        """
        result = await self.session.execute(
            select(BatchJob)
            .where(BatchJob.status.in_(SCHEDULABLE_STATUSES))  # type: ignore[attr-defined]
            .where(BatchJob.in_flight_count == 0)  # type: ignore[arg-type]
            .where(BatchJob.current_index < BatchJob.total_count)  # type: ignore[arg-type]
            .order_by(BatchJob.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
