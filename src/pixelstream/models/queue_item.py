"""BatchQueueItem entity - Durable work queue entry for one batch item."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from pixelstream.core.timezone import utcnow


class BatchQueueItem(SQLModel, table=True):
    """One scheduled item of a batch job, waiting to be dispatched or executing.

    An index can be enqueued at most once per job. The entry is deleted in the
    same transaction that records or releases the item.
    """

    __tablename__ = "batch_queue_items"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("batch_job_id", "item_index", name="uq_batch_queue_items_job_index"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    batch_job_id: UUID = Field(foreign_key="batch_jobs.id", index=True)
    item_index: int = Field(ge=0)
    run_at: datetime = Field(default_factory=utcnow, index=True)
    claimed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None
