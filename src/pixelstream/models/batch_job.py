"""BatchJob entity - One user request to produce N artifacts from one template."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from pixelstream.core.timezone import utcnow
from pixelstream.models.generation_params import (
    ImageParams,
    VideoParams,
    generation_params_adapter,
)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000


class BatchJobStatus(str, Enum):
    """Batch job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# pending and processing are equivalent for scheduling purposes
SCHEDULABLE_STATUSES = (BatchJobStatus.PENDING, BatchJobStatus.PROCESSING)
OPEN_STATUSES = (BatchJobStatus.PENDING, BatchJobStatus.PROCESSING, BatchJobStatus.PAUSED)
TERMINAL_STATUSES = (BatchJobStatus.CANCELLED, BatchJobStatus.COMPLETED)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid batch job state transition."""

    pass


class BatchJob(SQLModel, table=True):
    """BatchJob tracks progress of a batch generation request.

    Counters obey ``completed_count + failed_count <= current_index <= total_count``
    and ``len(artifact_ids) == completed_count``. All mutations go through the
    methods below, called inside a Unit of Work that holds the row lock.
    """

    __tablename__ = "batch_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(index=True, max_length=255)
    status: BatchJobStatus = Field(default=BatchJobStatus.PENDING, index=True)
    total_count: int = Field(ge=MIN_BATCH_SIZE, le=MAX_BATCH_SIZE)
    current_index: int = Field(default=0, ge=0)
    completed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    in_flight_count: int = Field(default=0, ge=0)
    current_item_retry_count: int = Field(default=0, ge=0)
    generation_params: dict = Field(sa_column=Column(JSON, nullable=False))
    artifact_ids: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    item_errors: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def params(self) -> ImageParams | VideoParams:
        """Parsed generation template."""
        return generation_params_adapter.validate_python(self.generation_params)

    @property
    def recorded_count(self) -> int:
        """Number of items whose result has been recorded."""
        return self.completed_count + self.failed_count

    @property
    def is_schedulable(self) -> bool:
        return self.status in SCHEDULABLE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow()

    def hand_out_next_index(self) -> int:
        """Reserve the item at current_index for scheduling.

        Returns:
            The reserved item index

        Raises:
            ValueError: If every index has already been handed out
        """
        if self.current_index >= self.total_count:
            raise ValueError(
                f"All {self.total_count} items already scheduled for batch job {self.id}"
            )
        index = self.current_index
        self.current_index += 1
        self.in_flight_count += 1
        self.touch()
        return index

    def release_in_flight(self) -> None:
        """Drop one in-flight item that will never record a result."""
        self.in_flight_count = max(0, self.in_flight_count - 1)
        self.touch()

    def record_success(self, artifact_id: UUID, retry_count: int = 0) -> None:
        """Record a successfully produced item."""
        self.completed_count += 1
        self.artifact_ids = [*self.artifact_ids, str(artifact_id)]
        self._after_record(retry_count)

    def record_failure(self, item_index: int, error_message: str, retry_count: int = 0) -> None:
        """Record a failed item and keep its error for display."""
        self.failed_count += 1
        self.item_errors = [
            *self.item_errors,
            {"index": item_index, "message": error_message, "attempts": retry_count + 1},
        ]
        self._after_record(retry_count)

    def _after_record(self, retry_count: int) -> None:
        self.in_flight_count = max(0, self.in_flight_count - 1)
        self.current_item_retry_count = retry_count
        if self.recorded_count >= self.total_count:
            self.mark_completed()
        elif self.status == BatchJobStatus.PENDING:
            self.mark_processing()
        self.touch()

    def mark_processing(self) -> None:
        """Transition from pending to processing (no-op if already processing).

        Raises:
            InvalidStateTransition: If current status is neither pending nor processing
        """
        if self.status not in SCHEDULABLE_STATUSES:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. "
                "Batch job must be in pending or processing state."
            )
        self.status = BatchJobStatus.PROCESSING
        self.touch()

    def mark_paused(self) -> None:
        """Transition from pending/processing to paused.

        Raises:
            InvalidStateTransition: If current status is not pending or processing
        """
        if self.status not in SCHEDULABLE_STATUSES:
            raise InvalidStateTransition(
                f"Cannot pause from {self.status.value}. "
                "Batch job must be in pending or processing state."
            )
        self.status = BatchJobStatus.PAUSED
        self.touch()

    def mark_resumed(self) -> None:
        """Transition from paused to processing.

        Raises:
            InvalidStateTransition: If current status is not paused
        """
        if self.status != BatchJobStatus.PAUSED:
            raise InvalidStateTransition(
                f"Cannot resume from {self.status.value}. Batch job must be in paused state."
            )
        self.status = BatchJobStatus.PROCESSING
        self.touch()

    def mark_cancelled(self) -> bool:
        """Transition from any open state to cancelled.

        Returns:
            True if the status changed, False if the job was already cancelled

        Raises:
            InvalidStateTransition: If the job already completed
        """
        if self.status == BatchJobStatus.CANCELLED:
            return False
        if self.status not in OPEN_STATUSES:
            raise InvalidStateTransition(
                f"Cannot cancel from terminal state {self.status.value}."
            )
        self.status = BatchJobStatus.CANCELLED
        self.touch()
        return True

    def mark_completed(self) -> None:
        """Transition to completed from any non-cancelled state.

        Raises:
            InvalidStateTransition: If the job was cancelled
        """
        if self.status == BatchJobStatus.CANCELLED:
            raise InvalidStateTransition("Cannot complete a cancelled batch job.")
        self.status = BatchJobStatus.COMPLETED
        self.touch()
