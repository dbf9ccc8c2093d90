"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from pixelstream.models.artifact import ArtifactVisibility, GeneratedArtifact
from pixelstream.models.batch_job import BatchJob, BatchJobStatus, InvalidStateTransition
from pixelstream.models.generation_params import (
    GenerationParams,
    ImageParams,
    VideoParams,
    generation_params_adapter,
)
from pixelstream.models.queue_item import BatchQueueItem
from pixelstream.models.user_account import UserAccount

__all__ = [
    "BatchJob",
    "BatchJobStatus",
    "InvalidStateTransition",
    "BatchQueueItem",
    "GeneratedArtifact",
    "ArtifactVisibility",
    "UserAccount",
    "GenerationParams",
    "ImageParams",
    "VideoParams",
    "generation_params_adapter",
]
