"""Repository layer for the batch generation engine.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from pixelstream.repositories.artifact import GeneratedArtifactRepository
from pixelstream.repositories.batch_job import BatchJobRepository
from pixelstream.repositories.queue_item import BatchQueueRepository
from pixelstream.repositories.user_account import UserAccountRepository

__all__ = [
    "BatchJobRepository",
    "BatchQueueRepository",
    "GeneratedArtifactRepository",
    "UserAccountRepository",
]
