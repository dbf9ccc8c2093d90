"""GeneratedArtifact repository for the batch generation engine."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelstream.models.artifact import GeneratedArtifact


class GeneratedArtifactRepository:
    """Repository for GeneratedArtifact entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, artifact: GeneratedArtifact) -> GeneratedArtifact:
        """Persist new artifact to database.

        Args:
            artifact: GeneratedArtifact entity to persist

        Returns:
            Persisted artifact with generated ID
        """
        self.session.add(artifact)
        await self.session.flush()
        return artifact

    async def get_by_id(self, artifact_id: UUID) -> GeneratedArtifact | None:
        """Retrieve artifact by UUID."""
        result = await self.session.execute(
            select(GeneratedArtifact).where(GeneratedArtifact.id == artifact_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_ids(self, artifact_ids: list[UUID]) -> list[GeneratedArtifact]:
        """Retrieve artifacts by UUID, preserving the order of artifact_ids.

        Missing ids are skipped.

        Args:
            artifact_ids: Artifact identifiers in the desired order

        Returns:
            Artifacts found, in input order
        """
        if not artifact_ids:
            return []

        result = await self.session.execute(
            select(GeneratedArtifact).where(GeneratedArtifact.id.in_(artifact_ids))  # type: ignore[attr-defined]
        )
        by_id = {artifact.id: artifact for artifact in result.scalars().all()}
        return [by_id[artifact_id] for artifact_id in artifact_ids if artifact_id in by_id]
