"""GeneratedArtifact entity - One produced image or video."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

from pixelstream.core.timezone import utcnow


class ArtifactVisibility(str, Enum):
    """Public artifacts appear in the feed, unlisted ones are URL-only."""

    PUBLIC = "public"
    UNLISTED = "unlisted"


class GeneratedArtifact(SQLModel, table=True):
    """GeneratedArtifact is written once per successful batch item."""

    __tablename__ = "generated_artifacts"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(index=True, max_length=255)
    object_key: str = Field(max_length=512)
    url: str = Field(max_length=1024)
    thumbnail_key: Optional[str] = Field(default=None, max_length=512)
    thumbnail_url: Optional[str] = Field(default=None, max_length=1024)
    filename: str = Field(max_length=255)
    content_type: str = Field(max_length=100)
    size_bytes: int = Field(ge=0)
    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    aspect_ratio: Optional[float] = Field(default=None)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    negative_prompt: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    model: str = Field(max_length=100)
    seed: Optional[int] = Field(default=None)
    generation_params: dict = Field(sa_column=Column(JSON, nullable=False))
    visibility: ArtifactVisibility = Field(default=ArtifactVisibility.PUBLIC)
    batch_job_id: Optional[UUID] = Field(default=None, foreign_key="batch_jobs.id", index=True)
    item_index: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    def attach_thumbnail(self, thumbnail_key: str, thumbnail_url: str) -> None:
        """Attach a derived thumbnail (the only mutation after creation).

        Raises:
            ValueError: If thumbnail_key or thumbnail_url is empty
        """
        if not thumbnail_key or not thumbnail_url:
            raise ValueError("thumbnail_key and thumbnail_url are required")
        self.thumbnail_key = thumbnail_key
        self.thumbnail_url = thumbnail_url
