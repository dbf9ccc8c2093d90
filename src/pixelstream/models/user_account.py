"""UserAccount entity - Stored credential and entitlement data per owner."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pixelstream.core.timezone import utcnow


class UserAccount(SQLModel, table=True):
    """UserAccount holds the owner's encrypted upstream API key and plan state."""

    __tablename__ = "user_accounts"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(unique=True, index=True, max_length=255)
    encrypted_api_key: Optional[str] = Field(default=None, max_length=1024)
    has_active_subscription: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
