"""UserAccount repository for the batch generation engine."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelstream.models.user_account import UserAccount


class UserAccountRepository:
    """Repository for UserAccount entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, account: UserAccount) -> UserAccount:
        """Persist new account to database.

        Args:
            account: UserAccount entity to persist

        Returns:
            Persisted account with generated ID
        """
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_by_owner(self, owner_id: str) -> UserAccount | None:
        """Retrieve account by owner identity.

        Args:
            owner_id: Owner identity issued by the auth provider

        Returns:
            UserAccount if found, None otherwise
        """
        result = await self.session.execute(
            select(UserAccount).where(UserAccount.owner_id == owner_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()
