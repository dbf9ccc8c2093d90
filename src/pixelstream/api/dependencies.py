"""FastAPI dependencies for request context and common operations.

This module provides reusable FastAPI dependencies for:
- Settings and Unit of Work access
- Owner identity from the upstream auth layer
- The job control service
"""

from typing import Annotated, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from pixelstream.core.config import Settings
from pixelstream.services.batch.job_control import BatchJobControl
from pixelstream.uow import UnitOfWork


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        UnitOfWork factory function from app lifespan
    """
    return request.app.state.uow_factory


async def get_owner_id(
    x_owner_id: Annotated[str | None, Header()] = None,
) -> str:
    """Owner identity asserted by the authenticating gateway.

    Authentication happens upstream; this service only trusts the
    X-Owner-Id header it forwards.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or blank
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Owner-Id header"
        )
    return x_owner_id.strip()


def get_job_control(
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> BatchJobControl:
    """Build the job control service for this request."""
    return BatchJobControl(uow_factory, settings.batch_item_interval_seconds)
