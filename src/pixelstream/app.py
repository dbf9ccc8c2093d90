"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pixelstream.api.routes import batch_jobs
from pixelstream.core import timezone  # noqa: F401
from pixelstream.core.config import Settings, configure_logging
from pixelstream.core.database import setup_db_session
from pixelstream.uow import create_uow_factory
from pixelstream.workers.batch_worker import run_batch_worker

logger = structlog.get_logger()


class WorkerHandle:
    """Tracks the live task of a resilient worker across restarts."""

    def __init__(self, shutdown_event: asyncio.Event):
        self.shutdown_event = shutdown_event
        self.task: asyncio.Task | None = None
        self.restart_task: asyncio.Task | None = None

    async def stop(self) -> None:
        """Signal shutdown and cancel the current worker task (and a pending restart)."""
        self.shutdown_event.set()
        pending = [t for t in (self.restart_task, self.task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def create_resilient_worker(
    coro_func,
    session_factory,
    settings,
    worker_name: str,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1,
) -> WorkerHandle:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_batch_worker)
        session_factory: Database session factory
        settings: Application settings
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        restart_delay: Seconds to wait before restarting a crashed worker

    Returns:
        Handle whose task is replaced on every restart
    """
    handle = WorkerHandle(shutdown_event)

    def start_worker() -> None:
        handle.task = asyncio.create_task(coro_func(session_factory, settings))
        handle.task.add_done_callback(on_worker_done)

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            # Worker stopped cleanly (unexpected for infinite loop workers)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=restart_delay,
            )

        async def restart_worker():
            await asyncio.sleep(restart_delay)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            start_worker()

        handle.restart_task = asyncio.create_task(restart_worker())

    start_worker()
    return handle


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, initialize database session factory, start the batch worker
    - Shutdown: Stop the worker (queued items stay in the database)
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = create_uow_factory(session_factory)

    shutdown_event = asyncio.Event()

    batch_worker = create_resilient_worker(
        run_batch_worker, session_factory, settings, "batch_generation", shutdown_event
    )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    await batch_worker.stop()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="PixelStream Batch API",
        description="Batch image and video generation jobs",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(batch_jobs.router)  # prefix="/api/batch-jobs" in definition

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
