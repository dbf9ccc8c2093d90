"""Batch worker: dispatch loop for the durable item queue.

Polls for due queue entries, claims them with FOR UPDATE SKIP LOCKED, and
runs each one as an independent asyncio task. The loop never waits for an
item to finish, so a slow upstream call does not delay the next item.
"""

import asyncio
from typing import Callable

import structlog

from pixelstream.core.config import Settings
from pixelstream.services.batch.job_store import BatchJobStore
from pixelstream.services.generation.backoff import RetryConfig
from pixelstream.services.generation.client import GenerationClient
from pixelstream.services.storage.ingest import MediaIngestPipeline
from pixelstream.services.storage.object_store import S3ObjectStore
from pixelstream.uow import create_uow_factory
from pixelstream.workers.item_processor import ItemProcessor

logger = structlog.get_logger(__name__)


def build_item_processor(uow_factory: Callable, settings: Settings) -> ItemProcessor:
    """Wire an ItemProcessor from settings (R2 storage, upstream client)."""
    store = BatchJobStore(
        uow_factory, settings.batch_item_interval_seconds, settings.stale_claim_seconds
    )
    generation_client = GenerationClient(
        base_url=settings.generation_base_url,
        retry_config=RetryConfig(
            max_retries=settings.generation_max_retries,
            base_delay_seconds=settings.generation_base_delay_seconds,
            max_delay_seconds=settings.generation_max_delay_seconds,
        ),
        timeout_seconds=settings.generation_timeout_seconds,
    )
    ingest = MediaIngestPipeline(S3ObjectStore.from_settings(settings), settings.ffmpeg_path)
    return ItemProcessor(store, generation_client, ingest, settings)


def _on_item_done(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(
            "batch.item.dispatch_failed",
            task=task.get_name(),
            error_type=type(exc).__name__,
            error_message=str(exc),
            exc_info=exc,
        )


async def process_batch(
    processor: ItemProcessor, batch_size: int, running: set[asyncio.Task]
) -> list[asyncio.Task]:
    """Claim due entries and start one task per entry.

    Args:
        processor: Item processor (its store performs the claim)
        batch_size: Maximum number of entries to claim
        running: Task set kept by the caller; finished tasks remove themselves

    Returns:
        Tasks started by this call
    """
    items = await processor.store.claim_due_items(limit=batch_size)
    if not items:
        return []

    tasks = []
    for item in items:
        task = asyncio.create_task(
            processor.process(item), name=f"batch-item-{item.batch_job_id}-{item.item_index}"
        )
        running.add(task)
        task.add_done_callback(running.discard)
        task.add_done_callback(_on_item_done)
        tasks.append(task)

    logger.debug("worker.dispatched", count=len(tasks), running=len(running))
    return tasks


async def run_batch_worker(
    session_factory: Callable,
    settings: Settings,
    processor: ItemProcessor | None = None,
) -> None:
    """Main worker loop for batch generation.

    Workflow:
    1. Run startup recovery (unclaim stale queue entries)
    2. Poll at POLL_INTERVAL_SECONDS and dispatch due entries
    3. Every STALE_CLAIM_SECONDS, unclaim entries whose dispatch died
    4. Handle CancelledError for graceful shutdown (in-flight items are
       cancelled; their entries are recovered once their claims go stale)

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (poll interval, batch size, interval)
        processor: Optional pre-built processor (default: built from settings)
    """
    if processor is None:
        processor = build_item_processor(create_uow_factory(session_factory), settings)

    # Startup recovery: stale entries claimed by a previous process run again
    await processor.store.recover_orphans()
    sweep_every = processor.store.stale_claim_after.total_seconds()
    loop = asyncio.get_running_loop()
    last_sweep = loop.time()

    logger.info(
        "worker.started",
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
        item_interval=settings.batch_item_interval_seconds,
        stale_claim_seconds=sweep_every,
    )

    running: set[asyncio.Task] = set()
    try:
        while True:
            try:
                if loop.time() - last_sweep >= sweep_every:
                    last_sweep = loop.time()
                    await processor.store.recover_orphans()

                await process_batch(processor, settings.worker_batch_size, running)

                # Wait for next polling interval
                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Unexpected error in polling loop - log and continue with backoff
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off 5 seconds before retrying
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        # Graceful shutdown
        pending = list(running)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("worker.stopped", cancelled_items=len(pending))
        raise
