"""Item processor: end-to-end handling of one dispatched batch item.

Workflow for one queue entry:
1. Pre-schedule the successor (failure is logged, processing continues)
2. Re-read the job: missing → return, cancelled/completed → release,
   paused → park until resume
3. Pick the seed (explicit, or random in [0, 2147483647])
4. Resolve the owner's API key (terminal configuration error if missing)
5. Call the upstream API with classified retries
6. Upload the media and thumbnail
7. Record the outcome atomically (artifact row + counters + successor)

No database transaction is held while the upstream call or upload runs.
Every per-item error is converted into a recorded failure.
"""

import random
import time
from typing import Callable, Optional

import structlog

from pixelstream.core.config import Settings
from pixelstream.models.artifact import ArtifactVisibility, GeneratedArtifact
from pixelstream.models.batch_job import BatchJob, BatchJobStatus
from pixelstream.models.generation_params import (
    DEFAULT_DIMENSION,
    DEFAULT_MODEL,
    SEED_MAX,
    ImageParams,
    VideoParams,
)
from pixelstream.models.queue_item import BatchQueueItem
from pixelstream.services.batch.job_store import BatchJobStore, ItemOutcome
from pixelstream.services.credentials import resolve_api_key
from pixelstream.services.exceptions import CredentialError
from pixelstream.services.generation.client import GenerationClient
from pixelstream.services.storage.ingest import MediaIngestPipeline, MediaUploadResult

logger = structlog.get_logger(__name__)


def pick_seed(explicit_seed: Optional[int], rand: Callable[[], float] = random.random) -> int:
    """Per-item seed: the template's seed if set, else random, clamped to [0, SEED_MAX]."""
    raw = explicit_seed if explicit_seed is not None else int(rand() * SEED_MAX)
    return max(0, min(raw, SEED_MAX))


def build_artifact(
    job: BatchJob,
    item_index: int,
    params: ImageParams | VideoParams,
    seed: int,
    upload: MediaUploadResult,
    content_type: str,
) -> GeneratedArtifact:
    """Build the artifact row for a successfully ingested item."""
    width = params.width or DEFAULT_DIMENSION
    height = params.height or DEFAULT_DIMENSION
    filename = upload.object_key.rsplit("/", 1)[-1]

    artifact = GeneratedArtifact(
        owner_id=job.owner_id,
        object_key=upload.object_key,
        url=upload.media.url,
        filename=filename,
        content_type=content_type,
        size_bytes=upload.media.size_bytes,
        width=width,
        height=height,
        aspect_ratio=round(width / height, 4),
        prompt=params.prompt,
        negative_prompt=params.negative_prompt,
        model=params.model or DEFAULT_MODEL,
        seed=seed,
        generation_params={**job.generation_params, "seed": seed},
        visibility=ArtifactVisibility.UNLISTED if params.private else ArtifactVisibility.PUBLIC,
        batch_job_id=job.id,
        item_index=item_index,
    )
    if upload.thumbnail is not None and upload.thumbnail_key:
        artifact.attach_thumbnail(upload.thumbnail_key, upload.thumbnail.url)
    return artifact


class ItemProcessor:
    """Runs one batch item from dispatch to recorded result."""

    def __init__(
        self,
        store: BatchJobStore,
        generation_client: GenerationClient,
        ingest: MediaIngestPipeline,
        settings: Settings,
    ):
        self.store = store
        self.generation_client = generation_client
        self.ingest = ingest
        self.settings = settings

    async def process(self, item: BatchQueueItem) -> None:
        """Process one claimed queue entry.

        Never raises for per-item failures; those are recorded on the job. If
        the status re-read or the record step fails, the entry is unclaimed and
        the item is dispatched again.
        """
        job_id = item.batch_job_id
        item_index = item.item_index
        log = logger.bind(batch_job_id=str(job_id), item_index=item_index)

        # Step 1: Pre-schedule the successor before any expensive work
        try:
            await self.store.schedule_next_item(job_id, item_index)
        except Exception as e:
            log.error(
                "batch.schedule_next_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )

        try:
            await self._dispatch(item, log)
        except Exception as e:
            # Status re-read or record step failed: return the entry to the queue
            log.error(
                "batch.item.crashed",
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            try:
                await self.store.park_item(item.id)
            except Exception as unclaim_error:
                # Left claimed; the stale claim sweep returns it to the queue
                log.error(
                    "batch.item.unclaim_failed",
                    error_type=type(unclaim_error).__name__,
                    error_message=str(unclaim_error),
                )

    async def _dispatch(self, item: BatchQueueItem, log) -> None:
        job_id = item.batch_job_id

        # Step 2: Re-read job status
        async with await self.store.uow_factory() as uow:
            job = await uow.batch_jobs.get_by_id(job_id)

        if job is None:
            log.error("batch.item.job_missing")
            return

        if job.status in (BatchJobStatus.CANCELLED, BatchJobStatus.COMPLETED):
            log.info("batch.item.skipped", status=job.status.value)
            await self.store.release_item(item.id, job_id)
            return

        if job.status == BatchJobStatus.PAUSED:
            log.info("batch.item.parked")
            await self.store.park_item(item.id)
            return

        outcome = await self._run(job, item.item_index, log)
        await self.store.record_item_result(item.id, job_id, item.item_index, outcome)

    async def _run(self, job: BatchJob, item_index: int, log) -> ItemOutcome:
        start_time = time.time()
        retry_count = 0

        try:
            # Step 3: Reconstruct the request
            params = job.params
            seed = pick_seed(params.seed)

            log.info(
                "batch.item.started",
                total_count=job.total_count,
                model=params.model or DEFAULT_MODEL,
                width=params.width,
                height=params.height,
                seed=seed,
            )

            # Step 4: Resolve credential (terminal on failure)
            async with await self.store.uow_factory() as uow:
                api_key = await resolve_api_key(
                    uow.accounts, job.owner_id, self.settings.encryption_key
                )

            # Step 5: Upstream call with retries
            result = await self.generation_client.generate(params, seed, api_key)
            retry_count = result.retry_count

            if not result.success or result.response is None:
                log.warning(
                    "batch.item.failed",
                    error_type="GenerationError",
                    error_message=result.error,
                    attempts=result.attempts_made,
                    was_non_retryable=result.was_non_retryable,
                )
                return ItemOutcome.failed(
                    result.error or "Generation failed after retries", retry_count
                )

            # Step 6: Ingest media
            response = result.response
            upload = await self.ingest.ingest(job.owner_id, response.content, response.content_type)

            artifact = build_artifact(
                job, item_index, params, seed, upload, response.content_type
            )

            log.info(
                "batch.item.succeeded",
                url=upload.media.url,
                size_bytes=upload.media.size_bytes,
                has_thumbnail=upload.thumbnail is not None,
                attempts=result.attempts_made,
                duration_seconds=time.time() - start_time,
            )
            return ItemOutcome.succeeded(artifact, retry_count)

        except CredentialError as e:
            log.error("batch.item.failed", error_type="CredentialError", error_message=str(e))
            return ItemOutcome.failed(str(e), retry_count)

        except Exception as e:
            log.error(
                "batch.item.failed",
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            return ItemOutcome.failed(str(e) or type(e).__name__, retry_count)
