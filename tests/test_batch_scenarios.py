"""End-to-end batch engine scenarios.

Items are dispatched one at a time against a temporary SQLite database, so
each scenario is deterministic. Covers:
- Full runs with success, retried success and terminal failure
- Pause while an item is in flight, then resume
- Cancel while an item is in flight
- Counter invariants after every dispatch round
- At-most-once scheduling and idempotent result recording
- Credential and storage failures
- Stalled job requeue, orphan recovery and the worker dispatch loop
"""

import asyncio
from datetime import timedelta
from uuid import UUID, uuid4

import httpx
import pytest
from conftest import (
    TEST_OWNER,
    FakeGenerationClient,
    drain,
    run_round,
)
from sqlalchemy import func, select, update

from pixelstream.core.timezone import utcnow
from pixelstream.models.artifact import ArtifactVisibility, GeneratedArtifact
from pixelstream.models.batch_job import BatchJob, BatchJobStatus
from pixelstream.models.generation_params import ImageParams
from pixelstream.models.queue_item import BatchQueueItem
from pixelstream.services.batch.job_store import BatchJobStore, ItemOutcome
from pixelstream.services.credentials import MISSING_KEY_MESSAGE
from pixelstream.services.exceptions import InvalidState
from pixelstream.services.generation.backoff import RetryConfig
from pixelstream.services.generation.client import GenerationClient, RetryResult
from pixelstream.services.storage.ingest import MediaIngestPipeline
from pixelstream.workers.batch_worker import process_batch, run_batch_worker
from pixelstream.workers.item_processor import ItemProcessor

PARAMS = ImageParams(prompt="a lighthouse in a storm", width=512, height=512)


async def no_sleep(delay: float) -> None:
    return None


def http_client(responses: list[httpx.Response]) -> GenerationClient:
    """Real client over a MockTransport that replays responses in call order."""

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    return GenerationClient(
        base_url="https://gen.test",
        retry_config=RetryConfig(max_retries=3),
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )


def image_response(png_bytes: bytes) -> httpx.Response:
    return httpx.Response(200, content=png_bytes, headers={"content-type": "image/png"})


async def get_job(uow_factory, job_id: UUID) -> BatchJob:
    async with await uow_factory() as uow:
        job = await uow.batch_jobs.get_by_id(job_id)
    assert job is not None
    return job


async def count_artifacts(session) -> int:
    result = await session.execute(select(func.count()).select_from(GeneratedArtifact))
    return result.scalar_one()


async def age_claims(uow_factory, age: timedelta) -> None:
    """Backdate every claimed queue entry by `age`."""
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(BatchQueueItem)
            .where(BatchQueueItem.claimed_at.is_not(None))  # type: ignore[union-attr]
            .values(claimed_at=utcnow() - age)
        )


def assert_invariants(job: BatchJob) -> None:
    assert job.completed_count + job.failed_count <= job.current_index <= job.total_count
    assert len(job.artifact_ids) == job.completed_count
    assert len(job.item_errors) == job.failed_count
    assert job.in_flight_count >= 0


@pytest.mark.asyncio
async def test_all_items_succeed(job_control, make_processor, object_store, owner_account, png_bytes):
    """Three items succeed: job completes with three artifacts in order."""
    processor = make_processor(http_client([image_response(png_bytes) for _ in range(3)]))
    job_id = await job_control.start_job(TEST_OWNER, 3, PARAMS)

    dispatched = await drain(processor)

    job = await job_control.get_job_status(job_id, TEST_OWNER)
    assert dispatched == [0, 1, 2]
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 3
    assert job.failed_count == 0
    assert job.in_flight_count == 0
    assert job.current_index == 3

    artifacts = await job_control.get_job_artifacts(job_id, TEST_OWNER)
    assert [artifact.item_index for artifact in artifacts] == [0, 1, 2]
    assert [str(artifact.id) for artifact in artifacts] == job.artifact_ids
    for artifact in artifacts:
        assert artifact.owner_id == TEST_OWNER
        assert artifact.batch_job_id == job_id
        assert artifact.content_type == "image/png"
        assert artifact.thumbnail_url is not None
        assert artifact.width == 512
        assert artifact.aspect_ratio == 1.0
        assert artifact.visibility == ArtifactVisibility.PUBLIC
        assert artifact.generation_params["seed"] == artifact.seed
    assert len(object_store.objects) == 6


@pytest.mark.asyncio
async def test_rate_limited_item_succeeds_after_retries(
    job_control, make_processor, owner_account, png_bytes, uow_factory
):
    """Item 1 gets three 429s then succeeds: recorded with three retries."""
    responses = [
        image_response(png_bytes),
        httpx.Response(429, text="Too Many Requests"),
        httpx.Response(429, text="Too Many Requests"),
        httpx.Response(429, text="Too Many Requests"),
        image_response(png_bytes),
        image_response(png_bytes),
    ]
    processor = make_processor(http_client(responses))
    job_id = await job_control.start_job(TEST_OWNER, 3, PARAMS)

    assert await run_round(processor) == [0]
    assert await run_round(processor) == [1]

    job = await get_job(uow_factory, job_id)
    assert job.completed_count == 2
    assert job.failed_count == 0
    assert job.current_item_retry_count == 3

    await drain(processor)
    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 3
    assert job.current_item_retry_count == 0
    assert responses == []


@pytest.mark.asyncio
async def test_bad_request_fails_item_without_retry(
    job_control, make_processor, owner_account, png_bytes
):
    """Item 1 gets HTTP 400: failed at once, the job still runs items 2 and 3."""
    responses = [
        image_response(png_bytes),
        httpx.Response(400, json={"error": "Invalid prompt"}),
        image_response(png_bytes),
        image_response(png_bytes),
    ]
    processor = make_processor(http_client(responses))
    job_id = await job_control.start_job(TEST_OWNER, 4, PARAMS)

    dispatched = await drain(processor)

    job = await job_control.get_job_status(job_id, TEST_OWNER)
    assert dispatched == [0, 1, 2, 3]
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 3
    assert job.failed_count == 1
    assert job.item_errors == [
        {"index": 1, "message": 'HTTP 400: {\n  "error": "Invalid prompt"\n}', "attempts": 1}
    ]
    assert responses == []


@pytest.mark.asyncio
async def test_pause_while_item_in_flight(
    job_control, make_processor, owner_account, png_bytes, uow_factory
):
    """Pause during item 1 of 5: its result is recorded, item 2 waits for resume."""
    job_id = None

    async def pause_on_second_call(call_number: int):
        if call_number == 2:
            await job_control.pause_job(job_id, TEST_OWNER)
        return None

    client = FakeGenerationClient(png_bytes, on_call=pause_on_second_call)
    processor = make_processor(client)
    job_id = await job_control.start_job(TEST_OWNER, 5, PARAMS)

    assert await drain(processor) == [0, 1]

    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.PAUSED
    assert job.completed_count == 2
    assert job.current_index == 3
    assert job.in_flight_count == 1
    assert len(client.calls) == 2
    assert_invariants(job)

    # Nothing is dispatched while paused
    assert await drain(processor) == []

    job = await job_control.resume_job(job_id, TEST_OWNER)
    assert job.status == BatchJobStatus.PROCESSING
    assert job.current_index == 3

    assert await drain(processor) == [2, 3, 4]
    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 5
    assert job.in_flight_count == 0
    assert len(client.calls) == 5


@pytest.mark.asyncio
async def test_resume_enqueues_next_index_when_nothing_in_flight(
    job_control, make_processor, owner_account, png_bytes, uow_factory, monkeypatch
):
    """With the pre-schedule failing, pause leaves nothing queued; resume enqueues current_index."""
    job_id = None

    async def pause_on_first_call(call_number: int):
        if call_number == 1:
            await job_control.pause_job(job_id, TEST_OWNER)
        return None

    processor = make_processor(FakeGenerationClient(png_bytes, on_call=pause_on_first_call))

    async def failing_schedule(job_id, item_index):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(processor.store, "schedule_next_item", failing_schedule)
    job_id = await job_control.start_job(TEST_OWNER, 3, PARAMS)

    assert await drain(processor) == [0]

    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.PAUSED
    assert job.in_flight_count == 0
    assert job.current_index == 1

    job = await job_control.resume_job(job_id, TEST_OWNER)
    assert job.in_flight_count == 1
    assert job.current_index == 2

    assert await drain(processor) == [1, 2]
    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 3


@pytest.mark.asyncio
async def test_dispatch_of_paused_job_parks_entry(
    job_control, make_processor, owner_account, png_bytes, uow_factory
):
    """An entry claimed just before pause goes back to the queue untouched."""
    client = FakeGenerationClient(png_bytes)
    processor = make_processor(client)
    job_id = await job_control.start_job(TEST_OWNER, 2, PARAMS)

    [item] = await processor.store.claim_due_items(limit=10)
    await job_control.pause_job(job_id, TEST_OWNER)
    await processor.process(item)

    assert client.calls == []
    async with await uow_factory() as uow:
        entry = await uow.queue.get_by_id(item.id)
    assert entry is not None
    assert entry.claimed_at is None

    await job_control.resume_job(job_id, TEST_OWNER)
    assert await drain(processor) == [0, 1]
    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_while_item_in_flight(
    job_control, make_processor, owner_account, png_bytes, uow_factory, session
):
    """Cancel during item 1 of 5: nothing else runs and counts stay frozen."""
    job_id = None

    async def cancel_on_second_call(call_number: int):
        if call_number == 2:
            await job_control.cancel_job(job_id, TEST_OWNER)
        return None

    client = FakeGenerationClient(png_bytes, on_call=cancel_on_second_call)
    processor = make_processor(client)
    job_id = await job_control.start_job(TEST_OWNER, 5, PARAMS)

    # Item 2 was pre-scheduled before the cancel and is released on dispatch
    assert await drain(processor) == [0, 1, 2]

    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.CANCELLED
    assert job.completed_count == 1
    assert job.failed_count == 0
    assert job.in_flight_count == 0
    assert len(client.calls) == 2
    assert await count_artifacts(session) == 1
    assert_invariants(job)

    again = await job_control.cancel_job(job_id, TEST_OWNER)
    assert again.status == BatchJobStatus.CANCELLED
    assert again.updated_at == job.updated_at

    with pytest.raises(InvalidState):
        await job_control.resume_job(job_id, TEST_OWNER)
    with pytest.raises(InvalidState):
        await job_control.pause_job(job_id, TEST_OWNER)

    assert await drain(processor) == []
    job = await get_job(uow_factory, job_id)
    assert job.completed_count == 1


@pytest.mark.asyncio
async def test_invariants_hold_after_every_round(
    job_control, make_processor, owner_account, png_bytes, uow_factory
):
    async def fail_every_third(call_number: int):
        if call_number % 3 == 0:
            return RetryResult(success=False, attempts_made=2, error="HTTP 503: busy")
        return None

    processor = make_processor(FakeGenerationClient(png_bytes, on_call=fail_every_third))
    job_id = await job_control.start_job(TEST_OWNER, 7, PARAMS)

    while await run_round(processor):
        assert_invariants(await get_job(uow_factory, job_id))

    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 5
    assert job.failed_count == 2
    assert [error["index"] for error in job.item_errors] == [2, 5]
    assert all(error["attempts"] == 2 for error in job.item_errors)


class CountingProcessor(ItemProcessor):
    """Records every index that reaches the generation step."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started: list[int] = []

    async def _run(self, job, item_index, log):
        self.started.append(item_index)
        return await super()._run(job, item_index, log)


@pytest.mark.asyncio
async def test_each_index_scheduled_exactly_once(
    job_control, make_processor, owner_account, png_bytes, uow_factory
):
    processor = make_processor(FakeGenerationClient(png_bytes), processor_class=CountingProcessor)
    job_id = await job_control.start_job(TEST_OWNER, 6, PARAMS)

    await drain(processor)

    assert processor.started == [0, 1, 2, 3, 4, 5]
    job = await get_job(uow_factory, job_id)
    assert job.current_index == 6
    assert job.completed_count == 6


@pytest.mark.asyncio
async def test_duplicate_result_is_ignored(job_store, owner_account, uow_factory, session):
    job = await job_store.create_job(TEST_OWNER, 2, PARAMS)
    [item] = await job_store.claim_due_items(limit=10)

    first = await job_store.record_item_result(item.id, job.id, 0, ItemOutcome.failed("boom"))
    second = await job_store.record_item_result(item.id, job.id, 0, ItemOutcome.failed("boom"))

    assert first is not None and second is not None
    assert second.failed_count == 1
    assert second.current_index == 2
    assert second.in_flight_count == 1
    assert second.item_errors == [{"index": 0, "message": "boom", "attempts": 1}]


@pytest.mark.asyncio
async def test_record_for_missing_job_returns_none(job_store):
    assert await job_store.record_item_result(uuid4(), uuid4(), 0, ItemOutcome.failed("x")) is None


@pytest.mark.asyncio
async def test_schedule_next_item_guard(job_store, owner_account):
    job = await job_store.create_job(TEST_OWNER, 2, PARAMS)

    assert await job_store.schedule_next_item(job.id, 0) == 1
    assert await job_store.schedule_next_item(job.id, 0) is None
    # Item 1 is the last one
    assert await job_store.schedule_next_item(job.id, 1) is None


@pytest.mark.asyncio
async def test_explicit_seed_and_private_visibility(
    job_control, make_processor, owner_account, png_bytes
):
    client = FakeGenerationClient(png_bytes)
    processor = make_processor(client)
    params = ImageParams(prompt="secret garden", seed=1234, private=True, model="turbo")
    job_id = await job_control.start_job(TEST_OWNER, 2, params)

    await drain(processor)

    assert client.calls == [1234, 1234]
    artifacts = await job_control.get_job_artifacts(job_id, TEST_OWNER)
    assert {artifact.seed for artifact in artifacts} == {1234}
    assert all(artifact.visibility == ArtifactVisibility.UNLISTED for artifact in artifacts)
    assert all(artifact.model == "turbo" for artifact in artifacts)
    assert all(artifact.width == 1024 and artifact.height == 1024 for artifact in artifacts)


@pytest.mark.asyncio
async def test_missing_credential_fails_every_item(job_store, make_processor, png_bytes, uow_factory):
    client = FakeGenerationClient(png_bytes)
    processor = make_processor(client)
    job = await job_store.create_job("owner_without_key", 2, PARAMS)

    await drain(processor)

    job = await get_job(uow_factory, job.id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 0
    assert job.failed_count == 2
    assert {error["message"] for error in job.item_errors} == {MISSING_KEY_MESSAGE}
    assert client.calls == []


@pytest.mark.asyncio
async def test_storage_failure_records_failed_item(
    job_control, make_processor, object_store, owner_account, png_bytes, uow_factory, session
):
    object_store.fail_when = lambda key: key.startswith("generated/")
    processor = make_processor(FakeGenerationClient(png_bytes))
    job_id = await job_control.start_job(TEST_OWNER, 2, PARAMS)

    await drain(processor)

    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.failed_count == 2
    assert all(error["message"].startswith("Upload failed for") for error in job.item_errors)
    assert await count_artifacts(session) == 0


@pytest.mark.asyncio
async def test_requeue_stalled_job(
    job_control, make_processor, owner_account, png_bytes, uow_factory, monkeypatch
):
    """A job whose successor enqueue failed is picked up by requeue_stalled."""

    async def no_successor(self, uow, job, item_index):
        return None

    processor = make_processor(FakeGenerationClient(png_bytes))
    monkeypatch.setattr(BatchJobStore, "_schedule_successor", no_successor)
    job_id = await job_control.start_job(TEST_OWNER, 3, PARAMS)

    assert await drain(processor) == [0]
    monkeypatch.undo()

    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.PROCESSING
    assert job.in_flight_count == 0
    assert job.current_index == 1

    assert await processor.store.requeue_stalled(dry_run=True) == [job_id]
    assert (await get_job(uow_factory, job_id)).in_flight_count == 0

    assert await processor.store.requeue_stalled() == [job_id]
    assert await processor.store.requeue_stalled() == []

    assert await drain(processor) == [1, 2]
    job = await get_job(uow_factory, job_id)
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 3


@pytest.mark.asyncio
async def test_recover_orphans_leaves_live_claims(job_store, owner_account, uow_factory):
    await job_store.create_job(TEST_OWNER, 1, PARAMS)
    first = await job_store.claim_due_items(limit=10)
    assert len(first) == 1

    # A second instance starting up must not steal an entry that is still running
    assert await job_store.recover_orphans() == 0
    assert await job_store.claim_due_items(limit=10) == []

    await age_claims(uow_factory, job_store.stale_claim_after + timedelta(seconds=1))

    assert await job_store.recover_orphans() == 1
    second = await job_store.claim_due_items(limit=10)
    assert [item.id for item in second] == [first[0].id]


@pytest.mark.asyncio
async def test_failed_record_returns_item_to_queue(
    job_control, job_store, make_processor, owner_account, png_bytes, uow_factory, session
):
    """A crash in the record step unclaims the entry instead of stalling the job."""
    generation_client = FakeGenerationClient(png_bytes)
    processor = make_processor(generation_client)
    original_record = processor.store.record_item_result
    crashed: list[int] = []

    async def flaky_record(queue_item_id, job_id, item_index, outcome):
        if item_index == 1 and not crashed:
            crashed.append(item_index)
            raise RuntimeError("deadlock detected")
        return await original_record(queue_item_id, job_id, item_index, outcome)

    processor.store.record_item_result = flaky_record
    job_id = await job_control.start_job(TEST_OWNER, 3, PARAMS)

    assert sorted(await drain(processor)) == [0, 1, 1, 2]

    job = await get_job(uow_factory, job_id)
    assert crashed == [1]
    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 3
    assert job.failed_count == 0
    assert job.in_flight_count == 0
    # Item 1 ran upstream twice but was recorded once
    assert len(generation_client.calls) == 4
    assert await count_artifacts(session) == 3
    assert await processor.store.requeue_stalled() == []
    assert await job_store.claim_due_items(limit=10) == []

    assert await job_store.recover_orphans() == 1
    assert len(await job_store.claim_due_items(limit=10)) == 1


@pytest.mark.asyncio
async def test_process_batch_starts_one_task_per_item(
    job_control, make_processor, owner_account, png_bytes, uow_factory
):
    processor = make_processor(FakeGenerationClient(png_bytes))
    job_id = await job_control.start_job(TEST_OWNER, 2, PARAMS)
    running: set[asyncio.Task] = set()

    tasks = await process_batch(processor, batch_size=10, running=running)
    assert len(tasks) == 1
    await asyncio.gather(*tasks)

    assert running == set()
    job = await get_job(uow_factory, job_id)
    assert job.completed_count == 1

    assert await process_batch(processor, batch_size=10, running=running) != []
    await asyncio.gather(*running)


@pytest.mark.asyncio
async def test_worker_loop_recovers_and_completes(
    job_control, make_processor, owner_account, png_bytes, uow_factory, session_factory, settings
):
    processor = make_processor(FakeGenerationClient(png_bytes))
    job_id = await job_control.start_job(TEST_OWNER, 1, PARAMS)
    # Simulate an entry claimed by a worker that died
    await processor.store.claim_due_items(limit=10)
    await age_claims(uow_factory, processor.store.stale_claim_after + timedelta(seconds=1))

    settings.poll_interval_seconds = 0.01
    worker = asyncio.create_task(run_batch_worker(session_factory, settings, processor=processor))
    try:
        for _ in range(200):
            job = await get_job(uow_factory, job_id)
            if job.status == BatchJobStatus.COMPLETED:
                break
            await asyncio.sleep(0.02)
    finally:
        worker.cancel()
        with pytest.raises(asyncio.CancelledError):
            await worker

    assert job.status == BatchJobStatus.COMPLETED
    assert job.completed_count == 1
    assert job.updated_at <= utcnow()


@pytest.mark.asyncio
async def test_worker_loop_sweeps_stale_claims(
    job_control, object_store, owner_account, png_bytes, uow_factory, session_factory, settings
):
    store = BatchJobStore(uow_factory, 0, stale_claim_seconds=0.2)
    processor = ItemProcessor(
        store, FakeGenerationClient(png_bytes), MediaIngestPipeline(object_store), settings
    )
    job_id = await job_control.start_job(TEST_OWNER, 1, PARAMS)
    # A dispatch that died mid-item: claimed moments ago, never recorded
    await store.claim_due_items(limit=10)

    settings.poll_interval_seconds = 0.01
    worker = asyncio.create_task(run_batch_worker(session_factory, settings, processor=processor))
    try:
        await asyncio.sleep(0.05)
        assert (await get_job(uow_factory, job_id)).completed_count == 0

        for _ in range(200):
            job = await get_job(uow_factory, job_id)
            if job.status == BatchJobStatus.COMPLETED:
                break
            await asyncio.sleep(0.02)
    finally:
        worker.cancel()
        with pytest.raises(asyncio.CancelledError):
            await worker

    assert job.status == BatchJobStatus.COMPLETED
    assert job.in_flight_count == 0
