"""pytest fixtures for PixelStream batch engine tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- engine: Function-scoped SQLite database (temporary file) with schema created
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- settings / owner account / fakes for object storage and upstream generation
"""

import io
import os
from typing import AsyncGenerator, Awaitable, Callable, Optional

# Settings are read at import time by pixelstream.app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel  # noqa: E402

import pixelstream.models  # noqa: E402, F401
from pixelstream.core.config import Settings  # noqa: E402
from pixelstream.models.user_account import UserAccount  # noqa: E402
from pixelstream.services.batch.job_control import BatchJobControl  # noqa: E402
from pixelstream.services.batch.job_store import BatchJobStore  # noqa: E402
from pixelstream.services.credentials import encrypt_api_key  # noqa: E402
from pixelstream.services.generation.client import (  # noqa: E402
    GenerationResponse,
    RetryResult,
)
from pixelstream.services.storage.ingest import MediaIngestPipeline  # noqa: E402
from pixelstream.services.storage.object_store import UploadResult  # noqa: E402
from pixelstream.uow import create_uow_factory  # noqa: E402
from pixelstream.workers.item_processor import ItemProcessor  # noqa: E402

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
TEST_OWNER = "user_test_owner"
OTHER_OWNER = "user_other_owner"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide a fresh SQLite database file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session for direct queries."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings() -> Settings:
    """Test settings: no inter-item spacing so successors are due immediately."""
    return Settings(  # type: ignore[call-arg]
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        APP_ENV="test",
        ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        BATCH_ITEM_INTERVAL_SECONDS=0,
        GENERATION_BASE_URL="https://gen.test",
    )


@pytest_asyncio.fixture
async def owner_account(uow_factory) -> UserAccount:
    """Subscribed owner with a stored, encrypted upstream API key."""
    async with await uow_factory() as uow:
        account = UserAccount(
            owner_id=TEST_OWNER,
            encrypted_api_key=encrypt_api_key("sk-test-key", TEST_ENCRYPTION_KEY),
            has_active_subscription=True,
        )
        return await uow.accounts.add(account)


def make_png(width: int = 64, height: int = 32) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", (width, height), "red").save(output, format="PNG")
    return output.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


class FakeObjectStore:
    """In-memory ObjectStore that records every upload."""

    def __init__(self, fail_when: Optional[Callable[[str], bool]] = None):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_when = fail_when

    async def put(self, key: str, data: bytes, content_type: str) -> UploadResult:
        if self.fail_when and self.fail_when(key):
            from pixelstream.services.exceptions import StorageError

            raise StorageError(f"Upload failed for {key}")
        self.objects[key] = (data, content_type)
        return UploadResult(url=f"https://cdn.test/{key}", size_bytes=len(data))


class FakeGenerationClient:
    """Upstream stand-in returning a fixed image; optional hook runs on each call.

    The hook receives the 1-based call number and may return a RetryResult to
    override the default success.
    """

    def __init__(
        self,
        content: bytes,
        content_type: str = "image/png",
        on_call: Optional[Callable[[int], Awaitable[Optional[RetryResult]]]] = None,
    ):
        self.content = content
        self.content_type = content_type
        self.on_call = on_call
        self.calls: list[int] = []

    async def generate(self, params, seed: int, api_key: str) -> RetryResult:
        self.calls.append(seed)
        if self.on_call is not None:
            override = await self.on_call(len(self.calls))
            if override is not None:
                return override
        return RetryResult(
            success=True,
            attempts_made=1,
            response=GenerationResponse(content=self.content, content_type=self.content_type),
        )


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def job_store(uow_factory, settings) -> BatchJobStore:
    return BatchJobStore(
        uow_factory, settings.batch_item_interval_seconds, settings.stale_claim_seconds
    )


@pytest.fixture
def job_control(uow_factory, settings) -> BatchJobControl:
    return BatchJobControl(uow_factory, settings.batch_item_interval_seconds)


@pytest.fixture
def make_processor(job_store, object_store, settings):
    """Build an ItemProcessor around a given generation client."""

    def _make(generation_client, processor_class=ItemProcessor) -> ItemProcessor:
        return processor_class(
            job_store, generation_client, MediaIngestPipeline(object_store), settings
        )

    return _make


async def run_round(processor: ItemProcessor, limit: int = 20) -> list[int]:
    """Claim due entries once and process them one after another.

    Returns:
        Item indices that were dispatched
    """
    items = await processor.store.claim_due_items(limit=limit)
    for item in items:
        await processor.process(item)
    return [item.item_index for item in items]


async def drain(processor: ItemProcessor, max_rounds: int = 100) -> list[int]:
    """Dispatch due entries until none are left.

    Returns:
        Every dispatched item index, in dispatch order
    """
    dispatched: list[int] = []
    for _ in range(max_rounds):
        indices = await run_round(processor)
        if not indices:
            break
        dispatched.extend(indices)
    return dispatched
