"""Shared fixtures: a throwaway SQLite database per test and a wired QueueManager."""
import asyncio
import inspect

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import build_engine
from app.models import Base
from app.services.batch_store import BatchStore
from app.services.processor_registry import ProcessorRegistry
from app.services.queue_manager import QueueManager
from app.services.retry_policy import RetryPolicy, RetryScheduler


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once.

    Set `gate` to an asyncio.Event to hold every sleeper until it is set.
    """

    def __init__(self):
        self.delays: list[float] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll a predicate (plain or async) until it returns True."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return BatchStore(session_factory)


@pytest.fixture
def registry():
    return ProcessorRegistry()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest_asyncio.fixture
async def manager(store, registry, sleeper):
    mgr = QueueManager(
        store,
        registry,
        concurrency=3,
        retry_policy=RetryPolicy(base_delay_ms=1000),
        scheduler=RetryScheduler(sleep=sleeper),
        default_max_retries=3,
        cancel_check_interval=0,
    )
    yield mgr
    await mgr.shutdown()


def make_items(*video_ids, **fields) -> list[dict]:
    return [{"video_id": vid, **fields} for vid in video_ids]
