"""Shared test fixtures for the message broker."""
import asyncio
import shutil
import tempfile

import pytest
import pytest_asyncio

from broker.system import MessageQueueSystem
from storage.store_memory import InMemoryQueueStore


class FakeClock:
    """Manually advanced clock; pass as `clock=` to the system."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore(InMemoryQueueStore):
    """In-memory store whose writes can be made to fail per queue."""

    def __init__(self):
        super().__init__()
        self.failing: set[str] = set()

    async def save_queue(self, queue_name, document):
        if queue_name in self.failing:
            raise OSError(f"disk unavailable for {queue_name}")
        await super().save_queue(queue_name, document)


class YieldingStore(InMemoryQueueStore):
    """In-memory store that gives up the event loop on every write, like real I/O."""

    async def save_queue(self, queue_name, document):
        await asyncio.sleep(0)
        await super().save_queue(queue_name, document)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir():
    d = tempfile.mkdtemp(prefix="conveyor_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def yielding_store() -> YieldingStore:
    return YieldingStore()


@pytest_asyncio.fixture
async def system(clock):
    """Memory-backed system with maintenance driven by hand."""
    mq = MessageQueueSystem(storage_type="memory", auto_start=False, clock=clock)
    await mq.initialize()
    yield mq
    await mq.close()


@pytest_asyncio.fixture
async def orders(system):
    await system.create_queue("orders", {"type": "fifo"})
    return system
