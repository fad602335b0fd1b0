"""
Global pytest configuration and fixtures for Taktgeber tests
"""

import asyncio
import logging
from typing import List, Tuple

import pytest

from taktgeber.core.clock import Clock
from taktgeber.core.errors import PublishError
from taktgeber.core.models import DomainEvent
from taktgeber.core.timeformat import parse_absolute
from taktgeber.events.memory_store import InMemoryStreamStore

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Suppress noisy logs during testing
logging.getLogger('redis').setLevel(logging.WARNING)
logging.getLogger('asyncio').setLevel(logging.WARNING)

# 30 seconds before 09:00 local time
START_TIME = "20300107085930"


async def settle(rounds: int = 10):
    """Let ready tasks run until they block again"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` in real time; fails the test on timeout"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeClock(Clock):
    """
    Virtual clock: sleepers only wake when a test advances time

    ``advance`` wakes sleepers in deadline order, letting each woken task run
    (and possibly sleep again) before moving on.
    """

    def __init__(self, start_ms: int):
        self.now = start_ms
        self._sleepers: List[Tuple[int, asyncio.Future]] = []

    def now_ms(self) -> int:
        return self.now

    async def sleep(self, seconds: float) -> None:
        wake_at = self.now + int(round(max(seconds, 0) * 1000))
        if wake_at <= self.now:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((wake_at, future))
        await future

    async def advance(self, seconds: float) -> None:
        target = self.now + int(round(seconds * 1000))
        await settle()
        while True:
            self._sleepers = [(t, f) for t, f in self._sleepers if not f.done()]
            due = [(t, f) for t, f in self._sleepers if t <= target]
            if not due:
                break
            wake_at, future = min(due, key=lambda item: item[0])
            self._sleepers.remove((wake_at, future))
            self.now = max(self.now, wake_at)
            future.set_result(None)
            await settle()
        self.now = target
        await settle()


class RecordingPublisher:
    """Publisher double that records events and can fail on demand"""

    def __init__(self, failures: int = 0):
        self.events: List[Tuple[str, DomainEvent]] = []
        self.attempts = 0
        self.failures = failures

    async def publish(self, stream_name: str, event: DomainEvent) -> str:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise PublishError(stream_name, "connection refused")
        self.events.append((stream_name, event))
        return f"{self.attempts}-0"


@pytest.fixture
def start_ms():
    return parse_absolute(START_TIME)


@pytest.fixture
def clock(start_ms):
    return FakeClock(start_ms)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def store():
    return InMemoryStreamStore()
