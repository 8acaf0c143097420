import asyncio
from collections import defaultdict

import pytest
import pytest_asyncio

from chat_relay.broadcast.relay_pool import ConnectionPool
from chat_relay.scheduler.jobs import setup_scheduler
from chat_relay.upstream.base import UpstreamEmitter


class FakeUpstream(UpstreamEmitter):
    """In-memory upstream session; tests drive it with emit()."""

    def __init__(self, key: str, fail: bool = False) -> None:
        super().__init__()
        self.key = key
        self.fail = fail
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise ConnectionError(f"@{self.key} is offline")
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False


class FakeUpstreamFactory:
    def __init__(self) -> None:
        self.created: dict[str, list[FakeUpstream]] = defaultdict(list)
        self.fail = False

    def __call__(self, key: str) -> FakeUpstream:
        upstream = FakeUpstream(key, fail=self.fail)
        self.created[key].append(upstream)
        return upstream


@pytest.fixture
def factory():
    return FakeUpstreamFactory()


@pytest_asyncio.fixture
async def scheduler():
    sched = await setup_scheduler()
    yield sched
    sched.shutdown(wait=False)
    await asyncio.sleep(0)


@pytest.fixture
def make_pool(scheduler, factory):
    def _make(**options) -> ConnectionPool:
        settings = {
            "reconnect_delay": 0.05,
            "connect_retry": 0.05,
            "min_connect_spacing": 0.0,
            "connect_timeout": 1.0,
            "idle_grace": 0.1,
        }
        settings.update(options)
        return ConnectionPool(scheduler, factory, **settings)

    return _make


@pytest.fixture
def eventually():
    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait
