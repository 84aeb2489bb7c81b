from __future__ import annotations

import fakeredis
import pytest


class FakeClock:
    """Monotonic clock that only moves when the lock sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    async def async_sleep(self, seconds: float) -> None:
        self.sleep(seconds)


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def client(server):
    return fakeredis.FakeRedis(server=server)


@pytest.fixture
def async_client(server):
    return fakeredis.FakeAsyncRedis(server=server)


@pytest.fixture
def clock():
    return FakeClock()
