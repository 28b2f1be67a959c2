"""Shared fixtures: temporary store, seller account, fake time."""

import asyncio

import pytest

from mlagent.models import Account
from mlagent.store import QuestionStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays and advances the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)
        await asyncio.sleep(0)


@pytest.fixture
async def store(tmp_path):
    s = QuestionStore(tmp_path / "mlagent.db")
    await s.start()
    yield s
    await s.stop()


@pytest.fixture
def account():
    return Account(
        id="acc-1",
        ml_user_id="111",
        organization_id="org-1",
        nickname="LOJA_TESTE",
        access_token="APP_USR-token",
        refresh_token="TG-refresh",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)
