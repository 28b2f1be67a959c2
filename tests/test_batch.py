"""Tests for the per-account batch processor."""

import asyncio
import random

import pytest

from mlagent.cache import MarketplaceCache
from mlagent.config import BatchConfig
from mlagent.core.batch import BatchProcessor
from mlagent.models import Account
from mlagent.webhooks.models import QueuedWebhook, WebhookEvent


def queued(account_id: str, question_id: str) -> QueuedWebhook:
    account = Account(id=account_id, ml_user_id=f"seller-{account_id}", organization_id="org-1")
    event = WebhookEvent(
        topic="questions",
        resource=f"/questions/{question_id}",
        user_id=account.ml_user_id,
    )
    return QueuedWebhook(event=event, account=account)


class Recorder:
    """Process callable that records order, start times and concurrency."""

    def __init__(self, clock) -> None:
        self.clock = clock
        self.seen: list[str] = []
        self.started_at: list[float] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_on: set[str] = set()

    async def __call__(self, event: WebhookEvent, account: Account) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started_at.append(self.clock())
        try:
            await asyncio.sleep(0)
            self.seen.append(event.question_id)
            if event.question_id in self.fail_on:
                raise RuntimeError(f"boom {event.question_id}")
        finally:
            self.in_flight -= 1


@pytest.fixture
def recorder(clock):
    return Recorder(clock)


@pytest.fixture
def batch(recorder, sleep, clock):
    return BatchProcessor(
        recorder,
        BatchConfig(stats_probability=0.0),
        sleep=sleep,
        clock=clock,
        rng=random.Random(1),
    )


class TestOrdering:
    async def test_fifo_within_account(self, batch, recorder):
        for qid in ("1", "2", "3"):
            batch.add_to_batch("acc-a", queued("acc-a", qid))
        await batch.join()

        assert recorder.seen == ["1", "2", "3"]

    async def test_round_robin_across_accounts(self, batch, recorder):
        batch.add_to_batch("acc-a", queued("acc-a", "a1"))
        batch.add_to_batch("acc-a", queued("acc-a", "a2"))
        batch.add_to_batch("acc-b", queued("acc-b", "b1"))
        await batch.join()

        assert recorder.seen == ["a1", "b1", "a2"]

    async def test_never_runs_items_concurrently(self, batch, recorder):
        for i in range(5):
            batch.add_to_batch(f"acc-{i % 2}", queued(f"acc-{i % 2}", str(i)))
        await batch.join()

        assert len(recorder.seen) == 5
        assert recorder.max_in_flight == 1

    async def test_items_added_while_draining_are_processed(self, batch, recorder):
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        await asyncio.sleep(0)
        batch.add_to_batch("acc-a", queued("acc-a", "2"))
        batch.add_to_batch("acc-b", queued("acc-b", "3"))
        await batch.join()

        assert sorted(recorder.seen) == ["1", "2", "3"]
        assert recorder.max_in_flight == 1


class TestDelays:
    async def test_batch_delay_between_items(self, batch, recorder, sleep):
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        batch.add_to_batch("acc-b", queued("acc-b", "2"))
        batch.add_to_batch("acc-a", queued("acc-a", "3"))
        await batch.join()

        starts = recorder.started_at
        assert all(b - a >= 10.0 for a, b in zip(starts, starts[1:]))
        assert sleep.calls == [10.0, 10.0, 10.0]

    async def test_item_delay_within_a_larger_batch(self, recorder, sleep, clock):
        batch = BatchProcessor(
            recorder,
            BatchConfig(batch_size=2, stats_probability=0.0),
            sleep=sleep,
            clock=clock,
        )
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        batch.add_to_batch("acc-a", queued("acc-a", "2"))
        await batch.join()

        assert recorder.seen == ["1", "2"]
        assert sleep.calls == [5.0, 10.0]
        assert recorder.started_at[1] - recorder.started_at[0] == 5.0


class TestFailures:
    async def test_error_does_not_stop_the_loop(self, batch, recorder):
        recorder.fail_on = {"1"}
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        batch.add_to_batch("acc-a", queued("acc-a", "2"))
        await batch.join()

        assert recorder.seen == ["1", "2"]
        assert batch.processing is False
        assert batch.get_status()["accounts"] == 0

    async def test_loop_restarts_after_draining(self, batch, recorder):
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        await batch.join()
        assert batch.processing is False

        batch.add_to_batch("acc-a", queued("acc-a", "2"))
        assert batch.processing is True
        await batch.join()

        assert recorder.seen == ["1", "2"]

    async def test_stop_cancels_the_loop(self, clock):
        gate = asyncio.Event()

        async def blocked(event, account):
            await gate.wait()

        batch = BatchProcessor(blocked, BatchConfig(), clock=clock)
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        batch.add_to_batch("acc-a", queued("acc-a", "2"))
        await asyncio.sleep(0)

        await batch.stop()

        assert batch.processing is False
        assert batch.get_status()["batches"]["acc-a"]["pending"] == 1


class TestStatus:
    async def test_idle_status(self, batch):
        assert batch.get_status() == {"processing": False, "accounts": 0, "batches": {}}

    async def test_status_while_processing(self, clock, sleep):
        gate = asyncio.Event()

        async def blocked(event, account):
            await gate.wait()

        batch = BatchProcessor(blocked, BatchConfig(), sleep=sleep, clock=clock)
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        batch.add_to_batch("acc-a", queued("acc-a", "2"))
        batch.add_to_batch("acc-b", queued("acc-b", "3"))
        await asyncio.sleep(0)
        clock.advance(1.5)

        status = batch.get_status()
        assert status["processing"] is True
        assert status["accounts"] == 2
        assert status["batches"]["acc-a"] == {"pending": 1, "age_ms": 1500}
        assert status["batches"]["acc-b"] == {"pending": 1, "age_ms": 1500}

        gate.set()
        await batch.join()
        assert batch.get_status()["processing"] is False

    async def test_flush_is_noop_when_empty(self, batch):
        batch.flush()
        assert batch.processing is False
        await batch.join()

    async def test_stats_logging_reads_cache(self, recorder, sleep, clock):
        cache = MarketplaceCache(clock=clock)
        await cache.set("ITEM", "MLB1", {"title": "x"}, "111")
        batch = BatchProcessor(
            recorder,
            BatchConfig(stats_probability=1.0),
            sleep=sleep,
            clock=clock,
            cache=cache,
        )
        batch.add_to_batch("acc-a", queued("acc-a", "1"))
        await batch.join()

        assert recorder.seen == ["1"]
