"""Per-account FIFO batching that serializes question processing."""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from mlagent.cache import MarketplaceCache
from mlagent.config import BatchConfig
from mlagent.core.retry import Sleep
from mlagent.models import Account
from mlagent.utils.logging import get_logger
from mlagent.webhooks.models import QueuedWebhook, WebhookEvent

log = get_logger(__name__)

Process = Callable[[WebhookEvent, Account], Awaitable[Any]]


@dataclass
class AccountBatch:
    account_id: str
    created_at: float
    webhooks: deque[QueuedWebhook] = field(default_factory=deque)


class BatchProcessor:
    """Drains queued webhooks one at a time, rotating between accounts.

    ``add_to_batch`` is synchronous and only appends; the single drain task is
    the only place items are removed. A ``processing`` flag keeps at most one
    drain task alive.
    """

    def __init__(
        self,
        process: Process,
        config: BatchConfig,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        cache: MarketplaceCache | None = None,
    ) -> None:
        self._process = process
        self._config = config
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._cache = cache
        self._batches: dict[str, AccountBatch] = {}
        self._processing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def processing(self) -> bool:
        return self._processing

    def add_to_batch(self, account_id: str, item: QueuedWebhook) -> None:
        batch = self._batches.get(account_id)
        if batch is None:
            batch = AccountBatch(account_id=account_id, created_at=self._clock())
            self._batches[account_id] = batch
        batch.webhooks.append(item)
        log.debug(
            "webhook_batched",
            account_id=account_id,
            ml_question_id=item.event.question_id,
            pending=len(batch.webhooks),
        )
        self._ensure_running()

    def flush(self) -> None:
        """Start draining pending batches if the loop is idle."""
        log.info("batch_flush_requested", accounts=len(self._batches))
        self._ensure_running()

    async def join(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        pending = sum(len(b.webhooks) for b in self._batches.values())
        if pending:
            log.warning("batch_stopped_with_pending", pending=pending)

    def get_status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "processing": self._processing,
            "accounts": len(self._batches),
            "batches": {
                account_id: {
                    "pending": len(batch.webhooks),
                    "age_ms": int((now - batch.created_at) * 1000),
                }
                for account_id, batch in self._batches.items()
            },
        }

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    def _ensure_running(self) -> None:
        if self._processing or not self._batches:
            return
        self._processing = True
        self._task = asyncio.create_task(self._run(), name="batch-processor")

    async def _run(self) -> None:
        log.info("batch_processing_started", accounts=len(self._batches))
        try:
            while self._batches:
                account_id, batch = next(iter(self._batches.items()))
                count = min(max(self._config.batch_size, 1), len(batch.webhooks))
                items = [batch.webhooks.popleft() for _ in range(count)]

                for index, item in enumerate(items):
                    if index > 0:
                        await self._sleep(self._config.item_delay)
                    await self._process_one(account_id, item)

                # Items may have arrived for this account while it was processing
                self._batches.pop(account_id, None)
                if batch.webhooks:
                    self._batches[account_id] = batch

                if self._rng.random() < self._config.stats_probability:
                    await self._log_stats()

                await self._sleep(self._config.batch_delay)
        finally:
            self._processing = False
            self._task = None
            log.info("batch_processing_finished")

    async def _process_one(self, account_id: str, item: QueuedWebhook) -> None:
        try:
            await self._process(item.event, item.account)
        except Exception:
            log.exception(
                "batch_item_failed",
                account_id=account_id,
                ml_question_id=item.event.question_id,
            )

    async def _log_stats(self) -> None:
        status = self.get_status()
        cache_stats: dict[str, Any] = {}
        if self._cache is not None:
            cache_stats = await self._cache.get_stats()
        log.info(
            "batch_stats",
            accounts=status["accounts"],
            pending=sum(b["pending"] for b in status["batches"].values()),
            cache_keys=cache_stats.get("total_keys"),
            cache_by_account=cache_stats.get("by_account"),
        )
