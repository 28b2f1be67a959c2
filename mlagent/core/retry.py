"""Bounded retry with a fixed backoff schedule and a rate-limit override."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from mlagent.config import FetchPolicy
from mlagent.marketplace.client import MarketplaceError, NotFoundError, RateLimitedError
from mlagent.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: FetchPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "",
) -> T:
    """Call ``fn`` up to ``policy.max_retries + 1`` times.

    Generic marketplace failures wait ``retry_delay`` before the next attempt,
    HTTP 429 waits ``rate_limit_delay`` instead. ``NotFoundError`` and
    non-marketplace exceptions are never retried. The last error is re-raised
    once attempts are exhausted.
    """
    attempts = policy.max_retries + 1
    for attempt in range(attempts):
        try:
            return await fn()
        except NotFoundError:
            raise
        except RateLimitedError as e:
            if attempt == attempts - 1:
                raise
            wait = policy.rate_limit_delay
            log.warning("rate_limited_retry", call=label, attempt=attempt + 1, wait=wait, retry_after=e.retry_after)
            await sleep(wait)
        except MarketplaceError as e:
            if attempt == attempts - 1:
                raise
            wait = policy.retry_delay
            log.warning("fetch_retry", call=label, attempt=attempt + 1, wait=wait, status=e.status_code)
            await sleep(wait)
    raise AssertionError("unreachable")
