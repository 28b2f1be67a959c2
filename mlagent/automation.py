"""Hand-off of enriched questions to the external automation webhook (N8N)."""

from __future__ import annotations

from typing import Any

import httpx

from mlagent.config import AutomationConfig
from mlagent.utils.logging import get_logger

log = get_logger(__name__)


class DispatchError(Exception):
    """The automation webhook was unreachable, timed out or answered non-2xx."""


class AutomationDispatcher:
    def __init__(
        self,
        config: AutomationConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(timeout=config.timeout, transport=transport)

    @property
    def enabled(self) -> bool:
        return bool(self._config.webhook_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def dispatch(self, payload: dict[str, Any]) -> None:
        if not self.enabled:
            return
        question_id = payload.get("question-id")
        try:
            resp = await self._client.post(self._config.webhook_url, json=payload)
        except httpx.TimeoutException as e:
            raise DispatchError(
                f"Timeout ao enviar para automação ({self._config.timeout:.0f}s)"
            ) from e
        except httpx.HTTPError as e:
            raise DispatchError(f"Falha de conexão com automação: {e}") from e

        if resp.is_error:
            raise DispatchError(
                f"Automação respondeu HTTP {resp.status_code}: {resp.text[:200]}"
            )
        log.info("automation_dispatched", question_id=question_id, status=resp.status_code)
