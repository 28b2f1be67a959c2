"""Mercado Livre REST client for questions, items, descriptions and users."""

from __future__ import annotations

from typing import Any

import httpx

from mlagent.config import MarketplaceConfig
from mlagent.utils.logging import get_logger

log = get_logger(__name__)


class MarketplaceError(Exception):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(MarketplaceError):
    """404: deleted resource or a synthetic test notification."""


class RateLimitedError(MarketplaceError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class MercadoLibreClient:
    def __init__(
        self,
        config: MarketplaceConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_base.rstrip("/"),
            timeout=config.request_timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def get_question(self, question_id: str, token: str) -> dict[str, Any]:
        return await self._get(f"/questions/{question_id}", token)

    async def get_item(self, item_id: str, token: str) -> dict[str, Any]:
        return await self._get(f"/items/{item_id}", token)

    async def get_item_description(self, item_id: str, token: str) -> dict[str, Any]:
        return await self._get(f"/items/{item_id}/description", token)

    async def get_user(self, user_id: str, token: str) -> dict[str, Any]:
        return await self._get(f"/users/{user_id}", token)

    async def search_questions(
        self, seller_id: str, token: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Most recent questions received by a seller, newest first."""
        data = await self._get(
            "/questions/search",
            token,
            params={
                "seller_id": seller_id,
                "api_version": "4",
                "limit": limit,
                "sort_fields": "date_created",
                "sort_types": "DESC",
            },
        )
        questions = data.get("questions")
        return questions if isinstance(questions, list) else []

    async def refresh_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new access/refresh pair."""
        try:
            resp = await self._client.post(
                "/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "refresh_token": refresh_token,
                },
            )
        except httpx.HTTPError as e:
            raise MarketplaceError(f"oauth request failed: {e}") from e
        self._raise_for_status(resp, "/oauth/token")
        return self._decode(resp, "/oauth/token")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get(
        self,
        path: str,
        token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            resp = await self._client.get(
                path,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise MarketplaceError(f"timeout on {path}") from e
        except httpx.HTTPError as e:
            raise MarketplaceError(f"request to {path} failed: {e}") from e

        log.debug(
            "marketplace_response",
            path=path,
            status=resp.status_code,
            rate_limit_remaining=resp.headers.get("x-rate-limit-remaining"),
        )
        self._raise_for_status(resp, path)
        return self._decode(resp, path)

    @staticmethod
    def _raise_for_status(resp: httpx.Response, path: str) -> None:
        if resp.status_code == 404:
            raise NotFoundError(f"{path} not found", status_code=404)
        if resp.status_code == 429:
            raise RateLimitedError(
                f"rate limited on {path}",
                retry_after=_parse_retry_after(resp.headers.get("retry-after")),
            )
        if resp.is_error:
            raise MarketplaceError(
                f"API error {resp.status_code} on {path}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

    @staticmethod
    def _decode(resp: httpx.Response, path: str) -> dict[str, Any]:
        # Gateways occasionally answer 200 with an HTML error page
        try:
            data = resp.json()
        except ValueError as e:
            raise MarketplaceError(
                f"invalid JSON from {path}: {resp.text[:200]}",
                status_code=resp.status_code,
            ) from e
        if not isinstance(data, dict):
            raise MarketplaceError(
                f"unexpected {type(data).__name__} payload from {path}",
                status_code=resp.status_code,
            )
        return data
