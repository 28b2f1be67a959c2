"""Bearer credential providers for seller accounts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta

from mlagent.marketplace.client import MarketplaceError, MercadoLibreClient
from mlagent.models import Account, utcnow
from mlagent.store import QuestionStore
from mlagent.utils.logging import get_logger

log = get_logger(__name__)


class TokenProvider(ABC):
    @abstractmethod
    async def get_token(self, account: Account) -> str | None:
        """Return a valid bearer token for the account, or None."""


class StoreTokenProvider(TokenProvider):
    """Serves stored credentials and refreshes them through OAuth when near expiry."""

    def __init__(
        self,
        store: QuestionStore,
        client: MercadoLibreClient,
        refresh_margin: int = 300,
    ) -> None:
        self._store = store
        self._client = client
        self._refresh_margin = timedelta(seconds=refresh_margin)

    async def get_token(self, account: Account) -> str | None:
        stored = await self._store.get_account(account.id) or account
        if not stored.access_token and not stored.refresh_token:
            log.warning("token_missing", account_id=account.id)
            return None

        expires_at = stored.token_expires_at
        if stored.access_token and (
            expires_at is None or expires_at - self._refresh_margin > utcnow()
        ):
            return stored.access_token

        if not stored.refresh_token:
            log.warning("token_expired_no_refresh", account_id=account.id)
            return None
        return await self._refresh(stored)

    async def _refresh(self, account: Account) -> str | None:
        try:
            data = await self._client.refresh_token(account.refresh_token)
        except MarketplaceError as e:
            log.error("token_refresh_failed", account_id=account.id, status=e.status_code)
            return None

        access_token = data.get("access_token")
        if not access_token:
            log.error("token_refresh_empty", account_id=account.id)
            return None

        expires_at = utcnow() + timedelta(seconds=int(data.get("expires_in", 21600)))
        await self._store.update_account_tokens(
            account.id,
            access_token,
            data.get("refresh_token") or account.refresh_token,
            expires_at,
        )
        log.info("token_refreshed", account_id=account.id, expires_at=expires_at.isoformat())
        return access_token
