"""Per-webhook processing of Mercado Livre questions.

One call to ``process_question_webhook`` takes a single question notification
from idempotency check through detail fetch, item enrichment, persistence,
real-time emission, ownership validation, secondary enrichment and hand-off
to the answer-automation webhook.
"""

from __future__ import annotations

import asyncio
import random
import re
import zlib
from datetime import datetime
from typing import Any

from mlagent.automation import AutomationDispatcher, DispatchError
from mlagent.cache import MarketplaceCache
from mlagent.config import FetchPolicy, ProcessorConfig
from mlagent.core.context import (
    build_automation_payload,
    format_buyer_context,
    format_product_context,
    format_question_history,
    format_seller_context,
)
from mlagent.core.lifecycle import QuestionLifecycle
from mlagent.core.retry import Sleep, retry_with_backoff
from mlagent.marketplace.client import MarketplaceError, MercadoLibreClient, NotFoundError
from mlagent.marketplace.tokens import TokenProvider
from mlagent.models import (
    Account,
    AuditLogEntry,
    EnrichmentBundle,
    Question,
    QuestionStatus,
    utcnow,
)
from mlagent.store import DuplicateQuestionError, QuestionStore
from mlagent.utils.logging import get_logger
from mlagent.webhooks.models import WebhookEvent

log = get_logger(__name__)

TOKEN_FAILURE_REASON = "Token inválido - faça login novamente na conta"
PENDING_TEXT = "Pergunta recebida - dados pendentes"


def generate_sequential_id(ml_question_id: str) -> str:
    """Stable human-readable reference ``NN/NNNN`` derived from the question id."""
    digits = re.sub(r"\D", "", ml_question_id)
    number = int(digits) if digits else zlib.crc32(ml_question_id.encode())
    number %= 1_000_000
    return f"{number // 10_000:02d}/{number % 10_000:04d}"


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _customer_id(details: dict[str, Any]) -> str | None:
    sender = details.get("from")
    if isinstance(sender, dict) and sender.get("id") is not None:
        return str(sender["id"])
    return None


def _price(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class QuestionProcessor:
    def __init__(
        self,
        store: QuestionStore,
        cache: MarketplaceCache,
        client: MercadoLibreClient,
        tokens: TokenProvider,
        lifecycle: QuestionLifecycle,
        dispatcher: AutomationDispatcher,
        config: ProcessorConfig,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._client = client
        self._tokens = tokens
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher
        self._config = config
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def process_question_webhook(
        self, event: WebhookEvent, account: Account
    ) -> Question | None:
        question_id = event.question_id
        if not question_id:
            log.error("invalid_resource", resource=event.resource)
            return None

        qlog = log.bind(ml_question_id=question_id, account_id=account.id)
        qlog.info("question_webhook_received", resource=event.resource)

        if await self._store.get_question(question_id) is not None:
            qlog.info("question_duplicate_skipped")
            return None

        token = await self._tokens.get_token(account)
        if not token:
            qlog.error("question_token_unavailable")
            return await self._record_token_failure(question_id, account)

        details = await self._fetch_question(question_id, token)
        if details is None:
            return None

        item = None
        if details.get("item_id"):
            item = await self._fetch_item(str(details["item_id"]), token, account)

        try:
            question = await self._lifecycle.create(
                self._build_question(question_id, account, details, item), account
            )
        except DuplicateQuestionError:
            qlog.info("question_duplicate_skipped", stage="create")
            return None

        seller_id = details.get("seller_id")
        if seller_id not in (None, "") and str(seller_id) != str(account.ml_user_id):
            await self._record_ownership_mismatch(question, account, str(seller_id))
            return question

        await self._store.append_audit(
            AuditLogEntry(
                action="question.received",
                entity_type="question",
                entity_id=question.id,
                organization_id=account.organization_id,
                account_id=account.id,
                metadata={
                    "ml_question_id": question_id,
                    "item_id": question.item_id,
                    "status": details.get("status"),
                },
            )
        )

        bundle = await self._enrich(question_id, details, item, token, account)

        answer = details.get("answer")
        if isinstance(answer, dict) and answer.get("text"):
            qlog.info("question_already_answered")
            return await self._lifecycle.transition(
                question,
                QuestionStatus.COMPLETED,
                answer=answer["text"],
                answered_at=_parse_datetime(answer.get("date_created")) or utcnow(),
                answered_by="EXTERNAL",
            )

        upstream_status = details.get("status")
        if upstream_status != "UNANSWERED":
            qlog.warning("question_not_open", upstream_status=upstream_status)
            return await self._lifecycle.fail(
                question, f"Pergunta não está aberta no Mercado Livre (status {upstream_status})"
            )

        if not self._dispatcher.enabled:
            qlog.debug("automation_disabled")
            return question

        payload = build_automation_payload(
            question_id=question_id,
            item_id=question.item_id,
            question_text=question.text,
            product_context=format_product_context(bundle.item, bundle.description),
            seller_context=format_seller_context(bundle.seller, account),
            buyer_context=format_buyer_context(bundle.buyer),
            history=format_question_history(
                bundle.same_item_history,
                bundle.other_items_history,
                limit=self._config.history_limit,
            ),
        )
        try:
            await self._dispatcher.dispatch(payload)
        except DispatchError as e:
            qlog.error("automation_dispatch_failed", error=str(e))
            return await self._lifecycle.fail(question, str(e))

        return await self._lifecycle.transition(question, QuestionStatus.PROCESSING)

    # ------------------------------------------------------------------
    # Failure records
    # ------------------------------------------------------------------

    async def _record_token_failure(self, question_id: str, account: Account) -> Question | None:
        question = Question(
            ml_question_id=question_id,
            account_id=account.id,
            seller_id=account.ml_user_id,
            text=PENDING_TEXT,
            status=QuestionStatus.FAILED,
            sequential_id=generate_sequential_id(question_id),
            failure_reason=TOKEN_FAILURE_REASON,
        )
        try:
            return await self._lifecycle.create(question, account)
        except DuplicateQuestionError:
            return None

    async def _record_ownership_mismatch(
        self, question: Question, account: Account, actual_seller: str
    ) -> None:
        log.error(
            "question_ownership_mismatch",
            ml_question_id=question.ml_question_id,
            expected_seller=account.ml_user_id,
            actual_seller=actual_seller,
        )
        await self._store.append_audit(
            AuditLogEntry(
                action="question.ownership_mismatch",
                entity_type="question",
                entity_id=question.ml_question_id,
                organization_id=account.organization_id,
                account_id=account.id,
                metadata={
                    "expected_seller": account.ml_user_id,
                    "actual_seller": actual_seller,
                    "ml_question_id": question.ml_question_id,
                },
            )
        )

    # ------------------------------------------------------------------
    # Upstream fetches
    # ------------------------------------------------------------------

    async def _warmup(self, policy: FetchPolicy) -> None:
        if policy.warmup_max > 0:
            await self._sleep(self._rng.uniform(policy.warmup_min, policy.warmup_max))

    async def _fetch_question(self, question_id: str, token: str) -> dict[str, Any] | None:
        policy = self._config.question
        await self._warmup(policy)
        try:
            return await retry_with_backoff(
                lambda: self._client.get_question(question_id, token),
                policy,
                sleep=self._sleep,
                label="question",
            )
        except NotFoundError:
            log.debug("question_not_found", ml_question_id=question_id)
        except MarketplaceError as e:
            # No row is created; the next redelivery of the notification retries
            log.error("question_fetch_exhausted", ml_question_id=question_id, status=e.status_code)
        return None

    async def _fetch_item(self, item_id: str, token: str, account: Account) -> dict[str, Any]:
        cached = await self._cache.get("ITEM", item_id, account.ml_user_id)
        if cached:
            return cached

        async def fetch() -> dict[str, Any]:
            data = await self._client.get_item(item_id, token)
            if not data.get("title"):
                raise MarketplaceError(f"item {item_id} has no title")
            return data

        policy = self._config.item
        await self._warmup(policy)
        try:
            item = await retry_with_backoff(fetch, policy, sleep=self._sleep, label="item")
        except MarketplaceError as e:
            log.warning("item_fetch_fallback", item_id=item_id, status=e.status_code)
            return self._fallback_item(item_id, account)

        await self._cache.set("ITEM", item_id, item, account.ml_user_id)
        return item

    @staticmethod
    def _fallback_item(item_id: str, account: Account) -> dict[str, Any]:
        site = account.site_id or "MLB"
        number = item_id[len(site):] if item_id.startswith(site) else item_id
        return {
            "id": item_id,
            "title": f"Produto {item_id}",
            "price": 0,
            "permalink": f"https://produto.mercadolivre.com.br/{site}-{number.lstrip('-')}",
        }

    async def _enrich(
        self,
        question_id: str,
        details: dict[str, Any],
        item: dict[str, Any] | None,
        token: str,
        account: Account,
    ) -> EnrichmentBundle:
        item_id = str(details.get("item_id") or "")
        seller_id = str(details.get("seller_id") or account.ml_user_id)
        customer_id = _customer_id(details)

        description, seller, buyer, history = await asyncio.gather(
            self._fetch_description(item_id, token, account),
            self._fetch_user(seller_id, token),
            self._fetch_user(customer_id, token),
            self._fetch_history(question_id, item_id, customer_id, token, account),
        )
        same_item, other_items = history
        return EnrichmentBundle(
            item=item,
            description=description,
            seller=seller,
            buyer=buyer,
            same_item_history=same_item,
            other_items_history=other_items,
        )

    async def _fetch_description(
        self, item_id: str, token: str, account: Account
    ) -> dict[str, Any] | None:
        if not item_id:
            return None

        async def fetch() -> dict[str, Any] | None:
            try:
                return await self._client.get_item_description(item_id, token)
            except NotFoundError:
                return None

        return await self._cache.get_or_fetch(
            "ITEM_DESC", item_id, fetch, account.ml_user_id, self._config.description_ttl
        )

    async def _fetch_user(self, user_id: str | None, token: str) -> dict[str, Any] | None:
        if not user_id:
            return None

        async def fetch() -> dict[str, Any] | None:
            try:
                return await retry_with_backoff(
                    lambda: self._client.get_user(user_id, token),
                    self._config.user,
                    sleep=self._sleep,
                    label="user",
                )
            except NotFoundError:
                return None

        return await self._cache.get_or_fetch(
            "USER", user_id, fetch, None, self._config.user_ttl
        )

    async def _fetch_history(
        self,
        question_id: str,
        item_id: str,
        customer_id: str | None,
        token: str,
        account: Account,
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        if not customer_id:
            return [], []
        try:
            questions = await self._client.search_questions(
                account.ml_user_id, token, limit=self._config.history_search_limit
            )
        except MarketplaceError as e:
            log.warning("history_fetch_failed", ml_question_id=question_id, status=e.status_code)
            return [], []

        prior = [
            q for q in questions
            if isinstance(q, dict)
            and _customer_id(q) == customer_id
            and str(q.get("id")) != question_id
        ]
        limit = self._config.history_limit
        same_item = [q for q in prior if str(q.get("item_id")) == item_id][:limit]
        other_items = [q for q in prior if str(q.get("item_id")) != item_id][:limit]
        return same_item, other_items

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_question(
        question_id: str,
        account: Account,
        details: dict[str, Any],
        item: dict[str, Any] | None,
    ) -> Question:
        item = item or {}
        item_id = str(details.get("item_id") or "")
        return Question(
            ml_question_id=question_id,
            account_id=account.id,
            seller_id=str(details.get("seller_id") or account.ml_user_id),
            text=details.get("text") or "Pergunta sem texto",
            status=QuestionStatus.PROCESSING,
            item_id=item_id,
            item_title=item.get("title") or item_id or None,
            item_price=_price(item.get("price")),
            item_permalink=item.get("permalink"),
            item_thumbnail=item.get("thumbnail"),
            customer_id=_customer_id(details),
            sequential_id=generate_sequential_id(question_id),
            date_created=_parse_datetime(details.get("date_created")) or utcnow(),
        )
