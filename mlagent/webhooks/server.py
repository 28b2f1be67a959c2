"""Webhook HTTP server using aiohttp."""

from __future__ import annotations

import asyncio
from typing import Any

from aiohttp import web

from mlagent.cache import MarketplaceCache
from mlagent.config import WebhooksConfig
from mlagent.core.batch import BatchProcessor
from mlagent.core.bus import EventBus
from mlagent.models import AuditLogEntry
from mlagent.realtime import format_sse
from mlagent.store import QuestionStore
from mlagent.utils.logging import get_logger
from mlagent.webhooks.handlers import (
    InvalidNotification,
    get_client_ip,
    parse_notification,
    validate_generic_secret,
    validate_source_ip,
)
from mlagent.webhooks.models import QueuedWebhook, WebhookEvent

log = get_logger(__name__)


class WebhookServer:
    """Receives Mercado Livre notifications and queues them for processing."""

    def __init__(
        self,
        config: WebhooksConfig,
        store: QuestionStore,
        batch: BatchProcessor,
        bus: EventBus,
        cache: MarketplaceCache | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._batch = batch
        self._bus = bus
        self._cache = cache
        self._runner: web.AppRunner | None = None

    @property
    def path(self) -> str:
        path = self._config.path
        return path if path.startswith("/") else f"/{path}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._config.secret:
            log.warning(
                "webhook_no_secret",
                msg="No webhook secret configured; notifications are accepted without a shared secret.",
            )
        app = self._build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.bind, self._config.port)
        await site.start()
        log.info(
            "webhook_server_started",
            bind=self._config.bind,
            port=self._config.port,
            path=self.path,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("webhook_server_stopped")

    # ------------------------------------------------------------------
    # App construction
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.path, self._handle_webhook)
        app.router.add_get(self.path, self._handle_verify)
        app.router.add_get(f"{self.path.rstrip('/')}/status", self._handle_status)
        app.router.add_post("/admin/flush", self._handle_flush)
        app.router.add_get("/events", self._handle_events)
        return app

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        ip = get_client_ip(request.headers, request.remote, self._config.trust_proxy)
        if not validate_source_ip(ip, self._config.allowed_ips):
            log.error("webhook_ip_rejected", ip=ip)
            await self._store.append_audit(
                AuditLogEntry(
                    action="webhook.validation_failed",
                    entity_type="webhook",
                    entity_id="unknown",
                    organization_id="system",
                    account_id="",
                    metadata={"reason": "ip_not_allowed", "ip": ip or "unknown"},
                )
            )
            return web.json_response({"error": "Forbidden"}, status=403)

        # Parse JSON
        try:
            payload: Any = await request.json()
        except Exception:
            return web.Response(status=400, text="Invalid JSON")

        # Validate shared secret
        if self._config.secret:
            provided = request.headers.get("X-Webhook-Secret", "")
            if not validate_generic_secret(provided, self._config.secret):
                return web.Response(status=401, text="Invalid secret")

        # Bad data is acknowledged with 200 so it is not redelivered
        try:
            event = parse_notification(payload)
        except InvalidNotification as e:
            log.warning("webhook_invalid_notification", error=str(e))
            return web.json_response({"received": True, "queued": False, "error": str(e)})

        if event.topic == "items":
            return await self._handle_item_update(event)

        if event.topic != "questions":
            log.info("webhook_topic_ignored", topic=event.topic, resource=event.resource)
            return web.json_response(
                {"received": True, "queued": False, "ignored": event.topic}
            )

        question_id = event.question_id
        if not question_id:
            log.warning("webhook_invalid_resource", resource=event.resource)
            return web.json_response(
                {"received": True, "queued": False, "error": "Invalid resource"}
            )

        account = await self._store.find_account_by_seller(event.user_id)
        if account is None:
            log.warning("webhook_unknown_account", user_id=event.user_id)
            return web.json_response(
                {"received": True, "queued": False, "error": "Unknown account"}
            )

        if await self._store.get_question(question_id) is not None:
            log.info("webhook_duplicate", ml_question_id=question_id)
            return web.json_response({"received": True, "queued": False, "duplicate": True})

        self._batch.add_to_batch(account.id, QueuedWebhook(event=event, account=account))
        log.info(
            "webhook_queued",
            ml_question_id=question_id,
            account_id=account.id,
            attempts=event.attempts,
        )
        return web.json_response({"received": True, "queued": True})

    async def _handle_item_update(self, event: WebhookEvent) -> web.Response:
        """Drop cached item data so the next question sees the edited listing."""
        body: dict[str, Any] = {"received": True, "queued": False, "ignored": event.topic}
        item_id = event.resource.rsplit("/", 1)[-1]
        if self._cache is None or not item_id:
            return web.json_response(body)

        account = await self._store.find_account_by_seller(event.user_id)
        if account is None:
            return web.json_response(body)

        await self._cache.invalidate("ITEM", item_id, account.ml_user_id)
        await self._cache.invalidate("ITEM_DESC", item_id, account.ml_user_id)
        log.info("item_cache_invalidated", item_id=item_id, account_id=account.id)
        body["invalidated"] = item_id
        return web.json_response(body)

    async def _handle_verify(self, request: web.Request) -> web.Response:
        challenge = request.query.get("challenge")
        if challenge:
            return web.Response(text=challenge, content_type="text/plain")
        return web.json_response({"status": "ok", "webhook": "mercadolibre"})

    async def _handle_status(self, request: web.Request) -> web.Response:
        if self._config.admin_secret and not self._is_admin(request):
            return web.Response(status=401, text="Invalid secret")
        return web.json_response(self._batch.get_status())

    async def _handle_flush(self, request: web.Request) -> web.Response:
        if not self._is_admin(request):
            return web.Response(status=401, text="Invalid secret")
        self._batch.flush()
        return web.json_response({"flushed": True, "status": self._batch.get_status()})

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        organization_id = request.query.get("organization_id", "")
        if not organization_id:
            return web.json_response({"error": "organization_id is required"}, status=400)

        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)

        queue = self._bus.open_stream()
        log.info(
            "sse_client_connected",
            organization_id=organization_id,
            clients=self._bus.stream_count,
        )
        try:
            await response.write(b": connected\n\n")
            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=self._config.sse_keepalive
                    )
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if event.organization_id != organization_id:
                    continue
                await response.write(format_sse(event).encode())
        except ConnectionResetError:
            log.debug("sse_client_gone", organization_id=organization_id)
        finally:
            self._bus.close_stream(queue)
            log.info("sse_client_disconnected", organization_id=organization_id)
        return response

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_admin(self, request: web.Request) -> bool:
        provided = request.headers.get("X-Admin-Secret", "")
        return validate_generic_secret(provided, self._config.admin_secret)
