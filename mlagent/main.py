"""mlagent entry point: wires everything together and runs the service."""

from __future__ import annotations

import asyncio
import signal
import sys

import click

from mlagent import __version__
from mlagent.automation import AutomationDispatcher
from mlagent.cache import MarketplaceCache
from mlagent.config import Settings, load_settings
from mlagent.core.batch import BatchProcessor
from mlagent.core.bus import EventBus
from mlagent.core.lifecycle import QuestionLifecycle
from mlagent.core.processor import QuestionProcessor
from mlagent.marketplace.client import MercadoLibreClient
from mlagent.marketplace.tokens import StoreTokenProvider
from mlagent.models import Account
from mlagent.realtime import RealtimeNotifier
from mlagent.store import QuestionStore
from mlagent.utils.logging import get_logger, setup_logging
from mlagent.webhooks.server import WebhookServer

log = get_logger(__name__)


class MLAgent:
    """Main application orchestrator."""

    def __init__(self, settings: Settings, dry_run: bool = False) -> None:
        self.settings = settings
        self.dry_run = dry_run

        # Core components
        self.bus = EventBus()
        self.store = QuestionStore(settings.get_data_dir() / "mlagent.db")
        self.cache = MarketplaceCache()
        self.client = MercadoLibreClient(settings.marketplace)
        self.tokens = StoreTokenProvider(
            self.store, self.client, settings.marketplace.token_refresh_margin
        )
        self.notifier = RealtimeNotifier(self.bus)
        self.lifecycle = QuestionLifecycle(self.store, self.notifier)

        automation = settings.automation
        if dry_run:
            automation = automation.model_copy(update={"webhook_url": ""})
        self.dispatcher = AutomationDispatcher(automation)

        self.processor = QuestionProcessor(
            self.store,
            self.cache,
            self.client,
            self.tokens,
            self.lifecycle,
            self.dispatcher,
            settings.processor,
        )
        self.batch = BatchProcessor(
            self.processor.process_question_webhook,
            settings.batch,
            cache=self.cache,
        )
        self.server = WebhookServer(
            settings.webhooks, self.store, self.batch, self.bus, cache=self.cache
        )

    async def start(self) -> None:
        log.info(
            "mlagent_starting",
            version=__version__,
            automation=self.dispatcher.enabled,
            dry_run=self.dry_run,
        )

        await self.store.start()
        await self._seed_accounts()

        if self.settings.webhooks.enabled:
            await self.server.start()

        log.info("mlagent_ready")

    async def stop(self) -> None:
        log.info("mlagent_stopping")
        await self.server.stop()
        await self.batch.stop()
        await self.dispatcher.close()
        await self.client.close()
        await self.store.stop()
        log.info("mlagent_stopped")

    async def _seed_accounts(self) -> None:
        for cfg in self.settings.accounts:
            account = Account(**cfg.model_dump())
            existing = await self.store.get_account(cfg.id)
            if existing is not None and existing.refresh_token:
                # Keep credentials refreshed since the last start
                account.access_token = existing.access_token
                account.refresh_token = existing.refresh_token
                account.token_expires_at = existing.token_expires_at
            await self.store.upsert_account(account)
            log.info("account_loaded", account_id=account.id, ml_user_id=account.ml_user_id)


async def run(settings: Settings, dry_run: bool = False) -> None:
    app = MLAgent(settings, dry_run=dry_run)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        log.info("shutdown_signal")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

    await app.start()

    try:
        if sys.platform == "win32":
            while not stop_event.is_set():
                await asyncio.sleep(1)
        else:
            await stop_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


@click.command()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option("--dry-run", is_flag=True, help="Process questions without calling the automation webhook")
@click.version_option(__version__, prog_name="mlagent")
def cli(config_path: str | None, log_level: str | None, dry_run: bool) -> None:
    """Start the Mercado Livre question ingestion service."""
    settings = load_settings(config_path)
    if log_level:
        settings.log_level = log_level
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    asyncio.run(run(settings, dry_run=dry_run))


if __name__ == "__main__":
    cli()
