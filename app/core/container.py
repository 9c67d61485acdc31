"""
Service wiring for the application.

`build_container` assembles the payout, rate and bot components from an
AppConfig. The container is stored on `app.state.container` by the lifespan
handler and routes reach it through the dependency functions below, which
tests override with mocks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Request

from app.core.cache import TTLCache
from app.core.config import AppConfig
from app.core.exceptions import ConfigurationError
from app.repositories.payout_store import PayoutStore
from app.services.callbacks import CallbackNotifier
from app.services.dispatch import OperatorDispatcher, ShortIdRegistry
from app.services.expiration import ExpirationScheduler
from app.services.payout_service import PayoutService
from app.services.proof_storage import ProofStorage
from app.services.rate_service import BinanceSource, HuobiSource, RateAggregator

logger = logging.getLogger(__name__)

RATE_JOB_ID = "rates:update"


@dataclass
class ServiceContainer:
    config: AppConfig
    store: PayoutStore
    scheduler: AsyncIOScheduler
    payouts: PayoutService
    rates: RateAggregator
    storage: ProofStorage
    callbacks: CallbackNotifier
    bot: Optional[object] = None


def build_container(config: AppConfig, scheduler: Optional[AsyncIOScheduler] = None) -> ServiceContainer:
    scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
    store = PayoutStore()

    registry = ShortIdRegistry(
        length=config.payout.short_id_length,
        ttl_seconds=config.payout.short_id_ttl_seconds,
        max_entries=config.payout.short_id_max_entries,
    )
    dispatcher = OperatorDispatcher(store, notifier=None, registry=registry)
    callbacks = CallbackNotifier(
        config.security.private_token, timeout=config.payout.callback_timeout_seconds
    )
    payouts = PayoutService(
        store=store,
        dispatcher=dispatcher,
        expirations=ExpirationScheduler(scheduler),
        callbacks=callbacks,
        config=config.payout,
    )

    timeout = config.rate.http_timeout_seconds
    rates = RateAggregator(
        sources=[BinanceSource(timeout=timeout), HuobiSource(timeout=timeout)],
        store=store,
        cache=TTLCache(default_ttl=config.rate.cache_ttl_seconds),
        config=config.rate,
    )

    storage = ProofStorage(
        config.payout.upload_dir,
        config.payout.screenshot_max_size,
        config.payout.allowed_screenshot_types,
    )

    bot = None
    if config.bot.token:
        from app.bot.telegram_bot import OperatorBot

        bot = OperatorBot(config.bot, config.payout, payouts, store, storage)
        dispatcher.notifier = bot
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set; operators will not be notified")

    return ServiceContainer(
        config=config,
        store=store,
        scheduler=scheduler,
        payouts=payouts,
        rates=rates,
        storage=storage,
        callbacks=callbacks,
        bot=bot,
    )


def schedule_rate_updates(container: ServiceContainer) -> None:
    container.scheduler.add_job(
        container.rates.update_rates,
        "interval",
        seconds=container.config.rate.update_interval_seconds,
        id=RATE_JOB_ID,
        name="Consensus rate update",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )


# --- FastAPI dependencies ---

def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise ConfigurationError("Services are not initialized", config_key="app.state.container")
    return container


def get_payout_service(request: Request) -> PayoutService:
    return get_container(request).payouts


def get_rate_aggregator(request: Request) -> RateAggregator:
    return get_container(request).rates


def get_payout_store(request: Request) -> PayoutStore:
    return get_container(request).store


def get_proof_storage(request: Request) -> ProofStorage:
    return get_container(request).storage
