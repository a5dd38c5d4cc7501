"""Periodic pipeline jobs.

Every entry point builds its own services from the environment, runs one pass
and tears down its network clients, so Celery can call them through
``asyncio.run`` without sharing state between runs.
"""

from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from dealpilot.db.session import create_engine_from_env
from dealpilot.products.budget import BudgetExceededError, MonthlyBudget
from dealpilot.products.cache import ProductCache
from dealpilot.products.keepa import KeepaClient, KeepaError
from dealpilot.publishing.copywriting import CopyGenerator
from dealpilot.publishing.credentials import CredentialStore
from dealpilot.publishing.publisher import ScheduledPublisher
from dealpilot.publishing.telegram import TelegramDelivery
from dealpilot.scheduling.models import ProcessingStats
from dealpilot.scheduling.service import Scheduler
from dealpilot.tracking.models import ValidityCheckCandidate
from dealpilot.tracking.pool import TrackingIdPool

logger = logging.getLogger(__name__)


def build_publisher(engine: Engine) -> ScheduledPublisher:
    return ScheduledPublisher(
        Scheduler(engine),
        TrackingIdPool(engine),
        CredentialStore(),
        CopyGenerator(),
        TelegramDelivery(),
    )


async def run_publish_cycle(engine: Engine | None = None) -> ProcessingStats:
    load_dotenv()
    engine = engine or create_engine_from_env()
    return await build_publisher(engine).process_scheduled_deals()


async def run_pool_sweep(engine: Engine | None = None) -> int:
    load_dotenv()
    engine = engine or create_engine_from_env()
    return TrackingIdPool(engine).sweep_expired()


async def run_stale_cleanup(engine: Engine | None = None) -> int:
    load_dotenv()
    engine = engine or create_engine_from_env()
    return Scheduler(engine).cleanup_stale_deals()


async def run_validity_check(engine: Engine | None = None, cache: ProductCache | None = None, limit: int = 50) -> int:
    """Re-check published deals against current prices. Returns how many were expired."""
    load_dotenv()
    engine = engine or create_engine_from_env()
    pool = TrackingIdPool(engine)
    cache = cache or ProductCache(engine, KeepaClient(), MonthlyBudget(engine))
    expired = 0
    try:
        for candidate in pool.deals_needing_validity_check(limit):
            try:
                record = await cache.get(candidate.asin, candidate.user_id)
            except (KeepaError, BudgetExceededError) as exc:
                logger.warning("Skipping validity check of %s: %s", candidate.asin, exc)
                continue
            valid = is_still_valid(candidate, record.current_price)
            pool.update_deal_validity(candidate.deal_history_id, valid)
            if not valid:
                expired += 1
                logger.info("Deal %s on channel %s is no longer valid", candidate.asin, candidate.channel_id)
        await cache.wait_idle()
    finally:
        await cache.close()
    return expired


def is_still_valid(candidate: ValidityCheckCandidate, current_price: float) -> bool:
    if current_price <= 0:
        return False
    if candidate.price_at_generation is None:
        return True
    return current_price <= candidate.price_at_generation


if __name__ == "__main__":
    asyncio.run(run_publish_cycle())
