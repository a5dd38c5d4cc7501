"""Publication worker for scheduled deals.

Each cycle drains at most one batch of due jobs, strictly one after another
with a short pause in between so channels are not flooded. A job is claimed
before anything else happens, so a concurrent cycle cannot publish it twice.
Any failure of a single job is recorded on that job and never stops the batch.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import insert, update

from dealpilot.db.tables import automation_rules, channel_deal_history
from dealpilot.publishing.copywriting import CopyConfig, CopyGenerator, CopyResult, DealCopyPayload
from dealpilot.publishing.credentials import CredentialDecryptError, CredentialStore
from dealpilot.publishing.telegram import DealMessage, TelegramDelivery
from dealpilot.scheduling.models import ProcessingStats, ReadyDeal
from dealpilot.scheduling.service import Scheduler
from dealpilot.tracking.models import TrackingLease
from dealpilot.tracking.pool import TrackingIdPool
from dealpilot.utils.dates import Clock, utcnow

logger = logging.getLogger(__name__)

DEFAULT_AFFILIATE_TAG = os.environ.get("DEFAULT_AFFILIATE_TAG", "dealpilot-21")
AMAZON_MARKETPLACE = os.environ.get("AMAZON_MARKETPLACE", "it")
HISTORY_TTL = timedelta(days=7)


@dataclass(slots=True)
class PublishOutcome:
    success: bool
    message_id: str | None = None
    tracking_id: str | None = None
    error: str | None = None


def affiliate_link(asin: str, tag: str, marketplace: str = AMAZON_MARKETPLACE) -> str:
    return f"https://www.amazon.{marketplace}/dp/{asin}?tag={tag}&linkCode=ll1"


class ScheduledPublisher:
    def __init__(
        self,
        scheduler: Scheduler,
        pool: TrackingIdPool,
        credentials: CredentialStore,
        copy: CopyGenerator,
        delivery: TelegramDelivery,
        *,
        default_tag: str = DEFAULT_AFFILIATE_TAG,
        marketplace: str = AMAZON_MARKETPLACE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = utcnow,
    ) -> None:
        self.scheduler = scheduler
        self.engine = scheduler.engine
        self.pool = pool
        self.credentials = credentials
        self.copy = copy
        self.delivery = delivery
        self.default_tag = default_tag
        self.marketplace = marketplace
        self._sleep = sleep
        self.clock = clock

    async def process_scheduled_deals(self) -> ProcessingStats:
        stats = ProcessingStats()
        deals = self.scheduler.get_deals_ready_to_publish(self.scheduler.config.batch_size)
        if not deals:
            return stats

        logger.info("Processing %s scheduled deals", len(deals))
        for index, deal in enumerate(deals):
            if index:
                await self._sleep(self.scheduler.config.delay_between_deals_seconds)
            if not self.scheduler.claim(deal.id):
                logger.info("Scheduled deal %s already claimed, skipping", deal.id)
                stats.skipped += 1
                continue
            stats.processed += 1
            try:
                await self._process(deal, stats)
            except Exception as exc:
                logger.exception("Error processing scheduled deal %s", deal.id)
                stats.errors.append(f"{deal.id}: {exc}")
                self._record_failure(deal, str(exc) or exc.__class__.__name__, stats)

        logger.info(
            "Completed: %s published, %s failed, %s cancelled, %s retried",
            stats.published,
            stats.failed,
            stats.cancelled,
            stats.retried,
        )
        return stats

    async def _process(self, deal: ReadyDeal, stats: ProcessingStats) -> None:
        if not deal.rule_is_active:
            self.scheduler.cancel_scheduled_deal(deal.id, "rule_disabled")
            stats.cancelled += 1
            return
        if not deal.credential_key:
            logger.error("Channel %s has no credential", deal.channel_id)
            self.scheduler.cancel_scheduled_deal(deal.id, "no_credential")
            stats.cancelled += 1
            return

        outcome = await self.publish(deal)
        if outcome.success:
            self.scheduler.mark_as_published(deal.id, outcome.message_id, outcome.tracking_id)
            stats.published += 1
            logger.info("Published %s to %s", deal.asin, deal.chat_id)
        else:
            self._record_failure(deal, outcome.error or "Unknown error", stats)

    async def publish(self, deal: ReadyDeal) -> PublishOutcome:
        try:
            bot_token = self.credentials.decrypt(deal.credential_key or "")
        except CredentialDecryptError:
            return PublishOutcome(False, error="Failed to decrypt bot token")

        lease = self.pool.lease(deal.user_id, deal.id)
        tag = lease.tracking_id if lease else (deal.affiliate_tag or self.default_tag)
        link = affiliate_link(deal.asin, tag, self.marketplace)

        # A lease taken for a failed attempt is reclaimed by expiry, not released here.
        copy = await self.copy.generate(_copy_payload(deal, link), _copy_config(deal))
        result = await self.delivery.send(deal.chat_id, bot_token, DealMessage(text=copy.text, url=link))
        if not result.success:
            return PublishOutcome(False, error=result.error)

        history_id = self._record_history(deal, result.message_id, lease, copy)
        if lease is not None:
            self.pool.link(lease.lease_id, history_id)
        self._bump_rule(deal.rule_id)
        return PublishOutcome(
            True,
            message_id=result.message_id,
            tracking_id=lease.tracking_id if lease else None,
        )

    def _record_failure(self, deal: ReadyDeal, error: str, stats: ProcessingStats) -> None:
        if self.scheduler.mark_as_failed(deal.id, error):
            stats.retried += 1
            logger.info("Will retry %s: %s", deal.asin, error)
        else:
            stats.failed += 1
            logger.error("Failed permanently %s: %s", deal.asin, error)

    def _record_history(
        self,
        deal: ReadyDeal,
        message_id: str | None,
        lease: TrackingLease | None,
        copy: CopyResult,
    ) -> int:
        now = self.clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(channel_deal_history).values(
                    channel_id=deal.channel_id,
                    rule_id=deal.rule_id,
                    asin=deal.asin,
                    published_at=now,
                    expires_at=now + HISTORY_TTL,
                    message_id=message_id,
                    base_score=deal.base_score,
                    final_score=deal.final_score,
                    tracking_id_used=lease.tracking_id if lease else None,
                    deal_type=deal.deal_type,
                    original_price=deal.original_price,
                    deal_price=deal.deal_price,
                    discount=deal.discount,
                    category=deal.category,
                    generated_copy=copy.text,
                    copy_source=copy.source,
                    copy_generated_at=copy.generated_at,
                    price_at_generation=deal.deal_price,
                    deal_still_valid=True,
                )
            )
        return result.inserted_primary_key[0]

    def _bump_rule(self, rule_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(automation_rules)
                .where(automation_rules.c.id == rule_id)
                .values(deals_published=automation_rules.c.deals_published + 1, last_run_at=self.clock())
            )


def _copy_payload(deal: ReadyDeal, link: str) -> DealCopyPayload:
    return DealCopyPayload(
        asin=deal.asin,
        title=deal.product_title or f"Prodotto {deal.asin}",
        current_price=deal.deal_price or 0,
        original_price=deal.original_price or 0,
        discount_percent=round(deal.discount or 0),
        category=deal.category or "",
        affiliate_url=link,
    )


def _copy_config(deal: ReadyDeal) -> CopyConfig:
    return CopyConfig(
        copy_mode=deal.copy_mode or "TEMPLATE",
        message_template=deal.message_template,
        custom_style_prompt=deal.custom_style_prompt,
        llm_model=deal.llm_model,
    )
