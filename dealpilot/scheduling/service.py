"""Scheduler: turns qualifying deals into pending publication jobs.

A job moves ``pending -> processing -> published`` on the happy path. Failed
attempts go back to ``pending`` with a delay until ``max_retries`` is used up,
after which the job is terminally ``failed``. Jobs that nobody picked up for
``stale_hours`` are ``expired`` by the hourly cleanup.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Engine

from dealpilot.db.tables import automation_rules, channel_insights, channels, scheduled_deals, users
from dealpilot.scheduling.config import SchedulingConfig, deal_priority
from dealpilot.scheduling.models import (
    OPEN_STATUSES,
    ChannelSchedulingStats,
    PendingDeal,
    ReadyDeal,
    ScheduleDealInput,
    SchedulingDecision,
)
from dealpilot.scheduling.slots import best_slot, bucket_pending, candidate_slots
from dealpilot.utils.dates import Clock, add_hours, add_minutes, start_of_day, start_of_hour, utcnow

logger = logging.getLogger(__name__)

sd = scheduled_deals


class RuleNotFoundError(LookupError):
    pass


class Scheduler:
    def __init__(self, engine: Engine, *, config: SchedulingConfig | None = None, clock: Clock = utcnow) -> None:
        self.engine = engine
        self.config = config or SchedulingConfig()
        self.clock = clock

    def schedule_deal(self, deal: ScheduleDealInput) -> int:
        with self.engine.connect() as conn:
            mode = conn.execute(
                select(automation_rules.c.publishing_mode).where(automation_rules.c.id == deal.rule_id)
            ).scalar_one_or_none()
        if mode is None:
            raise RuleNotFoundError(f"Rule {deal.rule_id} not found")

        now = self.clock()
        decision = self.decide(deal, mode, now)
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(sd).values(
                    channel_id=deal.channel_id,
                    rule_id=deal.rule_id,
                    asin=deal.asin,
                    product_title=deal.product_title,
                    base_score=deal.base_score,
                    final_score=deal.final_score,
                    deal_type=deal.deal_type,
                    original_price=deal.original_price,
                    deal_price=deal.deal_price,
                    discount=deal.discount,
                    category=deal.category,
                    deal_end_time=deal.deal_end_time,
                    scheduled_for=decision.scheduled_for,
                    reason=decision.reason,
                    status="pending",
                    retry_count=0,
                    max_retries=self.config.max_retries,
                    created_at=now,
                )
            )
        deal_id = result.inserted_primary_key[0]
        logger.info(
            "Scheduled %s for channel %s at %s (%s, score %s)",
            deal.asin,
            deal.channel_id,
            decision.scheduled_for.isoformat(),
            decision.reason,
            decision.slot_score,
        )
        return deal_id

    def decide(self, deal: ScheduleDealInput, publishing_mode: str, now: datetime) -> SchedulingDecision:
        config = self.config
        if publishing_mode == "immediate":
            return SchedulingDecision(add_minutes(now, config.min_delay_minutes), "immediate", 100)

        if deal_priority(deal.deal_type) == "critical":
            # Lightning deals skip the per-slot cap.
            scheduled_for = add_minutes(now, config.lightning_max_delay_minutes)
            if deal.deal_end_time is not None and deal.deal_end_time < scheduled_for:
                scheduled_for = add_minutes(now, config.lightning_rush_delay_minutes)
            return SchedulingDecision(scheduled_for, "lightning_priority", 100)

        return self.find_optimal_slot(deal.channel_id, now)

    def find_optimal_slot(self, channel_id: int, now: datetime) -> SchedulingDecision:
        config = self.config
        window_start = start_of_hour(now, config.timezone)
        window_end = add_hours(window_start, config.lookahead_hours + 1)
        with self.engine.connect() as conn:
            best_hours = conn.execute(
                select(channel_insights.c.best_hours).where(channel_insights.c.channel_id == channel_id)
            ).scalar_one_or_none()
            pending_times = conn.execute(
                select(sd.c.scheduled_for).where(
                    sd.c.channel_id == channel_id,
                    sd.c.status == "pending",
                    sd.c.scheduled_for >= window_start,
                    sd.c.scheduled_for < window_end,
                )
            ).scalars().all()

        slots = candidate_slots(
            now,
            list(best_hours) if best_hours else config.default_best_hours,
            bucket_pending(pending_times, config.timezone),
            config,
        )
        slot = best_slot(slots)
        if slot is None:
            logger.warning("No open slot for channel %s in the next %sh", channel_id, config.lookahead_hours)
            return SchedulingDecision(add_minutes(now, config.fallback_delay_minutes), "fallback", 0)
        reason = "best_hour" if slot.score > config.best_hour_threshold else "next_slot"
        return SchedulingDecision(slot.start, reason, slot.score)

    def get_deals_ready_to_publish(self, limit: int | None = None) -> list[ReadyDeal]:
        limit = limit or self.config.batch_size
        query = (
            select(
                sd.c.id,
                sd.c.channel_id,
                sd.c.rule_id,
                sd.c.asin,
                sd.c.product_title,
                sd.c.base_score,
                sd.c.final_score,
                sd.c.deal_type,
                sd.c.original_price,
                sd.c.deal_price,
                sd.c.discount,
                sd.c.category,
                sd.c.deal_end_time,
                sd.c.scheduled_for,
                sd.c.retry_count,
                sd.c.max_retries,
                channels.c.user_id,
                channels.c.chat_id,
                channels.c.name.label("channel_name"),
                channels.c.credential_key,
                users.c.affiliate_tag,
                automation_rules.c.is_active.label("rule_is_active"),
                automation_rules.c.copy_mode,
                automation_rules.c.message_template,
                automation_rules.c.custom_style_prompt,
                automation_rules.c.llm_model,
            )
            .join(channels, channels.c.id == sd.c.channel_id)
            .join(users, users.c.id == channels.c.user_id)
            .join(automation_rules, automation_rules.c.id == sd.c.rule_id)
            .where(sd.c.status == "pending", sd.c.scheduled_for <= self.clock())
            .order_by(sd.c.scheduled_for.asc(), sd.c.id.asc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [ReadyDeal(**row) for row in rows]

    def claim(self, deal_id: int) -> bool:
        """Move a due job from pending to processing; False if someone else got it first."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sd).where(sd.c.id == deal_id, sd.c.status == "pending").values(status="processing")
            )
        return result.rowcount == 1

    def mark_as_published(self, deal_id: int, message_id: str | None, tracking_id: str | None) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sd)
                .where(sd.c.id == deal_id, sd.c.status.in_(OPEN_STATUSES))
                .values(
                    status="published",
                    published_at=self.clock(),
                    message_id=message_id,
                    tracking_id_used=tracking_id,
                )
            )
        if result.rowcount == 0:
            logger.warning("Scheduled deal %s was not open when marked published", deal_id)
            return False
        return True

    def mark_as_failed(self, deal_id: int, error: str) -> bool:
        """Record a failed attempt. Returns True if the job will be retried."""
        now = self.clock()
        with self.engine.begin() as conn:
            row = conn.execute(
                select(sd.c.retry_count, sd.c.max_retries).where(sd.c.id == deal_id, sd.c.status.in_(OPEN_STATUSES))
            ).first()
            if row is None:
                logger.warning("Scheduled deal %s is not open, ignoring failure: %s", deal_id, error)
                return False
            retry_count = row.retry_count + 1
            if retry_count >= row.max_retries:
                result = conn.execute(
                    update(sd)
                    .where(sd.c.id == deal_id, sd.c.status.in_(OPEN_STATUSES))
                    .values(status="failed", retry_count=retry_count, failed_at=now, last_error=error)
                )
                if result.rowcount == 0:
                    logger.warning("Scheduled deal %s left the open states before it could be failed", deal_id)
                    return False
                logger.warning("Scheduled deal %s failed permanently: %s", deal_id, error)
                return False
            retry_at = add_minutes(now, self.config.retry_delay_minutes)
            result = conn.execute(
                update(sd)
                .where(sd.c.id == deal_id, sd.c.status.in_(OPEN_STATUSES))
                .values(status="pending", retry_count=retry_count, scheduled_for=retry_at, last_error=error)
            )
            if result.rowcount == 0:
                logger.warning("Scheduled deal %s left the open states before it could be retried", deal_id)
                return False
        logger.info(
            "Scheduled deal %s will retry at %s (%s/%s)",
            deal_id,
            retry_at.isoformat(),
            retry_count,
            row.max_retries,
        )
        return True

    def cancel_scheduled_deal(self, deal_id: int, reason: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sd)
                .where(sd.c.id == deal_id, sd.c.status.in_(OPEN_STATUSES))
                .values(status="cancelled", cancelled_at=self.clock(), cancel_reason=reason)
            )
        if result.rowcount:
            logger.info("Cancelled scheduled deal %s: %s", deal_id, reason)
        return result.rowcount == 1

    def cancel_deals_by_asin(self, channel_id: int, asin: str, reason: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sd)
                .where(sd.c.channel_id == channel_id, sd.c.asin == asin, sd.c.status == "pending")
                .values(status="cancelled", cancelled_at=self.clock(), cancel_reason=reason)
            )
        return result.rowcount

    def cleanup_stale_deals(self) -> int:
        now = self.clock()
        cutoff = now - timedelta(hours=self.config.stale_hours)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sd)
                .where(sd.c.status.in_(OPEN_STATUSES), sd.c.scheduled_for < cutoff)
                .values(status="expired", cancelled_at=now, cancel_reason="stale")
            )
        if result.rowcount:
            logger.info("Expired %s stale scheduled deals", result.rowcount)
        return result.rowcount

    def is_deal_scheduled(self, channel_id: int, asin: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(sd)
                .where(sd.c.channel_id == channel_id, sd.c.asin == asin, sd.c.status.in_(OPEN_STATUSES))
            ).scalar_one()
        return count > 0

    def get_scheduling_stats(self, channel_id: int) -> ChannelSchedulingStats:
        today = start_of_day(self.clock(), self.config.timezone)

        def count(conn, status: str, since_column=None) -> int:
            query = select(func.count()).select_from(sd).where(sd.c.channel_id == channel_id, sd.c.status == status)
            if since_column is not None:
                query = query.where(since_column >= today)
            return conn.execute(query).scalar_one()

        with self.engine.connect() as conn:
            next_scheduled = conn.execute(
                select(func.min(sd.c.scheduled_for)).where(sd.c.channel_id == channel_id, sd.c.status == "pending")
            ).scalar_one_or_none()
            return ChannelSchedulingStats(
                pending=count(conn, "pending"),
                published_today=count(conn, "published", sd.c.published_at),
                cancelled_today=count(conn, "cancelled", sd.c.cancelled_at),
                failed_today=count(conn, "failed", sd.c.failed_at),
                next_scheduled=next_scheduled,
            )

    def get_pending_deals(self, channel_id: int, limit: int = 50) -> list[PendingDeal]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    sd.c.id,
                    sd.c.asin,
                    sd.c.product_title,
                    sd.c.deal_type,
                    sd.c.scheduled_for,
                    sd.c.reason,
                    sd.c.final_score,
                )
                .where(sd.c.channel_id == channel_id, sd.c.status == "pending")
                .order_by(sd.c.scheduled_for.asc())
                .limit(limit)
            ).mappings().all()
        return [PendingDeal(**row) for row in rows]
