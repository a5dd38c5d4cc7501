"""Scheduling models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

ScheduleReason = Literal["immediate", "lightning_priority", "best_hour", "next_slot", "fallback"]
DealStatus = Literal["pending", "processing", "published", "cancelled", "failed", "expired"]

TERMINAL_STATUSES = ("published", "cancelled", "failed", "expired")
OPEN_STATUSES = ("pending", "processing")


@dataclass(slots=True)
class ScheduleDealInput:
    channel_id: int
    rule_id: int
    asin: str
    base_score: float
    final_score: float
    product_title: str | None = None
    deal_type: str | None = None
    original_price: float | None = None
    deal_price: float | None = None
    discount: float | None = None
    category: str | None = None
    deal_end_time: datetime | None = None


@dataclass(slots=True)
class SchedulingDecision:
    scheduled_for: datetime
    reason: ScheduleReason
    slot_score: float


@dataclass(slots=True)
class TimeSlot:
    start: datetime
    local_hour: int
    deal_count: int
    score: float


@dataclass(slots=True)
class ReadyDeal:
    """A due job joined with everything the publisher needs about its channel and rule."""

    id: int
    channel_id: int
    rule_id: int
    asin: str
    product_title: str | None
    base_score: float
    final_score: float
    deal_type: str | None
    original_price: float | None
    deal_price: float | None
    discount: float | None
    category: str | None
    deal_end_time: datetime | None
    scheduled_for: datetime
    retry_count: int
    max_retries: int
    user_id: int
    chat_id: str
    channel_name: str
    credential_key: str | None
    affiliate_tag: str | None
    rule_is_active: bool
    copy_mode: str
    message_template: str | None
    custom_style_prompt: str | None
    llm_model: str


@dataclass(slots=True)
class ProcessingStats:
    processed: int = 0
    published: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChannelSchedulingStats:
    pending: int
    published_today: int
    cancelled_today: int
    failed_today: int
    next_scheduled: datetime | None


@dataclass(slots=True)
class PendingDeal:
    id: int
    asin: str
    product_title: str | None
    deal_type: str | None
    scheduled_for: datetime
    reason: str | None
    final_score: float
