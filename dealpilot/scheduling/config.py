"""Scheduling constants.

Every value can be overridden through the environment so operators can tune
posting cadence without a deploy.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

from dealpilot.utils.dates import timezone_name

Priority = Literal["critical", "high", "normal"]
PublishingMode = Literal["smart", "immediate"]

DEAL_TYPE_PRIORITY: dict[str, Priority] = {
    "lightning": "critical",
    "deal_of_day": "high",
    "coupon": "normal",
    "price_drop": "normal",
    "deal": "normal",
}


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_ints(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    """Comma separated integers, order kept."""
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(int(part) for part in raw.split(",") if part.strip())


def _env_hours(name: str, default: set[int]) -> frozenset[int]:
    return frozenset(_env_ints(name, tuple(sorted(default))))


@dataclass(slots=True, frozen=True)
class SchedulingConfig:
    max_deals_per_hour: int = field(default_factory=lambda: _env_int("SCHEDULER_MAX_DEALS_PER_HOUR", 3))
    lookahead_hours: int = field(default_factory=lambda: _env_int("SCHEDULER_LOOKAHEAD_HOURS", 24))
    min_delay_minutes: int = field(default_factory=lambda: _env_int("SCHEDULER_MIN_DELAY_MINUTES", 5))
    lightning_max_delay_minutes: int = field(
        default_factory=lambda: _env_int("SCHEDULER_LIGHTNING_MAX_DELAY_MINUTES", 15)
    )
    lightning_rush_delay_minutes: int = field(
        default_factory=lambda: _env_int("SCHEDULER_LIGHTNING_RUSH_DELAY_MINUTES", 2)
    )
    fallback_delay_minutes: int = field(default_factory=lambda: _env_int("SCHEDULER_FALLBACK_DELAY_MINUTES", 60))
    dead_hours: frozenset[int] = field(
        default_factory=lambda: _env_hours("SCHEDULER_DEAD_HOURS", {2, 3, 4, 5, 6})
    )
    max_retries: int = field(default_factory=lambda: _env_int("SCHEDULER_MAX_RETRIES", 3))
    retry_delay_minutes: int = field(default_factory=lambda: _env_int("SCHEDULER_RETRY_DELAY_MINUTES", 5))
    stale_hours: int = field(default_factory=lambda: _env_int("SCHEDULER_STALE_HOURS", 48))
    batch_size: int = field(default_factory=lambda: _env_int("SCHEDULER_BATCH_SIZE", 20))
    delay_between_deals_seconds: float = field(
        default_factory=lambda: float(os.environ.get("SCHEDULER_DELAY_BETWEEN_DEALS_SECONDS", 1.0))
    )
    timezone: str = field(default_factory=timezone_name)

    # Slot scoring. Channels without insights use default_best_hours, best first.
    default_best_hours: tuple[int, ...] = field(
        default_factory=lambda: _env_ints("SCHEDULER_DEFAULT_BEST_HOURS", (20, 19, 21, 12, 18))
    )
    # Score for the n-th best hour; listed hours past the end score best_hour_fallback_score.
    best_hour_scores: tuple[int, ...] = field(
        default_factory=lambda: _env_ints("SCHEDULER_BEST_HOUR_SCORES", (100, 90, 80, 70, 60))
    )
    best_hour_fallback_score: int = field(
        default_factory=lambda: _env_int("SCHEDULER_BEST_HOUR_FALLBACK_SCORE", 50)
    )
    unlisted_hour_score: int = field(default_factory=lambda: _env_int("SCHEDULER_UNLISTED_HOUR_SCORE", 30))
    far_slot_hours: int = field(default_factory=lambda: _env_int("SCHEDULER_FAR_SLOT_HOURS", 12))
    far_slot_penalty: int = field(default_factory=lambda: _env_int("SCHEDULER_FAR_SLOT_PENALTY", 10))
    empty_slot_bonus: int = field(default_factory=lambda: _env_int("SCHEDULER_EMPTY_SLOT_BONUS", 5))
    # Slots scoring above this are reported as "best_hour", the rest as "next_slot".
    best_hour_threshold: int = field(default_factory=lambda: _env_int("SCHEDULER_BEST_HOUR_THRESHOLD", 50))


def deal_priority(deal_type: str | None) -> Priority:
    if not deal_type:
        return "normal"
    return DEAL_TYPE_PRIORITY.get(deal_type, "normal")
