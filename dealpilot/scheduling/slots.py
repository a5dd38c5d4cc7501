"""Slot scoring for smart scheduling."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime

from dealpilot.scheduling.config import SchedulingConfig
from dealpilot.scheduling.models import TimeSlot
from dealpilot.utils.dates import add_hours, local_hour, start_of_hour


def hour_score(hour: int, best_hours: Sequence[int], config: SchedulingConfig) -> int:
    if hour in best_hours:
        rank = list(best_hours).index(hour)
        if rank < len(config.best_hour_scores):
            return config.best_hour_scores[rank]
        return config.best_hour_fallback_score
    return config.unlisted_hour_score


def bucket_pending(scheduled_times: Iterable[datetime], tz: str) -> Counter:
    """Count pending jobs per slot, keyed by the slot's start (naive UTC)."""
    return Counter(start_of_hour(value, tz) for value in scheduled_times)


def candidate_slots(
    now: datetime,
    best_hours: Sequence[int],
    pending_per_slot: Counter,
    config: SchedulingConfig,
) -> list[TimeSlot]:
    """Open slots in the lookahead window, in chronological order."""
    base = start_of_hour(now, config.timezone)
    slots: list[TimeSlot] = []
    for offset in range(1, config.lookahead_hours + 1):
        start = add_hours(base, offset)
        hour = local_hour(start, config.timezone)
        if hour in config.dead_hours:
            continue
        count = pending_per_slot.get(start, 0)
        if count >= config.max_deals_per_hour:
            continue
        score = hour_score(hour, best_hours, config)
        if offset > config.far_slot_hours:
            score -= config.far_slot_penalty
        if count == 0:
            score += config.empty_slot_bonus
        slots.append(TimeSlot(start=start, local_hour=hour, deal_count=count, score=max(0, score)))
    return slots


def best_slot(slots: list[TimeSlot]) -> TimeSlot | None:
    """Highest score wins; the earliest slot wins a tie."""
    best: TimeSlot | None = None
    for slot in slots:
        if best is None or slot.score > best.score:
            best = slot
    return best
