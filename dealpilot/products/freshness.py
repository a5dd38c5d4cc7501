"""TTL bookkeeping for cached product data."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from dealpilot.utils.dates import minutes_between

FreshnessStatus = Literal["fresh", "valid", "expiring", "critical", "expired"]

REFRESH_STATUSES: frozenset[str] = frozenset({"expiring", "critical", "expired"})

TTL_WINDOW_MINUTES = int(os.environ.get("KEEPA_TTL_WINDOW_MINUTES", 1440))


@dataclass(frozen=True, slots=True)
class FreshnessThresholds:
    """Minutes of remaining TTL below which a record drops a level."""

    critical: int = 360
    expiring: int = 720
    valid: int = 1200


DEFAULT_THRESHOLDS = FreshnessThresholds()


@dataclass(slots=True)
class TTLStatus:
    remaining: int
    status: FreshnessStatus

    @property
    def needs_refresh(self) -> bool:
        return self.status in REFRESH_STATUSES


def classify(remaining: int, thresholds: FreshnessThresholds = DEFAULT_THRESHOLDS) -> FreshnessStatus:
    if remaining < 0:
        return "expired"
    if remaining < thresholds.critical:
        return "critical"
    if remaining < thresholds.expiring:
        return "expiring"
    if remaining < thresholds.valid:
        return "valid"
    return "fresh"


def ttl_status(
    ttl_minutes: int,
    last_checked_at: datetime,
    now: datetime,
    thresholds: FreshnessThresholds = DEFAULT_THRESHOLDS,
) -> TTLStatus:
    remaining = ttl_minutes - minutes_between(now, last_checked_at)
    return TTLStatus(remaining=remaining, status=classify(remaining, thresholds))
