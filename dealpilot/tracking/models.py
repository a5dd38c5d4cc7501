"""Tracking ID pool models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

ReleaseReason = Literal["expired", "deal_ended", "manual"]


@dataclass(slots=True)
class TrackingLease:
    tracking_id: str
    lease_id: int
    expires_at: datetime


@dataclass(slots=True)
class PoolResult:
    success: bool
    error: str | None = None


@dataclass(slots=True)
class AddManyResult:
    added: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TrackingIdEntry:
    id: int
    tracking_id: str
    status: str
    total_uses: int
    last_used_at: datetime | None
    assigned_at: datetime | None
    expires_at: datetime | None


@dataclass(slots=True)
class PoolStats:
    total: int
    available: int
    in_use: int
    tracking_ids: list[TrackingIdEntry]


@dataclass(slots=True)
class ValidityCheckCandidate:
    deal_history_id: int
    asin: str
    channel_id: int
    user_id: int
    price_at_generation: float | None
