"""Datetime helpers.

Every timestamp the pipeline stores is a naive UTC ``datetime``. Local time only
matters when reasoning about hours of the day (best hours, dead hours, "today"),
which is done through pendulum in the configured timezone.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import datetime, timedelta

import pendulum

DEFAULT_TZ = "Europe/Rome"

Clock = Callable[[], datetime]


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utcnow() -> datetime:
    return _plain(pendulum.now("UTC"))


def add_minutes(value: datetime, minutes: float) -> datetime:
    return value + timedelta(minutes=minutes)


def add_hours(value: datetime, hours: float) -> datetime:
    return value + timedelta(hours=hours)


def minutes_between(later: datetime, earlier: datetime) -> int:
    """Whole minutes elapsed from ``earlier`` to ``later`` (floored)."""
    return int((later - earlier).total_seconds() // 60)


def start_of_hour(value: datetime, tz: str | None = None) -> datetime:
    """Start of the local hour containing ``value``, returned as naive UTC."""
    local = _localize(value, tz).start_of("hour")
    return _plain(local.in_timezone("UTC"))


def start_of_day(value: datetime, tz: str | None = None) -> datetime:
    local = _localize(value, tz).start_of("day")
    return _plain(local.in_timezone("UTC"))


def local_hour(value: datetime, tz: str | None = None) -> int:
    return _localize(value, tz).hour


def month_key(value: datetime) -> str:
    return value.strftime("%Y-%m")


def start_of_next_month(value: datetime) -> datetime:
    if value.month == 12:
        return datetime(value.year + 1, 1, 1)
    return datetime(value.year, value.month + 1, 1)


def _localize(value: datetime, tz: str | None) -> pendulum.DateTime:
    return pendulum.instance(value, tz="UTC").in_timezone(tz or timezone_name())


def _plain(value: datetime) -> datetime:
    return datetime(
        value.year,
        value.month,
        value.day,
        value.hour,
        value.minute,
        value.second,
        value.microsecond,
    )
