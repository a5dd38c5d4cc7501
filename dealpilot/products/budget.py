"""Per-user monthly budget for Keepa requests."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from dealpilot.db.tables import keepa_monthly_budgets
from dealpilot.utils.dates import Clock, month_key, start_of_next_month, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_LIMIT = int(os.environ.get("KEEPA_MONTHLY_TOKEN_LIMIT", 10000))


class BudgetExceededError(RuntimeError):
    pass


@dataclass(slots=True)
class BudgetSnapshot:
    user_id: int
    month: str
    tokens_used: int
    tokens_limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.tokens_limit - self.tokens_used)


class MonthlyBudget:
    """Soft quota: checked before spending, incremented after a successful fetch.

    Concurrent callers can overshoot the limit by a few units; nothing here is
    meant to be a billing guarantee.
    """

    def __init__(self, engine: Engine, *, limit: int = DEFAULT_MONTHLY_LIMIT, clock: Clock = utcnow) -> None:
        self.engine = engine
        self.limit = limit
        self.clock = clock

    def snapshot(self, user_id: int) -> BudgetSnapshot:
        now = self.clock()
        month = month_key(now)
        with self.engine.begin() as conn:
            row = conn.execute(
                select(keepa_monthly_budgets).where(
                    keepa_monthly_budgets.c.user_id == user_id,
                    keepa_monthly_budgets.c.month == month,
                )
            ).mappings().first()
        if row is None:
            row = self._create(user_id, month, now)
        return BudgetSnapshot(
            user_id=user_id,
            month=month,
            tokens_used=row["tokens_used"],
            tokens_limit=row["tokens_limit"],
            reset_at=row["reset_at"],
        )

    def can_spend(self, user_id: int) -> bool:
        snapshot = self.snapshot(user_id)
        return snapshot.tokens_used < snapshot.tokens_limit

    def ensure_available(self, user_id: int) -> None:
        if not self.can_spend(user_id):
            raise BudgetExceededError(f"Monthly Keepa token limit exceeded for user {user_id}")

    def record_usage(self, user_id: int, tokens: int = 1) -> None:
        month = month_key(self.clock())
        with self.engine.begin() as conn:
            result = conn.execute(
                update(keepa_monthly_budgets)
                .where(
                    keepa_monthly_budgets.c.user_id == user_id,
                    keepa_monthly_budgets.c.month == month,
                )
                .values(tokens_used=keepa_monthly_budgets.c.tokens_used + tokens)
            )
        if result.rowcount == 0:
            # The month rolled over between check and spend.
            self._create(user_id, month, self.clock(), tokens_used=tokens)

    def _create(self, user_id: int, month: str, now: datetime, *, tokens_used: int = 0):
        values = {
            "user_id": user_id,
            "month": month,
            "tokens_used": tokens_used,
            "tokens_limit": self.limit,
            "reset_at": start_of_next_month(now),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(keepa_monthly_budgets).values(**values))
        except IntegrityError:
            logger.debug("Budget row for user %s/%s created concurrently", user_id, month)
            with self.engine.connect() as conn:
                return conn.execute(
                    select(keepa_monthly_budgets).where(
                        keepa_monthly_budgets.c.user_id == user_id,
                        keepa_monthly_budgets.c.month == month,
                    )
                ).mappings().one()
        logger.info("Created Keepa budget for user %s (%s)", user_id, month)
        return values
