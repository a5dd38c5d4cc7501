from datetime import datetime

import pytest
from sqlalchemy import select

from dealpilot.db.tables import keepa_monthly_budgets
from dealpilot.products.budget import BudgetExceededError, MonthlyBudget


def test_snapshot_creates_month_row(engine, clock):
    budget = MonthlyBudget(engine, limit=100, clock=clock)
    snapshot = budget.snapshot(1)
    assert snapshot.month == "2025-06"
    assert snapshot.tokens_used == 0
    assert snapshot.remaining == 100
    assert snapshot.reset_at == datetime(2025, 7, 1)


def test_usage_exhausts_budget(engine, clock):
    budget = MonthlyBudget(engine, limit=2, clock=clock)
    budget.ensure_available(1)
    budget.record_usage(1)
    budget.record_usage(1)
    assert not budget.can_spend(1)
    with pytest.raises(BudgetExceededError):
        budget.ensure_available(1)


def test_new_month_starts_fresh(engine, clock):
    budget = MonthlyBudget(engine, limit=1, clock=clock)
    budget.snapshot(1)
    budget.record_usage(1)
    assert not budget.can_spend(1)

    clock.now = datetime(2025, 7, 1, 0, 5)
    assert budget.can_spend(1)
    with engine.connect() as conn:
        months = conn.execute(
            select(keepa_monthly_budgets.c.month).order_by(keepa_monthly_budgets.c.month)
        ).scalars().all()
    assert months == ["2025-06", "2025-07"]


def test_record_usage_without_row_creates_it(engine, clock):
    budget = MonthlyBudget(engine, limit=10, clock=clock)
    budget.record_usage(7, tokens=3)
    assert budget.snapshot(7).tokens_used == 3


def test_budgets_are_per_user(engine, clock):
    budget = MonthlyBudget(engine, limit=1, clock=clock)
    budget.record_usage(1)
    assert not budget.can_spend(1)
    assert budget.can_spend(2)
