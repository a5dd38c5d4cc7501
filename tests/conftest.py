from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, insert

from dealpilot.db.migrate import run_migrations
from dealpilot.db.tables import automation_rules, channel_insights, channels, users
from dealpilot.publishing.credentials import CredentialStore

# 12:00 in Europe/Rome (CEST)
NOW = datetime(2025, 6, 10, 10, 0)
SECRET = "test-secret"
BOT_TOKEN = "123456:ABCDEF"


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _timezone(monkeypatch):
    monkeypatch.setenv("TIMEZONE", "Europe/Rome")


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dealpilot.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def credentials():
    return CredentialStore(SECRET)


@pytest.fixture()
def seeded_engine(engine, credentials):
    with engine.begin() as conn:
        conn.execute(insert(users), [
            {"id": 1, "email": "owner@example.com", "affiliate_tag": "owner-21"},
            {"id": 2, "email": "other@example.com", "affiliate_tag": None},
        ])
        conn.execute(insert(channels), [
            {"id": 1, "user_id": 1, "chat_id": "@deals", "name": "Deals", "credential_key": credentials.encrypt(BOT_TOKEN)},
            {"id": 2, "user_id": 1, "chat_id": "@nocred", "name": "No credential", "credential_key": None},
            {"id": 3, "user_id": 2, "chat_id": "@broken", "name": "Broken", "credential_key": "not-a-fernet-token"},
        ])
        conn.execute(insert(automation_rules), [
            {"id": 1, "user_id": 1, "name": "Smart", "is_active": True, "publishing_mode": "smart", "copy_mode": "TEMPLATE", "deals_published": 0},
            {"id": 2, "user_id": 1, "name": "Immediate", "is_active": True, "publishing_mode": "immediate", "copy_mode": "TEMPLATE", "deals_published": 0},
            {"id": 3, "user_id": 1, "name": "Disabled", "is_active": False, "publishing_mode": "smart", "copy_mode": "TEMPLATE", "deals_published": 0},
            {"id": 4, "user_id": 2, "name": "Other", "is_active": True, "publishing_mode": "immediate", "copy_mode": "TEMPLATE", "deals_published": 0},
        ])
        conn.execute(insert(channel_insights), [{"channel_id": 2, "best_hours": [14, 15]}])
    return engine
