"""Seed the database with demo users, channels, rules and tracking IDs."""

from __future__ import annotations

import pathlib
from typing import Any

import yaml
from dotenv import load_dotenv
from sqlalchemy import insert, select
from sqlalchemy.engine import Engine

from dealpilot.db.migrate import run_migrations
from dealpilot.db.session import create_engine_from_env
from dealpilot.db.tables import automation_rules, channel_insights, channels, users
from dealpilot.publishing.credentials import CredentialStore
from dealpilot.tracking.pool import TrackingIdPool

SEED_PATH = pathlib.Path(__file__).with_name("seed.yml")


def load_seed(path: pathlib.Path = SEED_PATH) -> list[dict[str, Any]]:
    return yaml.safe_load(path.read_text()) or []


def seed(engine: Engine, data: list[dict[str, Any]], credentials: CredentialStore) -> None:
    pool = TrackingIdPool(engine)
    for item in data:
        with engine.begin() as conn:
            user_id = conn.execute(select(users.c.id).where(users.c.email == item["email"])).scalar_one_or_none()
            if user_id is not None:
                continue
            user_id = conn.execute(
                insert(users).values(email=item["email"], affiliate_tag=item.get("affiliate_tag"))
            ).inserted_primary_key[0]
            for channel in item.get("channels", []):
                token = channel.get("bot_token")
                channel_id = conn.execute(
                    insert(channels).values(
                        user_id=user_id,
                        chat_id=channel["chat_id"],
                        name=channel["name"],
                        credential_key=credentials.encrypt(token) if token else None,
                    )
                ).inserted_primary_key[0]
                if channel.get("best_hours"):
                    conn.execute(insert(channel_insights).values(channel_id=channel_id, best_hours=channel["best_hours"]))
            for rule in item.get("rules", []):
                conn.execute(
                    insert(automation_rules).values(
                        user_id=user_id,
                        name=rule["name"],
                        is_active=rule.get("is_active", True),
                        publishing_mode=rule.get("publishing_mode", "smart"),
                        copy_mode=rule.get("copy_mode", "TEMPLATE"),
                        message_template=rule.get("message_template"),
                        deals_published=0,
                    )
                )
        pool.add_many(user_id, item.get("tracking_ids", []))


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    seed(engine, load_seed(), CredentialStore())
    print("Seed complete")


if __name__ == "__main__":
    main()
