from datetime import timedelta

import pytest
from sqlalchemy import select

from dealpilot.db.tables import automation_rules, channel_deal_history, scheduled_deals, user_tracking_ids
from dealpilot.publishing.copywriting import CopyGenerator
from dealpilot.publishing.publisher import ScheduledPublisher, affiliate_link
from dealpilot.publishing.telegram import DeliveryResult
from dealpilot.scheduling.config import SchedulingConfig
from dealpilot.scheduling.models import ScheduleDealInput
from dealpilot.scheduling.service import Scheduler
from dealpilot.tracking.pool import TrackingIdPool

from conftest import BOT_TOKEN


class FakeDelivery:
    def __init__(self, results=None):
        self.sent = []
        self.results = list(results or [])

    async def send(self, chat_id, bot_token, message):
        self.sent.append((chat_id, bot_token, message))
        outcome = self.results.pop(0) if self.results else DeliveryResult(True, message_id=str(len(self.sent)))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Harness:
    def __init__(self, engine, clock, credentials, delivery):
        self.engine = engine
        self.clock = clock
        self.scheduler = Scheduler(engine, config=SchedulingConfig(timezone="Europe/Rome"), clock=clock)
        self.pool = TrackingIdPool(engine, clock=clock)
        self.delivery = delivery
        self.sleeps = []

        async def fake_sleep(seconds):
            self.sleeps.append(seconds)

        self.publisher = ScheduledPublisher(
            self.scheduler,
            self.pool,
            credentials,
            CopyGenerator(),
            delivery,
            default_tag="fallback-21",
            marketplace="it",
            sleep=fake_sleep,
            clock=clock,
        )

    def schedule(self, asin="B000PUB001", channel_id=1, rule_id=2):
        return self.scheduler.schedule_deal(
            ScheduleDealInput(
                channel_id=channel_id,
                rule_id=rule_id,
                asin=asin,
                base_score=70,
                final_score=85,
                product_title="Friggitrice ad aria",
                deal_type="deal",
                original_price=129.99,
                deal_price=79.99,
                discount=38,
                category="Cucina",
            )
        )

    def job(self, deal_id):
        with self.engine.connect() as conn:
            return conn.execute(select(scheduled_deals).where(scheduled_deals.c.id == deal_id)).mappings().one()

    def history(self):
        with self.engine.connect() as conn:
            return conn.execute(select(channel_deal_history)).mappings().all()


@pytest.fixture()
def delivery():
    return FakeDelivery()


@pytest.fixture()
def harness(seeded_engine, clock, credentials, delivery):
    return Harness(seeded_engine, clock, credentials, delivery)


def test_affiliate_link():
    assert affiliate_link("B000TEST01", "tag-21", "it") == "https://www.amazon.it/dp/B000TEST01?tag=tag-21&linkCode=ll1"


@pytest.mark.asyncio
async def test_nothing_due(harness):
    stats = await harness.publisher.process_scheduled_deals()
    assert stats.processed == 0
    assert harness.delivery.sent == []


@pytest.mark.asyncio
async def test_publishes_with_leased_tracking_id(harness, seeded_engine):
    harness.pool.add(1, "track-01-21")
    deal_id = harness.schedule()
    harness.clock.advance(minutes=5)

    stats = await harness.publisher.process_scheduled_deals()
    assert stats.processed == 1
    assert stats.published == 1

    chat_id, token, message = harness.delivery.sent[0]
    assert chat_id == "@deals"
    assert token == BOT_TOKEN
    assert message.url == "https://www.amazon.it/dp/B000PUB001?tag=track-01-21&linkCode=ll1"
    assert "Friggitrice ad aria" in message.text
    assert "€79.99" in message.text

    job = harness.job(deal_id)
    assert job["status"] == "published"
    assert job["message_id"] == "1"
    assert job["tracking_id_used"] == "track-01-21"

    [history] = harness.history()
    assert history["copy_source"] == "TEMPLATE"
    assert history["price_at_generation"] == 79.99
    assert history["expires_at"] == harness.clock() + timedelta(days=7)
    with seeded_engine.connect() as conn:
        linked = conn.execute(select(user_tracking_ids.c.deal_history_id)).scalar_one()
        published = conn.execute(
            select(automation_rules.c.deals_published).where(automation_rules.c.id == 2)
        ).scalar_one()
    assert linked == history["id"]
    assert published == 1


@pytest.mark.asyncio
async def test_empty_pool_uses_user_affiliate_tag(harness):
    deal_id = harness.schedule()
    harness.clock.advance(minutes=5)
    stats = await harness.publisher.process_scheduled_deals()
    assert stats.published == 1
    assert "tag=owner-21" in harness.delivery.sent[0][2].url
    assert harness.job(deal_id)["tracking_id_used"] is None


@pytest.mark.asyncio
async def test_disabled_rule_cancels(harness):
    deal_id = harness.schedule(rule_id=3)
    harness.clock.advance(days=1)
    stats = await harness.publisher.process_scheduled_deals()
    assert stats.cancelled == 1
    assert harness.job(deal_id)["cancel_reason"] == "rule_disabled"
    assert harness.delivery.sent == []


@pytest.mark.asyncio
async def test_missing_credential_cancels(harness):
    deal_id = harness.schedule(channel_id=2)
    harness.clock.advance(minutes=5)
    stats = await harness.publisher.process_scheduled_deals()
    assert stats.cancelled == 1
    assert harness.job(deal_id)["status"] == "cancelled"
    assert harness.job(deal_id)["cancel_reason"] == "no_credential"


@pytest.mark.asyncio
async def test_undecryptable_credential_is_retried(harness):
    deal_id = harness.schedule(channel_id=3, rule_id=4)
    harness.clock.advance(minutes=5)
    stats = await harness.publisher.process_scheduled_deals()
    assert stats.retried == 1
    job = harness.job(deal_id)
    assert job["status"] == "pending"
    assert job["last_error"] == "Failed to decrypt bot token"
    assert harness.delivery.sent == []


@pytest.mark.asyncio
async def test_delivery_failure_keeps_lease_until_sweep(seeded_engine, clock, credentials):
    delivery = FakeDelivery([DeliveryResult(False, error="chat not found")])
    harness = Harness(seeded_engine, clock, credentials, delivery)
    harness.pool.add(1, "track-01-21")
    deal_id = harness.schedule()
    clock.advance(minutes=5)

    stats = await harness.publisher.process_scheduled_deals()
    assert stats.retried == 1
    assert harness.job(deal_id)["last_error"] == "chat not found"
    assert harness.job(deal_id)["retry_count"] == 1
    assert harness.history() == []

    [record] = harness.pool.stats(1).tracking_ids
    assert record.status == "in_use"
    assert harness.pool.available_count(1) == 0

    clock.advance(hours=24)
    assert harness.pool.sweep_expired() == 1
    assert harness.pool.available_count(1) == 1


@pytest.mark.asyncio
async def test_exception_in_one_job_does_not_stop_batch(seeded_engine, clock, credentials):
    delivery = FakeDelivery([RuntimeError("socket closed")])
    harness = Harness(seeded_engine, clock, credentials, delivery)
    first = harness.schedule(asin="B000FIRST1")
    clock.advance(minutes=1)
    second = harness.schedule(asin="B000SECOND")
    clock.advance(minutes=5)

    stats = await harness.publisher.process_scheduled_deals()
    assert stats.processed == 2
    assert stats.retried == 1
    assert stats.published == 1
    assert stats.errors == [f"{first}: socket closed"]
    assert harness.job(first)["status"] == "pending"
    assert harness.job(second)["status"] == "published"
    assert harness.sleeps == [1.0]


@pytest.mark.asyncio
async def test_third_failure_is_terminal(seeded_engine, clock, credentials):
    delivery = FakeDelivery([DeliveryResult(False, error="flood wait")] * 3)
    harness = Harness(seeded_engine, clock, credentials, delivery)
    deal_id = harness.schedule()

    totals = []
    for _ in range(3):
        clock.advance(minutes=5)
        stats = await harness.publisher.process_scheduled_deals()
        totals.append((stats.retried, stats.failed))
    assert totals == [(1, 0), (1, 0), (0, 1)]
    job = harness.job(deal_id)
    assert job["status"] == "failed"
    assert job["retry_count"] == 3


@pytest.mark.asyncio
async def test_job_claimed_elsewhere_is_skipped(harness, monkeypatch):
    harness.schedule()
    harness.clock.advance(minutes=5)
    monkeypatch.setattr(harness.scheduler, "claim", lambda deal_id: False)
    stats = await harness.publisher.process_scheduled_deals()
    assert stats.skipped == 1
    assert stats.processed == 0
    assert harness.delivery.sent == []
