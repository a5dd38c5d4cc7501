"""Stale-while-revalidate cache over Keepa product data.

``ProductCache.get`` always answers from the database when a row exists. Rows
whose TTL has dropped into the expiring band or below are queued for a
background refresh; a single worker task drains the queue one ASIN at a time,
paced by a rate limiter, then goes idle until the next enqueue. Queue contents
are process-local and are lost on restart, which only delays refreshes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from dealpilot.db.tables import products
from dealpilot.products.budget import BudgetExceededError, MonthlyBudget
from dealpilot.products.freshness import (
    DEFAULT_THRESHOLDS,
    TTL_WINDOW_MINUTES,
    FreshnessThresholds,
    TTLStatus,
    ttl_status,
)
from dealpilot.products.keepa import KeepaClient, KeepaError
from dealpilot.products.models import CacheStats, KeepaProduct, ProductRecord
from dealpilot.utils.dates import Clock, add_minutes, minutes_between, utcnow
from dealpilot.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

REFRESH_DELAY_SECONDS = float(os.environ.get("KEEPA_REFRESH_DELAY_SECONDS", 0.1))
REFRESH_QUEUE_SIZE = int(os.environ.get("KEEPA_REFRESH_QUEUE_SIZE", 1000))


class ProductCache:
    def __init__(
        self,
        engine: Engine,
        client: KeepaClient,
        budget: MonthlyBudget,
        *,
        thresholds: FreshnessThresholds = DEFAULT_THRESHOLDS,
        ttl_window: int = TTL_WINDOW_MINUTES,
        rate_limiter: RateLimiter | None = None,
        queue_size: int = REFRESH_QUEUE_SIZE,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self.client = client
        self.budget = budget
        self.thresholds = thresholds
        self.ttl_window = ttl_window
        self.clock = clock
        self._rate_limiter = rate_limiter or RateLimiter(min_interval=REFRESH_DELAY_SECONDS)
        self._queue: asyncio.Queue[tuple[str, int]] = asyncio.Queue(maxsize=queue_size)
        self._queued: set[str] = set()
        self._worker: asyncio.Task | None = None

    async def get(self, asin: str, user_id: int) -> ProductRecord:
        record = await self._run(self._load, asin)
        if record is None:
            logger.info("Cache miss for %s, fetching synchronously", asin)
            return await self.fetch_and_store(asin, user_id)
        status = self.status(record)
        if status.needs_refresh:
            logger.debug("Cache %s for %s (%s min left)", status.status, asin, status.remaining)
            self.enqueue(asin, user_id)
        return record

    def status(self, record: ProductRecord) -> TTLStatus:
        return ttl_status(record.keepa_data_ttl, record.last_price_check_at, self.clock(), self.thresholds)

    async def fetch_and_store(self, asin: str, user_id: int) -> ProductRecord:
        await self._run(self.budget.ensure_available, user_id)
        product = await self.client.fetch_product(asin)
        record = await self._run(self._upsert, asin, product)
        await self._run(self.budget.record_usage, user_id)
        return record

    def enqueue(self, asin: str, user_id: int) -> bool:
        if asin in self._queued:
            return False
        try:
            self._queue.put_nowait((asin, user_id))
        except asyncio.QueueFull:
            logger.warning("Refresh queue full, dropping %s", asin)
            return False
        self._queued.add(asin)
        if not self.is_refreshing:
            self._worker = asyncio.get_running_loop().create_task(self._drain())
        return True

    @property
    def is_refreshing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending_refreshes(self) -> int:
        return self._queue.qsize()

    async def wait_idle(self) -> None:
        """Block until the refresh worker has drained the queue."""
        while self.is_refreshing:
            await asyncio.shield(self._worker)

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        await self.client.close()

    async def _drain(self) -> None:
        while not self._queue.empty():
            asin, user_id = self._queue.get_nowait()
            try:
                await self._rate_limiter.wait("keepa")
                await self.fetch_and_store(asin, user_id)
            except BudgetExceededError as exc:
                logger.warning("Skipping refresh of %s: %s", asin, exc)
            except KeepaError as exc:
                logger.warning("Failed to refresh %s: %s", asin, exc)
            except Exception:
                logger.exception("Unexpected error refreshing %s", asin)
            finally:
                self._queued.discard(asin)
                self._queue.task_done()

    def stats(self) -> CacheStats:
        now = self.clock()
        with self.engine.connect() as conn:
            rows = conn.execute(select(products.c.last_price_check_at, products.c.keepa_data_ttl)).fetchall()
        fresh = 0
        total_age = 0
        for last_checked, ttl in rows:
            age = minutes_between(now, last_checked)
            total_age += age
            if age < ttl:
                fresh += 1
        return CacheStats(
            total_products=len(rows),
            fresh=fresh,
            stale=len(rows) - fresh,
            average_age=round(total_age / len(rows)) if rows else 0,
        )

    def stale_asins(self, limit: int = 10) -> list[str]:
        cutoff = add_minutes(self.clock(), -self.ttl_window)
        with self.engine.connect() as conn:
            result = conn.execute(
                select(products.c.asin)
                .where(products.c.last_price_check_at < cutoff)
                .order_by(products.c.last_price_check_at.asc())
                .limit(limit)
            )
            return [row[0] for row in result]

    def _load(self, asin: str) -> ProductRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(products).where(products.c.asin == asin)).mappings().first()
        if row is None:
            return None
        return ProductRecord(**row)

    def _upsert(self, asin: str, product: KeepaProduct) -> ProductRecord:
        now = self.clock()
        values = asdict(product)
        values.update(
            asin=asin,
            discount=product.discount,
            last_price_check_at=now,
            keepa_data_ttl=self.ttl_window,
            updated_at=now,
        )
        with self.engine.begin() as conn:
            result = conn.execute(update(products).where(products.c.asin == asin).values(**values))
            if result.rowcount == 0:
                conn.execute(insert(products).values(**values))
        logger.info("Cache updated for %s", asin)
        return ProductRecord(**values)

    async def _run(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)
