"""Per-user pool of Amazon tracking IDs.

Tracking IDs are leased to a publication for a fixed window (24h by default)
and handed out least-recently-used first, so attribution is spread evenly
across the pool. A lease ends when it expires (see ``sweep_expired``), when the
deal it was used for stops being valid, or manually.

Every method reports failure through its return value; storage errors are
logged and swallowed so a publish can always go ahead without tracking.
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dealpilot.db.tables import channel_deal_history, channels, user_tracking_ids
from dealpilot.tracking.models import (
    AddManyResult,
    PoolResult,
    PoolStats,
    ReleaseReason,
    TrackingIdEntry,
    TrackingLease,
    ValidityCheckCandidate,
)
from dealpilot.utils.dates import Clock, utcnow

logger = logging.getLogger(__name__)

LEASE_TTL = timedelta(hours=int(os.environ.get("TRACKING_ID_TTL_HOURS", 24)))
MAX_LEASE_ATTEMPTS = 10

t = user_tracking_ids


class TrackingIdPool:
    def __init__(
        self,
        engine: Engine,
        *,
        lease_ttl: timedelta = LEASE_TTL,
        max_lease_attempts: int = MAX_LEASE_ATTEMPTS,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self.lease_ttl = lease_ttl
        self.max_lease_attempts = max_lease_attempts
        self.clock = clock

    def add(self, user_id: int, tracking_id: str) -> PoolResult:
        tracking_id = tracking_id.strip()
        if not tracking_id:
            return PoolResult(False, "Tracking ID cannot be empty")
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(t.c.id).where(t.c.user_id == user_id, t.c.tracking_id == tracking_id)
                ).first()
                if existing:
                    return PoolResult(False, "Tracking ID already exists for this user")
                conn.execute(
                    insert(t).values(
                        user_id=user_id,
                        tracking_id=tracking_id,
                        status="available",
                        total_uses=0,
                        created_at=self.clock(),
                    )
                )
        except IntegrityError:
            return PoolResult(False, "Tracking ID already exists for this user")
        except SQLAlchemyError:
            logger.exception("Error adding tracking ID for user %s", user_id)
            return PoolResult(False, "Failed to add tracking ID")
        return PoolResult(True)

    def add_many(self, user_id: int, tracking_ids: list[str]) -> AddManyResult:
        result = AddManyResult()
        for tracking_id in tracking_ids:
            outcome = self.add(user_id, tracking_id)
            if outcome.success:
                result.added += 1
            else:
                result.skipped += 1
                if outcome.error:
                    result.errors.append(f"{tracking_id}: {outcome.error}")
        return result

    def remove(self, user_id: int, tracking_id: str) -> PoolResult:
        try:
            with self.engine.begin() as conn:
                status = conn.execute(
                    select(t.c.status).where(t.c.user_id == user_id, t.c.tracking_id == tracking_id)
                ).scalar_one_or_none()
                if status is None:
                    return PoolResult(False, "Tracking ID not found")
                removed = conn.execute(
                    delete(t).where(
                        t.c.user_id == user_id,
                        t.c.tracking_id == tracking_id,
                        t.c.status == "available",
                    )
                )
                if removed.rowcount == 0:
                    return PoolResult(False, "Cannot remove tracking ID while in use")
        except SQLAlchemyError:
            logger.exception("Error removing tracking ID for user %s", user_id)
            return PoolResult(False, "Failed to remove tracking ID")
        return PoolResult(True)

    def lease(self, user_id: int, context_id: int | str) -> TrackingLease | None:
        """Lease the least recently used available tracking ID, or return None."""
        try:
            for _ in range(self.max_lease_attempts):
                candidate = self._next_available(user_id)
                if candidate is None:
                    logger.info("No available tracking IDs for user %s", user_id)
                    return None
                record_id, tracking_id = candidate
                now = self.clock()
                expires_at = now + self.lease_ttl
                with self.engine.begin() as conn:
                    flipped = conn.execute(
                        update(t)
                        .where(t.c.id == record_id, t.c.status == "available")
                        .values(
                            status="in_use",
                            assigned_at=now,
                            expires_at=expires_at,
                            context_id=str(context_id),
                            deal_history_id=None,
                            total_uses=t.c.total_uses + 1,
                            last_used_at=now,
                        )
                    )
                if flipped.rowcount == 1:
                    logger.info(
                        "Assigned tracking ID %s to %s, expires at %s",
                        tracking_id,
                        context_id,
                        expires_at.isoformat(),
                    )
                    return TrackingLease(tracking_id=tracking_id, lease_id=record_id, expires_at=expires_at)
                logger.debug("Tracking ID %s was leased concurrently, retrying", tracking_id)
        except SQLAlchemyError:
            logger.exception("Error leasing tracking ID for user %s", user_id)
            return None
        logger.warning("Gave up leasing a tracking ID for user %s after contention", user_id)
        return None

    def release(self, lease_id: int, reason: ReleaseReason = "expired") -> bool:
        try:
            with self.engine.begin() as conn:
                record = conn.execute(select(t).where(t.c.id == lease_id)).mappings().first()
                if record is None:
                    logger.warning("Tracking record %s not found", lease_id)
                    return False
                if record["status"] != "in_use":
                    logger.warning("Tracking ID %s is not in use", record["tracking_id"])
                    return False
                released = conn.execute(
                    update(t)
                    .where(t.c.id == lease_id, t.c.status == "in_use")
                    .values(
                        status="available",
                        assigned_at=None,
                        expires_at=None,
                        context_id=None,
                        deal_history_id=None,
                    )
                )
                if released.rowcount == 0:
                    logger.warning("Tracking ID %s was released concurrently", record["tracking_id"])
                    return False
                if reason == "deal_ended" and record["deal_history_id"] is not None:
                    self._invalidate_history(conn, record["deal_history_id"])
        except SQLAlchemyError:
            logger.exception("Error releasing tracking record %s", lease_id)
            return False
        logger.info("Released tracking ID %s (reason: %s)", record["tracking_id"], reason)
        return True

    def link(self, lease_id: int, deal_history_id: int) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(t)
                    .where(t.c.id == lease_id, t.c.status == "in_use")
                    .values(deal_history_id=deal_history_id)
                )
        except SQLAlchemyError:
            logger.exception("Error linking tracking record %s to history %s", lease_id, deal_history_id)
            return False
        return result.rowcount == 1

    def sweep_expired(self) -> int:
        """Release every lease whose window has passed. Returns how many were released."""
        try:
            with self.engine.connect() as conn:
                expired = conn.execute(
                    select(t.c.id).where(t.c.status == "in_use", t.c.expires_at <= self.clock())
                ).scalars().all()
        except SQLAlchemyError:
            logger.exception("Error loading expired tracking IDs")
            return 0
        released = sum(1 for record_id in expired if self.release(record_id, "expired"))
        if released:
            logger.info("Released %s expired tracking IDs", released)
        return released

    def stats(self, user_id: int) -> PoolStats:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(t)
                    .where(t.c.user_id == user_id)
                    .order_by(t.c.status.asc(), t.c.last_used_at.asc().nulls_first(), t.c.id.asc())
                ).mappings().all()
        except SQLAlchemyError:
            logger.exception("Error loading tracking IDs for user %s", user_id)
            rows = []
        entries = [
            TrackingIdEntry(
                id=row["id"],
                tracking_id=row["tracking_id"],
                status=row["status"],
                total_uses=row["total_uses"],
                last_used_at=row["last_used_at"],
                assigned_at=row["assigned_at"],
                expires_at=row["expires_at"],
            )
            for row in rows
        ]
        available = sum(1 for entry in entries if entry.status == "available")
        in_use = sum(1 for entry in entries if entry.status == "in_use")
        return PoolStats(total=len(entries), available=available, in_use=in_use, tracking_ids=entries)

    def available_count(self, user_id: int) -> int:
        try:
            with self.engine.connect() as conn:
                return conn.execute(
                    select(func.count()).select_from(t).where(t.c.user_id == user_id, t.c.status == "available")
                ).scalar_one()
        except SQLAlchemyError:
            logger.exception("Error counting tracking IDs for user %s", user_id)
            return 0

    def has_available(self, user_id: int) -> bool:
        return self.available_count(user_id) > 0

    def mark_deal_expired(self, deal_history_id: int) -> bool:
        """End a deal early: release its tracking ID, or just flag the history row."""
        try:
            with self.engine.connect() as conn:
                lease_id = conn.execute(
                    select(t.c.id).where(t.c.deal_history_id == deal_history_id)
                ).scalar_one_or_none()
            if lease_id is not None:
                return self.release(lease_id, "deal_ended")
            with self.engine.begin() as conn:
                self._invalidate_history(conn, deal_history_id)
        except SQLAlchemyError:
            logger.exception("Error marking deal history %s expired", deal_history_id)
            return False
        return True

    def update_deal_validity(self, deal_history_id: int, is_valid: bool) -> None:
        if not is_valid:
            self.mark_deal_expired(deal_history_id)
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(channel_deal_history)
                    .where(channel_deal_history.c.id == deal_history_id)
                    .values(validity_checked_at=self.clock())
                )
        except SQLAlchemyError:
            logger.exception("Error updating validity of deal history %s", deal_history_id)

    def deals_needing_validity_check(self, limit: int = 50) -> list[ValidityCheckCandidate]:
        """Published deals with a tracking ID that have not been checked recently."""
        now = self.clock()
        h = channel_deal_history
        query = (
            select(h.c.id, h.c.asin, h.c.channel_id, channels.c.user_id, h.c.price_at_generation)
            .join(channels, channels.c.id == h.c.channel_id)
            .where(
                h.c.tracking_id_used.is_not(None),
                h.c.deal_still_valid.is_(True),
                h.c.published_at <= now - timedelta(hours=1),
                or_(
                    h.c.validity_checked_at.is_(None),
                    h.c.validity_checked_at <= now - timedelta(hours=6),
                ),
            )
            .order_by(h.c.validity_checked_at.asc().nulls_first())
            .limit(limit)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        except SQLAlchemyError:
            logger.exception("Error loading deals for validity check")
            return []
        return [
            ValidityCheckCandidate(
                deal_history_id=row[0],
                asin=row[1],
                channel_id=row[2],
                user_id=row[3],
                price_at_generation=row[4],
            )
            for row in rows
        ]

    def _next_available(self, user_id: int) -> tuple[int, str] | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(t.c.id, t.c.tracking_id)
                .where(t.c.user_id == user_id, t.c.status == "available")
                .order_by(t.c.last_used_at.asc().nulls_first(), t.c.created_at.asc(), t.c.id.asc())
                .limit(1)
            ).first()
        if row is None:
            return None
        return row[0], row[1]

    def _invalidate_history(self, conn: Connection, deal_history_id: int) -> None:
        conn.execute(
            update(channel_deal_history)
            .where(channel_deal_history.c.id == deal_history_id)
            .values(deal_still_valid=False, deal_expired_at=self.clock())
        )
