"""Quota ledger: weekly generation allowance and short-window burst limiter.

All coordination happens in the database: every mutation is a conditional
statement evaluated by the store itself, so any number of service instances
can reserve against the same user without lost updates or over-grants.
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select, update

from inkframe.common.config import InkframeSettings
from inkframe.common.database import DatabaseManager, insert_if_absent
from inkframe.quota.models import BurstWindowModel, QuotaCounterModel

logger = logging.getLogger(__name__)


def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass(frozen=True)
class LimitDecision:
    """Outcome of a quota reservation or burst check."""

    granted: bool
    remaining: int
    limit: int
    reset_at: Optional[datetime]
    # Identity of the quota window the unit was taken from (its reset timestamp).
    window_reset_ts: Optional[float] = None


@dataclass(frozen=True)
class QuotaStatus:
    remaining: int
    limit: int
    reset_at: Optional[datetime]


class QuotaLedger:
    """Weekly quota and burst counters backed by the service database."""

    def __init__(
        self,
        settings: InkframeSettings,
        db: DatabaseManager,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.db = db
        self._clock = clock

    # ── Weekly quota ──

    async def reserve(self, user_id: str) -> LimitDecision:
        """Take one unit of the user's weekly allowance if any is left.

        A rejected reservation changes nothing except starting a fresh window
        when the previous one has lapsed.
        """
        now = self._clock()
        limit = self.settings.weekly_generation_quota
        window = self.settings.quota_window_seconds

        async with self.db.get_session() as session:
            await insert_if_absent(session, QuotaCounterModel, {
                "user_id": user_id,
                "used": 0,
                "window_started_at": now,
                "reset_at": now + window,
            })
            # Fixed window: a lapsed window restarts from this use.
            await session.execute(
                update(QuotaCounterModel)
                .where(
                    QuotaCounterModel.user_id == user_id,
                    QuotaCounterModel.reset_at <= now,
                )
                .values(used=0, window_started_at=now, reset_at=now + window)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(
                update(QuotaCounterModel)
                .where(
                    QuotaCounterModel.user_id == user_id,
                    QuotaCounterModel.used < limit,
                )
                .values(used=QuotaCounterModel.used + 1)
                .execution_options(synchronize_session=False)
            )
            granted = result.rowcount == 1
            row = (await session.execute(
                select(QuotaCounterModel.used, QuotaCounterModel.reset_at)
                .where(QuotaCounterModel.user_id == user_id)
            )).one()

        decision = LimitDecision(
            granted=granted,
            remaining=max(0, limit - row.used),
            limit=limit,
            reset_at=_to_datetime(row.reset_at),
            window_reset_ts=row.reset_at,
        )
        if not granted:
            logger.info("Quota exhausted for user %s (resets %s)", user_id, decision.reset_at)
        return decision

    async def refund(self, user_id: str, window_reset_ts: Optional[float] = None) -> bool:
        """Give one unit back. Best-effort: failures are logged, never raised.

        When ``window_reset_ts`` is given the refund only applies to that
        window, so a unit taken before a rollover never credits the new one.
        """
        now = self._clock()
        try:
            async with self.db.get_session() as session:
                stmt = (
                    update(QuotaCounterModel)
                    .where(
                        QuotaCounterModel.user_id == user_id,
                        QuotaCounterModel.used > 0,
                        QuotaCounterModel.reset_at > now,
                    )
                    .values(used=QuotaCounterModel.used - 1)
                    .execution_options(synchronize_session=False)
                )
                if window_reset_ts is not None:
                    stmt = stmt.where(QuotaCounterModel.reset_at == window_reset_ts)
                result = await session.execute(stmt)
                refunded = result.rowcount == 1
        except Exception:
            logger.exception("Failed to refund generation credit for user %s", user_id)
            return False

        if not refunded:
            logger.info("Refund for user %s skipped: reservation window already closed", user_id)
        return refunded

    async def peek(self, user_id: str) -> QuotaStatus:
        """Read the user's remaining allowance without touching it."""
        now = self._clock()
        limit = self.settings.weekly_generation_quota
        async with self.db.get_session() as session:
            row = (await session.execute(
                select(QuotaCounterModel.used, QuotaCounterModel.reset_at)
                .where(QuotaCounterModel.user_id == user_id)
            )).one_or_none()

        if row is None or row.reset_at <= now:
            return QuotaStatus(remaining=limit, limit=limit, reset_at=None)
        return QuotaStatus(
            remaining=max(0, limit - row.used),
            limit=limit,
            reset_at=_to_datetime(row.reset_at),
        )

    # ── Burst limiter ──

    async def check_burst(self, user_id: str, scope: str) -> LimitDecision:
        """Count this call against the (scope, user) burst bucket and judge it.

        Sliding-window counter: the current fixed window plus the previous one
        weighted by how much of it still overlaps the trailing window. Every
        call is counted, granted or not, and nothing is ever refunded.
        """
        now = self._clock()
        window = self.settings.burst_window_seconds
        limit = self.settings.burst_limit
        bucket = f"{scope}:{user_id}"
        current = int(now // window)
        elapsed = now - current * window

        async with self.db.get_session() as session:
            await insert_if_absent(session, BurstWindowModel, {
                "bucket": bucket,
                "window_index": current,
                "hits": 0,
                "expires_at": float((current + 2) * window),
            })
            await session.execute(
                update(BurstWindowModel)
                .where(
                    BurstWindowModel.bucket == bucket,
                    BurstWindowModel.window_index == current,
                )
                .values(hits=BurstWindowModel.hits + 1)
                .execution_options(synchronize_session=False)
            )
            rows = (await session.execute(
                select(BurstWindowModel.window_index, BurstWindowModel.hits)
                .where(
                    BurstWindowModel.bucket == bucket,
                    BurstWindowModel.window_index >= current - 1,
                )
            )).all()
            await session.execute(
                delete(BurstWindowModel)
                .where(
                    BurstWindowModel.bucket == bucket,
                    BurstWindowModel.window_index < current - 1,
                )
                .execution_options(synchronize_session=False)
            )

        hits = {row.window_index: row.hits for row in rows}
        previous_weight = (window - elapsed) / window
        estimate = hits.get(current - 1, 0) * previous_weight + hits.get(current, 0)
        granted = estimate <= limit
        if not granted:
            logger.info("Burst limit hit for %s (estimate %.2f > %d)", bucket, estimate, limit)
        return LimitDecision(
            granted=granted,
            remaining=max(0, math.floor(limit - estimate)),
            limit=limit,
            reset_at=_to_datetime(float((current + 1) * window)),
        )

    async def sweep_burst_windows(self) -> int:
        """Delete burst windows that can no longer affect any decision."""
        now = self._clock()
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(BurstWindowModel)
                .where(BurstWindowModel.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
