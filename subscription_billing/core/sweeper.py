"""
Expiry sweeper.

For every active subscription whose end date has passed:
- promote the queued plan if there is one (starts now, runs its duration)
- otherwise revert to the free tier (no end date, amount 0)

Each user is handled in its own transaction with a conditional write keyed on
the end date that was read, so re-running a sweep is a no-op and a concurrent
reconciliation that extended the subscription wins. Concurrent sweeps are kept
apart by a scheduling lock.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

import structlog
from redlock import Redlock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_billing.config import FREE_PLAN_ID
from subscription_billing.core.exceptions import ConflictError
from subscription_billing.core.subscriptions import (
    CLEARED_PENDING,
    PendingSubscription,
    SubscriptionStore,
)
from subscription_billing.database.models import utcnow
from subscription_billing.monitoring.metrics import MetricsCollector, metrics as default_metrics

logger = structlog.get_logger(__name__)

SWEEP_LOCK_KEY = "billing:lock:expiry-sweep"


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    started_at: datetime
    examined: int = 0
    promoted: int = 0
    reverted: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "examined": self.examined,
            "promoted": self.promoted,
            "reverted": self.reverted,
            "skipped": self.skipped,
            "failed": list(self.failed),
        }


class RedisSweepLock:
    """
    Scheduling lock so only one sweep runs per cycle.

    Backed by Redlock; acquisition is non-blocking and a busy lock raises
    ConflictError.
    """

    def __init__(self, redis_url: str, timeout_seconds: int = 600):
        self.redlock = Redlock([redis_url])
        self.timeout_ms = timeout_seconds * 1000
        self._lock = None

    async def __aenter__(self) -> "RedisSweepLock":
        loop = asyncio.get_running_loop()
        lock = await loop.run_in_executor(
            None, lambda: self.redlock.lock(SWEEP_LOCK_KEY, self.timeout_ms)
        )
        if not lock:
            default_metrics.record_sweep_lock("busy")
            logger.warning("sweep_lock_busy", lock_key=SWEEP_LOCK_KEY)
            raise ConflictError("Expiry sweep already running", error_code="sweep_in_progress")

        self._lock = lock
        default_metrics.record_sweep_lock("acquired")
        logger.info("sweep_lock_acquired", lock_key=SWEEP_LOCK_KEY)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        loop = asyncio.get_running_loop()
        lock, self._lock = self._lock, None
        await loop.run_in_executor(None, lambda: self.redlock.unlock(lock))
        logger.info("sweep_lock_released", lock_key=SWEEP_LOCK_KEY)


class _NoLock:
    async def __aenter__(self) -> "_NoLock":
        default_metrics.record_sweep_lock("unlocked")
        logger.warning("sweep_running_without_lock")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class ExpirySweeper:
    """Periodic promotion/reversion of expired subscriptions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock: Optional[RedisSweepLock] = None,
        metrics: MetricsCollector = default_metrics,
    ):
        self.session_factory = session_factory
        self.lock = lock
        self.metrics = metrics

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep pass under the scheduling lock.

        Raises:
            ConflictError: If another sweep holds the lock
        """
        async with self.lock or _NoLock():
            return await self.sweep(now)

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Sweep every expired subscription as of ``now``."""
        now = now or utcnow()
        report = SweepReport(started_at=now)
        start_time = time.time()

        logger.info("sweep_started", now=now.isoformat())

        async with self.session_factory() as session:
            expired = await SubscriptionStore(session).list_expired(now)

        for subscription in expired:
            report.examined += 1
            try:
                outcome = await self.sweep_user(subscription.user_id, subscription.end_date, now)
            except Exception as e:
                # Failures are isolated per user
                logger.error(
                    "sweep_user_failed",
                    user_id=subscription.user_id,
                    error=str(e),
                    exc_info=True,
                )
                report.failed.append(subscription.user_id)
                continue

            if outcome == "promoted":
                report.promoted += 1
            elif outcome == "reverted":
                report.reverted += 1
            else:
                report.skipped += 1

        duration = time.time() - start_time
        self.metrics.record_sweep(report.promoted, report.reverted, duration)
        logger.info(
            "sweep_completed",
            examined=report.examined,
            promoted=report.promoted,
            reverted=report.reverted,
            skipped=report.skipped,
            failed=len(report.failed),
            duration_seconds=round(duration, 3),
        )
        return report

    async def sweep_user(
        self, user_id: str, observed_end_date: datetime, now: datetime
    ) -> Optional[str]:
        """
        Promote or revert one user.

        Returns:
            "promoted", "reverted", or None when the row changed underneath us
        """
        async with self.session_factory() as session:
            async with session.begin():
                store = SubscriptionStore(session)
                current = await store.get(user_id, for_update=True)
                if current is None or current.end_date != observed_end_date:
                    return None

                pending = PendingSubscription.from_row(current)
                if pending is not None:
                    values = self._promotion(pending, now)
                    outcome = "promoted"
                else:
                    values = self._reversion(now)
                    outcome = "reverted"

                if not await store.transition_if_unchanged(
                    user_id, observed_end_date, now, **values
                ):
                    logger.info("sweep_user_skipped", user_id=user_id)
                    return None

        logger.info(
            "subscription_swept",
            user_id=user_id,
            outcome=outcome,
            plan_id=values["plan_id"],
            end_date=values["end_date"].isoformat() if values["end_date"] else None,
        )
        return outcome

    @staticmethod
    def _promotion(pending: PendingSubscription, now: datetime) -> dict:
        return {
            "plan_id": pending.plan_id,
            "amount": pending.amount,
            "start_date": now,
            "end_date": now + timedelta(days=pending.duration_days),
            **CLEARED_PENDING,
        }

    @staticmethod
    def _reversion(now: datetime) -> dict:
        return {
            "plan_id": FREE_PLAN_ID,
            "amount": Decimal("0.00"),
            "start_date": now,
            "end_date": None,
            **CLEARED_PENDING,
        }
