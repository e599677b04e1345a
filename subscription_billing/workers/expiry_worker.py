"""
Expiry sweep background worker.

Runs the subscription expiry sweep daily at a scheduled UTC hour. Deployments
that trigger the sweep over HTTP (``POST /internal/subscriptions/sweep``) do
not need this worker; both paths share the same scheduling lock.
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from subscription_billing.config import Settings, get_settings
from subscription_billing.core.exceptions import ConflictError
from subscription_billing.core.sweeper import ExpirySweeper, RedisSweepLock
from subscription_billing.database import Database, utcnow
from subscription_billing.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_sweeper(settings: Settings, database: Database) -> ExpirySweeper:
    lock = (
        RedisSweepLock(settings.redis_url, settings.sweep_lock_timeout)
        if settings.redis_url
        else None
    )
    return ExpirySweeper(database.session_factory, lock=lock)


async def run_expiry_sweep(sweeper: ExpirySweeper) -> None:
    """
    Run one sweep pass.

    A sweep already running elsewhere is not an error for the worker.
    """
    logger.info("scheduled_sweep_started")

    try:
        report = await sweeper.run()
    except ConflictError:
        logger.warning("scheduled_sweep_skipped", reason="sweep_in_progress")
        return

    if report.failed:
        logger.warning(
            "scheduled_sweep_partial_failure",
            failed=len(report.failed),
            user_ids=report.failed[:50],
        )
    logger.info("scheduled_sweep_completed", **report.to_dict())


async def calculate_next_run_time(target_hour: int = 0, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Current time (naive UTC), defaults to the clock

    Returns:
        float: Seconds until next run
    """
    now = now or utcnow()
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "sweep_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_expiry_worker(target_hour: int = 0, once: bool = False) -> None:
    """
    Start the expiry worker.

    Args:
        target_hour: Hour of day to run (default: midnight UTC)
        once: Run a single sweep immediately and exit
    """
    settings = get_settings()
    setup_logging(settings)
    database = Database.from_settings(settings)
    sweeper = build_sweeper(settings, database)

    logger.info("expiry_worker_starting", target_hour=target_hour, once=once)

    if once:
        try:
            await run_expiry_sweep(sweeper)
        finally:
            await database.dispose()
        return

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = await calculate_next_run_time(target_hour)

            # Wait in short steps so a shutdown signal is noticed
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_expiry_sweep(sweeper)
            except Exception as e:
                # Keep the schedule alive; the next pass retries the same users
                logger.error("scheduled_sweep_error", error=str(e), exc_info=True)

    finally:
        await database.dispose()
        logger.info("expiry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Subscription expiry sweep worker")
    parser.add_argument(
        "--hour", type=int, default=0, help="Hour of day (UTC) to run the sweep (0-23)"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep now and exit")
    args = parser.parse_args()

    if not 0 <= args.hour <= 23:
        parser.error("--hour must be between 0 and 23")

    asyncio.run(start_expiry_worker(target_hour=args.hour, once=args.once))


if __name__ == "__main__":
    main()
