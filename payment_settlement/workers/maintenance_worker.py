"""
Maintenance background worker.

Prunes idle rate limit records once a day at a scheduled hour.
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_settlement.config import Settings, get_settings
from payment_settlement.core.abuse_tracker import AbuseTracker, RateLimitPolicy
from payment_settlement.database.connection import get_session_factory
from payment_settlement.database.models import utcnow
from payment_settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def prune_rate_limit_records(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Delete non-blocking rate limit records idle longer than the retention period.

    Returns:
        Dict[str, int]: Deleted record count per scope
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.rate_limit_retention_days)

    policies = [
        RateLimitPolicy.login_ip(settings),
        RateLimitPolicy.login_account(settings),
        RateLimitPolicy.form_submission(settings),
        RateLimitPolicy.payment_intent(settings),
    ]

    deleted: Dict[str, int] = {}
    async with session_factory() as db:
        for policy in policies:
            tracker = AbuseTracker(policy, clock=lambda: now)
            deleted[policy.scope] = await tracker.prune(db, cutoff)
        await db.commit()

    logger.info(
        "rate_limit_records_pruned",
        cutoff=cutoff.isoformat(),
        deleted=deleted,
        total=sum(deleted.values()),
    )
    return deleted


def seconds_until_next_run(now: datetime, target_hour: int) -> float:
    """Seconds from now until the next occurrence of target_hour:00 UTC."""
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def start_maintenance_worker(target_hour: int = 3) -> None:
    """
    Start the maintenance worker.

    Args:
        target_hour: Hour of day (UTC) to run (default: 3 AM)
    """
    setup_logging()

    logger.info("maintenance_worker_starting", target_hour=target_hour)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("maintenance_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            seconds_until = seconds_until_next_run(utcnow(), target_hour)
            logger.info("maintenance_next_run_scheduled", seconds_until=seconds_until)

            # Sleep in short steps so shutdown signals are honoured
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await prune_rate_limit_records()
            except SQLAlchemyError as e:
                # Next day's run retries
                logger.error("maintenance_execution_error", error=str(e))
    finally:
        logger.info("maintenance_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Maintenance worker")
    parser.add_argument(
        "--hour", type=int, default=3, help="Hour of day (UTC) to run maintenance (0-23)"
    )
    args = parser.parse_args()

    asyncio.run(start_maintenance_worker(target_hour=args.hour))


if __name__ == "__main__":
    main()
