"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers payment events to the
notification service.
"""
import asyncio
import signal
import sys
from typing import Any

import structlog

from payment_settlement.core.outbox import OutboxPublisher
from payment_settlement.integrations.notifications import NotificationClient
from payment_settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()

    logger.info("outbox_publisher_worker_starting")

    notification_client = NotificationClient()
    publisher = OutboxPublisher(
        publisher_func=notification_client.publish,
        batch_size=100,
        poll_interval_seconds=1.0,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    finally:
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
