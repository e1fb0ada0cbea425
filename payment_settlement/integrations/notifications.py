"""Notification service client used by the outbox publisher."""
from typing import Any, Dict, Optional

import httpx
import structlog

from payment_settlement.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class NotificationDeliveryError(Exception):
    """Raised when the notification service rejects or misses an event."""

    pass


class NotificationClient:
    """
    Delivers payment events to the notification collaborator.

    Without a configured endpoint events are only logged, which keeps local
    development and the outbox worker usable without the collaborator.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    async def publish(self, event_data: Dict[str, Any]) -> None:
        """
        Deliver one outbox event.

        Raises:
            NotificationDeliveryError: If delivery failed and should be retried
        """
        url = self.settings.notification_service_url
        if not url:
            logger.info(
                "notification_logged",
                event_type=event_data.get("event_type"),
                aggregate_id=event_data.get("aggregate_id"),
                recipients=event_data.get("payload", {}).get("recipients"),
            )
            return

        headers = {"Idempotency-Key": f"outbox:{event_data.get('id')}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.collaborator_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(url, json=event_data, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Notification request failed: {e}") from e

        if response.status_code >= 400:
            raise NotificationDeliveryError(
                f"Notification service returned {response.status_code}"
            )

        logger.info(
            "notification_delivered",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )
