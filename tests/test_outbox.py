"""
Tests for the transactional outbox and the collaborator clients.
"""
import json
import uuid
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import httpx
import pytest

from payment_settlement.core.outbox import (
    EVENT_PAYMENT_SETTLED,
    OutboxPublisher,
    enqueue_event,
)
from payment_settlement.database.models import OutboxEvent
from payment_settlement.integrations.loyalty import LoyaltyLedgerClient
from payment_settlement.integrations.notifications import (
    NotificationClient,
    NotificationDeliveryError,
)


async def seed_events(db: Any, count: int) -> List[OutboxEvent]:
    events = [
        enqueue_event(
            db,
            aggregate_id=uuid.uuid4(),
            aggregate_type="payment_transaction",
            event_type=EVENT_PAYMENT_SETTLED,
            payload={"amount": 50000, "currency": "INR"},
        )
        for _ in range(count)
    ]
    await db.commit()
    return events


class TestOutboxPublisher:
    """Test suite for OutboxPublisher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_batch_publishes_and_marks(
        self, db: Any, session_factory: Any, outbox_events: Any
    ) -> None:
        await seed_events(db, 3)
        publish = AsyncMock()
        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        published = await publisher.process_batch()

        assert published == 3
        assert publish.await_count == 3
        event_data = publish.await_args_list[0].args[0]
        assert event_data["event_type"] == "payment.settled"
        assert event_data["payload"] == {"amount": 50000, "currency": "INR"}

        assert await publisher.get_pending_count() == 0
        assert all(event.published for event in await outbox_events())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_delivery_stays_pending(
        self, db: Any, session_factory: Any
    ) -> None:
        await seed_events(db, 2)
        publish = AsyncMock(side_effect=[None, NotificationDeliveryError("503")])
        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)

        assert await publisher.process_batch() == 1
        assert await publisher.get_pending_count() == 1

        publish.side_effect = None
        assert await publisher.process_batch() == 1
        assert await publisher.get_pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, db: Any, session_factory: Any) -> None:
        await seed_events(db, 5)
        publisher = OutboxPublisher(
            publisher_func=AsyncMock(), batch_size=2, session_factory=session_factory
        )

        assert await publisher.process_batch() == 2
        assert await publisher.get_pending_count() == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_outbox(self, session_factory: Any) -> None:
        publisher = OutboxPublisher(publisher_func=AsyncMock(), session_factory=session_factory)
        assert await publisher.process_batch() == 0


class TestNotificationClient:
    """Test suite for NotificationClient."""

    EVENT: Dict[str, Any] = {
        "id": 7,
        "aggregate_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
        "event_type": "payment.settled",
        "payload": {"recipients": {"admins": ["ops@example.com"]}},
    }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_posts_with_idempotency_key(self, test_settings: Any) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        settings = test_settings.model_copy(
            update={"notification_service_url": "http://notify.test/events"}
        )
        client = NotificationClient(settings, transport=httpx.MockTransport(handler))
        await client.publish(self.EVENT)

        [request] = seen
        assert request.headers["idempotency-key"] == "outbox:7"
        assert json.loads(request.content)["event_type"] == "payment.settled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_raises(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(
            update={"notification_service_url": "http://notify.test/events"}
        )
        client = NotificationClient(
            settings, transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )

        with pytest.raises(NotificationDeliveryError):
            await client.publish(self.EVENT)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_without_endpoint_only_logs(self, test_settings: Any) -> None:
        handler = AsyncMock()
        client = NotificationClient(test_settings, transport=httpx.MockTransport(handler))

        await client.publish(self.EVENT)

        handler.assert_not_called()


class TestLoyaltyLedgerClient:
    """Test suite for LoyaltyLedgerClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeem_tags_order(self, test_settings: Any) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        order_id = uuid.uuid4()
        user_id = uuid.uuid4()
        client = LoyaltyLedgerClient(test_settings, transport=httpx.MockTransport(handler))

        result = await client.redeem(user_id, 250, order_id, gift_id="gift_7")

        assert result.success is True
        [request] = seen
        assert str(request.url) == "http://loyalty.test/redeem"
        assert request.headers["idempotency-key"] == f"loyalty:{order_id}"
        assert json.loads(request.content) == {
            "user_id": str(user_id),
            "points_to_redeem": 250,
            "order_id": str(order_id),
            "gift_id": "gift_7",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejection_is_returned(self, test_settings: Any) -> None:
        client = LoyaltyLedgerClient(
            test_settings,
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"success": False, "error": "balance"})
            ),
        )

        result = await client.redeem(uuid.uuid4(), 250, uuid.uuid4())

        assert result.success is False
        assert result.error == "balance"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_is_returned(self, test_settings: Any) -> None:
        client = LoyaltyLedgerClient(
            test_settings, transport=httpx.MockTransport(lambda request: httpx.Response(409))
        )

        result = await client.redeem(uuid.uuid4(), 250, uuid.uuid4())

        assert result.success is False
        assert "409" in result.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_is_returned(self, test_settings: Any) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = LoyaltyLedgerClient(test_settings, transport=httpx.MockTransport(handler))

        result = await client.redeem(uuid.uuid4(), 250, uuid.uuid4())

        assert result.success is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfigured_ledger(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(update={"loyalty_ledger_url": None})

        result = await LoyaltyLedgerClient(settings).redeem(uuid.uuid4(), 250, uuid.uuid4())

        assert result.success is False
