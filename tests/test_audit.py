"""
Tests for the security audit sink.
"""
import uuid
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from payment_settlement.core.audit import AuditEvent, AuditSink
from payment_settlement.database.models import SecurityAuditLog
from payment_settlement.monitoring.metrics import metrics


class TestAuditSink:
    """Test suite for AuditSink."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_record_persists_entry(
        self, db: Any, network: Any, audit_events: Any
    ) -> None:
        user_id = uuid.uuid4()
        await AuditSink().record(
            db,
            AuditEvent.AMOUNT_MANIPULATION_ATTEMPT,
            user_id,
            {"claimed_amount": 60000, "expected_amount": 50000},
            network,
        )
        await db.commit()

        [entry] = await audit_events()
        assert entry.event_type == "AMOUNT_MANIPULATION_ATTEMPT"
        assert entry.user_id == str(user_id)
        assert entry.details == {"claimed_amount": 60000, "expected_amount": 50000}
        assert entry.ip_address == "203.0.113.7"
        assert entry.user_agent == "pytest-browser/1.0"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_details_are_made_json_safe(self, db: Any, audit_events: Any) -> None:
        order_id = uuid.uuid4()
        when = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

        await AuditSink().record(
            db,
            AuditEvent.LOGIN_BLOCKED,
            "buyer@example.com",
            {"order_id": order_id, "blocked_until": when, "scopes": ("a", "b")},
        )
        await db.commit()

        [entry] = await audit_events()
        assert entry.details == {
            "order_id": str(order_id),
            "blocked_until": when.isoformat(),
            "scopes": ["a", "b"],
        }
        assert entry.ip_address is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, db: Any, mocker: Any) -> None:
        """A failing insert never propagates to the money path."""
        mocker.patch.object(db, "begin_nested", side_effect=SQLAlchemyError("disk full"))
        failure_metric = mocker.patch.object(metrics, "record_audit_write_failure")

        await AuditSink().record(db, AuditEvent.PAYMENT_INITIATED, uuid.uuid4(), {"amount": 1})

        failure_metric.assert_called_once_with("PAYMENT_INITIATED")
        count = (await db.execute(select(func.count(SecurityAuditLog.id)))).scalar_one()
        assert count == 0

    @pytest.mark.unit
    def test_event_values_are_stable(self) -> None:
        assert len(AuditEvent) == 26
        assert AuditEvent("PAYMENT_SIGNATURE_FRAUD") is AuditEvent.PAYMENT_SIGNATURE_FRAUD
