"""
Settlement state machine tests, including lost races.

Concurrent instances are simulated with a second session holding a stale
read of the transaction, which is what a losing request sees.
"""
from typing import Any

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from payment_settlement.core.errors import TransactionFailed
from payment_settlement.core.settlement import SettlementStateMachine
from payment_settlement.database.models import (
    Order,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
)


@pytest.fixture
def open_transaction(db: Any, intent_manager: Any, caller: Any, make_order: Any) -> Any:
    """Create an order and return its 'created' payment transaction."""

    async def _create(**order_fields: Any) -> PaymentTransaction:
        order = await make_order(caller.user_id, **order_fields)
        intent = await intent_manager.create_intent(db, caller, order.id, 50000)
        transaction = await db.get(PaymentTransaction, intent.transaction_id)
        # The engine shares one connection; other sessions need it idle
        await db.commit()
        return transaction

    return _create


async def stale_copy(session_factory: Any, transaction_id: Any) -> Any:
    """Read the transaction in a session of its own, as a concurrent request would."""
    async with session_factory() as session:
        transaction = await session.get(PaymentTransaction, transaction_id)
        await session.commit()
    return transaction


class TestSettlementStateMachine:
    """Test suite for SettlementStateMachine."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_only_one_settlement_wins(
        self,
        db: Any,
        session_factory: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        loyalty: Any,
        audit_events: Any,
        outbox_events: Any,
    ) -> None:
        transaction = await open_transaction(loyalty_points_used=150, loyalty_gift_id="gift_7")
        stale = await stale_copy(session_factory, transaction.id)

        winner = await settlement.settle(db, transaction, "pay_First1", "ab" * 32)

        async with session_factory() as other:
            loser = await settlement.settle(other, stale, "pay_First1", "ab" * 32)

        assert winner.settled is True
        assert winner.loyalty_redeemed is True
        assert loser.settled is False
        assert loser.verified is True
        assert loser.idempotent is True

        [call] = loyalty.calls
        assert call["points"] == 150
        assert call["gift_id"] == "gift_7"
        assert call["order_id"] == transaction.order_id
        assert len(await outbox_events("payment.settled")) == 1
        assert len(await audit_events("PAYMENT_VERIFIED_SUCCESS")) == 1
        assert len(await audit_events("SETTLEMENT_RACE_LOST")) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_reject_after_settle_is_noop(
        self,
        db: Any,
        session_factory: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        reload: Any,
        outbox_events: Any,
    ) -> None:
        transaction = await open_transaction()
        stale = await stale_copy(session_factory, transaction.id)

        await settlement.settle(db, transaction, "pay_First1", "ab" * 32)

        async with session_factory() as other:
            rejected = await settlement.reject(other, stale, "signature_verification_failed")
            await other.commit()

        assert rejected is False
        assert (await reload(PaymentTransaction, transaction.id)).status == (
            TransactionStatus.COMPLETED
        )
        assert await outbox_events("payment.failed") == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_settle_after_reject_raises(
        self,
        db: Any,
        session_factory: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        loyalty: Any,
        reload: Any,
        outbox_events: Any,
    ) -> None:
        transaction = await open_transaction(loyalty_points_used=100)
        stale = await stale_copy(session_factory, transaction.id)

        assert await settlement.reject(db, transaction, "signature_verification_failed") is True
        await db.commit()

        async with session_factory() as other:
            with pytest.raises(TransactionFailed):
                await settlement.settle(other, stale, "pay_Late1", "ab" * 32)

        assert loyalty.calls == []
        assert (await reload(Order, transaction.order_id)).payment_status == PaymentStatus.PENDING
        assert await outbox_events("payment.settled") == []

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_second_paid_transaction_does_not_redeem_again(
        self,
        db: Any,
        settlement: SettlementStateMachine,
        intent_manager: Any,
        caller: Any,
        make_order: Any,
        loyalty: Any,
        reload: Any,
        audit_events: Any,
    ) -> None:
        """Two intents paid for one order redeem the order's points once."""
        order = await make_order(caller.user_id, loyalty_points_used=150)
        first_intent = await intent_manager.create_intent(
            db, caller, order.id, 50000, idempotency_key="k1"
        )
        second_intent = await intent_manager.create_intent(
            db, caller, order.id, 50000, idempotency_key="k2"
        )
        first = await db.get(PaymentTransaction, first_intent.transaction_id)
        second = await db.get(PaymentTransaction, second_intent.transaction_id)
        assert first.id != second.id

        first_result = await settlement.settle(db, first, "pay_First1", "ab" * 32)
        second_result = await settlement.settle(db, second, "pay_Second1", "cd" * 32)

        assert first_result.order_updated is True
        assert first_result.loyalty_redeemed is True
        assert second_result.settled is True
        assert second_result.order_updated is False
        assert second_result.loyalty_redeemed is None

        [call] = loyalty.calls
        assert call["order_id"] == order.id
        assert (await reload(Order, order.id)).payment_id == "pay_First1"
        [conflict] = await audit_events("ORDER_STATE_CONFLICT")
        assert conflict.details["transaction_id"] == str(second.id)
        assert conflict.details["loyalty_points_skipped"] == 150

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_update_failure_keeps_settlement(
        self,
        db: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        reload: Any,
        audit_events: Any,
        outbox_events: Any,
        mocker: Any,
    ) -> None:
        transaction = await open_transaction()
        mocker.patch.object(
            settlement, "_mark_order_paid", side_effect=SQLAlchemyError("orders table locked")
        )

        result = await settlement.settle(db, transaction, "pay_First1", "ab" * 32)

        assert result.settled is True
        assert result.order_updated is False
        assert (await reload(PaymentTransaction, transaction.id)).status == (
            TransactionStatus.COMPLETED
        )
        [event] = await audit_events("ORDER_UPDATE_ERROR")
        assert event.details["reconciliation_required"] is True
        assert len(await outbox_events("payment.settled")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_not_pending_is_a_conflict(
        self,
        db: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        reload: Any,
        audit_events: Any,
    ) -> None:
        transaction = await open_transaction()
        await db.execute(
            update(Order)
            .where(Order.id == transaction.order_id)
            .values(payment_status=PaymentStatus.COMPLETED, payment_id="pay_Elsewhere1")
        )
        await db.commit()

        result = await settlement.settle(db, transaction, "pay_First1", "ab" * 32)

        assert result.settled is True
        assert result.order_updated is False
        assert (await reload(Order, transaction.order_id)).payment_id == "pay_Elsewhere1"
        [event] = await audit_events("ORDER_STATE_CONFLICT")
        assert event.details["order_payment_status"] == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_loyalty_failure_is_audited(
        self,
        db: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        loyalty: Any,
        reload: Any,
        audit_events: Any,
    ) -> None:
        transaction = await open_transaction(loyalty_points_used=300)
        loyalty.succeed = False

        result = await settlement.settle(db, transaction, "pay_First1", "ab" * 32)

        assert result.settled is True
        assert result.loyalty_redeemed is False
        assert (await reload(Order, transaction.order_id)).payment_status == (
            PaymentStatus.COMPLETED
        )
        [event] = await audit_events("LOYALTY_REDEMPTION_FAILED")
        assert event.details["points"] == 300
        assert event.details["reconciliation_required"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_points_no_redemption(
        self,
        db: Any,
        settlement: SettlementStateMachine,
        open_transaction: Any,
        loyalty: Any,
    ) -> None:
        transaction = await open_transaction()

        result = await settlement.settle(db, transaction, "pay_First1", "ab" * 32)

        assert result.loyalty_redeemed is None
        assert loyalty.calls == []
