"""
Settlement state machine.

A PaymentTransaction moves created -> completed or created -> failed exactly
once. The single conditional UPDATE on its status is the only gate: side
effects (order flip, notification, loyalty redemption) are reachable only
from the branch whose update affected a row. Loyalty redemption further
requires this transaction to be the one that moved the order out of
'pending', so an order paid twice through separate intents redeems once.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_settlement.config import Settings, get_settings
from payment_settlement.core.audit import AuditEvent, AuditSink
from payment_settlement.core.context import Caller, NetworkContext
from payment_settlement.core.errors import TransactionFailed
from payment_settlement.core.outbox import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SETTLED,
    enqueue_event,
)
from payment_settlement.database.models import (
    Order,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)
from payment_settlement.integrations.loyalty import LoyaltyLedgerClient
from payment_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AGGREGATE_TYPE = "payment_transaction"


@dataclass
class SettlementResult:
    """Outcome of a settle call."""

    verified: bool
    settled: bool
    idempotent: bool = False
    order_updated: bool = False
    loyalty_redeemed: Optional[bool] = None
    elapsed_ms: int = 0


class SettlementStateMachine:
    """Applies accept/reject decisions to transactions and orders."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        audit_sink: Optional[AuditSink] = None,
        loyalty_client: Optional[LoyaltyLedgerClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.audit_sink = audit_sink or AuditSink()
        self.loyalty_client = loyalty_client or LoyaltyLedgerClient(self.settings)
        self.clock = clock

    async def _current_status(self, db: AsyncSession, transaction_id: uuid.UUID) -> str:
        stmt = select(PaymentTransaction.status).where(PaymentTransaction.id == transaction_id)
        return (await db.execute(stmt)).scalar_one()

    async def _mark_order_paid(
        self, db: AsyncSession, order_id: uuid.UUID, gateway_payment_id: str
    ) -> bool:
        """Flip the order pending -> completed. Returns False if it was not pending."""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.PENDING)
            .values(
                payment_status=PaymentStatus.COMPLETED,
                payment_method="razorpay",
                payment_id=gateway_payment_id,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    def _recipients(
        self, transaction: PaymentTransaction, caller: Optional[Caller]
    ) -> Dict[str, Any]:
        return {
            "user_id": str(transaction.user_id),
            "email": caller.email if caller else None,
            "admins": self.settings.get_admin_recipients(),
        }

    async def settle(
        self,
        db: AsyncSession,
        transaction: PaymentTransaction,
        gateway_payment_id: str,
        gateway_signature: str,
        caller: Optional[Caller] = None,
        network: Optional[NetworkContext] = None,
        started_at: Optional[float] = None,
    ) -> SettlementResult:
        """
        Complete a verified transaction.

        Steps 1-4 share one database transaction which this method commits.
        Loyalty redemption runs after the commit so that it is only ever
        attempted for a durable settlement.

        Raises:
            TransactionFailed: If the transaction was concurrently rejected
        """
        start_time = started_at or time.monotonic()
        network = network or NetworkContext()
        now = self.clock()

        # Step 1: created -> completed; the winner owns every side effect
        cas = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status == TransactionStatus.CREATED,
            )
            .values(
                status=TransactionStatus.COMPLETED,
                gateway_payment_id=gateway_payment_id,
                gateway_signature=gateway_signature,
                verification_ip=network.ip_address,
                verification_user_agent=network.short_user_agent,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        won = (await db.execute(cas)).rowcount == 1

        if not won:
            status = await self._current_status(db, transaction.id)
            if status == TransactionStatus.FAILED:
                await db.commit()
                raise TransactionFailed(
                    "Transaction was rejected concurrently",
                    transaction_id=str(transaction.id),
                )
            await self.audit_sink.record(
                db,
                AuditEvent.SETTLEMENT_RACE_LOST,
                transaction.user_id,
                {
                    "transaction_id": transaction.id,
                    "order_id": transaction.order_id,
                    "gateway_order_id": transaction.gateway_order_id,
                    "gateway_payment_id": gateway_payment_id,
                },
                network,
            )
            await db.commit()
            logger.info("settlement_race_lost", transaction_id=str(transaction.id))
            return SettlementResult(
                verified=True,
                settled=False,
                idempotent=True,
                elapsed_ms=int((time.monotonic() - start_time) * 1000),
            )

        # Step 2: order pending -> completed, isolated so a failure leaves step 1 intact
        order: Optional[Order] = None
        order_updated = False
        try:
            order = (
                await db.execute(
                    select(Order)
                    .where(Order.id == transaction.order_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            async with db.begin_nested():
                order_updated = await self._mark_order_paid(
                    db, transaction.order_id, gateway_payment_id
                )
        except SQLAlchemyError as e:
            metrics.record_side_effect("order_update", "error")
            await self.audit_sink.record(
                db,
                AuditEvent.ORDER_UPDATE_ERROR,
                transaction.user_id,
                {
                    "transaction_id": transaction.id,
                    "order_id": transaction.order_id,
                    "gateway_payment_id": gateway_payment_id,
                    "error": str(e),
                    "loyalty_points_skipped": order.loyalty_points_used if order else 0,
                    "reconciliation_required": True,
                },
                network,
            )
        else:
            if order_updated:
                metrics.record_side_effect("order_update", "success")
            else:
                metrics.record_side_effect("order_update", "conflict")
                await self.audit_sink.record(
                    db,
                    AuditEvent.ORDER_STATE_CONFLICT,
                    transaction.user_id,
                    {
                        "transaction_id": transaction.id,
                        "order_id": transaction.order_id,
                        "order_payment_status": order.payment_status if order else None,
                        "loyalty_points_skipped": order.loyalty_points_used if order else 0,
                        "reconciliation_required": True,
                    },
                    network,
                )

        # Step 3: notification, committed together with the transition
        enqueue_event(
            db,
            aggregate_id=transaction.id,
            aggregate_type=AGGREGATE_TYPE,
            event_type=EVENT_PAYMENT_SETTLED,
            payload={
                "transaction_id": str(transaction.id),
                "order_id": str(transaction.order_id),
                "order_number": order.order_number if order else None,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "gateway_order_id": transaction.gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
                "recipients": self._recipients(transaction, caller),
            },
        )
        metrics.record_side_effect("notification", "queued")

        # Only the transaction that flipped the order redeems its points
        loyalty_points = order.loyalty_points_used if order and order_updated else 0
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        # Step 4: decision summary
        await self.audit_sink.record(
            db,
            AuditEvent.PAYMENT_VERIFIED_SUCCESS,
            transaction.user_id,
            {
                "transaction_id": transaction.id,
                "order_id": transaction.order_id,
                "gateway_order_id": transaction.gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "order_updated": order_updated,
                "loyalty_points_requested": loyalty_points,
                "elapsed_ms": elapsed_ms,
            },
            network,
        )
        await db.commit()

        logger.info(
            "payment_settled",
            transaction_id=str(transaction.id),
            order_id=str(transaction.order_id),
            order_updated=order_updated,
            elapsed_ms=elapsed_ms,
        )

        # Step 5: loyalty redemption, once, tagged with the order id
        loyalty_redeemed: Optional[bool] = None
        if order is not None and loyalty_points > 0:
            redemption = await self.loyalty_client.redeem(
                user_id=transaction.user_id,
                points=loyalty_points,
                order_id=transaction.order_id,
                gift_id=order.loyalty_gift_id,
            )
            loyalty_redeemed = redemption.success
            metrics.record_side_effect(
                "loyalty_redemption", "success" if redemption.success else "error"
            )
            if not redemption.success:
                await self.audit_sink.record(
                    db,
                    AuditEvent.LOYALTY_REDEMPTION_FAILED,
                    transaction.user_id,
                    {
                        "transaction_id": transaction.id,
                        "order_id": transaction.order_id,
                        "points": loyalty_points,
                        "error": redemption.error,
                        "reconciliation_required": True,
                    },
                    network,
                )
                await db.commit()

        return SettlementResult(
            verified=True,
            settled=True,
            order_updated=order_updated,
            loyalty_redeemed=loyalty_redeemed,
            elapsed_ms=int((time.monotonic() - start_time) * 1000),
        )

    async def reject(
        self,
        db: AsyncSession,
        transaction: PaymentTransaction,
        reason: str,
        gateway_payment_id: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> bool:
        """
        Move a transaction created -> failed.

        The caller commits. The order keeps payment_status 'pending' so the
        buyer can start a new attempt.

        Returns:
            bool: True if this call performed the transition
        """
        network = network or NetworkContext()
        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status == TransactionStatus.CREATED,
            )
            .values(
                status=TransactionStatus.FAILED,
                failure_reason=reason,
                gateway_payment_id=gateway_payment_id,
                verification_ip=network.ip_address,
                verification_user_agent=network.short_user_agent,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        won = (await db.execute(stmt)).rowcount == 1
        if won:
            enqueue_event(
                db,
                aggregate_id=transaction.id,
                aggregate_type=AGGREGATE_TYPE,
                event_type=EVENT_PAYMENT_FAILED,
                payload={
                    "transaction_id": str(transaction.id),
                    "order_id": str(transaction.order_id),
                    "amount": transaction.amount,
                    "currency": transaction.currency,
                    "gateway_order_id": transaction.gateway_order_id,
                    "reason": reason,
                    "recipients": self._recipients(transaction, None),
                },
            )
            logger.warning(
                "payment_transaction_failed",
                transaction_id=str(transaction.id),
                reason=reason,
            )
        return won
