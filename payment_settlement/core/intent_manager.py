"""
Payment intent creation.

Flow:
1. Authenticate caller
2. Check the payment_intent rate limit
3. Validate input
4. Replay an existing intent for the same idempotency key
5. Load the caller's order
6. Reject orders that are already paid
7. Recompute the authoritative amount and compare with the claimed one
8. Create the gateway order
9. Persist the transaction row
10. Audit and return

Every rejected branch is audited and committed before the error is raised,
so the trail survives the error response. No order or loyalty state is
mutated here.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_settlement.config import Settings, get_settings
from payment_settlement.core.abuse_tracker import AbuseTracker, RateLimitPolicy
from payment_settlement.core.audit import AuditEvent, AuditSink
from payment_settlement.core.context import Caller, NetworkContext
from payment_settlement.core.errors import (
    AlreadyPaid,
    AmountMismatch,
    ConfigurationError,
    GatewayError,
    GatewayTimeout,
    MalformedRequest,
    NotFound,
    PaymentError,
    RateLimited,
    StoreConflict,
    TrackingError,
    TransactionFailed,
    Unauthorized,
)
from payment_settlement.database.models import (
    Order,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)
from payment_settlement.integrations.gateway_client import GatewayClient, GatewayOrder
from payment_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255


def authoritative_amount(final_amount: Decimal) -> int:
    """Order total in minor units, rounded half up."""
    return int((Decimal(final_amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class IntentResult:
    """Intent handed back to the client-side checkout."""

    gateway_order_id: str
    amount: int
    currency: str
    key_id: str
    order_id: uuid.UUID
    transaction_id: uuid.UUID
    idempotent: bool
    processing_time_ms: int


class IntentManager:
    """Creates gateway payment intents for orders."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway_client: Optional[GatewayClient] = None,
        audit_sink: Optional[AuditSink] = None,
        rate_limiter: Optional[AbuseTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway_client = gateway_client or GatewayClient(self.settings)
        self.audit_sink = audit_sink or AuditSink()
        self.rate_limiter = rate_limiter or AbuseTracker(
            RateLimitPolicy.payment_intent(self.settings), clock=clock
        )
        self.clock = clock

    async def _reject(
        self,
        db: AsyncSession,
        error: PaymentError,
        event_type: AuditEvent,
        caller: Optional[Caller],
        details: dict,
        network: NetworkContext,
        outcome: str,
        count_failure: bool = False,
    ) -> PaymentError:
        """Audit a rejection, optionally count it, commit, and hand back the error."""
        user_id = caller.user_id if caller else None
        await self.audit_sink.record(db, event_type, user_id, details, network)
        if count_failure and caller is not None:
            await self.rate_limiter.record_failure(db, str(caller.user_id))
        await db.commit()

        metrics.record_intent(outcome)
        if error.fraud_signal:
            metrics.record_fraud_signal(event_type.value)
        logger.warning(
            "payment_intent_rejected",
            outcome=outcome,
            code=error.code,
            user_id=str(user_id) if user_id else None,
        )
        return error

    def _validate(self, order_id: Any, amount: Any, currency: Optional[str]) -> tuple:
        """
        Validate request parameters.

        Returns:
            tuple: (order UUID, amount, currency)

        Raises:
            MalformedRequest: If validation fails
        """
        if not order_id:
            raise MalformedRequest("Order ID is required", field="order_id")
        try:
            parsed_order_id = order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
        except ValueError:
            raise MalformedRequest("Order ID is not a UUID", field="order_id")

        if isinstance(amount, bool) or not isinstance(amount, int):
            raise MalformedRequest("Amount must be an integer", field="amount")
        if amount < self.settings.min_amount_minor or amount > self.settings.max_amount_minor:
            raise MalformedRequest(
                f"Amount must be between {self.settings.min_amount_minor} "
                f"and {self.settings.max_amount_minor}",
                field="amount",
            )

        currency = (currency or self.settings.default_currency).upper()
        if currency not in self.settings.get_supported_currencies():
            raise MalformedRequest(f"Unsupported currency {currency}", field="currency")

        return parsed_order_id, amount, currency

    @staticmethod
    async def _find_by_idempotency_key(
        db: AsyncSession, user_id: uuid.UUID, idempotency_key: str
    ) -> Optional[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_by_gateway_order_id(
        db: AsyncSession, gateway_order_id: str
    ) -> Optional[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.gateway_order_id == gateway_order_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _insert_transaction(db: AsyncSession, transaction: PaymentTransaction) -> None:
        """
        Insert under a savepoint so a conflict leaves the caller's audits intact.

        Raises:
            StoreConflict: On a uniqueness violation
            TrackingError: On any other store failure
        """
        try:
            async with db.begin_nested():
                db.add(transaction)
        except IntegrityError as e:
            raise StoreConflict(
                "Duplicate payment transaction",
                gateway_order_id=transaction.gateway_order_id,
            ) from e
        except SQLAlchemyError as e:
            raise TrackingError(f"Transaction insert failed: {e}") from e

    def _result(
        self, transaction: PaymentTransaction, idempotent: bool, start_time: float
    ) -> IntentResult:
        return IntentResult(
            gateway_order_id=transaction.gateway_order_id,
            amount=transaction.amount,
            currency=transaction.currency,
            key_id=self.gateway_client.key_id,
            order_id=transaction.order_id,
            transaction_id=transaction.id,
            idempotent=idempotent,
            processing_time_ms=int((time.monotonic() - start_time) * 1000),
        )

    async def _replay(
        self,
        db: AsyncSession,
        caller: Caller,
        transaction: PaymentTransaction,
        network: NetworkContext,
        start_time: float,
        reason: str,
    ) -> IntentResult:
        await self.audit_sink.record(
            db,
            AuditEvent.IDEMPOTENT_REPLAY,
            caller.user_id,
            {
                "order_id": transaction.order_id,
                "gateway_order_id": transaction.gateway_order_id,
                "idempotency_key": transaction.idempotency_key,
                "reason": reason,
            },
            network,
        )
        await db.commit()
        metrics.record_intent("idempotent")
        logger.info(
            "payment_intent_replayed",
            gateway_order_id=transaction.gateway_order_id,
            reason=reason,
        )
        return self._result(transaction, idempotent=True, start_time=start_time)

    async def create_intent(
        self,
        db: AsyncSession,
        caller: Optional[Caller],
        order_id: Any,
        amount: Any,
        currency: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        network: Optional[NetworkContext] = None,
    ) -> IntentResult:
        """
        Create (or replay) a payment intent for an order.

        Args:
            db: Database session
            caller: Authenticated caller, None if unauthenticated
            order_id: Order to pay for
            amount: Claimed amount in minor units (display hint only)
            currency: Currency code, defaults to the configured default
            idempotency_key: Client retry key
            network: Request network context

        Returns:
            IntentResult: Gateway intent details

        Raises:
            Unauthorized, RateLimited, MalformedRequest, NotFound, AlreadyPaid,
            AmountMismatch, ConfigurationError, GatewayTimeout, GatewayError,
            TransactionFailed, TrackingError
        """
        start_time = time.monotonic()
        network = network or NetworkContext()

        # Step 1: Authenticate
        if caller is None:
            raise await self._reject(
                db,
                Unauthorized("Missing or invalid credentials"),
                AuditEvent.UNAUTHORIZED_PAYMENT_ATTEMPT,
                None,
                {"order_id": order_id, "claimed_amount": amount},
                network,
                "unauthorized",
            )

        # Step 2: Rate limit
        limit = await self.rate_limiter.check_allowed(db, str(caller.user_id))
        if not limit.allowed:
            raise await self._reject(
                db,
                RateLimited("Payment intent rate limit exceeded", blocked_until=limit.blocked_until),
                AuditEvent.PAYMENT_RATE_LIMITED,
                caller,
                {"order_id": order_id, "blocked_until": limit.blocked_until},
                network,
                "rate_limited",
            )

        # Step 3: Validate input
        try:
            parsed_order_id, amount, currency = self._validate(order_id, amount, currency)
            if idempotency_key is not None:
                idempotency_key = idempotency_key.strip() or None
            if idempotency_key and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
                raise MalformedRequest("Idempotency key too long", field="idempotency_key")
        except MalformedRequest as e:
            raise await self._reject(
                db,
                e,
                AuditEvent.INVALID_PAYMENT_REQUEST,
                caller,
                {"reason": e.message, "order_id": order_id, "claimed_amount": amount},
                network,
                "malformed",
            )

        # Step 4: Idempotent replay
        if idempotency_key:
            existing = await self._find_by_idempotency_key(db, caller.user_id, idempotency_key)
            if existing is not None:
                if existing.status == TransactionStatus.FAILED:
                    raise await self._reject(
                        db,
                        TransactionFailed("Idempotency key belongs to a failed transaction"),
                        AuditEvent.DUPLICATE_PAYMENT_ATTEMPT,
                        caller,
                        {
                            "order_id": parsed_order_id,
                            "gateway_order_id": existing.gateway_order_id,
                            "reason": "idempotency_key_failed",
                        },
                        network,
                        "failed_key_reuse",
                    )
                return await self._replay(
                    db, caller, existing, network, start_time, reason="idempotency_key"
                )

        # Step 5: Load the caller's order
        stmt = (
            select(Order)
            .where(Order.id == parsed_order_id, Order.user_id == caller.user_id)
            .execution_options(populate_existing=True)
        )
        order = (await db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise await self._reject(
                db,
                NotFound("Order not found or not owned by caller"),
                AuditEvent.INVALID_ORDER_ACCESS,
                caller,
                {"order_id": parsed_order_id},
                network,
                "not_found",
                count_failure=True,
            )

        # Step 6: Already paid
        if order.payment_status == PaymentStatus.COMPLETED:
            raise await self._reject(
                db,
                AlreadyPaid("Order already paid"),
                AuditEvent.DUPLICATE_PAYMENT_ATTEMPT,
                caller,
                {"order_id": order.id, "payment_id": order.payment_id},
                network,
                "already_paid",
                count_failure=True,
            )

        # Step 7: Authoritative amount
        expected_amount = authoritative_amount(order.final_amount)
        if amount != expected_amount:
            raise await self._reject(
                db,
                AmountMismatch(
                    "Claimed amount does not match order total",
                    claimed=amount,
                    expected=expected_amount,
                ),
                AuditEvent.AMOUNT_MANIPULATION_ATTEMPT,
                caller,
                {
                    "order_id": order.id,
                    "claimed_amount": amount,
                    "expected_amount": expected_amount,
                    "difference": amount - expected_amount,
                },
                network,
                "amount_mismatch",
                count_failure=True,
            )

        # Step 8: Gateway order
        notes = {
            "order_id": str(order.id),
            "user_id": str(caller.user_id),
            "idempotency_key": idempotency_key or f"auto_{int(time.time() * 1000)}",
            "security_context": {
                "ip_address": network.ip_address,
                "user_agent": network.short_user_agent,
                "timestamp": self.clock().isoformat(),
            },
        }
        receipt = order.order_number or str(order.id)
        try:
            gateway_order: GatewayOrder = await self.gateway_client.create_order(
                amount=expected_amount,
                currency=currency,
                receipt=receipt,
                notes=notes,
            )
        except ConfigurationError as e:
            raise await self._reject(
                db,
                e,
                AuditEvent.PAYMENT_CONFIG_ERROR,
                caller,
                {"order_id": order.id, "reason": e.message},
                network,
                "config_error",
            )
        except GatewayTimeout as e:
            raise await self._reject(
                db,
                e,
                AuditEvent.PAYMENT_TIMEOUT,
                caller,
                {
                    "order_id": order.id,
                    "idempotency_key": idempotency_key,
                    "timeout_seconds": self.settings.gateway_timeout_seconds,
                },
                network,
                "gateway_timeout",
            )
        except GatewayError as e:
            raise await self._reject(
                db,
                e,
                AuditEvent.GATEWAY_API_ERROR,
                caller,
                {
                    "order_id": order.id,
                    "idempotency_key": idempotency_key,
                    "upstream_status": e.upstream_status,
                    "reason": e.message,
                },
                network,
                "gateway_error",
            )

        # Step 9: Persist the transaction row
        now = self.clock()
        transaction = PaymentTransaction(
            order_id=order.id,
            user_id=caller.user_id,
            amount=expected_amount,
            currency=currency,
            status=TransactionStatus.CREATED,
            payment_method="razorpay",
            gateway_order_id=gateway_order.id,
            idempotency_key=idempotency_key,
            notes=notes,
            request_ip=network.ip_address,
            request_user_agent=network.short_user_agent,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._insert_transaction(db, transaction)
        except StoreConflict:
            # A concurrent request with the same key won the insert
            existing = None
            if idempotency_key:
                existing = await self._find_by_idempotency_key(db, caller.user_id, idempotency_key)
            if existing is None:
                existing = await self._find_by_gateway_order_id(db, gateway_order.id)
            if existing is not None:
                return await self._replay(
                    db, caller, existing, network, start_time, reason="concurrent_insert"
                )
            raise await self._reject(
                db,
                TrackingError("Transaction insert conflicted and no row was found"),
                AuditEvent.PAYMENT_TRACKING_ERROR,
                caller,
                {"order_id": order.id, "gateway_order_id": gateway_order.id},
                network,
                "tracking_error",
            )
        except TrackingError as e:
            raise await self._reject(
                db,
                e,
                AuditEvent.PAYMENT_TRACKING_ERROR,
                caller,
                {"order_id": order.id, "gateway_order_id": gateway_order.id, "error": e.message},
                network,
                "tracking_error",
            )

        # Step 10: Audit, reset counter, commit
        processing_time_ms = int((time.monotonic() - start_time) * 1000)
        await self.audit_sink.record(
            db,
            AuditEvent.PAYMENT_INITIATED,
            caller.user_id,
            {
                "order_id": order.id,
                "gateway_order_id": gateway_order.id,
                "amount": expected_amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "processing_time_ms": processing_time_ms,
            },
            network,
        )
        await self.rate_limiter.record_success(db, str(caller.user_id))
        await db.commit()

        metrics.record_intent("created", expected_amount)
        metrics.record_intent_duration(time.monotonic() - start_time)
        logger.info(
            "payment_intent_created",
            order_id=str(order.id),
            gateway_order_id=gateway_order.id,
            amount=expected_amount,
            currency=currency,
            processing_time_ms=processing_time_ms,
        )
        return self._result(transaction, idempotent=False, start_time=start_time)
