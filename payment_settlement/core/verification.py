"""
Gateway callback verification.

Flow:
1. Authenticate caller
2. Validate identifier formats
3. Load the caller's transaction
4. Short-circuit terminal transactions
5. Enforce the replay window
6. Check the HMAC signature
7. Hand off to settlement

Timing and signature checks fail closed: a missing secret or a malformed
signature is a rejection, never a success.
"""
import hashlib
import hmac
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_settlement.config import Settings, get_settings
from payment_settlement.core.audit import AuditEvent, AuditSink
from payment_settlement.core.context import Caller, NetworkContext
from payment_settlement.core.errors import (
    ConfigurationError,
    MalformedRequest,
    NotFound,
    PaymentError,
    SignatureInvalid,
    TransactionFailed,
    Unauthorized,
    VerificationExpired,
)
from payment_settlement.core.settlement import SettlementResult, SettlementStateMachine
from payment_settlement.database.models import (
    PaymentTransaction,
    TransactionStatus,
    as_utc,
    utcnow,
)
from payment_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GATEWAY_ORDER_ID_PATTERN = re.compile(r"^order_[A-Za-z0-9]+$")
GATEWAY_PAYMENT_ID_PATTERN = re.compile(r"^pay_[A-Za-z0-9]+$")
SIGNATURE_PATTERN = re.compile(r"^[A-Fa-f0-9]{1,128}$")

FAILURE_REASON_SIGNATURE = "signature_verification_failed"


def signature_payload(gateway_order_id: str, gateway_payment_id: str) -> str:
    return f"{gateway_order_id}|{gateway_payment_id}"


def compute_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    """Hex HMAC-SHA256 of `order_id|payment_id`, as the gateway signs callbacks."""
    payload = signature_payload(gateway_order_id, gateway_payment_id)
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def constant_time_equals(expected: str, received: str) -> bool:
    """
    Compare signatures without leaking where they differ.

    Lengths are compared first; equal-length inputs go through
    hmac.compare_digest.
    """
    if len(expected) != len(received):
        return False
    return hmac.compare_digest(expected.encode(), received.encode())


@dataclass
class VerificationResult:
    verified: bool
    idempotent: bool
    transaction_id: uuid.UUID
    order_id: uuid.UUID
    gateway_payment_id: str
    processing_time_ms: int
    settlement: Optional[SettlementResult] = None


class VerificationEngine:
    """Validates gateway callbacks and decides accept/reject."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        settlement: Optional[SettlementStateMachine] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.audit_sink = audit_sink or AuditSink()
        self.settlement = settlement or SettlementStateMachine(
            self.settings, audit_sink=self.audit_sink, clock=clock
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
    ) -> PaymentError:
        """Audit a rejection, commit, and hand back the error."""
        user_id = caller.user_id if caller else None
        await self.audit_sink.record(db, event_type, user_id, details, network)
        await db.commit()

        metrics.record_verification(outcome)
        if error.fraud_signal:
            metrics.record_fraud_signal(event_type.value)
        logger.warning(
            "payment_verification_rejected",
            outcome=outcome,
            code=error.code,
            user_id=str(user_id) if user_id else None,
        )
        return error

    @staticmethod
    def _validate(
        gateway_order_id: Any,
        gateway_payment_id: Any,
        signature: Any,
        order_id: Any,
    ) -> uuid.UUID:
        """
        Check presence and format of the callback fields.

        Returns:
            uuid.UUID: Parsed order id

        Raises:
            MalformedRequest: With `event` naming the audit event to record
        """
        fields = {
            "gateway_order_id": gateway_order_id,
            "gateway_payment_id": gateway_payment_id,
            "gateway_signature": signature,
            "order_id": order_id,
        }
        missing = [name for name, value in fields.items() if not value]
        if missing:
            raise MalformedRequest(
                "Missing required verification fields",
                event=AuditEvent.INVALID_VERIFICATION_REQUEST,
                missing=missing,
            )
        if not isinstance(gateway_order_id, str) or not GATEWAY_ORDER_ID_PATTERN.match(
            gateway_order_id
        ):
            raise MalformedRequest(
                "Invalid gateway order id format",
                event=AuditEvent.INVALID_PAYMENT_ID_FORMAT,
                field="gateway_order_id",
            )
        if not isinstance(gateway_payment_id, str) or not GATEWAY_PAYMENT_ID_PATTERN.match(
            gateway_payment_id
        ):
            raise MalformedRequest(
                "Invalid gateway payment id format",
                event=AuditEvent.INVALID_PAYMENT_ID_FORMAT,
                field="gateway_payment_id",
            )
        if not isinstance(signature, str) or not SIGNATURE_PATTERN.match(signature):
            raise MalformedRequest(
                "Invalid signature format",
                event=AuditEvent.INVALID_VERIFICATION_REQUEST,
                field="gateway_signature",
            )
        try:
            return order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
        except ValueError:
            raise MalformedRequest(
                "Order ID is not a UUID",
                event=AuditEvent.INVALID_VERIFICATION_REQUEST,
                field="order_id",
            )

    async def verify(
        self,
        db: AsyncSession,
        caller: Optional[Caller],
        gateway_order_id: Any,
        gateway_payment_id: Any,
        signature: Any,
        order_id: Any,
        network: Optional[NetworkContext] = None,
    ) -> VerificationResult:
        """
        Verify a gateway callback and settle on success.

        Args:
            db: Database session
            caller: Authenticated caller, None if unauthenticated
            gateway_order_id: Gateway intent id (order_...)
            gateway_payment_id: Gateway payment id (pay_...)
            signature: Hex HMAC-SHA256 signature from the gateway
            order_id: Internal order id
            network: Request network context

        Returns:
            VerificationResult: verified=True on success or idempotent replay

        Raises:
            Unauthorized, MalformedRequest, NotFound, TransactionFailed,
            VerificationExpired, ConfigurationError, SignatureInvalid
        """
        start_time = time.monotonic()
        network = network or NetworkContext()

        # Step 1: Authenticate
        if caller is None:
            raise await self._reject(
                db,
                Unauthorized("Missing or invalid credentials"),
                AuditEvent.UNAUTHORIZED_VERIFICATION_ATTEMPT,
                None,
                {"gateway_order_id": gateway_order_id, "order_id": order_id},
                network,
                "unauthorized",
            )

        # Step 2: Validate formats
        try:
            parsed_order_id = self._validate(
                gateway_order_id, gateway_payment_id, signature, order_id
            )
        except MalformedRequest as e:
            details = {key: value for key, value in e.context.items() if key != "event"}
            details.update(
                reason=e.message,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                order_id=order_id,
            )
            raise await self._reject(
                db, e, e.context["event"], caller, details, network, "malformed"
            )

        # Step 3: Load the caller's transaction
        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.gateway_order_id == gateway_order_id,
                PaymentTransaction.user_id == caller.user_id,
                PaymentTransaction.order_id == parsed_order_id,
            )
            .execution_options(populate_existing=True)
        )
        transaction = (await db.execute(stmt)).scalar_one_or_none()
        if transaction is None:
            raise await self._reject(
                db,
                NotFound(
                    "Payment transaction not found",
                    public_message="Payment transaction not found or unauthorized",
                ),
                AuditEvent.PAYMENT_TRANSACTION_NOT_FOUND,
                caller,
                {"gateway_order_id": gateway_order_id, "order_id": parsed_order_id},
                network,
                "not_found",
            )

        # Step 4: Terminal states
        if transaction.status == TransactionStatus.COMPLETED:
            await self.audit_sink.record(
                db,
                AuditEvent.DUPLICATE_VERIFICATION_ATTEMPT,
                caller.user_id,
                {
                    "transaction_id": transaction.id,
                    "gateway_order_id": gateway_order_id,
                    "gateway_payment_id": gateway_payment_id,
                    "stored_payment_id": transaction.gateway_payment_id,
                },
                network,
            )
            await db.commit()
            metrics.record_verification("duplicate")
            return VerificationResult(
                verified=True,
                idempotent=True,
                transaction_id=transaction.id,
                order_id=transaction.order_id,
                gateway_payment_id=transaction.gateway_payment_id or gateway_payment_id,
                processing_time_ms=int((time.monotonic() - start_time) * 1000),
            )

        if transaction.status == TransactionStatus.FAILED:
            raise await self._reject(
                db,
                TransactionFailed("Verification attempted on a failed transaction"),
                AuditEvent.DUPLICATE_VERIFICATION_ATTEMPT,
                caller,
                {
                    "transaction_id": transaction.id,
                    "gateway_order_id": gateway_order_id,
                    "status": transaction.status,
                    "failure_reason": transaction.failure_reason,
                },
                network,
                "transaction_failed",
            )

        # Step 5: Replay window
        age = self.clock() - as_utc(transaction.created_at)
        if age > timedelta(seconds=self.settings.verification_ttl_seconds):
            raise await self._reject(
                db,
                VerificationExpired("Verification window elapsed"),
                AuditEvent.PAYMENT_VERIFICATION_TIMEOUT,
                caller,
                {
                    "transaction_id": transaction.id,
                    "gateway_order_id": gateway_order_id,
                    "age_seconds": int(age.total_seconds()),
                    "ttl_seconds": self.settings.verification_ttl_seconds,
                },
                network,
                "expired",
            )

        # Step 6: Signature
        secret = self.settings.signing_secret
        if not secret:
            raise await self._reject(
                db,
                ConfigurationError("Signing secret is not configured"),
                AuditEvent.PAYMENT_CONFIG_ERROR,
                caller,
                {"transaction_id": transaction.id, "reason": "missing_signing_secret"},
                network,
                "config_error",
            )

        expected = compute_signature(secret, gateway_order_id, gateway_payment_id)
        received = signature.lower()
        if not constant_time_equals(expected, received):
            await self.settlement.reject(
                db,
                transaction,
                FAILURE_REASON_SIGNATURE,
                gateway_payment_id=gateway_payment_id,
                network=network,
            )
            payload = signature_payload(gateway_order_id, gateway_payment_id)
            raise await self._reject(
                db,
                SignatureInvalid("Signature mismatch"),
                AuditEvent.PAYMENT_SIGNATURE_FRAUD,
                caller,
                {
                    "transaction_id": transaction.id,
                    "order_id": transaction.order_id,
                    "gateway_order_id": gateway_order_id,
                    "gateway_payment_id": gateway_payment_id,
                    "expected_length": len(expected),
                    "received_length": len(received),
                    "payload_sha256": hashlib.sha256(payload.encode()).hexdigest(),
                },
                network,
                "signature_invalid",
            )

        # Step 7: Settle
        settlement = await self.settlement.settle(
            db,
            transaction,
            gateway_payment_id,
            received,
            caller=caller,
            network=network,
            started_at=start_time,
        )
        metrics.record_verification("settled" if settlement.settled else "duplicate")
        return VerificationResult(
            verified=settlement.verified,
            idempotent=settlement.idempotent,
            transaction_id=transaction.id,
            order_id=transaction.order_id,
            gateway_payment_id=gateway_payment_id,
            processing_time_ms=int((time.monotonic() - start_time) * 1000),
            settlement=settlement,
        )
