"""
Security audit sink.

Every decision on the money path is appended to security_audit_logs and
mirrored to the structured log. Recording never raises: a failed insert is
rolled back to its savepoint, logged, counted and swallowed.
"""
import enum
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_settlement.core.context import NetworkContext
from payment_settlement.database.models import SecurityAuditLog, utcnow
from payment_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class AuditEvent(str, enum.Enum):
    """Closed set of audit event types."""

    UNAUTHORIZED_PAYMENT_ATTEMPT = "UNAUTHORIZED_PAYMENT_ATTEMPT"
    UNAUTHORIZED_VERIFICATION_ATTEMPT = "UNAUTHORIZED_VERIFICATION_ATTEMPT"
    INVALID_PAYMENT_REQUEST = "INVALID_PAYMENT_REQUEST"
    PAYMENT_RATE_LIMITED = "PAYMENT_RATE_LIMITED"
    INVALID_ORDER_ACCESS = "INVALID_ORDER_ACCESS"
    DUPLICATE_PAYMENT_ATTEMPT = "DUPLICATE_PAYMENT_ATTEMPT"
    AMOUNT_MANIPULATION_ATTEMPT = "AMOUNT_MANIPULATION_ATTEMPT"
    PAYMENT_CONFIG_ERROR = "PAYMENT_CONFIG_ERROR"
    GATEWAY_API_ERROR = "GATEWAY_API_ERROR"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    PAYMENT_TRACKING_ERROR = "PAYMENT_TRACKING_ERROR"
    IDEMPOTENT_REPLAY = "IDEMPOTENT_REPLAY"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    INVALID_VERIFICATION_REQUEST = "INVALID_VERIFICATION_REQUEST"
    INVALID_PAYMENT_ID_FORMAT = "INVALID_PAYMENT_ID_FORMAT"
    PAYMENT_TRANSACTION_NOT_FOUND = "PAYMENT_TRANSACTION_NOT_FOUND"
    DUPLICATE_VERIFICATION_ATTEMPT = "DUPLICATE_VERIFICATION_ATTEMPT"
    PAYMENT_VERIFICATION_TIMEOUT = "PAYMENT_VERIFICATION_TIMEOUT"
    PAYMENT_SIGNATURE_FRAUD = "PAYMENT_SIGNATURE_FRAUD"
    SETTLEMENT_RACE_LOST = "SETTLEMENT_RACE_LOST"
    ORDER_UPDATE_ERROR = "ORDER_UPDATE_ERROR"
    ORDER_STATE_CONFLICT = "ORDER_STATE_CONFLICT"
    LOYALTY_REDEMPTION_FAILED = "LOYALTY_REDEMPTION_FAILED"
    PAYMENT_VERIFIED_SUCCESS = "PAYMENT_VERIFIED_SUCCESS"
    LOGIN_BLOCKED = "LOGIN_BLOCKED"
    RATE_LIMIT_RESET = "RATE_LIMIT_RESET"


# Events that indicate tampering or abuse; logged at warning level
_FRAUD_EVENTS = frozenset(
    {
        AuditEvent.UNAUTHORIZED_PAYMENT_ATTEMPT,
        AuditEvent.UNAUTHORIZED_VERIFICATION_ATTEMPT,
        AuditEvent.AMOUNT_MANIPULATION_ATTEMPT,
        AuditEvent.PAYMENT_SIGNATURE_FRAUD,
        AuditEvent.INVALID_ORDER_ACCESS,
        AuditEvent.LOGIN_BLOCKED,
        AuditEvent.PAYMENT_RATE_LIMITED,
    }
)


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class AuditSink:
    """Append-only writer for security audit entries."""

    async def record(
        self,
        db: AsyncSession,
        event_type: AuditEvent,
        user_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        network: Optional[NetworkContext] = None,
    ) -> None:
        """
        Append an audit entry inside the caller's unit of work.

        The entry becomes durable when the caller commits. A failed insert
        rolls back only its own savepoint.

        Args:
            db: Database session
            event_type: Audit event type
            user_id: Identity the event concerns (user id or email), if known
            details: Structured detail payload (JSON-serializable)
            network: Request network context
        """
        details = {key: _jsonable(value) for key, value in (details or {}).items()}
        identity = str(user_id) if user_id is not None else None
        ip_address = network.ip_address if network else None
        user_agent = network.short_user_agent if network else None

        log = logger.warning if event_type in _FRAUD_EVENTS else logger.info
        log(
            "security_audit",
            audit_event=event_type.value,
            user_id=identity,
            ip_address=ip_address,
            details=details,
        )

        try:
            async with db.begin_nested():
                db.add(
                    SecurityAuditLog(
                        event_type=event_type.value,
                        user_id=identity,
                        details=details,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        timestamp=utcnow(),
                    )
                )
        except SQLAlchemyError as e:
            metrics.record_audit_write_failure(event_type.value)
            logger.error(
                "security_audit_write_failed",
                audit_event=event_type.value,
                user_id=identity,
                error=str(e),
            )
