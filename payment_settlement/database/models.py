"""SQLAlchemy database models for the payment settlement core."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes read back from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentStatus:
    """Order.payment_status values."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionStatus:
    """PaymentTransaction.status values."""

    CREATED = "created"
    COMPLETED = "completed"
    FAILED = "failed"


class Order(Base):
    """
    Authoritative purchase record.

    Owned by the order/catalog store. The settlement core reads
    final_amount and the status fields and writes only the payment columns.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    final_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    loyalty_points_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    loyalty_gift_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("final_amount >= 0", name="non_negative_final_amount"),
        CheckConstraint(
            "payment_status IN ('pending', 'completed', 'failed')",
            name="valid_payment_status",
        ),
        CheckConstraint("loyalty_points_used >= 0", name="non_negative_loyalty_points"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"final_amount={self.final_amount}, payment_status={self.payment_status})>"
        )


class PaymentTransaction(Base):
    """
    One attempt to pay for an order through the gateway.

    Created in status 'created' by the intent manager and moved exactly once
    to 'completed' or 'failed' by the settlement state machine. Never deleted.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.CREATED, index=True
    )
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="razorpay")
    gateway_order_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    request_user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    verification_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    verification_user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "idempotency_key", name="uq_payment_transactions_user_idempotency_key"
        ),
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('created', 'completed', 'failed')",
            name="valid_transaction_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payment_transactions_order_user", "order_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(id={self.id}, gateway_order_id={self.gateway_order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class RateLimitRecord(Base):
    """
    Per-identity attempt counters for one throttling policy.

    Updated with versioned conditional writes so the counters hold across
    service instances. Blocking iff blocked_until lies in the future.
    """

    __tablename__ = "rate_limit_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(50), nullable=False)
    identity: Mapped[str] = mapped_column(String(320), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    window_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("scope", "identity", name="uq_rate_limit_scope_identity"),
        CheckConstraint("attempt_count >= 0", name="non_negative_attempts"),
    )

    def __repr__(self) -> str:
        """String representation of RateLimitRecord."""
        return (
            f"<RateLimitRecord(scope={self.scope}, identity={self.identity}, "
            f"attempts={self.attempt_count}, blocked_until={self.blocked_until})>"
        )


class SecurityAuditLog(Base):
    """
    Security audit trail table.

    Append-only. Immutable once written.
    """

    __tablename__ = "security_audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(320), nullable=True, index=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of SecurityAuditLog."""
        return f"<SecurityAuditLog(id={self.id}, type={self.event_type}, user={self.user_id})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notification events are written in the same transaction as the state
    change that produced them, then delivered by the outbox publisher worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
