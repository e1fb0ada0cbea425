"""Database package for payment settlement."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Order,
    OutboxEvent,
    PaymentStatus,
    PaymentTransaction,
    RateLimitRecord,
    SecurityAuditLog,
    TransactionStatus,
)

__all__ = [
    "Base",
    "Order",
    "OutboxEvent",
    "PaymentStatus",
    "PaymentTransaction",
    "RateLimitRecord",
    "SecurityAuditLog",
    "TransactionStatus",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
