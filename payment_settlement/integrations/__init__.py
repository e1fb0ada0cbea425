"""External service integrations."""
from .gateway_client import CircuitBreaker, GatewayClient, GatewayOrder
from .loyalty import LoyaltyLedgerClient, RedemptionResult
from .notifications import NotificationClient, NotificationDeliveryError

__all__ = [
    "CircuitBreaker",
    "GatewayClient",
    "GatewayOrder",
    "LoyaltyLedgerClient",
    "NotificationClient",
    "NotificationDeliveryError",
    "RedemptionResult",
]
