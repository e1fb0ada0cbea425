"""Loyalty ledger client: one redemption per settled order."""
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from payment_settlement.config import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RedemptionResult:
    success: bool
    error: Optional[str] = None


class LoyaltyLedgerClient:
    """
    Calls the external loyalty ledger's redemption entry point.

    Requests carry `Idempotency-Key: loyalty:<order_id>` so the ledger can
    deduplicate per order. Failures are returned, not raised.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport

    async def redeem(
        self,
        user_id: uuid.UUID,
        points: int,
        order_id: uuid.UUID,
        gift_id: Optional[str] = None,
    ) -> RedemptionResult:
        """
        Redeem points against an order.

        Args:
            user_id: Order owner
            points: Points to deduct
            order_id: Order the redemption is tagged with
            gift_id: Optional gift being redeemed

        Returns:
            RedemptionResult: Success flag and error description
        """
        if not self.settings.loyalty_ledger_url:
            logger.error("loyalty_ledger_not_configured", order_id=str(order_id))
            return RedemptionResult(success=False, error="loyalty ledger not configured")

        payload = {
            "user_id": str(user_id),
            "points_to_redeem": points,
            "order_id": str(order_id),
            "gift_id": gift_id,
        }
        headers = {"Idempotency-Key": f"loyalty:{order_id}"}

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.collaborator_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    self.settings.loyalty_ledger_url, json=payload, headers=headers
                )
        except httpx.HTTPError as e:
            logger.error("loyalty_redemption_request_failed", order_id=str(order_id), error=str(e))
            return RedemptionResult(success=False, error=str(e))

        if response.status_code >= 400:
            logger.error(
                "loyalty_redemption_rejected",
                order_id=str(order_id),
                status_code=response.status_code,
            )
            return RedemptionResult(
                success=False, error=f"ledger returned {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("success") is False:
            return RedemptionResult(success=False, error=str(body.get("error") or "rejected"))

        logger.info("loyalty_points_redeemed", order_id=str(order_id), points=points)
        return RedemptionResult(success=True)
