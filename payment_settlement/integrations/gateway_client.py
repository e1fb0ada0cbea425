"""
Payment gateway REST client with retry logic and error classification.

Implements:
- Order (payment intent) creation with Basic auth
- Bounded timeout; a timeout is surfaced as retryable GatewayTimeout
- Retries only for connection failures, where the request never reached the gateway
- Circuit breaker pattern
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_settlement.config import Settings, get_settings
from payment_settlement.core.errors import ConfigurationError, GatewayError, GatewayTimeout
from payment_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_RECEIPT_LENGTH = 40


@dataclass(frozen=True)
class GatewayOrder:
    """Gateway-side payment intent."""

    id: str
    amount: int
    currency: str
    status: str
    receipt: Optional[str] = None


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Stops requests for `timeout` seconds after `failure_threshold`
    consecutive failures, then lets trial calls through.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Gate a call.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and self.clock() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                metrics.record_gateway_api_error("circuit_open")
                raise GatewayError("Circuit breaker is open", retryable=True)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class GatewayClient:
    """
    Wrapper for the gateway REST API.

    Only connection errors are retried: once a request may have reached the
    gateway, the caller decides whether to retry with the same idempotency key.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize gateway client.

        Args:
            settings: Settings override (defaults to environment settings)
            transport: httpx transport override (tests use httpx.MockTransport)
            circuit_breaker: Circuit breaker override
        """
        self.settings = settings or get_settings()
        self.transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @property
    def key_id(self) -> str:
        """Public key id handed to the client-side checkout."""
        return self.settings.gateway_key_id

    def is_configured(self) -> bool:
        return bool(self.settings.gateway_key_id and self.settings.gateway_key_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.gateway_base_url,
            auth=(self.settings.gateway_key_id, self.settings.gateway_key_secret),
            timeout=self.settings.gateway_timeout_seconds,
            transport=self.transport,
        )

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return str(error.get("description") or error.get("code") or "")
        return str(body)[:200]

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        async with self._client() as client:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.ConnectError),
                stop=stop_after_attempt(max(self.settings.gateway_max_retries, 1)),
                wait=wait_exponential(
                    multiplier=self.settings.gateway_retry_base_delay, max=8
                ),
                reraise=True,
            ):
                with attempt:
                    return await client.post(path, json=payload)
        raise GatewayError("Gateway request was not attempted")  # pragma: no cover

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: Optional[str],
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        """
        Create a gateway order (payment intent).

        Args:
            amount: Amount in minor units
            currency: ISO currency code
            receipt: Merchant receipt reference (truncated to 40 chars)
            notes: Notes bag stored with the gateway order

        Returns:
            GatewayOrder: Created gateway order

        Raises:
            ConfigurationError: If credentials are missing
            GatewayTimeout: If the gateway did not answer in time
            GatewayError: For connection failures, open circuit or error responses
        """
        if not self.is_configured():
            raise ConfigurationError("Gateway credentials are not configured")

        self.circuit_breaker.before_call()

        payload: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "payment_capture": 1,
            "notes": notes or {},
        }
        if receipt:
            payload["receipt"] = receipt[:MAX_RECEIPT_LENGTH]

        logger.info("creating_gateway_order", amount=amount, currency=currency, receipt=receipt)

        start_time = time.monotonic()
        try:
            response = await self._post("/orders", payload)
        except httpx.TimeoutException as e:
            self.circuit_breaker.on_failure()
            duration = time.monotonic() - start_time
            metrics.record_gateway_api_call("create_order", "timeout", duration)
            metrics.record_gateway_api_error("timeout")
            logger.error("gateway_timeout", duration_ms=int(duration * 1000), error=str(e))
            raise GatewayTimeout("Gateway request timed out", duration_ms=int(duration * 1000))
        except httpx.HTTPError as e:
            self.circuit_breaker.on_failure()
            metrics.record_gateway_api_call(
                "create_order", "connection_error", time.monotonic() - start_time
            )
            metrics.record_gateway_api_error("connection")
            logger.error("gateway_connection_error", error=str(e))
            raise GatewayError(f"Gateway connection failed: {e}", retryable=True)

        duration = time.monotonic() - start_time

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            if retryable:
                self.circuit_breaker.on_failure()
            else:
                self.circuit_breaker.on_success()
            description = self._error_description(response)
            metrics.record_gateway_api_call("create_order", str(response.status_code), duration)
            metrics.record_gateway_api_error("http_5xx" if retryable else "http_4xx")
            logger.error(
                "gateway_api_error",
                status_code=response.status_code,
                description=description,
            )
            raise GatewayError(
                f"Gateway returned {response.status_code}: {description}",
                retryable=retryable,
                upstream_status=response.status_code,
            )

        self.circuit_breaker.on_success()
        metrics.record_gateway_api_call("create_order", "success", duration)

        try:
            body = response.json()
            order = GatewayOrder(
                id=body["id"],
                amount=int(body.get("amount", amount)),
                currency=body.get("currency", currency),
                status=body.get("status", "created"),
                receipt=body.get("receipt"),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("gateway_response_invalid", error=str(e))
            raise GatewayError("Gateway returned an unreadable order", retryable=True)

        logger.info(
            "gateway_order_created",
            gateway_order_id=order.id,
            duration_ms=int(duration * 1000),
        )
        return order
