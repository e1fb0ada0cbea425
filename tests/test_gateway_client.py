"""
Tests for the gateway REST client.
"""
import base64
import json
from typing import Any, List

import httpx
import pytest

from payment_settlement.core.errors import ConfigurationError, GatewayError, GatewayTimeout
from payment_settlement.integrations.gateway_client import CircuitBreaker, GatewayClient


def order_response(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(
        200,
        json={
            "id": "order_IluGWxBm9U8zJ8",
            "entity": "order",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body.get("receipt"),
            "status": "created",
        },
    )


class TestGatewayClient:
    """Test suite for GatewayClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_success(self, test_settings: Any) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return order_response(request)

        client = GatewayClient(test_settings, transport=httpx.MockTransport(handler))
        order = await client.create_order(
            amount=50000,
            currency="INR",
            receipt="R" * 60,
            notes={"order_id": "abc"},
        )

        assert order.id == "order_IluGWxBm9U8zJ8"
        assert order.amount == 50000
        assert order.status == "created"

        [request] = seen
        assert request.method == "POST"
        assert request.url.path == "/v1/orders"
        credentials = base64.b64encode(b"rzp_test_settlement:test_key_secret").decode()
        assert request.headers["authorization"] == f"Basic {credentials}"
        body = json.loads(request.content)
        assert body["payment_capture"] == 1
        assert body["receipt"] == "R" * 40
        assert body["notes"] == {"order_id": "abc"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, test_settings: Any) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("gateway slow", request=request)

        client = GatewayClient(test_settings, transport=httpx.MockTransport(handler))

        with pytest.raises(GatewayTimeout) as exc_info:
            await client.create_order(50000, "INR", "R-1")

        assert exc_info.value.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self, test_settings: Any) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount invalid"}},
            )

        client = GatewayClient(test_settings, transport=httpx.MockTransport(handler))

        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(50000, "INR", "R-1")

        assert exc_info.value.retryable is False
        assert exc_info.value.upstream_status == 400
        assert "amount invalid" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_is_retryable_and_not_repeated(self, test_settings: Any) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(502, text="Bad Gateway")

        client = GatewayClient(test_settings, transport=httpx.MockTransport(handler))

        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(50000, "INR", "R-1")

        assert exc_info.value.retryable is True
        assert exc_info.value.upstream_status == 502
        assert len(calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, test_settings: Any) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return order_response(request)

        client = GatewayClient(test_settings, transport=httpx.MockTransport(handler))
        order = await client.create_order(50000, "INR", "R-1")

        assert order.id == "order_IluGWxBm9U8zJ8"
        assert len(calls) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_retries_exhausted(self, test_settings: Any) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = GatewayClient(test_settings, transport=httpx.MockTransport(handler))

        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(50000, "INR", "R-1")

        assert exc_info.value.retryable is True
        assert len(calls) == test_settings.gateway_max_retries

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(update={"gateway_key_secret": ""})
        client = GatewayClient(settings, transport=httpx.MockTransport(order_response))

        assert client.is_configured() is False
        with pytest.raises(ConfigurationError):
            await client.create_order(50000, "INR", "R-1")


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_calls(self, test_settings: Any) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        breaker = CircuitBreaker(failure_threshold=2, timeout=30)
        client = GatewayClient(
            test_settings, transport=httpx.MockTransport(handler), circuit_breaker=breaker
        )

        for _ in range(3):
            with pytest.raises(GatewayError):
                await client.create_order(50000, "INR", "R-1")

        assert breaker.state == "open"
        assert len(calls) == 2

    @pytest.mark.unit
    def test_half_open_after_timeout_then_closes(self) -> None:
        now = [1000.0]
        breaker = CircuitBreaker(
            failure_threshold=1, timeout=30, success_threshold=2, clock=lambda: now[0]
        )

        breaker.on_failure()
        assert breaker.state == "open"
        with pytest.raises(GatewayError):
            breaker.before_call()

        now[0] += 31
        breaker.before_call()
        assert breaker.state == "half_open"

        breaker.on_success()
        breaker.on_success()
        assert breaker.state == "closed"

    @pytest.mark.unit
    def test_failure_while_half_open_reopens(self) -> None:
        now = [1000.0]
        breaker = CircuitBreaker(failure_threshold=5, timeout=30, clock=lambda: now[0])
        breaker.state = "open"
        breaker.last_failure_time = now[0]

        now[0] += 31
        breaker.before_call()
        breaker.on_failure()

        assert breaker.state == "open"
