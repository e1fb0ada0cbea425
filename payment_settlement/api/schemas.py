"""
Pydantic schemas for API request/response models.

Payment request fields are loosely typed on purpose: format and range
violations are rejected (and audited) by the services, not by FastAPI.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CreateIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    order_id: Optional[str] = Field(default=None, description="Order to pay for (UUID)")
    amount: Optional[Any] = Field(
        default=None, description="Amount in minor units as displayed to the buyer"
    )
    currency: Optional[str] = Field(default=None, description="Currency code (INR or USD)")
    idempotency_key: Optional[str] = Field(
        default=None, description="Retry key (the X-Idempotency-Key header takes precedence)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "amount": 50000,
                    "currency": "INR",
                }
            ]
        }
    }


class CreateIntentResponse(BaseModel):
    """Response schema for payment intent creation."""

    success: bool = Field(default=True)
    gateway_order_id: str = Field(..., description="Gateway order id (order_...)")
    amount: int = Field(..., description="Authoritative amount in minor units")
    currency: str = Field(..., description="Currency code")
    key_id: str = Field(..., description="Public gateway key id for the checkout")
    order_id: str = Field(..., description="Internal order id")
    transaction_id: str = Field(..., description="Payment transaction id")
    idempotent: bool = Field(..., description="True if an existing intent was returned")
    processing_time_ms: int = Field(..., description="Server-side processing time")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": True,
                    "gateway_order_id": "order_IluGWxBm9U8zJ8",
                    "amount": 50000,
                    "currency": "INR",
                    "key_id": "rzp_test_1DP5mmOlF5G5ag",
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "transaction_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
                    "idempotent": False,
                    "processing_time_ms": 412,
                }
            ]
        }
    }


class VerifyPaymentRequest(BaseModel):
    """Gateway callback fields relayed by the checkout."""

    gateway_order_id: Optional[str] = Field(default=None, description="Gateway order id")
    gateway_payment_id: Optional[str] = Field(default=None, description="Gateway payment id")
    gateway_signature: Optional[str] = Field(default=None, description="Hex HMAC-SHA256")
    order_id: Optional[str] = Field(default=None, description="Internal order id (UUID)")


class VerifyPaymentResponse(BaseModel):
    """Response schema for payment verification."""

    success: bool = Field(default=True)
    verified: bool = Field(..., description="True once the payment is settled")
    idempotent: bool = Field(..., description="True if the payment was already settled")
    order_id: str = Field(..., description="Internal order id")
    gateway_payment_id: str = Field(..., description="Gateway payment id")
    processing_time_ms: int = Field(..., description="Server-side processing time")


class GatewayConfigResponse(BaseModel):
    """Public gateway configuration for the checkout."""

    key_id: str = Field(..., description="Public gateway key id")
    test_mode: bool = Field(..., description="True when using test keys")


class LoginRateLimitRequest(BaseModel):
    """Login throttling request."""

    email: str = Field(..., min_length=3, max_length=320, description="Account email")


class RateLimitResponse(BaseModel):
    """Rate limiter decision."""

    allowed: bool = Field(..., description="Whether the attempt may proceed")
    state: str = Field(..., description="clear, warned or blocked")
    attempts_remaining: int = Field(..., description="Attempts left before blocking")
    blocked_until: Optional[datetime] = Field(default=None, description="Block expiry")


class FormRateLimitResponse(BaseModel):
    """Form submission throttle decision."""

    allowed: bool = Field(..., description="Whether the submission may proceed")
    submissions_remaining: int = Field(..., description="Submissions left in the window")
    reset_time: Optional[datetime] = Field(default=None, description="When the window resets")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None)


class ErrorResponse(BaseModel):
    """Error body returned for every rejected request."""

    success: bool = Field(default=False)
    error: str = Field(..., description="Public error message")
    code: str = Field(..., description="Stable error code")
    retryable: bool = Field(..., description="Whether retrying may succeed")
    blocked_until: Optional[datetime] = Field(default=None)
    details: Optional[List[Any]] = Field(default=None)
