"""
Bearer token authentication.

Payment endpoints take an optional caller so that unauthenticated attempts
reach the services and get audited before being rejected.
"""
import uuid
from typing import Optional

import jwt
import structlog
from fastapi import Header

from payment_settlement.config import get_settings
from payment_settlement.core.context import Caller
from payment_settlement.core.errors import Unauthorized

logger = structlog.get_logger(__name__)


def decode_caller(token: str) -> Optional[Caller]:
    """Verify an access token and return its caller, or None if invalid."""
    settings = get_settings()
    options = {"require": ["sub", "exp"]}
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options if settings.jwt_audience else {**options, "verify_aud": False},
        )
        user_id = uuid.UUID(str(claims["sub"]))
    except jwt.InvalidTokenError as e:
        logger.info("access_token_rejected", error=str(e))
        return None
    except ValueError:
        logger.info("access_token_rejected", error="subject is not a UUID")
        return None

    return Caller(user_id=user_id, email=claims.get("email"))


async def get_optional_caller(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Optional[Caller]:
    """Caller from the Authorization header, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return decode_caller(token.strip())


async def get_current_caller(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Caller:
    """
    Caller from the Authorization header.

    Raises:
        Unauthorized: If the header is missing or the token is invalid
    """
    caller = await get_optional_caller(authorization)
    if caller is None:
        raise Unauthorized("Missing or invalid credentials")
    return caller
