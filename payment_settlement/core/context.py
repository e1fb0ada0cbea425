"""Caller identity and request network context."""
import ipaddress
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_CLIENT_IP = "127.0.0.1"
MAX_USER_AGENT_LENGTH = 200


@dataclass(frozen=True)
class Caller:
    """Authenticated principal making the request."""

    user_id: uuid.UUID
    email: Optional[str] = None


@dataclass(frozen=True)
class NetworkContext:
    """Client address and user agent captured from the request."""

    ip_address: str = DEFAULT_CLIENT_IP
    user_agent: str = "unknown"

    @property
    def short_user_agent(self) -> str:
        return self.user_agent[:MAX_USER_AGENT_LENGTH]


def _valid_ip(candidate: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(candidate.strip()))
    except ValueError:
        return None


def extract_client_ip(headers: Mapping[str, str]) -> str:
    """
    Resolve the client address from proxy headers.

    Takes the first valid address in X-Forwarded-For, then X-Real-IP,
    falling back to loopback.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        for part in forwarded.split(","):
            ip = _valid_ip(part)
            if ip:
                return ip

    real_ip = headers.get("x-real-ip")
    if real_ip:
        ip = _valid_ip(real_ip)
        if ip:
            return ip

    return DEFAULT_CLIENT_IP


def network_context_from_headers(headers: Mapping[str, str]) -> NetworkContext:
    """Build a NetworkContext from request headers."""
    return NetworkContext(
        ip_address=extract_client_ip(headers),
        user_agent=headers.get("user-agent") or "unknown",
    )
