from __future__ import annotations

import secrets
import time
from collections import defaultdict, deque
from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, status

from kindgate.config import get_settings
from kindgate.logging import get_logger
from kindgate.safety.gateway import SafetyGateway

logger = get_logger(__name__)


def require_parent_auth(authorization: str | None = Header(None)) -> str:
    """Require ``Authorization: Bearer <token>`` when PARENT_API_TOKEN is set.

    With no token configured every caller is let through (development).
    Returns the presented token, or an empty string.
    """
    configured = get_settings().parent_api_token
    if not configured:
        return ""

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(token.strip(), configured):
        logger.warning("parent_auth_rejected")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")
    return token.strip()


class SlidingWindowLimiter:
    """Per-key request counter over a trailing time window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def hit(self, key: str, limit: int, window_seconds: float) -> float | None:
        """Count a request. Returns seconds to wait when over the limit."""
        now = self._clock()
        hits = self._hits[key]
        while hits and hits[0] <= now - window_seconds:
            hits.popleft()
        if len(hits) >= limit:
            return hits[0] + window_seconds - now
        hits.append(now)
        return None

    def reset(self) -> None:
        self._hits.clear()


_limiter = SlidingWindowLimiter()


def rate_limiter(token: str = Depends(require_parent_auth)) -> None:
    """Allow RATE_LIMIT_REQUESTS per RATE_LIMIT_WINDOW_SECONDS for each token."""
    settings = get_settings()
    retry_after = _limiter.hit(
        token or "__public__",
        settings.rate_limit_requests,
        settings.rate_limit_window_seconds,
    )
    if retry_after is not None:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(max(1, int(retry_after + 0.5)))},
        )


def reset_rate_limits() -> None:
    _limiter.reset()


# Gateway factory injection
GATEWAY_FACTORY: Callable[[], SafetyGateway] | None = None
_gateway: SafetyGateway | None = None


def set_gateway_factory(factory: Callable[[], SafetyGateway] | None) -> None:
    """Install the factory used to build the app's gateway (tests, embedding apps)."""
    global GATEWAY_FACTORY, _gateway
    GATEWAY_FACTORY = factory
    _gateway = None


def provide_gateway() -> SafetyGateway:
    """Provide the process-wide SafetyGateway, building it on first use."""
    global _gateway
    if _gateway is None:
        _gateway = GATEWAY_FACTORY() if GATEWAY_FACTORY else SafetyGateway()
    return _gateway
