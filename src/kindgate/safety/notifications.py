"""
Notification events for the parental approval workflow.

The workflow publishes one event per transition and per configured
notification method. Delivery is done by listeners; ``WebhookNotifier``
forwards events to a parent dashboard or push gateway over HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import aiohttp

from kindgate.errors import NotificationError
from kindgate.logging import get_logger

logger = get_logger(__name__)

EXCERPT_LENGTH = 100


def excerpt(content: str, length: int = EXCERPT_LENGTH) -> str:
    return content[:length]


@dataclass(frozen=True)
class NotificationEvent:
    """Payload delivered to notification listeners."""

    kind: str  # approval_requested, parental_decision, approval_expired
    request_id: str
    user_id: str
    priority: str
    content_excerpt: str
    method: str
    status: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "priority": self.priority,
            "content_excerpt": self.content_excerpt,
            "method": self.method,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }


class WebhookNotifier:
    """POST workflow events as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        methods: list[str] | None = None,
        timeout_seconds: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        """
        Args:
            url: Endpoint receiving the events
            methods: Only forward events for these methods (all when None)
            timeout_seconds: Total request timeout
            session: Shared client session (a new one per call when None)
        """
        self.url = url
        self.methods = set(methods) if methods else None
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session

    async def __call__(self, event: NotificationEvent) -> None:
        if self.methods is not None and event.method not in self.methods:
            return

        if self._session is not None:
            await self._post(self._session, event)
            return

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            await self._post(session, event)

    async def _post(self, session: aiohttp.ClientSession, event: NotificationEvent) -> None:
        async with session.post(self.url, json=event.to_dict()) as response:
            if response.status >= 400:
                error_text = await response.text()
                raise NotificationError(
                    f"Webhook error: {response.status} - {error_text}",
                    {"url": self.url, "status": response.status},
                )

        logger.debug(
            "notification_sent",
            kind=event.kind,
            request_id=event.request_id,
            method=event.method,
        )
