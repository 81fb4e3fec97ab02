"""
Tests for notification events and the webhook notifier.
"""

from datetime import datetime

import pytest

from kindgate.errors import NotificationError
from kindgate.safety.notifications import NotificationEvent, WebhookNotifier, excerpt


class FakeResponse:
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession, recording posted payloads."""

    def __init__(self, status: int = 200, body: str = ""):
        self.status = status
        self.body = body
        self.posts: list[tuple[str, dict]] = []

    def post(self, url, json=None):
        self.posts.append((url, json))
        return FakeResponse(self.status, self.body)


def make_event(method="push"):
    return NotificationEvent(
        kind="approval_requested",
        request_id="review_abc",
        user_id="child_1",
        priority="urgent",
        content_excerpt="How to make a weapon",
        method=method,
        status="pending",
        timestamp=datetime(2026, 3, 1, 9, 0, 0),
    )


def test_excerpt_truncates():
    assert excerpt("x" * 150) == "x" * 100
    assert excerpt("short") == "short"


def test_event_to_dict():
    data = make_event().to_dict()
    assert data["kind"] == "approval_requested"
    assert data["timestamp"] == "2026-03-01T09:00:00"


async def test_webhook_posts_event():
    session = FakeSession()
    notifier = WebhookNotifier("https://parents.example/hook", session=session)

    await notifier(make_event())

    assert len(session.posts) == 1
    url, payload = session.posts[0]
    assert url == "https://parents.example/hook"
    assert payload["request_id"] == "review_abc"
    assert payload["method"] == "push"


async def test_webhook_filters_methods():
    session = FakeSession()
    notifier = WebhookNotifier("https://parents.example/hook", methods=["email"], session=session)

    await notifier(make_event("push"))
    await notifier(make_event("email"))

    assert [p[1]["method"] for p in session.posts] == ["email"]


async def test_webhook_error_status_raises():
    session = FakeSession(status=503, body="unavailable")
    notifier = WebhookNotifier("https://parents.example/hook", session=session)

    with pytest.raises(NotificationError) as exc_info:
        await notifier(make_event())

    assert exc_info.value.details["status"] == 503


async def test_webhook_failure_does_not_break_workflow(workflow):
    notifier = WebhookNotifier(
        "https://parents.example/hook", session=FakeSession(status=500)
    )
    workflow.subscribe(notifier)

    request = await workflow.request_approval("ghosts", "child_1")
    assert request.status.value == "pending"

    await workflow.flush_notifications()
    assert workflow.pending_deliveries == 0
