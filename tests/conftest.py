"""
Shared fixtures for KindGate tests.
"""

from datetime import datetime, timedelta

import pytest

from kindgate.config import AgeGroup, Settings
from kindgate.safety.approval import ApprovalWorkflow
from kindgate.safety.audit import AuditLog
from kindgate.safety.cache import ValidationCache
from kindgate.safety.gateway import SafetyGateway
from kindgate.safety.rules import RuleStore


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic clock for cache tests."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ticks():
    return FakeMonotonic()


@pytest.fixture
def settings():
    """Settings that do not depend on the environment."""
    return Settings(
        parent_api_token=None,
        default_age_group=AgeGroup.CHILD,
        audit_include_content=True,
        review_timeout_hours=24,
        auto_approve_after_timeout=False,
        notification_methods=["push"],
    )


@pytest.fixture
def rule_store():
    return RuleStore()


@pytest.fixture
def audit_log(clock):
    return AuditLog(clock=clock)


@pytest.fixture
def workflow(audit_log, clock):
    return ApprovalWorkflow(audit_log=audit_log, clock=clock)


@pytest.fixture
def gateway(settings, rule_store, audit_log, workflow, clock):
    return SafetyGateway(
        clock=clock,
        rule_store=rule_store,
        cache=ValidationCache(),
        audit_log=audit_log,
        workflow=workflow,
        settings=settings,
    )
