"""
Safety validation and parental approval engine for KindGate.

This module provides:
1. A rule store holding pattern rules and per-age-group policies
2. A five-stage content filter pipeline
3. A short-TTL verdict cache
4. An append-only audit log with reports
5. A parental approval workflow with safety exceptions
6. The SafetyGateway entry point composing all of the above

The system is fail-safe: if validation fails, input is blocked and output
is replaced with a safe refusal.
"""

from kindgate.safety.approval import (
    ApprovalWorkflow,
    ParentalResponse,
    ParentalReviewRequest,
    ReviewPriority,
    ReviewStatus,
    SafetyException,
)
from kindgate.safety.audit import (
    AuditEventType,
    AuditFilters,
    AuditLog,
    JsonlAuditSink,
    SafetyAuditEntry,
    SafetyReport,
    TimeRange,
)
from kindgate.safety.base import (
    ContentContext,
    Direction,
    RiskLevel,
    RuleAction,
    RuleCategory,
    Severity,
    ValidationVerdict,
    Violation,
    ViolationType,
)
from kindgate.safety.cache import ValidationCache
from kindgate.safety.gateway import SafetyGateway
from kindgate.safety.notifications import NotificationEvent, WebhookNotifier
from kindgate.safety.pipeline import ContentFilterPipeline
from kindgate.safety.rules import (
    RuleConfiguration,
    RuleFilters,
    RuleSet,
    RuleStore,
    SafetyRule,
)

__all__ = [
    # Base types
    "ContentContext",
    "Direction",
    "RiskLevel",
    "RuleAction",
    "RuleCategory",
    "Severity",
    "ValidationVerdict",
    "Violation",
    "ViolationType",
    # Rules
    "RuleConfiguration",
    "RuleFilters",
    "RuleSet",
    "RuleStore",
    "SafetyRule",
    # Pipeline and cache
    "ContentFilterPipeline",
    "ValidationCache",
    # Audit
    "AuditEventType",
    "AuditFilters",
    "AuditLog",
    "JsonlAuditSink",
    "SafetyAuditEntry",
    "SafetyReport",
    "TimeRange",
    # Parental workflow
    "ApprovalWorkflow",
    "ParentalResponse",
    "ParentalReviewRequest",
    "ReviewPriority",
    "ReviewStatus",
    "SafetyException",
    "NotificationEvent",
    "WebhookNotifier",
    # Entry point
    "SafetyGateway",
]
