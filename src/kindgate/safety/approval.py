"""
Parental approval workflow.

Review requests are created when content cannot be allowed on its own.
Each request moves from ``pending`` to exactly one terminal state:

    pending -> approved   (parent approves; a safety exception is created)
    pending -> rejected   (parent rejects; audit trail only)
    pending -> expired    (timeout sweep; auto-approve or auto-reject policy)

Approved content is remembered as a per-user safety exception, bounded in
time and usage. Exceptions are never deleted: once expired, used up or
revoked they simply stop matching.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any
from uuid import uuid4

from kindgate.config import AgeGroup
from kindgate.errors import RequestNotFoundError, RequestNotPendingError
from kindgate.logging import get_logger
from kindgate.safety.audit import AuditEventType, AuditLog, SafetyAuditEntry
from kindgate.safety.base import ContentContext, RiskLevel, Violation
from kindgate.safety.locks import KeyedLocks
from kindgate.safety.notifications import NotificationEvent, excerpt

logger = get_logger(__name__)


class ReviewStatus(str, Enum):
    """Status of a parental review request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ReviewPriority(str, Enum):
    """Priority levels for parental review requests."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_risk(cls, risk_level: RiskLevel) -> "ReviewPriority":
        return {
            RiskLevel.HIGH: cls.URGENT,
            RiskLevel.MEDIUM: cls.HIGH,
            RiskLevel.LOW: cls.MEDIUM,
        }[risk_level]


PRIORITY_ORDER = {
    ReviewPriority.URGENT: 0,
    ReviewPriority.HIGH: 1,
    ReviewPriority.MEDIUM: 2,
    ReviewPriority.LOW: 3,
}


def normalize_content(content: str) -> str:
    return " ".join(content.lower().split())


@dataclass
class ParentalResponse:
    """A parent's (or the timeout policy's) decision on a request."""

    approved: bool
    reason: str
    responded_by: str
    responded_at: datetime
    exception_hours: float | None = None


@dataclass
class ParentalReviewRequest:
    """A pending decision artifact for content the filter would not allow."""

    id: str
    user_id: str
    content: str
    violations: list[Violation]
    risk_level: RiskLevel
    requested_at: datetime
    expires_at: datetime
    priority: ReviewPriority
    context: ContentContext = ContentContext.VOICE_INPUT
    status: ReviewStatus = ReviewStatus.PENDING
    response: ParentalResponse | None = None
    exception_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ReviewStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "violations": [v.to_dict() for v in self.violations],
            "risk_level": self.risk_level.value,
            "requested_at": self.requested_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "priority": self.priority.value,
            "context": self.context.value,
            "status": self.status.value,
            "response": (
                {
                    "approved": self.response.approved,
                    "reason": self.response.reason,
                    "responded_by": self.response.responded_by,
                    "responded_at": self.response.responded_at.isoformat(),
                    "exception_hours": self.response.exception_hours,
                }
                if self.response
                else None
            ),
            "exception_id": self.exception_id,
        }


@dataclass
class SafetyException:
    """A time- and usage-bounded parental override for one user."""

    id: str
    user_id: str
    pattern: str
    reason: str
    approved_by: str
    created_at: datetime
    expires_at: datetime | None
    max_usage: int
    usage_count: int = 0
    contexts: list[ContentContext] = field(default_factory=lambda: list(ContentContext))
    request_id: str | None = None
    revoked_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        if self.expires_at is not None and now >= self.expires_at:
            return False
        return self.usage_count < self.max_usage

    def matches(self, content: str, context: ContentContext, now: datetime) -> bool:
        return (
            self.is_active(now)
            and context in self.contexts
            and self.pattern in normalize_content(content)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "pattern": self.pattern,
            "reason": self.reason,
            "approved_by": self.approved_by,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "usage_count": self.usage_count,
            "max_usage": self.max_usage,
            "contexts": [c.value for c in self.contexts],
            "request_id": self.request_id,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }


NotificationListener = Callable[[NotificationEvent], Any]


class ApprovalWorkflow:
    """
    Manages parental review requests and the safety exceptions they create.

    Features:
    - Priority derived from risk level
    - Timeout sweep with configurable auto-approve / auto-reject policy
    - Notification fan-out once per configured method
    - Per-user locking around exception usage counting
    """

    def __init__(
        self,
        audit_log: AuditLog | None = None,
        review_timeout_hours: float = 24.0,
        auto_approve_after_timeout: bool = False,
        notification_methods: list[str] | None = None,
        exception_default_hours: float = 24.0,
        exception_max_usage: int = 5,
        request_retention_hours: float = 168.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the workflow.

        Args:
            audit_log: Where transitions are recorded
            review_timeout_hours: Hours before a pending request expires
            auto_approve_after_timeout: Approve instead of reject on expiry
            notification_methods: Channels each event is fanned out to
            exception_default_hours: Lifetime of exceptions from approvals
            exception_max_usage: Uses allowed per exception
            request_retention_hours: Hours a decided request is kept for lookup
            clock: Wall clock for request and exception timestamps
        """
        self.audit_log = audit_log
        self.review_timeout = timedelta(hours=review_timeout_hours)
        self.auto_approve_after_timeout = auto_approve_after_timeout
        self.notification_methods = list(notification_methods or ["push"])
        self.exception_default_hours = exception_default_hours
        self.exception_max_usage = exception_max_usage
        self.request_retention = timedelta(hours=request_retention_hours)
        self._clock = clock

        self._requests: dict[str, ParentalReviewRequest] = {}
        self._exceptions: dict[str, list[SafetyException]] = defaultdict(list)
        self._age_groups: dict[str, AgeGroup] = {}
        self._user_locks = KeyedLocks()
        self._deliveries: set[asyncio.Future] = set()
        self._listeners: list[NotificationListener] = []

    # === Review requests ===

    async def request_approval(
        self,
        content: str,
        user_id: str,
        violations: list[Violation] | None = None,
        risk_level: RiskLevel = RiskLevel.MEDIUM,
        context: ContentContext = ContentContext.VOICE_INPUT,
    ) -> ParentalReviewRequest:
        """
        Create a review request, or return the pending one for the same content.

        Returns:
            The pending ParentalReviewRequest
        """
        normalized = normalize_content(content)
        for existing in self._requests.values():
            if (
                existing.status == ReviewStatus.PENDING
                and existing.user_id == user_id
                and normalize_content(existing.content) == normalized
            ):
                logger.debug("approval_request_reused", request_id=existing.id)
                return existing

        now = self._clock()
        request = ParentalReviewRequest(
            id=f"review_{uuid4().hex[:12]}",
            user_id=user_id,
            content=content,
            violations=list(violations or []),
            risk_level=risk_level,
            requested_at=now,
            expires_at=now + self.review_timeout,
            priority=ReviewPriority.from_risk(risk_level),
            context=context,
        )
        self._requests[request.id] = request

        logger.info(
            "approval_requested",
            request_id=request.id,
            user_id=user_id,
            priority=request.priority.value,
        )
        self._audit(
            AuditEventType.APPROVAL_REQUESTED,
            request,
            parental_review_required=True,
        )
        self._notify("approval_requested", request)
        return request

    async def process_decision(
        self,
        request_id: str,
        approved: bool,
        reason: str = "",
        exception_hours: float | None = None,
        responded_by: str = "parent",
    ) -> ParentalReviewRequest:
        """
        Apply a parent's decision to a pending request.

        Raises:
            RequestNotFoundError: Unknown request id
            RequestNotPendingError: Request already reached a terminal state
        """
        request = self.get_request(request_id)
        now = self._clock()

        if request.status == ReviewStatus.PENDING and now >= request.expires_at:
            await self._expire(request, now)

        if request.is_terminal:
            logger.warning(
                "review_invalid_status",
                request_id=request_id,
                status=request.status.value,
            )
            raise RequestNotPendingError(
                f"Request {request_id} is already {request.status.value}",
                {"request_id": request_id, "status": request.status.value},
            )

        request.response = ParentalResponse(
            approved=approved,
            reason=reason,
            responded_by=responded_by,
            responded_at=now,
            exception_hours=exception_hours,
        )
        request.status = ReviewStatus.APPROVED if approved else ReviewStatus.REJECTED

        logger.info(
            "parental_decision",
            request_id=request_id,
            approved=approved,
            responded_by=responded_by,
        )
        self._audit(
            AuditEventType.PARENTAL_DECISION,
            request,
            metadata={"approved": approved, "reason": reason, "responded_by": responded_by},
        )

        if approved:
            exception = self.create_safety_exception(
                pattern=request.content,
                user_id=request.user_id,
                reason=reason or "Approved by parent",
                approved_by=responded_by,
                hours=exception_hours,
                contexts=[request.context],
                request_id=request.id,
            )
            request.exception_id = exception.id

        self._notify("parental_decision", request)
        return request

    async def sweep_expired(self, now: datetime | None = None) -> list[ParentalReviewRequest]:
        """Expire every pending request whose deadline has passed."""
        now = now or self._clock()
        expired = [
            r
            for r in self._requests.values()
            if r.status == ReviewStatus.PENDING and now >= r.expires_at
        ]
        for request in expired:
            await self._expire(request, now)

        if expired:
            logger.info("review_requests_expired", count=len(expired))
        self.prune_decided(now)
        return expired

    def prune_decided(self, now: datetime | None = None) -> int:
        """Forget terminal requests decided longer ago than the retention window."""
        cutoff = (now or self._clock()) - self.request_retention
        stale = [
            r.id
            for r in self._requests.values()
            if r.is_terminal and r.response is not None and r.response.responded_at < cutoff
        ]
        for request_id in stale:
            del self._requests[request_id]
        if stale:
            logger.info("review_requests_pruned", count=len(stale))
        return len(stale)

    async def _expire(self, request: ParentalReviewRequest, now: datetime) -> None:
        request.status = ReviewStatus.EXPIRED
        request.response = ParentalResponse(
            approved=self.auto_approve_after_timeout,
            reason="Review timed out",
            responded_by="system",
            responded_at=now,
        )

        logger.warning(
            "review_request_expired",
            request_id=request.id,
            auto_approved=self.auto_approve_after_timeout,
        )
        self._audit(
            AuditEventType.APPROVAL_EXPIRED,
            request,
            metadata={"auto_approved": self.auto_approve_after_timeout},
        )

        if self.auto_approve_after_timeout:
            exception = self.create_safety_exception(
                pattern=request.content,
                user_id=request.user_id,
                reason="Auto-approved after review timeout",
                approved_by="system",
                contexts=[request.context],
                request_id=request.id,
            )
            request.exception_id = exception.id

        self._notify("approval_expired", request)

    def get_request(self, request_id: str) -> ParentalReviewRequest:
        request = self._requests.get(request_id)
        if request is None:
            logger.warning("review_not_found", request_id=request_id)
            raise RequestNotFoundError(
                f"Review request not found: {request_id}", {"request_id": request_id}
            )
        return request

    def get_pending(
        self, user_id: str | None = None, limit: int | None = None
    ) -> list[ParentalReviewRequest]:
        """Pending requests, urgent first, then oldest first."""
        pending = [
            r
            for r in self._requests.values()
            if r.status == ReviewStatus.PENDING
            and (user_id is None or r.user_id == user_id)
        ]
        pending.sort(key=lambda r: (PRIORITY_ORDER[r.priority], r.requested_at))
        return pending[:limit] if limit is not None else pending

    @property
    def pending_count(self) -> int:
        return sum(1 for r in self._requests.values() if r.status == ReviewStatus.PENDING)

    # === Safety exceptions ===

    def create_safety_exception(
        self,
        pattern: str,
        user_id: str,
        reason: str,
        approved_by: str = "parent",
        hours: float | None = None,
        max_usage: int | None = None,
        contexts: list[ContentContext] | None = None,
        request_id: str | None = None,
    ) -> SafetyException:
        """Create a usage- and time-bounded override for one user."""
        now = self._clock()
        exception = SafetyException(
            id=f"exception_{uuid4().hex[:12]}",
            user_id=user_id,
            pattern=normalize_content(pattern),
            reason=reason,
            approved_by=approved_by,
            created_at=now,
            expires_at=now + timedelta(hours=hours or self.exception_default_hours),
            max_usage=max_usage or self.exception_max_usage,
            contexts=list(contexts or ContentContext),
            request_id=request_id,
        )
        self._exceptions[user_id].append(exception)

        logger.info(
            "exception_created",
            exception_id=exception.id,
            user_id=user_id,
            max_usage=exception.max_usage,
        )
        if self.audit_log is not None:
            self.audit_log.log(
                SafetyAuditEntry(
                    timestamp=now,
                    user_id=user_id,
                    event_type=AuditEventType.EXCEPTION_CREATED,
                    original_content=pattern,
                    request_id=request_id,
                    metadata={"exception_id": exception.id, "reason": reason},
                )
            )
        return exception

    async def check_exception(
        self,
        content: str,
        user_id: str,
        context: ContentContext = ContentContext.VOICE_INPUT,
    ) -> SafetyException | None:
        """
        Find an active exception matching the content and count one use.

        Calls for the same user are serialized; other users are not affected.
        """
        if not self._exceptions.get(user_id):
            return None

        async with self._user_locks.hold(user_id):
            now = self._clock()
            for exception in self._exceptions[user_id]:
                if exception.matches(content, context, now):
                    exception.usage_count += 1
                    logger.info(
                        "exception_applied",
                        exception_id=exception.id,
                        user_id=user_id,
                        usage_count=exception.usage_count,
                        max_usage=exception.max_usage,
                    )
                    return exception
        return None

    def get_active_exceptions(self, user_id: str) -> list[SafetyException]:
        now = self._clock()
        return [e for e in self._exceptions.get(user_id, []) if e.is_active(now)]

    def revoke_exceptions(self, user_id: str, reason: str) -> int:
        """Mark every active exception for a user as revoked."""
        now = self._clock()
        revoked = 0
        for exception in self._exceptions.get(user_id, []):
            if exception.is_active(now):
                exception.revoked_at = now
                revoked += 1

        if revoked:
            logger.info("exceptions_revoked", user_id=user_id, count=revoked, reason=reason)
            if self.audit_log is not None:
                self.audit_log.log(
                    SafetyAuditEntry(
                        timestamp=now,
                        user_id=user_id,
                        event_type=AuditEventType.EXCEPTION_REVOKED,
                        metadata={"count": revoked, "reason": reason},
                    )
                )
        return revoked

    # === Age groups ===

    def get_user_age_group(self, user_id: str) -> AgeGroup | None:
        return self._age_groups.get(user_id)

    def set_user_age_group(self, user_id: str, age_group: AgeGroup) -> int:
        """
        Register a user's age group.

        Moving to a more restrictive group revokes the user's active
        exceptions. Returns the number revoked.
        """
        previous = self._age_groups.get(user_id)
        self._age_groups[user_id] = age_group
        logger.info(
            "age_group_updated",
            user_id=user_id,
            previous=previous.value if previous else None,
            age_group=age_group.value,
        )

        if age_group.is_more_restrictive_than(previous):
            return self.revoke_exceptions(
                user_id,
                f"Age group changed from {previous.value} to {age_group.value}",
            )
        return 0

    # === Notifications ===

    def subscribe(self, listener: NotificationListener) -> None:
        """Register a listener for workflow events. May be sync or async."""
        self._listeners.append(listener)

    def _notify(self, kind: str, request: ParentalReviewRequest) -> None:
        # Async listeners run as background tasks; the caller never waits on delivery
        for method in self.notification_methods:
            event = NotificationEvent(
                kind=kind,
                request_id=request.id,
                user_id=request.user_id,
                priority=request.priority.value,
                content_excerpt=excerpt(request.content),
                method=method,
                status=request.status.value,
                timestamp=self._clock(),
            )
            for listener in self._listeners:
                try:
                    result = listener(event)
                except Exception as e:
                    self._delivery_failed(event, e)
                    continue
                if inspect.isawaitable(result):
                    delivery = asyncio.ensure_future(result)
                    self._deliveries.add(delivery)
                    delivery.add_done_callback(partial(self._delivery_done, event))

    def _delivery_done(self, event: NotificationEvent, delivery: asyncio.Future) -> None:
        self._deliveries.discard(delivery)
        if delivery.cancelled():
            return
        error = delivery.exception()
        if error is not None:
            self._delivery_failed(event, error)

    @staticmethod
    def _delivery_failed(event: NotificationEvent, error: BaseException) -> None:
        logger.error(
            "notification_error",
            kind=event.kind,
            method=event.method,
            request_id=event.request_id,
            error=str(error),
        )

    @property
    def pending_deliveries(self) -> int:
        return sum(1 for d in self._deliveries if not d.done())

    async def flush_notifications(self) -> None:
        """Wait until every notification scheduled so far has been delivered."""
        while True:
            pending = [d for d in self._deliveries if not d.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # === Audit ===

    def _audit(
        self,
        event_type: AuditEventType,
        request: ParentalReviewRequest,
        parental_review_required: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.audit_log is None:
            return
        self.audit_log.log(
            SafetyAuditEntry(
                timestamp=self._clock(),
                user_id=request.user_id,
                event_type=event_type,
                original_content=request.content,
                risk_level=request.risk_level,
                blocked_reasons=[v.description for v in request.violations],
                parental_review_required=parental_review_required,
                request_id=request.id,
                context=request.context.value,
                metadata={"status": request.status.value, **(metadata or {})},
            )
        )

    def get_stats(self) -> dict[str, Any]:
        """Get workflow statistics."""
        status_counts: dict[str, int] = {}
        priority_counts: dict[str, int] = {}

        for request in self._requests.values():
            status_counts[request.status.value] = (
                status_counts.get(request.status.value, 0) + 1
            )
            if request.status == ReviewStatus.PENDING:
                priority_counts[request.priority.value] = (
                    priority_counts.get(request.priority.value, 0) + 1
                )

        now = self._clock()
        active_exceptions = sum(
            1 for items in self._exceptions.values() for e in items if e.is_active(now)
        )
        return {
            "total_requests": len(self._requests),
            "pending_count": self.pending_count,
            "status_breakdown": status_counts,
            "priority_breakdown": priority_counts,
            "active_exceptions": active_exceptions,
        }
