"""
Safety gateway.

The single entry point used by every collaborator that needs to know
whether a piece of text is allowed for a user, and what happens next if
it is not. Composes the rule store, filter pipeline, verdict cache, audit
log and approval workflow; each is injected so independent gateways can
coexist (per test, per tenant).

Validation never raises to the caller:
- Disallowed input is blocked with a friendly refusal message
- Output always comes back with speakable text (sanitized or a fallback)
- Internal errors fail safe and are audited as ``validation_error``
"""

from __future__ import annotations

import asyncio
import inspect
import re
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from kindgate.config import AgeGroup, Settings, get_settings
from kindgate.logging import TraceContext, get_logger
from kindgate.safety.approval import ApprovalWorkflow, ParentalReviewRequest
from kindgate.safety.audit import (
    AuditEventType,
    AuditFilters,
    AuditLog,
    SafetyAuditEntry,
    SafetyReport,
    TimeRange,
)
from kindgate.safety.base import (
    FRIENDLY_BLOCK_MESSAGE,
    SAFE_REFUSAL,
    ContentContext,
    Direction,
    RiskLevel,
    ValidationVerdict,
    Violation,
    ViolationType,
)
from kindgate.safety.cache import ValidationCache, make_cache_key
from kindgate.safety.locks import KeyedLocks
from kindgate.safety.pipeline import ContentFilterPipeline
from kindgate.safety.rules import RuleEvent, RuleStore

logger = get_logger(__name__)

ANONYMOUS_USER = "anonymous"
SYSTEM_USER = "system"
ID_TAG_SEPARATORS = re.compile(r"[^a-z0-9]+")


@dataclass
class GatewayMetrics:
    """Running counters for validation calls."""

    total_validations: int = 0
    blocked: int = 0
    sanitized: int = 0
    cache_hits: int = 0
    exceptions_applied: int = 0
    errors: int = 0
    total_processing_ms: float = 0.0
    by_age_group: Counter = field(default_factory=Counter)

    @property
    def average_processing_ms(self) -> float:
        if not self.total_validations:
            return 0.0
        return self.total_processing_ms / self.total_validations

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_validations": self.total_validations,
            "blocked": self.blocked,
            "sanitized": self.sanitized,
            "cache_hits": self.cache_hits,
            "exceptions_applied": self.exceptions_applied,
            "errors": self.errors,
            "average_processing_ms": round(self.average_processing_ms, 3),
            "by_age_group": dict(self.by_age_group),
        }


class SafetyGateway:
    """
    Orchestrates validation for inputs from and outputs to a user.

    Calls for the same user are serialized so their audit entries are
    recorded in call order. Calls for different users run independently.
    """

    def __init__(
        self,
        rule_store: RuleStore | None = None,
        pipeline: ContentFilterPipeline | None = None,
        cache: ValidationCache | None = None,
        audit_log: AuditLog | None = None,
        workflow: ApprovalWorkflow | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the gateway.

        Args:
            rule_store: Rules and policies (built-in defaults when None)
            pipeline: Filter pipeline
            cache: Verdict cache
            audit_log: Audit log shared with the workflow
            workflow: Parental approval workflow
            settings: Settings used to build missing components
            clock: Wall clock for audit timestamps
        """
        self.settings = settings if settings is not None else get_settings()
        s = self.settings

        self.rule_store = rule_store if rule_store is not None else RuleStore()
        self.pipeline = pipeline if pipeline is not None else ContentFilterPipeline()
        # Components define __len__, so an empty injected one is falsy
        if cache is None:
            cache = ValidationCache(
                ttl_seconds=s.cache_ttl_seconds,
                max_age_seconds=s.cache_max_age_seconds,
                max_entries=s.cache_max_entries,
            )
        self.cache = cache

        if audit_log is None:
            audit_log = AuditLog(
                max_entries=s.audit_max_entries,
                retention_days=s.audit_retention_days,
                include_content=s.audit_include_content,
            )
        self.audit_log = audit_log

        if workflow is None:
            workflow = ApprovalWorkflow(
                audit_log=self.audit_log,
                review_timeout_hours=s.review_timeout_hours,
                auto_approve_after_timeout=s.auto_approve_after_timeout,
                notification_methods=s.notification_methods,
                exception_default_hours=s.exception_default_hours,
                exception_max_usage=s.exception_max_usage,
                request_retention_hours=s.review_retention_hours,
            )
        self.workflow = workflow

        self._clock = clock
        self.metrics = GatewayMetrics()
        self._user_locks = KeyedLocks()
        self._tasks: list[asyncio.Task] = []

        self.rule_store.subscribe(self._on_rules_changed)

    # === Identity ===

    def resolve_age_group(self, user_id: str | None) -> AgeGroup:
        """
        Registered age group, else a ``child``/``teen``/``adult`` token in
        the id (``child_7``, ``home:teen``), else the configured default.
        """
        if not user_id or not isinstance(user_id, str):
            return self.settings.default_age_group

        registered = self.workflow.get_user_age_group(user_id)
        if registered is not None:
            return registered

        tags = set(ID_TAG_SEPARATORS.split(user_id.lower()))
        for group in (AgeGroup.CHILD, AgeGroup.TEEN, AgeGroup.ADULT):
            if group.value in tags:
                return group
        return self.settings.default_age_group

    def set_user_age_group(self, user_id: str, age_group: AgeGroup) -> int:
        """Change a user's age group. Returns the number of exceptions revoked."""
        revoked = self.workflow.set_user_age_group(user_id, age_group)
        self.cache.invalidate_user(user_id)
        return revoked

    # === Validation ===

    async def validate_input(
        self,
        text: str,
        user_id: str,
        context: ContentContext | None = None,
        history: Sequence[str] | None = None,
    ) -> ValidationVerdict:
        """
        Validate text produced by the user. Disallowed input is hard-blocked.

        Args:
            text: The user's utterance or command
            user_id: Who said it
            context: Voice input (default) or command
            history: Recent conversation turns for escalation detection
        """
        return await self._validate(
            text, user_id, Direction.INPUT, context or Direction.INPUT.default_context, history
        )

    async def validate_output(
        self,
        text: str,
        user_id: str,
        history: Sequence[str] | None = None,
    ) -> ValidationVerdict:
        """
        Validate text the device is about to say.

        Never blocks: ``sanitized_text`` always holds something speakable.
        """
        return await self._validate(
            text, user_id, Direction.OUTPUT, Direction.OUTPUT.default_context, history
        )

    async def validate_child_safe(self, text: str, age_group: AgeGroup) -> bool:
        """Yes/no check for callers that only need a boolean."""
        try:
            rule_set = self.rule_store.active
            key = make_cache_key(
                text or "", SYSTEM_USER, age_group, Direction.OUTPUT, rule_set.version
            )
            verdict = self.cache.get(key)
            if verdict is None:
                verdict = self.pipeline.evaluate(
                    text or "", age_group, rule_set, ContentContext.TEXT_OUTPUT
                )
                self.cache.put(key, verdict, SYSTEM_USER)
        except Exception as e:
            self.metrics.errors += 1
            logger.error("child_safe_check_error", error=str(e))
            self._audit_error(text, SYSTEM_USER, age_group, Direction.OUTPUT, e)
            return False

        self.audit_log.log(
            SafetyAuditEntry(
                timestamp=self._clock(),
                user_id=SYSTEM_USER,
                event_type=AuditEventType.CHILD_SAFE_CHECK,
                original_content=text or "",
                risk_level=verdict.risk_level,
                blocked_reasons=verdict.blocked_reasons,
                age_group=age_group.value,
                context=ContentContext.TEXT_OUTPUT.value,
                rule_set_version=verdict.rule_set_version,
                matched_rules=verdict.matched_rules,
            )
        )
        return verdict.allowed

    async def _validate(
        self,
        text: str,
        user_id: str,
        direction: Direction,
        context: ContentContext,
        history: Sequence[str] | None,
    ) -> ValidationVerdict:
        if not isinstance(text, str):
            text = ""
        if not user_id or not isinstance(user_id, str):
            user_id = ANONYMOUS_USER
        age_group = self.resolve_age_group(user_id)

        async with self._user_locks.hold(user_id):
            with TraceContext(f"validate_{direction.value}", user_id=user_id) as trace:
                try:
                    verdict = await self._evaluate(
                        text, user_id, age_group, direction, context, history
                    )
                    if direction == Direction.INPUT:
                        self._finish_input(verdict)
                    else:
                        self._finish_output(text, verdict)

                    if (
                        not verdict.allowed
                        and verdict.exception_id is None
                        and age_group != AgeGroup.ADULT
                    ):
                        request = await self.workflow.request_approval(
                            text,
                            user_id,
                            violations=verdict.violations,
                            risk_level=verdict.risk_level,
                            context=context,
                        )
                        verdict.requires_parental_review = True
                        verdict.review_request_id = request.id
                except Exception as e:
                    self.metrics.errors += 1
                    logger.error(
                        "validation_error",
                        trace_id=trace.trace_id,
                        direction=direction.value,
                        error=str(e),
                    )
                    verdict = self._fail_safe(direction)
                    self._audit_error(text, user_id, age_group, direction, e)
                    return verdict

                for violation in verdict.violations:
                    trace.log_safety_event(
                        action="block" if not verdict.allowed else "allow",
                        reason=violation.description,
                        severity=violation.severity.value,
                    )
                verdict.processing_time_ms = trace.duration_ms

            self._record(text, user_id, age_group, direction, context, verdict)
        return verdict

    async def _evaluate(
        self,
        text: str,
        user_id: str,
        age_group: AgeGroup,
        direction: Direction,
        context: ContentContext,
        history: Sequence[str] | None,
    ) -> ValidationVerdict:
        rule_set = self.rule_store.active

        # Exceptions are per-user state the cache key does not capture
        exception = await self.workflow.check_exception(text, user_id, context)
        if exception is not None:
            self.metrics.exceptions_applied += 1
            return ValidationVerdict(
                allowed=True,
                risk_level=RiskLevel.LOW,
                confidence=1.0,
                rule_set_version=rule_set.version,
                exception_id=exception.id,
            )

        # History makes the verdict depend on more than the cache key
        if history:
            return self.pipeline.evaluate(text, age_group, rule_set, context, history)

        key = make_cache_key(text, user_id, age_group, direction, rule_set.version)
        cached = self.cache.get(key)
        if cached is not None:
            self.metrics.cache_hits += 1
            return cached

        verdict = self.pipeline.evaluate(text, age_group, rule_set, context)
        self.cache.put(key, verdict, user_id)
        return verdict

    @staticmethod
    def _finish_input(verdict: ValidationVerdict) -> None:
        if not verdict.allowed:
            verdict.refusal_message = FRIENDLY_BLOCK_MESSAGE

    def _finish_output(self, text: str, verdict: ValidationVerdict) -> None:
        if not text.strip():
            verdict.sanitized_text = SAFE_REFUSAL
        elif verdict.violations:
            verdict.sanitized_text = self.pipeline.sanitize(
                text, verdict, self.rule_store.active
            )
        else:
            verdict.sanitized_text = text

    @staticmethod
    def _fail_safe(direction: Direction) -> ValidationVerdict:
        verdict = ValidationVerdict(
            allowed=False,
            risk_level=RiskLevel.HIGH,
            violations=[
                Violation(
                    type=ViolationType.SYSTEM_ERROR,
                    severity=RiskLevel.HIGH,
                    description="Safety validation failed",
                )
            ],
            confidence=0.0,
        )
        if direction == Direction.INPUT:
            verdict.refusal_message = FRIENDLY_BLOCK_MESSAGE
        else:
            verdict.sanitized_text = SAFE_REFUSAL
        return verdict

    # === Audit ===

    def _record(
        self,
        text: str,
        user_id: str,
        age_group: AgeGroup,
        direction: Direction,
        context: ContentContext,
        verdict: ValidationVerdict,
    ) -> None:
        self.metrics.total_validations += 1
        self.metrics.total_processing_ms += verdict.processing_time_ms
        self.metrics.by_age_group[age_group.value] += 1

        if verdict.exception_id is not None:
            event_type = AuditEventType.EXCEPTION_APPLIED
        elif direction == Direction.INPUT:
            if verdict.allowed:
                event_type = AuditEventType.INPUT_VALIDATION
            else:
                event_type = AuditEventType.CONTENT_BLOCKED
                self.metrics.blocked += 1
        elif verdict.sanitized_text != text:
            event_type = AuditEventType.OUTPUT_SANITIZED
            self.metrics.sanitized += 1
        else:
            event_type = AuditEventType.OUTPUT_VALIDATED

        self.audit_log.log(
            SafetyAuditEntry(
                timestamp=self._clock(),
                user_id=user_id,
                event_type=event_type,
                original_content=text,
                processed_content=verdict.sanitized_text,
                risk_level=verdict.risk_level,
                blocked_reasons=verdict.blocked_reasons,
                parental_review_required=verdict.requires_parental_review,
                age_group=age_group.value,
                context=context.value,
                rule_set_version=verdict.rule_set_version,
                matched_rules=verdict.matched_rules,
                request_id=verdict.review_request_id,
                metadata={
                    "flagged_rules": verdict.flagged_rules,
                    "exception_id": verdict.exception_id,
                    "from_cache": verdict.from_cache,
                },
            )
        )

    def _audit_error(
        self,
        text: Any,
        user_id: str,
        age_group: AgeGroup,
        direction: Direction,
        error: Exception,
    ) -> None:
        self.audit_log.log(
            SafetyAuditEntry(
                timestamp=self._clock(),
                user_id=user_id,
                event_type=AuditEventType.VALIDATION_ERROR,
                original_content=text if isinstance(text, str) else "",
                processed_content=SAFE_REFUSAL if direction == Direction.OUTPUT else None,
                risk_level=RiskLevel.HIGH,
                blocked_reasons=["Safety validation failed"],
                age_group=age_group.value,
                metadata={"direction": direction.value, "error": str(error)},
            )
        )

    # === Parental workflow ===

    async def request_approval(
        self,
        content: str,
        user_id: str,
        context: ContentContext = ContentContext.VOICE_INPUT,
    ) -> str:
        """Ask a parent to review content. Returns the request id."""
        age_group = self.resolve_age_group(user_id)
        verdict = self.pipeline.evaluate(content, age_group, self.rule_store.active, context)
        request = await self.workflow.request_approval(
            content,
            user_id,
            violations=verdict.violations,
            risk_level=verdict.risk_level,
            context=context,
        )
        return request.id

    async def process_decision(
        self,
        request_id: str,
        approved: bool,
        reason: str = "",
        exception_hours: float | None = None,
        responded_by: str = "parent",
    ) -> ParentalReviewRequest:
        """Apply a parent's decision. Raises workflow errors for bad requests."""
        request = await self.workflow.process_decision(
            request_id,
            approved,
            reason=reason,
            exception_hours=exception_hours,
            responded_by=responded_by,
        )
        self.cache.invalidate_user(request.user_id)
        return request

    # === Reporting ===

    def get_audit_log(
        self,
        time_range: TimeRange | None = None,
        filters: AuditFilters | None = None,
    ) -> list[SafetyAuditEntry]:
        return self.audit_log.query(filters, time_range)

    def generate_report(
        self,
        time_range: TimeRange | None = None,
        user_id: str | None = None,
    ) -> SafetyReport:
        pending = len(self.workflow.get_pending(user_id=user_id))
        return self.audit_log.generate_report(time_range, user_id, pending_reviews=pending)

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics.to_dict(),
            "cache": self.cache.get_stats(),
            "workflow": self.workflow.get_stats(),
            "audit_entries": len(self.audit_log),
            "audit_errors": self.audit_log.error_count,
            "rule_set_version": self.rule_store.version,
        }

    def _on_rules_changed(self, event: RuleEvent) -> None:
        self.cache.clear()
        logger.info("cache_cleared", reason=event.kind, rule_set_version=event.version)

    # === Background sweeps ===

    def start(self) -> None:
        """Start the periodic approval, cache and audit sweeps."""
        if self._tasks:
            return
        s = self.settings
        self._tasks = [
            asyncio.create_task(
                self._run_periodic(
                    "approval_sweep", s.approval_sweep_interval_seconds, self.workflow.sweep_expired
                )
            ),
            asyncio.create_task(
                self._run_periodic("cache_sweep", s.cache_sweep_interval_seconds, self.cache.sweep)
            ),
            asyncio.create_task(
                self._run_periodic("audit_sweep", s.audit_sweep_interval_seconds, self.audit_log.sweep)
            ),
        ]
        logger.info("gateway_started", sweeps=len(self._tasks))

    async def stop(self) -> None:
        """Cancel the background sweeps and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.workflow.flush_notifications()
        logger.info("gateway_stopped")

    @staticmethod
    async def _run_periodic(name: str, interval: float, sweep: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = sweep()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("sweep_error", sweep=name, error=str(e))
