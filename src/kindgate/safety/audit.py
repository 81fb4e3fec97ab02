"""
Safety audit log.

Append-only, size-bounded record of every validation decision and
workflow transition. Entries are immutable once written and are removed
only by eviction (oldest first, when the log is full) or by the
retention sweep.

Logging is best effort: a failure while recording an entry is reported
through the ``audit_log_error`` event and the error callbacks, and never
reaches the validation path.
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from kindgate.logging import get_logger
from kindgate.safety.base import RiskLevel

logger = get_logger(__name__)

REDACTED = "[redacted]"


class AuditEventType(str, Enum):
    """Kinds of audit entries."""

    INPUT_VALIDATION = "input_validation"
    CONTENT_BLOCKED = "content_blocked"
    OUTPUT_VALIDATED = "output_validated"
    OUTPUT_SANITIZED = "output_sanitized"
    CHILD_SAFE_CHECK = "child_safe_check"
    EXCEPTION_APPLIED = "exception_applied"
    VALIDATION_ERROR = "validation_error"
    APPROVAL_REQUESTED = "approval_requested"
    PARENTAL_DECISION = "parental_decision"
    APPROVAL_EXPIRED = "approval_expired"
    EXCEPTION_CREATED = "exception_created"
    EXCEPTION_REVOKED = "exception_revoked"


class SafetyAuditEntry(BaseModel):
    """One immutable audit record."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex[:16])
    timestamp: datetime = Field(default_factory=datetime.now)
    user_id: str
    event_type: AuditEventType
    original_content: str = ""
    processed_content: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    blocked_reasons: list[str] = Field(default_factory=list)
    parental_review_required: bool = False

    age_group: Optional[str] = None
    context: Optional[str] = None
    rule_set_version: Optional[int] = None
    matched_rules: list[str] = Field(default_factory=list)
    request_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class TimeRange:
    """Inclusive time window. Either bound may be open."""

    start: datetime | None = None
    end: datetime | None = None

    @classmethod
    def last(cls, delta: timedelta, now: datetime | None = None) -> "TimeRange":
        now = now or datetime.now()
        return cls(start=now - delta, end=now)

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True


@dataclass
class AuditFilters:
    user_id: str | None = None
    event_types: list[AuditEventType] | None = None
    risk_levels: list[RiskLevel] | None = None
    parental_review_required: bool | None = None
    request_id: str | None = None
    limit: int | None = None
    newest_first: bool = False

    def matches(self, entry: SafetyAuditEntry) -> bool:
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.event_types and entry.event_type not in self.event_types:
            return False
        if self.risk_levels and entry.risk_level not in self.risk_levels:
            return False
        if (
            self.parental_review_required is not None
            and entry.parental_review_required != self.parental_review_required
        ):
            return False
        if self.request_id is not None and entry.request_id != self.request_id:
            return False
        return True


@dataclass
class SafetyReport:
    """Aggregate view of the audit log over a time window."""

    time_range: TimeRange
    user_id: str | None
    total_events: int = 0
    events_by_type: dict[str, int] = field(default_factory=dict)
    events_by_risk: dict[str, int] = field(default_factory=dict)
    top_blocked_reasons: list[dict[str, Any]] = field(default_factory=list)
    user_activity: dict[str, int] = field(default_factory=dict)
    parental_reviews_requested: int = 0
    pending_reviews: int = 0
    generated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time_range": {
                "start": self.time_range.start.isoformat() if self.time_range.start else None,
                "end": self.time_range.end.isoformat() if self.time_range.end else None,
            },
            "user_id": self.user_id,
            "total_events": self.total_events,
            "events_by_type": dict(self.events_by_type),
            "events_by_risk": dict(self.events_by_risk),
            "top_blocked_reasons": list(self.top_blocked_reasons),
            "user_activity": dict(self.user_activity),
            "parental_reviews_requested": self.parental_reviews_requested,
            "pending_reviews": self.pending_reviews,
            "generated_at": self.generated_at.isoformat(),
        }


class JsonlAuditSink:
    """Persistence hook that appends entries to daily JSON-lines files."""

    def __init__(self, base_dir: Path | str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, moment: datetime) -> Path:
        return self.base_dir / f"{moment.strftime('%Y-%m-%d')}.jsonl"

    def __call__(self, entry: SafetyAuditEntry) -> None:
        with self.path_for(entry.timestamp).open("a", encoding="utf-8") as fh:
            fh.write(entry.model_dump_json() + "\n")


class AuditLog:
    """
    In-memory, retention-bounded audit log.

    Features:
    - Oldest-first eviction once ``max_entries`` is reached
    - Time-based retention sweep
    - Filtered queries and aggregate reports
    - Optional persistence hook called for every entry
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        retention_days: int = 30,
        include_content: bool = True,
        persistence: Callable[[SafetyAuditEntry], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the audit log.

        Args:
            max_entries: Entries kept before the oldest are evicted
            retention_days: Age after which the sweep removes entries
            include_content: Store raw content (redacted when False)
            persistence: Called with each entry after it is recorded
            clock: Wall clock used for retention
        """
        self._entries: deque[SafetyAuditEntry] = deque(maxlen=max_entries)
        self.retention_days = retention_days
        self.include_content = include_content
        self.persistence = persistence
        self._clock = clock
        self._on_error: list[Callable[[Exception, SafetyAuditEntry], Any]] = []
        self.error_count = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def on_error(self, callback: Callable[[Exception, SafetyAuditEntry], Any]) -> None:
        """Register a callback for logging failures."""
        self._on_error.append(callback)

    def log(self, entry: SafetyAuditEntry) -> bool:
        """
        Record an entry. Never raises.

        Returns:
            True if the entry was recorded and persisted
        """
        try:
            if not self.include_content:
                entry = entry.model_copy(
                    update={
                        "original_content": REDACTED if entry.original_content else "",
                        "processed_content": (
                            REDACTED if entry.processed_content else None
                        ),
                    }
                )
            self._entries.append(entry)
            if self.persistence is not None:
                self.persistence(entry)
            return True
        except Exception as e:
            self.error_count += 1
            logger.error(
                "audit_log_error",
                entry_id=entry.id,
                event_type=entry.event_type.value,
                error=str(e),
            )
            for callback in self._on_error:
                try:
                    callback(e, entry)
                except Exception as callback_error:
                    logger.error("audit_error_callback_failed", error=str(callback_error))
            return False

    def query(
        self,
        filters: AuditFilters | None = None,
        time_range: TimeRange | None = None,
    ) -> list[SafetyAuditEntry]:
        """Return matching entries in the order they were recorded."""
        filters = filters or AuditFilters()
        results = [
            e
            for e in self._entries
            if filters.matches(e) and (time_range is None or time_range.contains(e.timestamp))
        ]
        if filters.newest_first:
            results.reverse()
        if filters.limit is not None:
            results = results[: filters.limit]
        return results

    def generate_report(
        self,
        time_range: TimeRange | None = None,
        user_id: str | None = None,
        pending_reviews: int = 0,
    ) -> SafetyReport:
        """Aggregate the entries within a time window."""
        time_range = time_range or TimeRange()
        entries = self.query(AuditFilters(user_id=user_id), time_range)

        by_type = Counter(e.event_type.value for e in entries)
        by_risk = Counter(e.risk_level.value for e in entries)
        reasons = Counter(r for e in entries for r in e.blocked_reasons)
        users = Counter(e.user_id for e in entries)

        report = SafetyReport(
            time_range=time_range,
            user_id=user_id,
            total_events=len(entries),
            events_by_type=dict(by_type),
            events_by_risk=dict(by_risk),
            top_blocked_reasons=[
                {"reason": reason, "count": count}
                for reason, count in reasons.most_common(10)
            ],
            user_activity=dict(users),
            parental_reviews_requested=by_type.get(
                AuditEventType.APPROVAL_REQUESTED.value, 0
            ),
            pending_reviews=pending_reviews,
            generated_at=self._clock(),
        )

        logger.info(
            "audit_report_generated",
            user_id=user_id,
            total_events=report.total_events,
        )
        return report

    def purge(self, older_than: datetime) -> int:
        """Remove entries recorded before ``older_than``. Returns the number removed."""
        kept = [e for e in self._entries if e.timestamp >= older_than]
        purged = len(self._entries) - len(kept)
        if purged:
            self._entries = deque(kept, maxlen=self._entries.maxlen)
            logger.info("audit_log_purged", purged=purged, remaining=len(kept))
        return purged

    def sweep(self) -> int:
        """Apply the retention period."""
        return self.purge(self._clock() - timedelta(days=self.retention_days))
