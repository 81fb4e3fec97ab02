"""
Base types for the safety validation engine.

Defines the enumerations shared by every stage of the pipeline along with
the violation and verdict result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Severity assigned to a safety rule."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class RiskLevel(str, Enum):
    """Severity of a single violation, and the overall risk of a verdict."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def from_severity(cls, severity: Severity) -> "RiskLevel":
        """Collapse a four-level rule severity into a three-level risk."""
        if severity == Severity.CRITICAL:
            return cls.HIGH
        return cls(severity.value)


_RISK_RANK = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}


class RuleAction(str, Enum):
    """What happens when a rule matches."""

    BLOCK = "block"  # Record a violation at the rule's severity
    SANITIZE = "sanitize"  # Record a violation; matched spans are replaced on output
    WARN = "warn"  # Record a low-severity violation
    FLAG = "flag"  # No violation, the match is only noted on the verdict


class RuleCategory(str, Enum):
    """Which pipeline stage evaluates a rule."""

    PROFANITY = "profanity"
    TOPIC = "topic"
    HARMFUL_INSTRUCTION = "harmful_instruction"


class ContentContext(str, Enum):
    """Where a piece of content came from or is going to."""

    VOICE_INPUT = "voice_input"
    TEXT_OUTPUT = "text_output"
    COMMAND = "command"


class Direction(str, Enum):
    """Input is produced by the child, output is spoken by the device."""

    INPUT = "input"
    OUTPUT = "output"

    @property
    def default_context(self) -> ContentContext:
        if self == Direction.OUTPUT:
            return ContentContext.TEXT_OUTPUT
        return ContentContext.VOICE_INPUT


class ViolationType(str, Enum):
    """Kinds of problems the pipeline can report."""

    PROFANITY = "profanity"
    INAPPROPRIATE_TOPIC = "inappropriate_topic"
    HARMFUL_INSTRUCTION = "harmful_instruction"
    AGE_INAPPROPRIATE = "age_inappropriate"  # Language too complex
    CONTEXT_ESCALATION = "context_escalation"
    SYSTEM_ERROR = "system_error"


SAFE_REFUSAL = (
    "I can't help with that, but I can suggest something safe and fun to do instead!"
)

FRIENDLY_BLOCK_MESSAGE = (
    "Hmm, let's talk about something else! What else would you like to explore?"
)

SANITIZE_PLACEHOLDER = "[friendly word]"


@dataclass(frozen=True)
class Violation:
    """A single problem found by one pipeline stage."""

    type: ViolationType
    severity: RiskLevel
    description: str
    rule_id: str | None = None
    span: tuple[int, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "rule_id": self.rule_id,
            "span": list(self.span) if self.span else None,
        }


@dataclass
class ValidationVerdict:
    """
    Structured outcome of running the filter pipeline on one piece of content.

    The pipeline fields (allowed through confidence) are a pure function of
    the content, the rule set version, the age group and the user's active
    exceptions. The remaining fields are filled in by the gateway.
    """

    allowed: bool
    risk_level: RiskLevel = RiskLevel.LOW
    violations: list[Violation] = field(default_factory=list)
    sanitized_text: str | None = None
    confidence: float = 1.0
    processing_time_ms: float = 0.0
    suggested_alternatives: list[str] = field(default_factory=list)
    matched_rules: list[str] = field(default_factory=list)  # "rule_id@version"
    flagged_rules: list[str] = field(default_factory=list)
    rule_set_version: int = 0

    # Gateway annotations
    refusal_message: str | None = None
    requires_parental_review: bool = False
    review_request_id: str | None = None
    exception_id: str | None = None
    from_cache: bool = False

    @property
    def blocked_reasons(self) -> list[str]:
        return [v.description for v in self.violations]

    @property
    def violation_types(self) -> set[ViolationType]:
        return {v.type for v in self.violations}

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "risk_level": self.risk_level.value,
            "violations": [v.to_dict() for v in self.violations],
            "sanitized_text": self.sanitized_text,
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "suggested_alternatives": list(self.suggested_alternatives),
            "matched_rules": list(self.matched_rules),
            "flagged_rules": list(self.flagged_rules),
            "rule_set_version": self.rule_set_version,
            "refusal_message": self.refusal_message,
            "requires_parental_review": self.requires_parental_review,
            "review_request_id": self.review_request_id,
            "exception_id": self.exception_id,
            "from_cache": self.from_cache,
        }


def calculate_risk_level(violations: list[Violation]) -> RiskLevel:
    """Overall risk is the highest severity among the violations."""
    risk = RiskLevel.LOW
    for violation in violations:
        if violation.severity.rank > risk.rank:
            risk = violation.severity
    return risk
