"""
Content filter pipeline.

Runs a fixed sequence of independent checks against one piece of content:
1. Profanity (severity re-mapped per age group)
2. Topic appropriateness (blocked topics of the age group policy)
3. Harmful instructions (always high severity)
4. Language complexity (always low severity)
5. Conversational context (only when history is supplied)

Every stage runs on every call; a verdict reports everything that is
wrong with the content, not just the first failure. The pipeline holds
no state, so the same content, rule set and age group always produce the
same verdict.
"""

from __future__ import annotations

import re
import time
from collections.abc import Sequence

from kindgate.config import AgeGroup
from kindgate.logging import get_logger
from kindgate.safety.base import (
    SAFE_REFUSAL,
    SANITIZE_PLACEHOLDER,
    ContentContext,
    RiskLevel,
    RuleAction,
    RuleCategory,
    Severity,
    ValidationVerdict,
    Violation,
    ViolationType,
    calculate_risk_level,
)
from kindgate.safety.rules import RuleSet, SafetyRule

logger = get_logger(__name__)

# Rule severity -> violation severity, per age group
PROFANITY_SEVERITY: dict[Severity, dict[AgeGroup, RiskLevel]] = {
    Severity.LOW: {
        AgeGroup.CHILD: RiskLevel.MEDIUM,
        AgeGroup.TEEN: RiskLevel.LOW,
        AgeGroup.ADULT: RiskLevel.LOW,
    },
    Severity.MEDIUM: {
        AgeGroup.CHILD: RiskLevel.MEDIUM,
        AgeGroup.TEEN: RiskLevel.MEDIUM,
        AgeGroup.ADULT: RiskLevel.LOW,
    },
    Severity.HIGH: {
        AgeGroup.CHILD: RiskLevel.HIGH,
        AgeGroup.TEEN: RiskLevel.HIGH,
        AgeGroup.ADULT: RiskLevel.MEDIUM,
    },
    Severity.CRITICAL: {
        AgeGroup.CHILD: RiskLevel.HIGH,
        AgeGroup.TEEN: RiskLevel.HIGH,
        AgeGroup.ADULT: RiskLevel.HIGH,
    },
}

CONTEXT_WINDOW = 3
NEGATIVE_MARKERS_RE = re.compile(r"\b(angry|mad|furious|upset)\b", re.IGNORECASE)
HOSTILE_LANGUAGE_RE = re.compile(
    r"\b(hate|stupid|idiot|shut up)\b", re.IGNORECASE
)

SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

SUGGESTED_ALTERNATIVES: dict[ViolationType, list[str]] = {
    ViolationType.PROFANITY: [
        "Try using kind words like 'oh no' or 'wow'",
        "Let's find a friendlier way to say that",
    ],
    ViolationType.INAPPROPRIATE_TOPIC: [
        "How about we talk about animals or nature?",
        "Would you like to play a word game instead?",
    ],
    ViolationType.HARMFUL_INSTRUCTION: [
        "Let's learn how to build something fun, like a paper airplane!",
        "If something is worrying you, talking to a grown-up you trust can help",
    ],
    ViolationType.AGE_INAPPROPRIATE: [
        "Try asking in shorter, simpler words",
    ],
    ViolationType.CONTEXT_ESCALATION: [
        "It sounds like you're having a tough time. Want to take a deep breath together?",
        "Would you like to talk about what's making you feel this way?",
    ],
    ViolationType.SYSTEM_ERROR: [
        "Let's try that again in a moment",
    ],
}


def complexity_score(text: str) -> float:
    """
    Score language complexity on a 0-100 scale.

    ``avg_word_length * 5 + avg_sentence_length * 2``, clamped. The
    sentence count includes the empty piece after trailing punctuation.
    """
    words = text.split()
    if not words:
        return 0.0

    avg_word_length = sum(len(w) for w in words) / len(words)
    sentences = SENTENCE_SPLIT_RE.split(text)
    avg_sentence_length = len(words) / len(sentences)

    score = avg_word_length * 5 + avg_sentence_length * 2
    return max(0.0, min(100.0, score))


def is_allowed(violations: Sequence[Violation], age_group: AgeGroup) -> bool:
    """
    Decide whether content with these violations may proceed.

    Allowed when there are no violations, or when every violation is low
    severity and either the user is not a child or there is only one.
    """
    if not violations:
        return True
    all_low = all(v.severity == RiskLevel.LOW for v in violations)
    return all_low and (age_group != AgeGroup.CHILD or len(violations) <= 1)


def calculate_confidence(violation_count: int) -> float:
    return max(0.1, 1 - violation_count * 0.2)


class ContentFilterPipeline:
    """Stateless multi-stage content filter."""

    def evaluate(
        self,
        content: str,
        age_group: AgeGroup,
        rule_set: RuleSet,
        context: ContentContext = ContentContext.VOICE_INPUT,
        history: Sequence[str] | None = None,
    ) -> ValidationVerdict:
        """
        Run every stage and build a verdict.

        Args:
            content: Text to evaluate
            age_group: Age group whose policy applies
            rule_set: Immutable rule snapshot to evaluate against
            context: Where the content came from or is going to
            history: Recent conversation turns, oldest first

        Returns:
            ValidationVerdict with every violation found
        """
        start_time = time.perf_counter()

        violations: list[Violation] = []
        matched: list[str] = []
        flagged: list[str] = []

        self._check_profanity(content, age_group, rule_set, context, violations, matched, flagged)
        self._check_topics(content, age_group, rule_set, context, violations, matched, flagged)
        self._check_harmful(content, age_group, rule_set, context, violations, matched, flagged)
        self._check_complexity(content, age_group, rule_set, violations)
        if history:
            self._check_context(content, history, violations)

        allowed = is_allowed(violations, age_group)
        verdict = ValidationVerdict(
            allowed=allowed,
            risk_level=calculate_risk_level(violations),
            violations=violations,
            confidence=calculate_confidence(len(violations)),
            suggested_alternatives=(
                [] if allowed else self._suggest_alternatives(violations)
            ),
            matched_rules=matched,
            flagged_rules=flagged,
            rule_set_version=rule_set.version,
        )
        verdict.processing_time_ms = (time.perf_counter() - start_time) * 1000

        logger.debug(
            "pipeline_evaluated",
            age_group=age_group.value,
            context=context.value,
            allowed=verdict.allowed,
            risk_level=verdict.risk_level.value,
            violation_count=len(violations),
        )
        return verdict

    # === Stages ===

    def _apply_rule(
        self,
        rule: SafetyRule,
        match: re.Match[str],
        violation_type: ViolationType,
        severity: RiskLevel,
        description: str,
        violations: list[Violation],
        matched: list[str],
        flagged: list[str],
    ) -> None:
        if rule.action == RuleAction.FLAG:
            flagged.append(rule.ref)
            return
        if rule.action == RuleAction.WARN:
            severity = RiskLevel.LOW

        matched.append(rule.ref)
        violations.append(
            Violation(
                type=violation_type,
                severity=severity,
                description=description,
                rule_id=rule.id,
                span=match.span(),
            )
        )

    def _check_profanity(self, content, age_group, rule_set, context, violations, matched, flagged) -> None:
        for rule in rule_set.rules_for(RuleCategory.PROFANITY, age_group, context):
            match = rule_set.pattern_for(rule).search(content)
            if not match:
                continue
            self._apply_rule(
                rule,
                match,
                ViolationType.PROFANITY,
                PROFANITY_SEVERITY[rule.severity][age_group],
                f"Contains {rule.name.lower()}",
                violations,
                matched,
                flagged,
            )

    def _check_topics(self, content, age_group, rule_set, context, violations, matched, flagged) -> None:
        # Allowed topics are advisory; only blocked topics raise violations
        blocked = {t.lower() for t in rule_set.policy_for(age_group).blocked_topics}

        for rule in rule_set.rules_for(RuleCategory.TOPIC, age_group, context):
            if (rule.topic or "").lower() not in blocked:
                continue
            match = rule_set.pattern_for(rule).search(content)
            if not match:
                continue
            topic = (rule.topic or "").replace("_", " ")
            self._apply_rule(
                rule,
                match,
                ViolationType.INAPPROPRIATE_TOPIC,
                RiskLevel.from_severity(rule.severity),
                f"Inappropriate topic for {age_group.value}: {topic}",
                violations,
                matched,
                flagged,
            )

    def _check_harmful(self, content, age_group, rule_set, context, violations, matched, flagged) -> None:
        # At most one harmful instruction violation per verdict
        reported = False
        for rule in rule_set.rules_for(
            RuleCategory.HARMFUL_INSTRUCTION, age_group, context
        ):
            match = rule_set.pattern_for(rule).search(content)
            if not match:
                continue
            if rule.action == RuleAction.FLAG:
                flagged.append(rule.ref)
                continue
            if reported:
                matched.append(rule.ref)
                continue
            matched.append(rule.ref)
            violations.append(
                Violation(
                    type=ViolationType.HARMFUL_INSTRUCTION,
                    severity=RiskLevel.HIGH,
                    description="Potentially harmful instructions detected",
                    rule_id=rule.id,
                    span=match.span(),
                )
            )
            reported = True

    def _check_complexity(self, content, age_group, rule_set, violations) -> None:
        ceiling = rule_set.policy_for(age_group).max_complexity
        score = complexity_score(content)
        if score > ceiling:
            violations.append(
                Violation(
                    type=ViolationType.AGE_INAPPROPRIATE,
                    severity=RiskLevel.LOW,
                    description=(
                        f"Language complexity {score:.1f} exceeds "
                        f"{age_group.value} limit of {ceiling:g}"
                    ),
                )
            )

    def _check_context(self, content, history, violations) -> None:
        recent = list(history)[-CONTEXT_WINDOW:]
        negative = any(NEGATIVE_MARKERS_RE.search(turn) for turn in recent)
        hostile = HOSTILE_LANGUAGE_RE.search(content)
        if negative and hostile:
            violations.append(
                Violation(
                    type=ViolationType.CONTEXT_ESCALATION,
                    severity=RiskLevel.MEDIUM,
                    description="Escalating negative emotions in conversation",
                    span=hostile.span(),
                )
            )

    # === Output helpers ===

    def sanitize(
        self, content: str, verdict: ValidationVerdict, rule_set: RuleSet
    ) -> str:
        """
        Rewrite content into a speakable form.

        Spans matched by sanitize rules are replaced with a placeholder.
        Anything harmful or high severity, or any medium violation that span
        replacement cannot fix, replaces the text wholesale with the safe
        refusal template.
        """
        sanitize_rules = {
            r.id: r for r in rule_set.rules if r.action == RuleAction.SANITIZE
        }

        for v in verdict.violations:
            if v.type == ViolationType.HARMFUL_INSTRUCTION or v.severity == RiskLevel.HIGH:
                return SAFE_REFUSAL
            if v.severity == RiskLevel.MEDIUM and v.rule_id not in sanitize_rules:
                return SAFE_REFUSAL

        spans: list[tuple[int, int]] = []
        for v in verdict.violations:
            rule = sanitize_rules.get(v.rule_id) if v.rule_id else None
            if rule is not None:
                spans.extend(
                    m.span() for m in rule_set.pattern_for(rule).finditer(content)
                )

        if not spans:
            return content

        pieces = []
        last_end = 0
        for start, end in sorted(spans):
            if start < last_end:
                # Overlapping span, extend the previous replacement
                last_end = max(last_end, end)
                continue
            pieces.append(content[last_end:start])
            pieces.append(SANITIZE_PLACEHOLDER)
            last_end = end
        pieces.append(content[last_end:])

        sanitized = "".join(pieces).strip()
        return sanitized or SAFE_REFUSAL

    @staticmethod
    def _suggest_alternatives(violations: Sequence[Violation]) -> list[str]:
        suggestions: list[str] = []
        for violation in violations:
            for suggestion in SUGGESTED_ALTERNATIVES.get(violation.type, []):
                if suggestion not in suggestions:
                    suggestions.append(suggestion)
        return suggestions
