"""
Built-in safety rules.

The default rule set covers the three pattern-driven pipeline stages:
- Profanity, in three tiers (severity low / medium / high)
- Topic classifiers, referenced by name from the age group policies
- Harmful instruction patterns, applied to every age group

English-only and easy to bypass with creative spelling; operators extend
the set through the rule store.
"""

from __future__ import annotations

from kindgate.config import AgeGroup
from kindgate.safety.base import RuleAction, RuleCategory, Severity
from kindgate.safety.rules import SafetyRule

ALL_AGE_GROUPS = [AgeGroup.CHILD, AgeGroup.TEEN, AgeGroup.ADULT]

# (id, tier description, pattern, severity)
PROFANITY_TIERS: list[tuple[str, str, str, Severity]] = [
    ("profanity_mild", "mild", r"\b(darn|heck|crud)\b", Severity.LOW),
    ("profanity_moderate", "moderate", r"\b(damn|hell|crap)\b", Severity.MEDIUM),
    ("profanity_severe", "severe", r"\b(fuck\w*|shit\w*|bitch\w*)\b", Severity.HIGH),
]

# topic name -> pattern
TOPIC_PATTERNS: dict[str, str] = {
    "violence": r"\b(violence|violent|fighting|fight|hurt|kill|killing|blood)\b",
    "weapons": r"\b(weapons?|guns?|knife|knives|bombs?|rifles?)\b",
    "adult_content": r"\b(sex|sexual|porn\w*|explicit|nude|naked)\b",
    "drugs": r"\b(drugs?|alcohol|smoke|smoking|cigarettes?|marijuana|cocaine|vaping)\b",
    "scary_content": r"\b(scary|scare|horror|ghosts?|monsters?|nightmares?)\b",
    "extreme_violence": r"\b(murder\w*|torture\w*|massacre|gore|behead\w*)\b",
    "illegal_activities": r"\b(shoplift\w*|steal(ing)?|counterfeit|hack into|break into)\b",
}

HARMFUL_INSTRUCTION_PATTERNS: list[tuple[str, str, str]] = [
    (
        "harmful_how_to_hurt",
        "How-to request for hurting someone",
        r"\bhow (to|do i|can i) (hurt|harm|kill|poison|attack)\b",
    ),
    (
        "harmful_how_to_make_weapon",
        "How-to request for building a weapon",
        r"\bhow (to|do i|can i) (make|build|create)\b.{0,40}?\b(weapons?|bombs?|poison|explosives?|guns?)\b",
    ),
    (
        "harmful_make_weapon",
        "Imperative to make a dangerous item",
        r"\bmake (a |an |some )?(weapons?|bombs?|poison|drugs)\b",
    ),
    (
        "harmful_self_harm",
        "Self-harm language",
        r"\b(suicide|self[- ]harm|cut yourself|kill yourself)\b",
    ),
]


def default_rules() -> list[SafetyRule]:
    """Build a fresh copy of the built-in rules."""
    rules: list[SafetyRule] = []

    for rule_id, tier, pattern, severity in PROFANITY_TIERS:
        rules.append(
            SafetyRule(
                id=rule_id,
                name=f"Profanity ({tier})",
                description=f"Replaces {tier} profanity with a friendly word",
                pattern=pattern,
                category=RuleCategory.PROFANITY,
                action=RuleAction.SANITIZE,
                severity=severity,
                age_groups=list(ALL_AGE_GROUPS),
            )
        )

    for topic, pattern in TOPIC_PATTERNS.items():
        rules.append(
            SafetyRule(
                id=f"topic_{topic}",
                name=f"Topic: {topic.replace('_', ' ')}",
                description=f"Detects {topic.replace('_', ' ')} content",
                pattern=pattern,
                category=RuleCategory.TOPIC,
                topic=topic,
                action=RuleAction.BLOCK,
                severity=Severity.MEDIUM,
                age_groups=list(ALL_AGE_GROUPS),
            )
        )

    for rule_id, description, pattern in HARMFUL_INSTRUCTION_PATTERNS:
        rules.append(
            SafetyRule(
                id=rule_id,
                name=description,
                description=description,
                pattern=pattern,
                category=RuleCategory.HARMFUL_INSTRUCTION,
                action=RuleAction.BLOCK,
                severity=Severity.HIGH,
                age_groups=list(ALL_AGE_GROUPS),
            )
        )

    return rules
