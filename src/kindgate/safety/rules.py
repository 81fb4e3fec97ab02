"""
Safety rule store.

Holds the safety rules and per-age-group policies that drive the filter
pipeline. Rules are kept as data (regex patterns) rather than code so the
rule set can be validated, tested, exported and imported.

Every mutation bumps the store version and publishes a fresh immutable
``RuleSet`` snapshot. Rule updates never mutate an existing rule: they
append a new version to the rule's history, so audit entries that
reference ``rule_id@version`` stay resolvable.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kindgate.config import AgeGroup, AgeGroupPolicy, default_policies
from kindgate.errors import (
    ConfigurationImportError,
    RuleNotFoundError,
    RuleValidationError,
)
from kindgate.logging import get_logger
from kindgate.safety.base import ContentContext, RuleAction, RuleCategory, Severity

logger = get_logger(__name__)

CONFIGURATION_SCHEMA_VERSION = "1.0"

# Nested unbounded quantifiers such as (a+)+ or (\w*)*
_NESTED_QUANTIFIER_RE = re.compile(
    r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)(?:[+*]|\{\d+,\})"
)
_ADJACENT_WILDCARDS = (".*.*", ".+.+", ".*.+", ".+.*")


class SafetyRule(BaseModel):
    """A single pattern-based safety rule. Instances are immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"rule_{uuid4().hex[:12]}")
    name: str = Field(..., description="Human readable rule name")
    description: str = Field(default="", description="What the rule catches")
    pattern: str = Field(..., description="Case-insensitive regular expression")
    category: RuleCategory = Field(
        default=RuleCategory.TOPIC, description="Pipeline stage that evaluates it"
    )
    topic: str | None = Field(
        default=None, description="Topic name referenced by age group policies"
    )
    action: RuleAction = Field(default=RuleAction.BLOCK)
    severity: Severity = Field(default=Severity.MEDIUM)
    age_groups: list[AgeGroup] = Field(default_factory=list)
    contexts: list[ContentContext] = Field(
        default_factory=lambda: list(ContentContext)
    )
    enabled: bool = Field(default=True)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def ref(self) -> str:
        """Stable reference to this exact rule version."""
        return f"{self.id}@{self.version}"

    def compile(self) -> re.Pattern[str]:
        return re.compile(self.pattern, re.IGNORECASE)

    def applies_to(self, age_group: AgeGroup, context: ContentContext) -> bool:
        return self.enabled and age_group in self.age_groups and context in self.contexts


@dataclass
class RuleFilters:
    """Filters accepted by ``RuleStore.get_rules``."""

    age_groups: list[AgeGroup] | None = None
    contexts: list[ContentContext] | None = None
    severities: list[Severity] | None = None
    categories: list[RuleCategory] | None = None
    enabled: bool | None = None
    search_term: str | None = None


@dataclass(frozen=True)
class RuleConflict:
    """Two enabled rules that disagree. Reported as a warning, never an error."""

    rule_id: str
    other_rule_id: str
    message: str


@dataclass
class RuleSampleResult:
    content: str
    matched: bool
    confidence: float
    expected: bool
    matched_text: str | None = None
    suggested_action: RuleAction | None = None


@dataclass
class RuleTestResult:
    """Accuracy metrics from running a rule over sample content."""

    rule_id: str
    results: list[RuleSampleResult] = field(default_factory=list)
    accuracy: float = 0.0
    match_rate: float = 0.0
    false_positives: int = 0
    false_negatives: int = 0
    recommendations: list[str] = field(default_factory=list)


@dataclass
class ConfigurationReport:
    """Outcome of validating a configuration document."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RuleEvent:
    """Change notification published by the rule store."""

    kind: str  # rule_created, rule_updated, rule_deleted, policy_updated, configuration_imported
    version: int
    rule_id: str | None = None


class RuleConfiguration(BaseModel):
    """Exported rule configuration document, used for backup and promotion."""

    schema_version: str = Field(default=CONFIGURATION_SCHEMA_VERSION)
    rule_set_version: int = Field(default=0, ge=0)
    exported_at: datetime = Field(default_factory=datetime.now)
    rules: list[SafetyRule] = Field(default_factory=list)
    policies: dict[AgeGroup, AgeGroupPolicy] = Field(default_factory=dict)
    checksum: str | None = Field(default=None)

    def compute_checksum(self) -> str:
        return compute_checksum(self.rules, self.policies)


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of the active rules and policies."""

    version: int
    rules: tuple[SafetyRule, ...]
    policies: dict[AgeGroup, AgeGroupPolicy]
    compiled: dict[str, re.Pattern[str]]

    def policy_for(self, age_group: AgeGroup) -> AgeGroupPolicy:
        return self.policies[age_group]

    def rules_for(
        self,
        category: RuleCategory,
        age_group: AgeGroup,
        context: ContentContext,
    ) -> list[SafetyRule]:
        return [
            r
            for r in self.rules
            if r.category == category and r.applies_to(age_group, context)
        ]

    def pattern_for(self, rule: SafetyRule) -> re.Pattern[str]:
        return self.compiled[rule.id]


def compute_checksum(
    rules: Iterable[SafetyRule], policies: dict[AgeGroup, AgeGroupPolicy]
) -> str:
    """SHA-256 over the canonical JSON form of rules and policies."""
    payload = {
        "rules": [
            r.model_dump(mode="json")
            for r in sorted(rules, key=lambda r: (r.id, r.version))
        ],
        "policies": {
            group.value: policy.model_dump(mode="json")
            for group, policy in sorted(policies.items(), key=lambda kv: kv[0].value)
        },
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _definition(rule: SafetyRule) -> dict[str, Any]:
    return rule.model_dump(exclude={"created_at", "updated_at"})


def validate_rule(rule: SafetyRule) -> list[str]:
    """Return the list of problems with a rule (empty when valid)."""
    errors: list[str] = []

    if not rule.name or not rule.name.strip():
        errors.append("Rule name is required")

    if not rule.pattern or not rule.pattern.strip():
        errors.append("Rule pattern is required")
    else:
        try:
            rule.compile()
        except re.error as e:
            errors.append(f"Invalid regex pattern: {e}")

        if any(w in rule.pattern for w in _ADJACENT_WILDCARDS) or (
            _NESTED_QUANTIFIER_RE.search(rule.pattern)
        ):
            errors.append(
                "Pattern may cause performance issues (catastrophic backtracking)"
            )

    if not rule.age_groups:
        errors.append("At least one age group must be specified")

    if not rule.contexts:
        errors.append("At least one context must be specified")

    if rule.category == RuleCategory.TOPIC and not (rule.topic or "").strip():
        errors.append("Topic rules must name the topic they classify")

    return errors


def find_conflicts(rules: Iterable[SafetyRule]) -> list[RuleConflict]:
    """
    Find enabled rules that disagree with each other.

    Two rules conflict when they share a pattern but take different
    actions, or when they classify the same topic for overlapping age
    groups and one blocks while the other only warns or flags.
    """
    enabled = [r for r in rules if r.enabled]
    conflicts: list[RuleConflict] = []
    permissive = {RuleAction.WARN, RuleAction.FLAG}

    for i, first in enumerate(enabled):
        for second in enabled[i + 1 :]:
            if first.pattern == second.pattern and first.action != second.action:
                conflicts.append(
                    RuleConflict(
                        rule_id=first.id,
                        other_rule_id=second.id,
                        message=(
                            f"Rule '{first.name}' conflicts with '{second.name}': "
                            "same pattern but different actions"
                        ),
                    )
                )
                continue

            shared = sorted(
                {g.value for g in first.age_groups} & {g.value for g in second.age_groups}
            )
            actions = {first.action, second.action}
            if (
                shared
                and first.topic
                and first.topic == second.topic
                and RuleAction.BLOCK in actions
                and actions & permissive
            ):
                conflicts.append(
                    RuleConflict(
                        rule_id=first.id,
                        other_rule_id=second.id,
                        message=(
                            f"Rule '{first.name}' may contradict '{second.name}' "
                            f"for age groups: {', '.join(shared)}"
                        ),
                    )
                )

    return conflicts


def _expectation_keywords(pattern: str) -> list[str]:
    stripped = re.sub(r"\\[a-zA-Z]", " ", pattern)
    keywords = []
    for part in stripped.split("|"):
        word = re.sub(r"[^\w\s-]", "", part).strip().lower()
        if word:
            keywords.append(word)
    return keywords


class RuleStore:
    """
    Holds the compiled set of safety rules and per-age-group policies.

    Features:
    - Rule CRUD with validation
    - Versioned, immutable rule history
    - Conflict detection (warnings only)
    - Atomic configuration import with rollback
    """

    def __init__(
        self,
        rules: Iterable[SafetyRule] | None = None,
        policies: dict[AgeGroup, AgeGroupPolicy] | None = None,
    ):
        """
        Initialize the rule store.

        Args:
            rules: Initial rules (the built-in rule set when None)
            policies: Per-age-group policies (defaults when None)
        """
        if rules is None:
            from kindgate.safety.defaults import default_rules

            rules = default_rules()

        self._rules: dict[str, SafetyRule] = {}
        self._history: dict[str, list[SafetyRule]] = {}
        self._policies: dict[AgeGroup, AgeGroupPolicy] = dict(
            policies or default_policies()
        )
        self._version = 0
        self._listeners: list[Callable[[RuleEvent], Any]] = []

        for rule in rules:
            errors = validate_rule(rule)
            if errors:
                raise RuleValidationError(f"Invalid rule {rule.id}", errors)
            self._rules[rule.id] = rule
            self._history.setdefault(rule.id, []).append(rule)

        self._missing_policy_check(self._policies)
        self._publish(RuleEvent(kind="store_initialized", version=self._version + 1))

    # === Snapshot ===

    @property
    def version(self) -> int:
        """Monotonic rule set version, bumped on every change."""
        return self._version

    @property
    def active(self) -> RuleSet:
        """The current immutable rule set snapshot."""
        return self._snapshot

    def _publish(self, event: RuleEvent) -> None:
        self._version = event.version
        self._snapshot = RuleSet(
            version=self._version,
            rules=tuple(self._rules.values()),
            policies=dict(self._policies),
            compiled={r.id: r.compile() for r in self._rules.values()},
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("rule_listener_error", kind=event.kind, error=str(e))

    def subscribe(self, listener: Callable[[RuleEvent], Any]) -> None:
        """Register a callback invoked after every rule set change."""
        self._listeners.append(listener)

    @staticmethod
    def _missing_policy_check(policies: dict[AgeGroup, AgeGroupPolicy]) -> None:
        missing = [g.value for g in AgeGroup if g not in policies]
        if missing:
            raise ConfigurationImportError(
                "Policies are required for every age group",
                [f"Missing policy for age group: {g}" for g in missing],
            )

    # === Rule CRUD ===

    def create_rule(self, rule: SafetyRule | dict[str, Any]) -> SafetyRule:
        """Validate and add a new rule."""
        data = rule.model_dump() if isinstance(rule, SafetyRule) else dict(rule)
        now = datetime.now()
        data.update(version=1, created_at=now, updated_at=now)
        new_rule = self._build_rule(data)

        if new_rule.id in self._rules or new_rule.id in self._history:
            raise RuleValidationError(
                f"Rule id already exists: {new_rule.id}",
                [f"Duplicate rule id: {new_rule.id}"],
            )

        self._rules[new_rule.id] = new_rule
        self._history[new_rule.id] = [new_rule]
        self._publish(
            RuleEvent(kind="rule_created", version=self._version + 1, rule_id=new_rule.id)
        )

        logger.info(
            "rule_created",
            rule_id=new_rule.id,
            category=new_rule.category.value,
            action=new_rule.action.value,
        )
        self._warn_conflicts(new_rule.id)
        return new_rule

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> SafetyRule:
        """Create a new version of a rule with the given changes applied."""
        existing = self.get_rule(rule_id)

        data = existing.model_dump()
        data.update(updates)
        data.update(
            id=rule_id,
            version=existing.version + 1,
            created_at=existing.created_at,
            updated_at=datetime.now(),
        )
        updated = self._build_rule(data)

        self._rules[rule_id] = updated
        self._history[rule_id].append(updated)
        self._publish(
            RuleEvent(kind="rule_updated", version=self._version + 1, rule_id=rule_id)
        )

        logger.info(
            "rule_updated",
            rule_id=rule_id,
            rule_version=updated.version,
            fields=sorted(updates),
        )
        self._warn_conflicts(rule_id)
        return updated

    def delete_rule(self, rule_id: str) -> None:
        """Remove a rule from the active set. Its history is kept."""
        self.get_rule(rule_id)
        del self._rules[rule_id]
        self._publish(
            RuleEvent(kind="rule_deleted", version=self._version + 1, rule_id=rule_id)
        )
        logger.info("rule_deleted", rule_id=rule_id)

    def get_rule(self, rule_id: str) -> SafetyRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule not found: {rule_id}", {"rule_id": rule_id})
        return rule

    def history(self, rule_id: str) -> list[SafetyRule]:
        """All versions of a rule, oldest first, including deleted rules."""
        if rule_id not in self._history:
            raise RuleNotFoundError(f"Rule not found: {rule_id}", {"rule_id": rule_id})
        return list(self._history[rule_id])

    def resolve_ref(self, ref: str) -> SafetyRule | None:
        """Look up a ``rule_id@version`` reference recorded in an audit entry."""
        rule_id, _, version = ref.rpartition("@")
        for rule in self._history.get(rule_id, []):
            if str(rule.version) == version:
                return rule
        return None

    def get_rules(self, filters: RuleFilters | None = None) -> list[SafetyRule]:
        """Return active rules matching the filters, most recently updated first."""
        rules = list(self._rules.values())

        if filters:
            if filters.age_groups:
                rules = [
                    r for r in rules if any(g in filters.age_groups for g in r.age_groups)
                ]
            if filters.contexts:
                rules = [
                    r for r in rules if any(c in filters.contexts for c in r.contexts)
                ]
            if filters.severities:
                rules = [r for r in rules if r.severity in filters.severities]
            if filters.categories:
                rules = [r for r in rules if r.category in filters.categories]
            if filters.enabled is not None:
                rules = [r for r in rules if r.enabled == filters.enabled]
            if filters.search_term:
                term = filters.search_term.lower()
                rules = [
                    r
                    for r in rules
                    if term in r.name.lower()
                    or term in r.description.lower()
                    or term in r.pattern.lower()
                ]

        return sorted(rules, key=lambda r: r.updated_at, reverse=True)

    def find_conflicts(self) -> list[RuleConflict]:
        return find_conflicts(self._rules.values())

    def _warn_conflicts(self, rule_id: str) -> None:
        for conflict in self.find_conflicts():
            if rule_id in (conflict.rule_id, conflict.other_rule_id):
                logger.warning(
                    "rule_conflict",
                    rule_id=conflict.rule_id,
                    other_rule_id=conflict.other_rule_id,
                    message=conflict.message,
                )

    @staticmethod
    def _build_rule(data: dict[str, Any]) -> SafetyRule:
        try:
            rule = SafetyRule.model_validate(data)
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise RuleValidationError("Invalid rule", errors) from e

        errors = validate_rule(rule)
        if errors:
            raise RuleValidationError(f"Invalid rule: {', '.join(errors)}", errors)
        return rule

    # === Policies ===

    def get_policy(self, age_group: AgeGroup) -> AgeGroupPolicy:
        return self._policies[age_group]

    def set_policy(
        self, age_group: AgeGroup, policy: AgeGroupPolicy | dict[str, Any]
    ) -> AgeGroupPolicy:
        """Replace the policy for one age group."""
        try:
            new_policy = (
                policy
                if isinstance(policy, AgeGroupPolicy)
                else AgeGroupPolicy.model_validate(policy)
            )
        except ValidationError as e:
            raise RuleValidationError(
                "Invalid age group policy", [err["msg"] for err in e.errors()]
            ) from e

        self._policies[age_group] = new_policy
        self._publish(RuleEvent(kind="policy_updated", version=self._version + 1))
        logger.info("policy_updated", age_group=age_group.value)
        return new_policy

    # === Rule testing ===

    def test_rule(
        self,
        rule: SafetyRule,
        samples: Iterable[str | tuple[str, bool]],
    ) -> RuleTestResult:
        """
        Run a rule over sample content and report accuracy.

        Samples are plain strings or ``(content, should_match)`` pairs. When
        no expectation is given, it is inferred from the keywords in the
        rule's alternation.
        """
        errors = validate_rule(rule)
        if errors:
            raise RuleValidationError(f"Cannot test invalid rule {rule.id}", errors)

        pattern = rule.compile()
        keywords = _expectation_keywords(rule.pattern)
        result = RuleTestResult(rule_id=rule.id)
        true_matches = 0

        for sample in samples:
            if isinstance(sample, tuple):
                content, expected = sample
            else:
                content = sample
                expected = any(k in content.lower() for k in keywords)

            match = pattern.search(content)
            matched = match is not None
            result.results.append(
                RuleSampleResult(
                    content=content,
                    matched=matched,
                    confidence=0.9 if matched else 0.1,
                    expected=expected,
                    matched_text=match.group(0) if match else None,
                    suggested_action=rule.action if matched else None,
                )
            )
            if matched == expected:
                true_matches += 1
            elif matched:
                result.false_positives += 1
            else:
                result.false_negatives += 1

        total = len(result.results)
        if total:
            result.accuracy = true_matches / total
            result.match_rate = sum(1 for r in result.results if r.matched) / total
            if result.false_positives / total > 0.2:
                result.recommendations.append(
                    "Consider making the pattern more specific to reduce false positives"
                )
            if result.false_negatives / total > 0.2:
                result.recommendations.append(
                    "Consider making the pattern more inclusive to catch more violations"
                )
        if len(rule.pattern) > 100:
            result.recommendations.append(
                "Consider breaking complex patterns into multiple simpler rules"
            )

        logger.debug(
            "rule_tested",
            rule_id=rule.id,
            samples=total,
            accuracy=round(result.accuracy, 3),
        )
        return result

    # === Import / export ===

    def export_configuration(self) -> RuleConfiguration:
        """Export rules and policies with a checksum."""
        config = RuleConfiguration(
            rule_set_version=self._version,
            rules=list(self._rules.values()),
            policies=dict(self._policies),
        )
        config.checksum = config.compute_checksum()
        logger.info(
            "configuration_exported",
            rule_count=len(config.rules),
            rule_set_version=self._version,
        )
        return config

    def validate_configuration(
        self, config: RuleConfiguration | dict[str, Any]
    ) -> ConfigurationReport:
        """Check a configuration document without applying it."""
        report = ConfigurationReport()

        if not isinstance(config, RuleConfiguration):
            try:
                config = RuleConfiguration.model_validate(config)
            except ValidationError as e:
                report.errors.extend(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                )
                return report

        if config.schema_version != CONFIGURATION_SCHEMA_VERSION:
            report.errors.append(
                f"Unsupported schema version: {config.schema_version}"
            )

        if config.checksum and config.checksum != config.compute_checksum():
            report.errors.append("Checksum mismatch: configuration was modified")

        for group in AgeGroup:
            policy = config.policies.get(group)
            if policy is None:
                report.errors.append(f"Missing policy for age group: {group.value}")
                continue
            if not 0 <= policy.max_complexity <= 100:
                report.errors.append(
                    f"Invalid complexity level for {group.value}: must be between 0 and 100"
                )
            overlap = {t.lower() for t in policy.allowed_topics} & {
                t.lower() for t in policy.blocked_topics
            }
            if overlap:
                report.errors.append(
                    f"Allowed and blocked topics overlap for {group.value}: {sorted(overlap)}"
                )
            if policy.strict_mode and not policy.blocked_topics:
                report.warnings.append(
                    f"No blocked topics defined for {group.value} in strict mode"
                )

        seen: set[str] = set()
        for rule in config.rules:
            if rule.id in seen:
                report.errors.append(f"Duplicate rule id: {rule.id}")
            seen.add(rule.id)
            for error in validate_rule(rule):
                report.errors.append(f"Invalid rule {rule.name or rule.id}: {error}")

        report.warnings.extend(c.message for c in find_conflicts(config.rules))

        if len(config.rules) > 100:
            report.warnings.append(
                "Large number of rules may impact performance; consider consolidating"
            )

        return report

    def _reconcile_version(self, rule: SafetyRule) -> SafetyRule:
        """
        Keep ``id@version`` refs immutable across imports.

        An imported rule that reuses a recorded version with a different
        definition becomes the next version of that rule.
        """
        history = self._history.get(rule.id, [])
        recorded = next((r for r in history if r.version == rule.version), None)
        if recorded is None:
            return rule
        if _definition(recorded) == _definition(rule):
            return recorded

        next_version = max(r.version for r in history) + 1
        logger.info(
            "rule_reversioned_on_import",
            rule_id=rule.id,
            imported_version=rule.version,
            version=next_version,
        )
        return rule.model_copy(update={"version": next_version, "updated_at": datetime.now()})

    def import_configuration(
        self, config: RuleConfiguration | dict[str, Any]
    ) -> ConfigurationReport:
        """
        Replace the active rules and policies.

        The document is validated before anything changes. If applying it
        fails part way, the store is rolled back to its previous state.
        """
        report = self.validate_configuration(config)
        if not report.is_valid:
            logger.warning("configuration_import_rejected", errors=report.errors)
            raise ConfigurationImportError("Invalid configuration", report.errors)

        if not isinstance(config, RuleConfiguration):
            config = RuleConfiguration.model_validate(config)

        backup = (
            dict(self._rules),
            {k: list(v) for k, v in self._history.items()},
            dict(self._policies),
            self._version,
            self._snapshot,
        )

        try:
            self._rules = {}
            for rule in config.rules:
                rule = self._reconcile_version(rule)
                self._rules[rule.id] = rule
                history = self._history.setdefault(rule.id, [])
                if rule not in history:
                    history.append(rule)
            self._policies = dict(config.policies)
            self._missing_policy_check(self._policies)
            self._publish(
                RuleEvent(kind="configuration_imported", version=self._version + 1)
            )
        except Exception as e:
            (
                self._rules,
                self._history,
                self._policies,
                self._version,
                self._snapshot,
            ) = backup
            logger.error("configuration_import_rolled_back", error=str(e))
            raise ConfigurationImportError(
                f"Failed to apply configuration: {e}", [str(e)]
            ) from e

        logger.info(
            "configuration_imported",
            rule_count=len(self._rules),
            rule_set_version=self._version,
            warnings=len(report.warnings),
        )
        return report
