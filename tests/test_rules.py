"""
Tests for the rule store: CRUD, validation, testing and import/export.
"""

import pytest
from pydantic import ValidationError

from kindgate.config import AgeGroup, AgeGroupPolicy, default_policies
from kindgate.errors import (
    ConfigurationImportError,
    RuleNotFoundError,
    RuleValidationError,
)
from kindgate.safety.base import ContentContext, RuleAction, RuleCategory, Severity
from kindgate.safety.rules import (
    RuleFilters,
    RuleStore,
    SafetyRule,
    find_conflicts,
    validate_rule,
)


def make_rule(**overrides):
    data = {
        "id": "rule_candy",
        "name": "Candy talk",
        "pattern": r"\b(candy|sweets)\b",
        "category": RuleCategory.TOPIC,
        "topic": "candy",
        "action": RuleAction.BLOCK,
        "severity": Severity.MEDIUM,
        "age_groups": [AgeGroup.CHILD],
    }
    data.update(overrides)
    return SafetyRule(**data)


class TestRuleValidation:
    """Tests for rule validation on create/update."""

    def test_valid_rule_has_no_errors(self):
        assert validate_rule(make_rule()) == []

    def test_empty_name_and_pattern(self):
        errors = validate_rule(make_rule(name="", pattern=""))
        assert "Rule name is required" in errors
        assert "Rule pattern is required" in errors

    def test_invalid_regex(self):
        errors = validate_rule(make_rule(pattern="(unclosed"))
        assert any(e.startswith("Invalid regex pattern") for e in errors)

    def test_requires_age_group(self):
        errors = validate_rule(make_rule(age_groups=[]))
        assert "At least one age group must be specified" in errors

    @pytest.mark.parametrize("pattern", [r"(a+)+b", r"(\w*)*x", r".*.*foo", r"(ab+){2,}"])
    def test_catastrophic_backtracking_rejected(self, pattern):
        errors = validate_rule(make_rule(pattern=pattern))
        assert any("catastrophic backtracking" in e for e in errors)

    def test_bounded_quantifiers_accepted(self):
        assert validate_rule(make_rule(pattern=r"\bhow to\b.{0,40}?\bbake\b")) == []

    def test_topic_rules_need_topic(self):
        errors = validate_rule(make_rule(topic=None))
        assert "Topic rules must name the topic they classify" in errors

    def test_default_rules_are_valid(self, rule_store):
        for rule in rule_store.get_rules():
            assert validate_rule(rule) == [], rule.id

    def test_policy_topics_cannot_overlap(self):
        with pytest.raises(ValidationError):
            AgeGroupPolicy(allowed_topics=["games"], blocked_topics=["Games"])


class TestRuleCrud:
    """Tests for creating, updating and deleting rules."""

    def test_store_starts_at_version_one(self, rule_store):
        assert rule_store.version == 1
        assert rule_store.active.version == 1

    def test_create_rule_bumps_version(self, rule_store):
        rule = rule_store.create_rule(make_rule())
        assert rule_store.version == 2
        assert rule_store.get_rule("rule_candy") == rule
        assert rule in rule_store.active.rules

    def test_create_from_dict(self, rule_store):
        rule = rule_store.create_rule(
            {
                "name": "Spoilers",
                "pattern": r"\bspoiler\b",
                "category": "profanity",
                "action": "warn",
                "age_groups": ["teen"],
            }
        )
        assert rule.id.startswith("rule_")
        assert rule.action == RuleAction.WARN
        assert rule.contexts == list(ContentContext)

    def test_create_invalid_rule_leaves_store_unchanged(self, rule_store):
        with pytest.raises(RuleValidationError) as exc_info:
            rule_store.create_rule(make_rule(pattern="(a+)+"))
        assert exc_info.value.errors
        assert rule_store.version == 1

    def test_duplicate_id_rejected(self, rule_store):
        rule_store.create_rule(make_rule())
        with pytest.raises(RuleValidationError):
            rule_store.create_rule(make_rule())

    def test_update_creates_new_version(self, rule_store):
        original = rule_store.create_rule(make_rule())
        updated = rule_store.update_rule("rule_candy", {"severity": Severity.HIGH})

        assert updated.version == 2
        assert updated.severity == Severity.HIGH
        assert original.version == 1
        assert original.severity == Severity.MEDIUM
        assert [r.version for r in rule_store.history("rule_candy")] == [1, 2]
        assert rule_store.resolve_ref("rule_candy@1") == original
        assert rule_store.resolve_ref("rule_candy@2") == updated

    def test_rules_are_immutable(self):
        rule = make_rule()
        with pytest.raises(ValidationError):
            rule.pattern = "changed"

    def test_invalid_update_rejected(self, rule_store):
        rule_store.create_rule(make_rule())
        with pytest.raises(RuleValidationError):
            rule_store.update_rule("rule_candy", {"pattern": "("})
        assert rule_store.get_rule("rule_candy").version == 1

    def test_delete_keeps_history(self, rule_store):
        rule_store.create_rule(make_rule())
        rule_store.delete_rule("rule_candy")

        with pytest.raises(RuleNotFoundError):
            rule_store.get_rule("rule_candy")
        assert len(rule_store.history("rule_candy")) == 1

    def test_unknown_rule(self, rule_store):
        with pytest.raises(RuleNotFoundError):
            rule_store.update_rule("missing", {"name": "x"})
        with pytest.raises(RuleNotFoundError):
            rule_store.delete_rule("missing")

    def test_listeners_notified(self, rule_store):
        events = []
        rule_store.subscribe(events.append)

        rule_store.create_rule(make_rule())
        rule_store.update_rule("rule_candy", {"enabled": False})
        rule_store.delete_rule("rule_candy")

        assert [e.kind for e in events] == ["rule_created", "rule_updated", "rule_deleted"]
        assert [e.version for e in events] == [2, 3, 4]

    def test_failing_listener_does_not_break_store(self, rule_store):
        def broken(event):
            raise RuntimeError("listener down")

        rule_store.subscribe(broken)
        rule_store.create_rule(make_rule())
        assert rule_store.version == 2

    def test_set_policy(self, rule_store):
        rule_store.set_policy(AgeGroup.TEEN, {"blocked_topics": ["drugs"], "max_complexity": 50})
        assert rule_store.get_policy(AgeGroup.TEEN).max_complexity == 50
        assert rule_store.active.policy_for(AgeGroup.TEEN).blocked_topics == ["drugs"]

    def test_set_invalid_policy(self, rule_store):
        with pytest.raises(RuleValidationError):
            rule_store.set_policy(AgeGroup.TEEN, {"max_complexity": 150})


class TestRuleFilters:
    """Tests for GetRules filtering."""

    def test_filter_by_category(self, rule_store):
        rules = rule_store.get_rules(RuleFilters(categories=[RuleCategory.PROFANITY]))
        assert {r.id for r in rules} == {
            "profanity_mild",
            "profanity_moderate",
            "profanity_severe",
        }

    def test_filter_by_search_term(self, rule_store):
        rules = rule_store.get_rules(RuleFilters(search_term="weapon"))
        assert "topic_weapons" in {r.id for r in rules}

    def test_filter_by_enabled_and_severity(self, rule_store):
        rule_store.update_rule("topic_drugs", {"enabled": False})
        disabled = rule_store.get_rules(RuleFilters(enabled=False))
        assert [r.id for r in disabled] == ["topic_drugs"]

        high = rule_store.get_rules(RuleFilters(severities=[Severity.HIGH]))
        assert all(r.severity == Severity.HIGH for r in high)
        assert high

    def test_filter_by_age_group(self, rule_store):
        rule_store.create_rule(make_rule())
        teen_rules = rule_store.get_rules(RuleFilters(age_groups=[AgeGroup.TEEN]))
        assert "rule_candy" not in {r.id for r in teen_rules}

    def test_most_recently_updated_first(self, rule_store):
        rule_store.create_rule(make_rule())
        assert rule_store.get_rules()[0].id == "rule_candy"


class TestConflicts:
    """Tests for conflict detection."""

    def test_same_pattern_different_action(self):
        first = make_rule(id="a", action=RuleAction.BLOCK)
        second = make_rule(id="b", action=RuleAction.WARN)
        conflicts = find_conflicts([first, second])
        assert len(conflicts) == 1
        assert "different actions" in conflicts[0].message

    def test_block_versus_flag_for_same_topic(self):
        first = make_rule(id="a", pattern=r"\bcandy\b", action=RuleAction.BLOCK)
        second = make_rule(
            id="b",
            pattern=r"\bsweets\b",
            action=RuleAction.FLAG,
            age_groups=[AgeGroup.CHILD, AgeGroup.TEEN],
        )
        conflicts = find_conflicts([first, second])
        assert len(conflicts) == 1
        assert "child" in conflicts[0].message

    def test_disabled_rules_ignored(self):
        first = make_rule(id="a", action=RuleAction.BLOCK)
        second = make_rule(id="b", action=RuleAction.WARN, enabled=False)
        assert find_conflicts([first, second]) == []

    def test_conflicts_are_warnings_not_errors(self, rule_store):
        rule_store.create_rule(make_rule(id="a"))
        rule_store.create_rule(make_rule(id="b", action=RuleAction.WARN))
        assert len(rule_store.find_conflicts()) == 1


class TestRuleTesting:
    """Tests for TestRule accuracy metrics."""

    def test_explicit_expectations(self, rule_store):
        rule = make_rule(pattern=r"\b(cat|dog)\b")
        result = rule_store.test_rule(
            rule,
            [("I have a cat", True), ("hotdog stand", False), ("a dog park", True)],
        )
        assert result.accuracy == 1.0
        assert result.false_positives == 0
        assert result.false_negatives == 0
        assert result.results[0].matched_text == "cat"
        assert result.results[0].confidence == 0.9

    def test_inferred_expectations(self, rule_store):
        rule = make_rule(pattern=r"\b(cat|dog)\b")
        result = rule_store.test_rule(rule, ["I have a cat", "I like birds"])
        assert [r.expected for r in result.results] == [True, False]
        assert result.accuracy == 1.0
        assert result.match_rate == 0.5

    def test_false_positive_recommendation(self, rule_store):
        rule = make_rule(pattern=r"\bbat\b")
        result = rule_store.test_rule(
            rule, [("baseball bat", False), ("bat cave", False), ("a bat", True)]
        )
        assert result.false_positives == 2
        assert any("more specific" in r for r in result.recommendations)

    def test_invalid_rule_cannot_be_tested(self, rule_store):
        with pytest.raises(RuleValidationError):
            rule_store.test_rule(make_rule(pattern="("), ["x"])


class TestImportExport:
    """Tests for configuration import/export."""

    def test_export_has_checksum(self, rule_store):
        config = rule_store.export_configuration()
        assert config.checksum == config.compute_checksum()
        assert set(config.policies) == set(AgeGroup)
        assert len(config.rules) == len(rule_store.get_rules())

    def test_round_trip_restores_rules(self, rule_store):
        exported = rule_store.export_configuration().model_dump(mode="json")
        rule_store.delete_rule("topic_drugs")
        version_before = rule_store.version

        report = rule_store.import_configuration(exported)

        assert report.is_valid
        assert rule_store.get_rule("topic_drugs").id == "topic_drugs"
        assert rule_store.version == version_before + 1

    def test_invalid_configuration_rejected_atomically(self, rule_store):
        exported = rule_store.export_configuration().model_dump(mode="json")
        exported["checksum"] = None
        exported["rules"][0]["pattern"] = "(broken"
        version_before = rule_store.version
        rules_before = rule_store.get_rules()

        with pytest.raises(ConfigurationImportError) as exc_info:
            rule_store.import_configuration(exported)

        assert any("Invalid regex pattern" in e for e in exc_info.value.errors)
        assert rule_store.version == version_before
        assert rule_store.get_rules() == rules_before

    def test_checksum_mismatch_detected(self, rule_store):
        exported = rule_store.export_configuration().model_dump(mode="json")
        exported["rules"][0]["name"] = "Tampered"
        report = rule_store.validate_configuration(exported)
        assert "Checksum mismatch: configuration was modified" in report.errors

    def test_missing_policy_rejected(self, rule_store):
        exported = rule_store.export_configuration().model_dump(mode="json")
        exported["checksum"] = None
        del exported["policies"]["teen"]
        report = rule_store.validate_configuration(exported)
        assert "Missing policy for age group: teen" in report.errors

    def test_conflicts_reported_as_warnings(self, rule_store):
        config = rule_store.export_configuration()
        config.rules.append(make_rule(id="candy_a"))
        config.rules.append(make_rule(id="candy_b", action=RuleAction.WARN))
        config.checksum = config.compute_checksum()

        report = rule_store.validate_configuration(config)
        assert report.is_valid
        assert report.warnings

    def test_failed_apply_rolls_back(self, rule_store, monkeypatch):
        config = rule_store.export_configuration()
        config.rules = [r for r in config.rules if r.id != "topic_drugs"]
        config.checksum = config.compute_checksum()
        version_before = rule_store.version

        def fail(policies):
            raise RuntimeError("disk full")

        monkeypatch.setattr(rule_store, "_missing_policy_check", fail)

        with pytest.raises(ConfigurationImportError):
            rule_store.import_configuration(config)

        assert rule_store.get_rule("topic_drugs").id == "topic_drugs"
        assert rule_store.version == version_before
        assert rule_store.active.version == version_before

    def test_imported_policies_apply(self, rule_store):
        policies = default_policies()
        policies[AgeGroup.ADULT] = AgeGroupPolicy(blocked_topics=["drugs"])
        config = rule_store.export_configuration()
        config.policies = policies
        config.checksum = config.compute_checksum()

        rule_store.import_configuration(config)
        assert rule_store.get_policy(AgeGroup.ADULT).blocked_topics == ["drugs"]

    def test_changed_rule_keeps_recorded_version_intact(self, rule_store):
        exported = rule_store.export_configuration().model_dump(mode="json")
        exported["checksum"] = None
        for rule in exported["rules"]:
            if rule["id"] == "profanity_mild":
                rule["pattern"] = r"\b(gosh)\b"

        rule_store.import_configuration(exported)

        active = rule_store.get_rule("profanity_mild")
        assert active.version == 2
        assert active.pattern == r"\b(gosh)\b"
        assert rule_store.resolve_ref("profanity_mild@1").pattern == r"\b(darn|heck|crud)\b"
        assert rule_store.resolve_ref("profanity_mild@2") == active
        assert [r.version for r in rule_store.history("profanity_mild")] == [1, 2]

    def test_unchanged_rules_are_not_reversioned(self, rule_store):
        exported = rule_store.export_configuration().model_dump(mode="json")
        rule_store.import_configuration(exported)

        assert rule_store.get_rule("profanity_mild").version == 1
        assert len(rule_store.history("profanity_mild")) == 1
