"""
Tests for settings and age group policies.
"""

import pytest
from pydantic import ValidationError

from kindgate.config import AgeGroup, AgeGroupPolicy, Settings, default_policies


class TestAgeGroup:
    def test_restriction_order(self):
        assert AgeGroup.CHILD.is_more_restrictive_than(AgeGroup.TEEN)
        assert AgeGroup.TEEN.is_more_restrictive_than(AgeGroup.ADULT)
        assert not AgeGroup.ADULT.is_more_restrictive_than(AgeGroup.CHILD)
        assert not AgeGroup.CHILD.is_more_restrictive_than(AgeGroup.CHILD)
        assert not AgeGroup.CHILD.is_more_restrictive_than(None)


class TestPolicies:
    def test_defaults_cover_every_group(self):
        policies = default_policies()
        assert set(policies) == set(AgeGroup)
        assert policies[AgeGroup.CHILD].max_complexity == 30
        assert policies[AgeGroup.TEEN].max_complexity == 60
        assert "scary_content" in policies[AgeGroup.CHILD].blocked_topics

    def test_overlapping_topics_rejected(self):
        with pytest.raises(ValidationError):
            AgeGroupPolicy(allowed_topics=["Games"], blocked_topics=["games"])

    def test_complexity_bounds(self):
        with pytest.raises(ValidationError):
            AgeGroupPolicy(max_complexity=120)


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_AGE_GROUP", "teen")
        monkeypatch.setenv("REVIEW_TIMEOUT_HOURS", "12")
        monkeypatch.setenv("NOTIFICATION_METHODS", "push, email")

        settings = Settings()

        assert settings.default_age_group == AgeGroup.TEEN
        assert settings.review_timeout_hours == 12
        assert settings.notification_methods == ["push", "email"]

    def test_empty_token_means_no_auth(self, monkeypatch):
        monkeypatch.setenv("PARENT_API_TOKEN", "")
        assert Settings().parent_api_token is None
