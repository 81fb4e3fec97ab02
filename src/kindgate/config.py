"""
Configuration management for KindGate.

Handles environment variables, runtime settings, and the default
per-age-group safety policies.
"""

from __future__ import annotations

import os
from enum import Enum
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class AgeGroup(str, Enum):
    """Age buckets that decide which policy thresholds apply."""

    CHILD = "child"
    TEEN = "teen"
    ADULT = "adult"

    @property
    def restriction_level(self) -> int:
        """Higher is more restrictive."""
        return {AgeGroup.CHILD: 3, AgeGroup.TEEN: 2, AgeGroup.ADULT: 1}[self]

    def is_more_restrictive_than(self, other: AgeGroup | None) -> bool:
        if other is None:
            return False
        return self.restriction_level > other.restriction_level


class AgeGroupPolicy(BaseModel):
    """
    Per-age-group safety policy.

    Allowed topics are advisory only; content is blocked on explicit
    blocked-topic matches, never for failing to match an allowed topic.
    """

    allowed_topics: list[str] = Field(
        default_factory=list, description="Advisory list of encouraged topics"
    )
    blocked_topics: list[str] = Field(
        default_factory=list, description="Topics whose rules raise violations"
    )
    max_complexity: float = Field(
        default=100, ge=0, le=100, description="Language complexity ceiling"
    )
    strict_mode: bool = Field(default=False, description="Strict safety mode")
    supervision_required: bool = Field(
        default=False, description="Whether a parent must supervise sessions"
    )

    @model_validator(mode="after")
    def _topics_do_not_overlap(self) -> "AgeGroupPolicy":
        overlap = {t.lower() for t in self.allowed_topics} & {
            t.lower() for t in self.blocked_topics
        }
        if overlap:
            raise ValueError(
                f"Topics cannot be both allowed and blocked: {sorted(overlap)}"
            )
        return self


def default_policies() -> dict[AgeGroup, AgeGroupPolicy]:
    """Build a fresh copy of the default per-age-group policies."""
    return {
        AgeGroup.CHILD: AgeGroupPolicy(
            allowed_topics=["education", "games", "family", "animals", "nature"],
            blocked_topics=[
                "violence",
                "weapons",
                "adult_content",
                "drugs",
                "scary_content",
            ],
            max_complexity=30,
            strict_mode=True,
            supervision_required=True,
        ),
        AgeGroup.TEEN: AgeGroupPolicy(
            allowed_topics=["education", "games", "family", "technology", "sports"],
            blocked_topics=["adult_content", "extreme_violence", "illegal_activities"],
            max_complexity=60,
        ),
        AgeGroup.ADULT: AgeGroupPolicy(
            blocked_topics=["illegal_activities"],
            max_complexity=100,
        ),
    }


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """
    Application settings loaded from environment variables.

    These settings control logging, cache and retention windows, and the
    parental approval workflow.
    """

    # Runtime settings
    environment: Environment = Field(
        default_factory=lambda: Environment(os.getenv("ENVIRONMENT", "development")),
        description="Application environment",
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"),
        description="Logging level",
    )

    # Parent dashboard API
    parent_api_token: Optional[str] = Field(
        default_factory=lambda: os.getenv("PARENT_API_TOKEN") or None,
        description="Bearer token required by dashboard endpoints",
    )
    rate_limit_requests: int = Field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_REQUESTS", "120")),
        description="Requests allowed per rate limit window",
    )
    rate_limit_window_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
        description="Rate limit window length",
    )

    # Identity
    default_age_group: AgeGroup = Field(
        default_factory=lambda: AgeGroup(os.getenv("DEFAULT_AGE_GROUP", "child")),
        description="Age group for users that cannot be resolved",
    )

    # Validation cache
    cache_ttl_seconds: float = Field(default=60.0, gt=0)
    cache_max_age_seconds: float = Field(default=300.0, gt=0)
    cache_sweep_interval_seconds: float = Field(default=600.0, gt=0)
    cache_max_entries: int = Field(default=1000, ge=1)

    # Audit log
    audit_max_entries: int = Field(default=10_000, ge=1)
    audit_retention_days: int = Field(
        default_factory=lambda: int(os.getenv("AUDIT_RETENTION_DAYS", "30")), ge=1
    )
    audit_sweep_interval_seconds: float = Field(default=86_400.0, gt=0)
    audit_include_content: bool = Field(
        default_factory=lambda: _env_bool("AUDIT_INCLUDE_CONTENT", True),
        description="Store raw content in audit entries (redacted when False)",
    )

    # Parental approval workflow
    review_timeout_hours: float = Field(
        default_factory=lambda: float(os.getenv("REVIEW_TIMEOUT_HOURS", "24")), gt=0
    )
    approval_sweep_interval_seconds: float = Field(default=300.0, gt=0)
    review_retention_hours: float = Field(
        default_factory=lambda: float(os.getenv("REVIEW_RETENTION_HOURS", "168")),
        gt=0,
        description="Hours a decided review request stays retrievable",
    )
    auto_approve_after_timeout: bool = Field(
        default_factory=lambda: _env_bool("AUTO_APPROVE_AFTER_TIMEOUT", False),
        description="Expired requests are auto-approved instead of auto-rejected",
    )
    notification_methods: list[str] = Field(
        default_factory=lambda: [
            m.strip()
            for m in os.getenv("NOTIFICATION_METHODS", "push").split(",")
            if m.strip()
        ],
        description="Channels each workflow notification is fanned out to",
    )
    exception_default_hours: float = Field(default=24.0, gt=0)
    exception_max_usage: int = Field(default=5, ge=1)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
