"""
Structured logging for KindGate.

Every validation call runs inside a ``TraceContext`` that binds its trace
id and user id to structlog's context variables, so log lines emitted by
the pipeline, cache, audit log and workflow during the call carry them.
"""

from __future__ import annotations

import logging as stdlib_logging
import time
from collections import Counter
from typing import Any
from uuid import uuid4

import structlog

from kindgate.config import get_settings


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """
    Configure structlog.

    Args:
        level: Minimum level name; defaults to ``LOG_LEVEL``
        json_output: Render JSON lines; defaults to True outside development
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    if json_output is None:
        json_output = not settings.is_development

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(stdlib_logging, level, stdlib_logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class TraceContext:
    """
    Scope for one validation call.

    On entry the trace and user ids are bound to the logging context; on
    exit they are unbound and a summary line with the duration and the
    safety actions taken is logged.
    """

    def __init__(
        self,
        operation: str,
        user_id: str | None = None,
        trace_id: str | None = None,
    ):
        self.operation = operation
        self.trace_id = trace_id or uuid4().hex[:8]
        self.user_id = user_id
        self.safety_events: list[dict[str, Any]] = []
        self.logger = get_logger("trace")
        self._started = time.perf_counter()

    def __enter__(self) -> "TraceContext":
        self._started = time.perf_counter()
        structlog.contextvars.bind_contextvars(trace_id=self.trace_id, user_id=self.user_id)
        self.logger.debug("trace_start", operation=self.operation)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        actions = Counter(e["action"] for e in self.safety_events)
        self.logger.debug(
            "trace_end",
            operation=self.operation,
            duration_ms=round(self.duration_ms, 2),
            actions=dict(actions),
            error=str(exc_val) if exc_val else None,
        )
        structlog.contextvars.unbind_contextvars("trace_id", "user_id")

    @property
    def duration_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000

    def log_safety_event(self, action: str, reason: str, severity: str = "low") -> None:
        """Record one allow/block decision on a violation."""
        event = {"action": action, "reason": reason, "severity": severity}
        self.safety_events.append(event)
        self.logger.debug("safety_event", operation=self.operation, **event)


# Configure logging on module import
configure_logging()
