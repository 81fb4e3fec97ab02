"""
Tests for logging configuration and trace scoping.
"""

import pytest
import structlog

from kindgate.logging import TraceContext, configure_logging, get_logger


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    configure_logging()


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.mark.parametrize("level", ["DEBUG", "info", "WARNING", "error", "nonsense"])
    def test_level_names(self, level, capsys):
        configure_logging(level, json_output=True)
        get_logger("kindgate.test").error("level_check", level=level)
        assert "level_check" in capsys.readouterr().out

    def test_debug_filtered_at_warning(self, capsys):
        configure_logging("WARNING", json_output=True)
        logger = get_logger("kindgate.test")
        logger.debug("hidden_line")
        logger.warning("shown_line")
        out = capsys.readouterr().out
        assert "hidden_line" not in out
        assert "shown_line" in out


class TestTraceContext:
    """Tests for TraceContext."""

    def test_binds_and_unbinds_ids(self):
        with TraceContext("validate", user_id="child_1", trace_id="abc123") as trace:
            bound = structlog.contextvars.get_contextvars()
            assert bound["trace_id"] == "abc123"
            assert bound["user_id"] == "child_1"
            trace.log_safety_event("block", "Profanity", "high")

        bound = structlog.contextvars.get_contextvars()
        assert "trace_id" not in bound
        assert "user_id" not in bound
        assert trace.safety_events == [
            {"action": "block", "reason": "Profanity", "severity": "high"}
        ]

    def test_generated_trace_id(self):
        trace = TraceContext("validate")
        assert len(trace.trace_id) == 8
        assert trace.duration_ms >= 0
