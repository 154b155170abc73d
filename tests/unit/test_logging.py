"""
Unit Tests for the Logging Subsystem
====================================

Purpose
-------
Test context binding and record rendering without installing the global
queue-backed stack.

Test Coverage
-------------
- LogContext nesting, inheritance and reset (sync and async)
- ContextFilter stamping records, with extra={...} taking precedence
- JSON and text rendering of context and extra fields

Testing Strategy
----------------
- Unit tests (hand-built LogRecords, no handlers)
"""

import json
import logging
import sys

import pytest

from src.core.logging import (
    ContextFilter,
    LedgerFormatter,
    LogContext,
    current_log_context,
    logging_stats,
)


def _record(message: str = "Player promoted", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "src.modules.progression", logging.INFO, __file__, 10, message, (), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ============================================================================
# CONTEXT TESTS
# ============================================================================


@pytest.mark.unit
class TestLogContext:
    def test_nested_context_inherits_and_resets(self):
        # Act
        with LogContext(player_uuid="p-1", operation="player_seen"):
            outer_id = current_log_context()["correlation_id"]
            with LogContext(operation="evaluate_promotion"):
                inner = current_log_context()
            after_inner = current_log_context()

        # Assert
        assert inner["player_uuid"] == "p-1"
        assert inner["operation"] == "evaluate_promotion"
        assert inner["correlation_id"] == outer_id
        assert after_inner["operation"] == "player_seen"
        assert current_log_context() == {}

    def test_none_values_do_not_override(self):
        with LogContext(player_uuid="p-1"):
            with LogContext(player_uuid=None, server="lobby"):
                context = current_log_context()

        assert context["player_uuid"] == "p-1"
        assert context["server"] == "lobby"

    async def test_async_context_manager(self):
        async with LogContext(player_uuid="p-2", operation="request_gain"):
            assert current_log_context()["operation"] == "request_gain"

        assert "operation" not in current_log_context()

    def test_stats_without_installed_stack(self):
        assert logging_stats()["installed"] is False


# ============================================================================
# FILTER AND FORMATTER TESTS
# ============================================================================


@pytest.mark.unit
class TestFormatting:
    def test_filter_stamps_context_without_overriding_extra(self):
        # Arrange
        record = _record(operation="explicit")

        # Act
        with LogContext(player_uuid="p-1", operation="bound"):
            ContextFilter().filter(record)

        # Assert
        assert record.player_uuid == "p-1"
        assert record.operation == "explicit"

    def test_json_rendering(self):
        # Arrange
        record = _record(player_uuid="p-1", operation="evaluate_promotion", to_position="1.2")

        # Act
        payload = json.loads(LedgerFormatter(as_json=True).format(record))

        # Assert
        assert payload["message"] == "Player promoted"
        assert payload["level"] == "INFO"
        assert payload["player_uuid"] == "p-1"
        assert payload["operation"] == "evaluate_promotion"
        assert payload["extra"] == {"to_position": "1.2"}

    def test_text_rendering_appends_context(self):
        record = _record(player_uuid="p-1", operation="request_gain")

        line = LedgerFormatter(as_json=False).format(record)

        assert "Player promoted" in line
        assert line.endswith("[player_uuid=p-1 operation=request_gain]")

    def test_json_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        payload = json.loads(LedgerFormatter(as_json=True).format(record))

        assert "ValueError: boom" in payload["exception"]
