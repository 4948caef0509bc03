"""
Unit tests for shared helpers
"""

from unittest.mock import MagicMock

import pytest

from aws_cost_exporter.utils import (
    PerformanceTimer,
    as_bool,
    as_int,
    format_bytes,
    format_duration,
    log_memory_usage,
)


class TestCoercion:
    """Config values arrive as strings when expanded from the environment."""

    @pytest.mark.parametrize("value,expected", [("true", True), ("Yes", True), ("1", True), ("false", False),
                                                ("", False), (True, True), (None, False)])
    def test_as_bool(self, value, expected):
        assert as_bool(value) is expected

    def test_as_int(self):
        assert as_int("3", 1) == 3
        assert as_int(5, 1) == 5
        assert as_int("", 1) == 1
        assert as_int(None, 7) == 7


class TestFormatting:
    """Test human-readable formatting."""

    def test_format_bytes(self):
        assert format_bytes(512) == "512.0 B"
        assert format_bytes(1536) == "1.5 KB"

    def test_format_duration(self):
        assert format_duration(2.34) == "2.3s"
        assert format_duration(90) == "1m 30s"
        assert format_duration(4500) == "1h 15m"


class TestLogging:
    """Test timing and memory logging."""

    def test_timer_logs_completion(self):
        logger = MagicMock()

        with PerformanceTimer("Ingest report", logger):
            pass

        assert logger.info.call_args_list[0].args == ("Starting: Ingest report",)
        assert logger.info.call_args_list[1].args == ("Completed: Ingest report",)

    def test_timer_logs_failure(self):
        logger = MagicMock()

        with pytest.raises(RuntimeError):
            with PerformanceTimer("Ingest report", logger):
                raise RuntimeError("boom")

        logger.error.assert_called_once()
        assert logger.error.call_args.kwargs["error"] == "boom"

    def test_memory_usage(self):
        logger = MagicMock()

        log_memory_usage(logger, "after ingest")

        assert logger.info.call_args.args == ("Memory usage: after ingest",)
        assert logger.info.call_args.kwargs["memory"].endswith("B")
