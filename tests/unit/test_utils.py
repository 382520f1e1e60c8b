# ============================================================================
# tests/unit/test_utils.py
# ============================================================================
"""
Tests for logging context, metrics and exceptions
"""

import asyncio
import json
import logging

import pytest

from fhir_validation.utils.exceptions import (
    FHIRServerError,
    InvalidSettingsError,
    InvalidStateTransitionError,
    StorageError,
)
from fhir_validation.utils.logging import (
    JsonFormatter,
    ValidationContextFilter,
    current_log_context,
    validation_log_context,
)
from fhir_validation.utils.metrics import TIMER_WINDOW, MetricsCollector, RuleExecutionStats, Timer


def make_record(message="hello"):
    return logging.LogRecord("fhir_validation.test", logging.INFO, __file__, 1, message, None, None)


class TestLogContext:
    """Test contextvar-based log tagging"""

    def test_nested_context(self):
        """Test that inner blocks extend and restore the outer context"""
        with validation_log_context(resource_type="Patient", resource_id="p1"):
            with validation_log_context(aspect="structural", ignored="x"):
                assert current_log_context() == {
                    "resource_type": "Patient", "resource_id": "p1", "aspect": "structural",
                }
            assert "aspect" not in current_log_context()

        assert current_log_context() == {}

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self):
        """Test that concurrent tasks keep their own context"""
        async def tagged(resource_id):
            with validation_log_context(resource_id=resource_id):
                await asyncio.sleep(0)
                return current_log_context()["resource_id"]

        assert await asyncio.gather(tagged("a"), tagged("b")) == ["a", "b"]

    def test_filter_and_json_formatter(self):
        """Test that context fields reach the JSON output"""
        record = make_record()
        with validation_log_context(resource_type="Observation", aspect="terminology"):
            assert ValidationContextFilter().filter(record)

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "hello"
        assert data["resource_type"] == "Observation"
        assert data["aspect"] == "terminology"
        assert "resource_id" not in data


class TestMetrics:
    """Test metric collection"""

    def test_counters_and_timers(self):
        """Test counting and timing"""
        metrics = MetricsCollector()
        metrics.increment("resources_validated")
        metrics.increment("resources_validated", 2)
        with Timer(metrics, "validate_resource"):
            pass

        snapshot = metrics.snapshot()

        assert snapshot["counters"] == {"resources_validated": 3}
        assert snapshot["timers"]["validate_resource"]["count"] == 1
        assert metrics.get_timer_stats("missing") is None

    def test_timer_window(self):
        """Test that timer samples are bounded"""
        metrics = MetricsCollector()
        for i in range(TIMER_WINDOW + 5):
            metrics.record_time("op", float(i))

        stats = metrics.get_timer_stats("op")

        assert stats["count"] == TIMER_WINDOW
        assert stats["min"] == 5.0

    def test_timer_without_collector(self):
        """Test that a None collector still measures"""
        with Timer(None, "op") as timer:
            pass

        assert timer.duration >= 0

    def test_rule_stats(self):
        """Test pass, fail and error accounting"""
        stats = RuleExecutionStats(rule_id="r1", rule_name="rule")
        stats.record(2.0, passed=True, error=False)
        stats.record(4.0, passed=False, error=False)
        stats.record(6.0, passed=False, error=True)

        data = stats.to_dict()

        assert (data["passed"], data["failed"], data["errors"]) == (1, 1, 1)
        assert data["average_ms"] == 4.0
        assert data["max_ms"] == 6.0


class TestExceptions:
    """Test exception payloads"""

    def test_payloads(self):
        """Test the extra attributes carried by exceptions"""
        assert FHIRServerError("down", url="http://x", status=503).status == 503
        assert InvalidSettingsError("bad", issues=["batch_size"]).issues == ["batch_size"]

        error = InvalidStateTransitionError("nope", "idle", "resume")
        assert (error.current_state, error.requested) == ("idle", "resume")

    def test_hierarchy(self):
        """Test that storage errors share the engine base class"""
        from fhir_validation.utils.exceptions import FHIRValidationEngineError

        assert issubclass(StorageError, FHIRValidationEngineError)
