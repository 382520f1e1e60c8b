# ============================================================================
# src/fhir_validation/utils/metrics.py
# ============================================================================
"""
Performance metrics for the validation engine.

The engine counts validated resources and times each validation, the
custom rule executor records per-rule execution statistics. Collectors
are passed in explicitly; a None collector disables recording.
"""

import statistics
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Samples kept per timer
TIMER_WINDOW = 1000


class MetricsCollector:
    """Counters and bounded timing windows."""

    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._timers: Dict[str, List[float]] = defaultdict(list)

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def record_time(self, name: str, duration: float) -> None:
        """
        Record operation duration.

        Args:
            name: Operation name
            duration: Duration in seconds
        """
        samples = self._timers[name]
        samples.append(duration)
        if len(samples) > TIMER_WINDOW:
            del samples[:len(samples) - TIMER_WINDOW]

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_timer_stats(self, name: str) -> Optional[Dict[str, float]]:
        """count, min, max, mean, median and p95 in seconds; None without samples."""
        return _summarize(self._timers.get(name, []))

    def snapshot(self) -> Dict[str, Any]:
        return {
            'counters': dict(self._counters),
            'timers': {name: self.get_timer_stats(name) for name in self._timers},
        }

    def reset(self) -> None:
        self._counters.clear()
        self._timers.clear()


class Timer:
    """Context manager for timing operations."""

    def __init__(self, collector: Optional[MetricsCollector], operation: str):
        self.collector = collector
        self.operation = operation
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if self.collector is not None:
            self.collector.record_time(self.operation, self.duration)


@dataclass
class RuleExecutionStats:
    """Execution statistics for one custom business rule."""
    rule_id: str
    rule_name: str
    executions: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    durations_ms: List[float] = field(default_factory=list)

    def record(self, duration_ms: float, passed: bool, error: bool) -> None:
        self.executions += 1
        if error:
            self.errors += 1
        elif passed:
            self.passed += 1
        else:
            self.failed += 1
        self.durations_ms.append(duration_ms)
        # Keep a bounded window
        if len(self.durations_ms) > 100:
            self.durations_ms = self.durations_ms[-100:]

    @property
    def average_ms(self) -> float:
        return statistics.mean(self.durations_ms) if self.durations_ms else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "executions": self.executions,
            "passed": self.passed,
            "failed": self.failed,
            "errors": self.errors,
            "average_ms": round(self.average_ms, 3),
            "max_ms": max(self.durations_ms) if self.durations_ms else 0.0,
        }


def _summarize(values: List[float]) -> Optional[Dict[str, float]]:
    if not values:
        return None

    sorted_values = sorted(values)
    count = len(values)

    return {
        'count': count,
        'min': sorted_values[0],
        'max': sorted_values[-1],
        'mean': statistics.mean(values),
        'median': statistics.median(values),
        'p95': sorted_values[min(count - 1, int(count * 0.95))],
    }
