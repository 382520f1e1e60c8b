# ============================================================================
# src/fhir_validation/aspects/base.py
# ============================================================================
"""
Abstract Aspect Validator

All six validation aspects inherit from this base class.

Every aspect must implement:
- execute(resource, settings, context): aspect logic, returns AspectOutcome
- get_name(): validator identifier

Every aspect gets:
- Logging
- Timing and metrics
- Failure policy: an internal exception degrades to a single warning
  issue, except for aspects marked abort_on_failure (structural), whose
  exceptions propagate to the engine
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from ..core.context import ValidationContext
from ..core.models import Aspect, AspectOutcome, Severity
from ..settings.models import CacheSettings, ValidationSettings
from ..utils.metrics import MetricsCollector


class AspectValidator(ABC):

    aspect: Aspect
    failure_code: str = "aspect-validation-error"
    abort_on_failure: bool = False

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = logging.getLogger(f"{__name__}.{self.get_name()}")
        self._execution_count = 0
        self._total_duration = 0.0

    @abstractmethod
    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        pass

    @abstractmethod
    def get_name(self) -> str:
        pass

    def new_outcome(self) -> AspectOutcome:
        return AspectOutcome(aspect=self.aspect)

    async def run(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        """
        Wrapper around execute() that handles logging, timing, and errors.

        This method is called by the engine, not execute() directly.
        """
        name = self.get_name()
        start = time.perf_counter()

        try:
            outcome = await self.execute(resource, settings, context)

        except Exception as e:
            duration = time.perf_counter() - start
            self.logger.error(f"{name} failed: {str(e)}", exc_info=True)

            if self.abort_on_failure:
                raise

            outcome = self.new_outcome()
            outcome.add_issue(
                Severity.WARNING,
                self.failure_code,
                f"{name} could not complete: {str(e)}",
            )
            outcome.duration_ms = duration * 1000
            self._record(duration)
            return outcome.finalize()

        duration = time.perf_counter() - start
        outcome.duration_ms = duration * 1000
        self._record(duration)

        self.logger.debug(f"{name} produced {len(outcome.issues)} issue(s) in {duration * 1000:.1f}ms")
        return outcome.finalize()

    def _record(self, duration: float) -> None:
        self._execution_count += 1
        self._total_duration += duration
        if self.metrics is not None:
            self.metrics.record_time(f"aspect_{self.aspect.value}", duration)

    @staticmethod
    def recall(cache: Dict[str, Tuple[float, Any]], key: str) -> Optional[Any]:
        """Cached value, or None when missing or expired."""
        entry = cache.get(key)
        if entry is None:
            return None
        if entry[0] <= time.monotonic():
            del cache[key]
            return None
        return entry[1]

    @staticmethod
    def remember(cache: Dict[str, Tuple[float, Any]], key: str, value: Any, limits: CacheSettings) -> None:
        """Store value for ttl_ms; the oldest entries are evicted past max_entries."""
        cache.pop(key, None)
        cache[key] = (time.monotonic() + limits.ttl_ms / 1000, value)
        while len(cache) > limits.max_entries:
            del cache[next(iter(cache))]

    @property
    def average_duration(self) -> float:
        if not self._execution_count:
            return 0.0
        return self._total_duration / self._execution_count
