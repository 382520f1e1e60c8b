# ============================================================================
# src/fhir_validation/rules/executor.py
# ============================================================================
"""
Custom Rule Executor

Evaluates enabled, non-deleted custom FHIRPath rules against a resource.

- rules are loaded per resource type through a TTL cache
- a rule passes when its expression yields a non-empty list of truthy
  values (or a truthy scalar)
- evaluation errors become "custom-rule-execution-error" warnings
- per-rule execution statistics are kept for the admin views
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from fhirpathpy import evaluate

from ..core.events import RuleListener
from ..core.models import Aspect, Severity, ValidationIssue
from ..storage.base import ValidationStorage
from ..utils.metrics import MetricsCollector, RuleExecutionStats
from .models import BusinessRule

DEFAULT_CACHE_TTL_SECONDS = 300


def is_passing(result: Any) -> bool:
    if isinstance(result, list):
        return len(result) > 0 and all(bool(value) for value in result)
    return bool(result)


class CustomRuleExecutor(RuleListener):

    def __init__(
        self,
        storage: ValidationStorage,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.storage = storage
        self.cache_ttl_seconds = cache_ttl_seconds
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        # resource type -> (loaded_at, rules)
        self._cache: Dict[str, Tuple[float, List[BusinessRule]]] = {}
        self._stats: Dict[str, RuleExecutionStats] = {}

    def on_rules_changed(self, rule_id: Optional[str]) -> None:
        self.invalidate()

    def invalidate(self) -> None:
        self._cache.clear()

    async def rules_for(self, resource_type: str) -> List[BusinessRule]:
        cached = self._cache.get(resource_type)
        if cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        records = await self.storage.list_rules()
        rules = [
            rule for rule in (BusinessRule.from_dict(r) for r in records)
            if rule.enabled and not rule.is_deleted and rule.applies_to(resource_type)
        ]
        self._cache[resource_type] = (time.monotonic(), rules)
        return rules

    async def execute(self, resource: Dict[str, Any]) -> Tuple[List[ValidationIssue], int]:
        """Returns (issues, number of rules evaluated)."""
        resource_type = resource.get("resourceType")
        if not resource_type:
            return [], 0

        rules = await self.rules_for(resource_type)
        issues = []
        for rule in rules:
            issue = self.evaluate_rule(rule, resource)
            if issue is not None:
                issues.append(issue)
        return issues, len(rules)

    def evaluate_rule(self, rule: BusinessRule, resource: Dict[str, Any]) -> Optional[ValidationIssue]:
        start = time.perf_counter()
        error = None
        passed = False

        try:
            passed = is_passing(evaluate(resource, rule.expression))
        except Exception as e:
            error = e
            self.logger.warning(f"Custom rule {rule.id} ({rule.name}) failed to evaluate: {e}")

        duration_ms = (time.perf_counter() - start) * 1000
        self._record(rule, duration_ms, passed, error is not None)

        if error is not None:
            return ValidationIssue(
                severity=Severity.WARNING,
                code="custom-rule-execution-error",
                category=Aspect.BUSINESS_RULE,
                message=f"Custom rule '{rule.name}' could not be evaluated: {error}",
                expression=rule.expression,
            )
        if passed:
            return None

        return ValidationIssue(
            severity=Severity.parse(rule.severity),
            code=f"custom-rule-{rule.id}",
            category=Aspect.BUSINESS_RULE,
            message=rule.description or f"Custom rule '{rule.name}' failed",
            expression=rule.expression,
            suggestion=f"Resource must satisfy: {rule.expression}",
        )

    def _record(self, rule: BusinessRule, duration_ms: float, passed: bool, error: bool) -> None:
        stats = self._stats.get(rule.id)
        if stats is None:
            stats = self._stats[rule.id] = RuleExecutionStats(rule_id=rule.id, rule_name=rule.name)
        stats.record(duration_ms, passed, error)

        if self.metrics is not None:
            self.metrics.record_time(f"custom_rule_{rule.id}", duration_ms / 1000)
            self.metrics.increment("custom_rule_errors" if error else (
                "custom_rule_passed" if passed else "custom_rule_failed"
            ))

    def get_statistics(self, rule_id: Optional[str] = None) -> Any:
        if rule_id is not None:
            stats = self._stats.get(rule_id)
            return stats.to_dict() if stats else None
        return [stats.to_dict() for stats in self._stats.values()]
