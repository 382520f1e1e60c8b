# ============================================================================
# src/fhir_validation/core/scoring.py
# ============================================================================
"""
Validation scoring.

Two formulas are kept:
- tiered_score: used by the engine; errors cap the score at 40,
  warnings only keep it in [70, 95]
- continuous_score: used by the unified service; fixed penalty per issue
"""

import math
from collections import Counter
from typing import Any, Dict, Iterable, List

from .models import Aspect, Severity, ValidationIssue


def tiered_score(issues: Iterable[ValidationIssue]) -> float:
    issues = list(issues)
    errors = sum(1 for i in issues if i.is_error)
    warnings = sum(1 for i in issues if i.severity == Severity.WARNING)

    if errors:
        return float(max(0, 60 - 20 * errors))
    if warnings:
        return float(max(70, 100 - 5 * warnings))
    return 100.0


CONTINUOUS_PENALTIES = {
    Severity.FATAL: 10.0,
    Severity.ERROR: 10.0,
    Severity.WARNING: 2.0,
    Severity.INFORMATION: 0.5,
}


def continuous_score(issues: Iterable[ValidationIssue]) -> float:
    """100 minus per-issue penalties, floored at 0, rounded half up."""
    penalty = sum(CONTINUOUS_PENALTIES[i.severity] for i in issues)
    return float(max(0, math.floor(100.0 - penalty + 0.5)))


def is_valid(issues: Iterable[ValidationIssue]) -> bool:
    return not any(i.is_error for i in issues)


def summarize_issues(issues: List[ValidationIssue]) -> Dict[str, Any]:
    """
    Counts by severity and by aspect, plus the most frequent codes.
    """
    by_severity = Counter(i.severity.value for i in issues)
    by_aspect = Counter(i.category.value for i in issues)
    by_code = Counter(i.code for i in issues)

    return {
        "total": len(issues),
        "bySeverity": {s.value: by_severity.get(s.value, 0) for s in Severity},
        "byAspect": {a.value: by_aspect.get(a.value, 0) for a in Aspect},
        "topCodes": [
            {"code": code, "count": count}
            for code, count in by_code.most_common(10)
        ],
    }
