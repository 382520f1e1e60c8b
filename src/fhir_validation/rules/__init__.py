# ============================================================================
# src/fhir_validation/rules/__init__.py
# ============================================================================
"""
Custom FHIRPath business rules.
"""

from .models import BusinessRule, RuleVersion, bump_version
from .executor import CustomRuleExecutor
from .service import BusinessRuleService

__all__ = [
    "BusinessRule",
    "RuleVersion",
    "bump_version",
    "CustomRuleExecutor",
    "BusinessRuleService",
]
