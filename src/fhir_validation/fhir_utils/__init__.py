# ============================================================================
# src/fhir_validation/fhir_utils/__init__.py
# ============================================================================
"""
FHIR resource model helpers.
"""

from .operation_outcome import to_operation_outcome, operation_outcome_dict

__all__ = ["to_operation_outcome", "operation_outcome_dict"]
