# ============================================================================
# src/fhir_validation/bulk/__init__.py
# ============================================================================
"""
Bulk validation.

The orchestrator lives in bulk.orchestrator.
"""

from .resource_types import R4_RESOURCE_TYPES, is_known_resource_type
from .progress import BulkValidationProgress

__all__ = ["R4_RESOURCE_TYPES", "is_known_resource_type", "BulkValidationProgress"]
