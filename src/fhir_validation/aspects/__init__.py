# ============================================================================
# src/fhir_validation/aspects/__init__.py
# ============================================================================
"""
Aspect validators, one per validation dimension.
"""

from .base import AspectValidator
from .structural import StructuralValidator
from .profile import ProfileValidator
from .terminology import TerminologyValidator
from .reference import ReferenceValidator
from .business_rule import BusinessRuleValidator
from .metadata import MetadataValidator

__all__ = [
    "AspectValidator",
    "StructuralValidator",
    "ProfileValidator",
    "TerminologyValidator",
    "ReferenceValidator",
    "BusinessRuleValidator",
    "MetadataValidator",
]
