# ============================================================================
# src/fhir_validation/profiles/__init__.py
# ============================================================================
"""
Profile (StructureDefinition) resolution.
"""

from .resolver import ProfileResolver

__all__ = ["ProfileResolver"]
