# ============================================================================
# src/fhir_validation/__init__.py
# ============================================================================
"""
FHIR Validation Engine

Multi-aspect validation of FHIR resources:
- structural, profile, terminology, reference, business rule and metadata
  aspects
- versioned validation settings with caching and backups
- custom FHIRPath business rules
- resumable bulk validation against a FHIR server
"""

__version__ = "1.0.0"
