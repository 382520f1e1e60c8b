# ============================================================================
# src/fhir_validation/api/__init__.py
# ============================================================================
"""
HTTP API for the validation engine.
"""
