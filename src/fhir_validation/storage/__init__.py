# ============================================================================
# src/fhir_validation/storage/__init__.py
# ============================================================================
"""
Persistence for resources, validation results, settings and rules.
"""

from .base import ValidationStorage
from .memory_store import InMemoryStorage
from .sqlite_store import SQLiteStorage

__all__ = ["ValidationStorage", "InMemoryStorage", "SQLiteStorage"]
