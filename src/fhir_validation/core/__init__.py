# ============================================================================
# src/fhir_validation/core/__init__.py
# ============================================================================
"""
Core models and helpers for the validation pipeline.

The engine itself lives in core.engine and the change-detecting wrapper in
core.unified; import them from there.
"""

from .models import (
    Severity,
    Aspect,
    ASPECT_ORDER,
    ValidationIssue,
    AspectOutcome,
    ValidationResult,
)
from .scoring import tiered_score, continuous_score, is_valid, summarize_issues
from .hashing import content_hash, rolling_hash
from .context import ValidationContext
from .events import (
    EventPublisher,
    SettingsChangeType,
    SettingsChangeEvent,
    ValidationListener,
    SettingsListener,
    BulkProgressListener,
    RuleListener,
)

__all__ = [
    "Severity",
    "Aspect",
    "ASPECT_ORDER",
    "ValidationIssue",
    "AspectOutcome",
    "ValidationResult",
    "tiered_score",
    "continuous_score",
    "is_valid",
    "summarize_issues",
    "content_hash",
    "rolling_hash",
    "ValidationContext",
    "EventPublisher",
    "SettingsChangeType",
    "SettingsChangeEvent",
    "ValidationListener",
    "SettingsListener",
    "BulkProgressListener",
    "RuleListener",
]
