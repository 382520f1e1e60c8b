# ============================================================================
# src/fhir_validation/utils/__init__.py
# ============================================================================
"""
Utility modules for the FHIR validation engine.
"""

from .exceptions import (
    FHIRValidationEngineError,
    ConfigurationError,
    SettingsError,
    SettingsNotFoundError,
    ActiveSettingsDeletionError,
    InvalidSettingsError,
    StorageError,
    ExternalServiceError,
    FHIRServerError,
    TerminologyServerError,
    ProfileResolutionError,
    BulkValidationError,
    InvalidStateTransitionError,
    BusinessRuleError,
    RuleNotFoundError,
    RuleExpressionError,
    BackupError,
    BackupNotFoundError,
    BackupIntegrityError,
)

from .logging import (
    setup_logging,
    JsonFormatter,
    ValidationContextFilter,
    validation_log_context,
    current_log_context,
)

from .metrics import (
    MetricsCollector,
    Timer,
    RuleExecutionStats,
)

__all__ = [
    # Exceptions
    'FHIRValidationEngineError',
    'ConfigurationError',
    'SettingsError',
    'SettingsNotFoundError',
    'ActiveSettingsDeletionError',
    'InvalidSettingsError',
    'StorageError',
    'ExternalServiceError',
    'FHIRServerError',
    'TerminologyServerError',
    'ProfileResolutionError',
    'BulkValidationError',
    'InvalidStateTransitionError',
    'BusinessRuleError',
    'RuleNotFoundError',
    'RuleExpressionError',
    'BackupError',
    'BackupNotFoundError',
    'BackupIntegrityError',
    # Logging
    'setup_logging',
    'JsonFormatter',
    'ValidationContextFilter',
    'validation_log_context',
    'current_log_context',
    # Metrics
    'MetricsCollector',
    'Timer',
    'RuleExecutionStats',
]
