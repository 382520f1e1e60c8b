# ============================================================================
# src/fhir_validation/utils/exceptions.py
# ============================================================================
"""
Custom exceptions for the FHIR validation engine.

Validation findings are never exceptions - they are ValidationIssues.
These exceptions mark failures at service seams (settings, storage,
external servers, bulk state machine, rule administration, backups).
"""

from typing import List, Optional


class FHIRValidationEngineError(Exception):
    """Base exception for all validation engine errors."""
    pass


class ConfigurationError(FHIRValidationEngineError):
    """Invalid configuration."""
    pass


class SettingsError(FHIRValidationEngineError):
    """Error managing validation settings."""
    pass


class SettingsNotFoundError(SettingsError):
    """Settings record does not exist."""
    def __init__(self, message: str, settings_id: Optional[str] = None):
        super().__init__(message)
        self.settings_id = settings_id


class ActiveSettingsDeletionError(SettingsError):
    """Attempt to delete the active settings record."""
    pass


class InvalidSettingsError(SettingsError):
    """Settings failed schema validation."""
    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message)
        self.issues = issues or []


class StorageError(FHIRValidationEngineError):
    """Error reading or writing persistent storage."""
    pass


class ExternalServiceError(FHIRValidationEngineError):
    """Error talking to an external server."""
    def __init__(self, message: str, service: str = "unknown", url: Optional[str] = None):
        super().__init__(message)
        self.service = service
        self.url = url


class FHIRServerError(ExternalServiceError):
    """FHIR server request failed."""
    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, service="fhir", url=url)
        self.status = status


class TerminologyServerError(ExternalServiceError):
    """Terminology server request failed."""
    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, service="terminology", url=url)


class ProfileResolutionError(ExternalServiceError):
    """Profile could not be fetched from a resolution server."""
    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, service="profile", url=url)


class BulkValidationError(FHIRValidationEngineError):
    """Error in the bulk validation orchestrator."""
    pass


class InvalidStateTransitionError(BulkValidationError):
    """Requested bulk state transition is not allowed."""
    def __init__(self, message: str, current_state: str, requested: str):
        super().__init__(message)
        self.current_state = current_state
        self.requested = requested


class BusinessRuleError(FHIRValidationEngineError):
    """Error managing business rules."""
    pass


class RuleNotFoundError(BusinessRuleError):
    """Business rule does not exist or was deleted."""
    def __init__(self, message: str, rule_id: Optional[str] = None):
        super().__init__(message)
        self.rule_id = rule_id


class RuleExpressionError(BusinessRuleError):
    """FHIRPath expression cannot be parsed."""
    def __init__(self, message: str, expression: str):
        super().__init__(message)
        self.expression = expression


class BackupError(FHIRValidationEngineError):
    """Error creating or restoring a settings backup."""
    pass


class BackupNotFoundError(BackupError):
    """Backup does not exist."""
    pass


class BackupIntegrityError(BackupError):
    """Backup checksum does not match its content."""
    pass
