# ============================================================================
# src/fhir_validation/settings/__init__.py
# ============================================================================
"""
Validation settings: models, migration, cache and backups.

ValidationSettingsService lives in settings.service.
"""

from .models import ValidationSettings, ServerConfig, SETTINGS_PRESETS
from .migration import SettingsValidationReport, check_settings, migrate_settings
from .cache import SettingsCache
from .backup import BackupMetadata, SettingsBackupService

__all__ = [
    "ValidationSettings",
    "ServerConfig",
    "SETTINGS_PRESETS",
    "SettingsValidationReport",
    "check_settings",
    "migrate_settings",
    "SettingsCache",
    "BackupMetadata",
    "SettingsBackupService",
]
