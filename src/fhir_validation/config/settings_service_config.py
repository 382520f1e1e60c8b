# ============================================================================
# src/fhir_validation/config/settings_service_config.py
# ============================================================================
"""
Validation Settings Service Settings
- Cache TTL and size
- Version retention
- Automatic backups
- Load retries
"""

from pydantic import Field
from pydantic_settings import BaseSettings

class SettingsServiceSettings(BaseSettings):
    SETTINGS_CACHE_TTL_SECONDS: float = Field(
        default=300.0,
        description="Lifetime of cached settings records"
    )
    SETTINGS_CACHE_MAX_ENTRIES: int = Field(
        default=100,
        description="Maximum cached settings records before LRU eviction"
    )
    SETTINGS_MAX_VERSIONS: int = Field(
        default=10,
        description="Settings versions retained per configuration"
    )
    SETTINGS_AUTO_BACKUP: bool = Field(
        default=True,
        description="Create backups on a timer"
    )
    SETTINGS_BACKUP_INTERVAL_SECONDS: float = Field(
        default=3600.0,
        description="Interval between automatic backups"
    )
    SETTINGS_CLEANUP_INTERVAL_SECONDS: float = Field(
        default=300.0,
        description="Interval between expired cache entry sweeps"
    )
    SETTINGS_LOAD_RETRIES: int = Field(
        default=3,
        description="Attempts to load active settings before self-healing"
    )
    SETTINGS_RETRY_BASE_SECONDS: float = Field(
        default=1.0,
        description="Base delay for exponential load backoff"
    )
    SETTINGS_RETRY_MAX_SECONDS: float = Field(
        default=5.0,
        description="Cap for exponential load backoff"
    )
    BACKUP_MAX_COUNT: int = Field(
        default=20,
        description="Backups kept by cleanup"
    )
    BACKUP_RETENTION_DAYS: int = Field(
        default=30,
        description="Backups older than this are removed by cleanup"
    )

settings_service_settings = SettingsServiceSettings()
