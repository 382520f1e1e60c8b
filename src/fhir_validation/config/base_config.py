# ============================================================================
# src/fhir_validation/config/base_config.py
# ============================================================================
"""
Base Configuration
- SQLite database for resources, results, settings and rules
- Settings backup directory
"""

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings

class BaseSettingsConfig(BaseSettings):
    DATABASE_PATH: Path = Field(
        default=Path("data/fhir_validation.db"),
        description="SQLite database used by SQLiteStorage"
    )

    BACKUP_DIR: Path = Field(
        default=Path("data/backups"),
        description="Directory for validation settings backups"
    )

# Global instance
base_settings = BaseSettingsConfig()
