# ============================================================================
# src/fhir_validation/config/logging_config.py
# ============================================================================
"""
Logging & Monitoring Settings
- Log level
- JSON output
- Performance metrics
"""

from typing import Optional
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings

class LoggingSettings(BaseSettings):
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level"
    )
    LOG_FORMAT_JSON: bool = Field(
        default=False,
        description="Emit JSON log lines"
    )
    LOG_FILE: Optional[Path] = Field(
        default=None,
        description="Optional log file"
    )
    ENABLE_METRICS: bool = Field(
        default=True,
        description="Enable performance metric collection"
    )

logging_settings = LoggingSettings()
