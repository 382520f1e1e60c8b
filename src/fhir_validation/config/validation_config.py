# ============================================================================
# src/fhir_validation/config/validation_config.py
# ============================================================================
"""
Validation Engine Settings
- Bulk batch sizes and parallel width
- ETA estimation
- Change-detection threshold
- Reference traversal depth
"""

from pydantic import Field
from pydantic_settings import BaseSettings

class ValidationEngineSettings(BaseSettings):
    BULK_BATCH_SIZE: int = Field(
        default=1000,
        description="Resources fetched per page during bulk validation"
    )
    BULK_PARALLEL_WIDTH: int = Field(
        default=50,
        description="Resources validated concurrently within one page"
    )
    ETA_MIN_PROCESSED: int = Field(
        default=10,
        description="Processed resources required before estimating time remaining"
    )
    ETA_MAX_SECONDS: float = Field(
        default=24 * 60 * 60,
        description="Upper clamp for estimated time remaining"
    )
    UNCHANGED_VALID_SCORE: float = Field(
        default=95.0,
        description="Cached score at or above which an unchanged resource counts as valid"
    )
    MIN_VALIDATION_SCORE: float = Field(
        default=70.0,
        description="Minimum score for a resource to be reported as passing"
    )
    MAX_REFERENCE_DEPTH: int = Field(
        default=3,
        description="How deep reference targets are followed for cycle detection"
    )

validation_settings = ValidationEngineSettings()
