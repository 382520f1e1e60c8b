# ============================================================================
# src/fhir_validation/config/server_config.py
# ============================================================================
"""
External Server Settings
- FHIR server endpoint
- Request timeouts
- Terminology circuit breaker
"""

from pydantic import Field
from pydantic_settings import BaseSettings

class ServerSettings(BaseSettings):
    FHIR_SERVER_URL: str = Field(
        default="https://hapi.fhir.org/baseR4",
        description="Base URL of the FHIR server holding the resources"
    )
    FHIR_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout for FHIR server requests"
    )
    TERMINOLOGY_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for terminology server requests"
    )
    PROFILE_TIMEOUT_SECONDS: float = Field(
        default=15.0,
        description="Timeout per profile resolution server attempt"
    )
    MAX_RETRIES: int = Field(
        default=3,
        description="Retries for idempotent server calls"
    )
    CIRCUIT_FAILURE_THRESHOLD: int = Field(
        default=3,
        description="Consecutive failures before a terminology server is skipped"
    )
    CIRCUIT_RESET_SECONDS: float = Field(
        default=60.0,
        description="Cool-down before a tripped terminology server is retried"
    )

server_settings = ServerSettings()
