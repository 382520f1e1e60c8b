# ============================================================================
# src/fhir_validation/clients/__init__.py
# ============================================================================
"""
FHIR and terminology server clients.
"""

from .base import ConnectionStatus, SearchResult, FHIRClient, TerminologyClient
from .fhir_client import AiohttpFHIRClient
from .terminology_client import AiohttpTerminologyClient
from .settings_sync import ClientSettingsSync

__all__ = [
    "ConnectionStatus",
    "SearchResult",
    "FHIRClient",
    "TerminologyClient",
    "AiohttpFHIRClient",
    "AiohttpTerminologyClient",
    "ClientSettingsSync",
]
