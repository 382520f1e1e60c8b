# ============================================================================
# src/fhir_validation/clients/settings_sync.py
# ============================================================================
"""
Client Settings Sync

Keeps the HTTP clients in step with the active validation settings.
Subscribed to the settings service, it pushes the FHIR server timeout and
the terminology server list and timeout to the clients whenever a record
becomes (or stays) active: activation, update, migration, restore and
default creation.
"""

import logging
from typing import Optional

from ..core.events import SettingsChangeEvent, SettingsListener
from ..settings.models import ValidationSettings
from .fhir_client import AiohttpFHIRClient
from .terminology_client import AiohttpTerminologyClient


class ClientSettingsSync(SettingsListener):

    def __init__(
        self,
        fhir_client: Optional[AiohttpFHIRClient] = None,
        terminology_client: Optional[AiohttpTerminologyClient] = None,
    ):
        self.fhir_client = fhir_client
        self.terminology_client = terminology_client
        self.logger = logging.getLogger(__name__)

    def apply(self, settings: ValidationSettings) -> None:
        if self.fhir_client is not None:
            self.fhir_client.configure(timeout=settings.timeouts.fhir_server_ms / 1000)
        if self.terminology_client is not None:
            self.terminology_client.configure(
                settings.terminology_servers,
                timeout_seconds=settings.timeouts.terminology_ms / 1000,
            )
        self.logger.debug(f"Clients configured from settings {settings.id} v{settings.version}")

    def on_settings_changed(self, event: SettingsChangeEvent) -> None:
        current = event.current
        if isinstance(current, ValidationSettings) and current.is_active:
            self.apply(current)
