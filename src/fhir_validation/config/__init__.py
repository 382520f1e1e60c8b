# ============================================================================
# src/fhir_validation/config/__init__.py
# ============================================================================
"""
Convenient imports for all settings
"""

from .base_config import base_settings
from .validation_config import validation_settings
from .server_config import server_settings
from .settings_service_config import settings_service_settings
from .logging_config import logging_settings
