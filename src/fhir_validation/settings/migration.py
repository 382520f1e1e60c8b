# ============================================================================
# src/fhir_validation/settings/migration.py
# ============================================================================
"""
Settings validation and migration.

- check_settings: schema errors plus advisory warnings, never raises
- migrate_settings: backfill every invalid or missing top-level field
  from defaults, keeping everything that validates
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from pydantic import ValidationError

from .models import ValidationSettings

logger = logging.getLogger(__name__)

MAX_MIGRATION_PASSES = 5


@dataclass
class SettingsValidationReport:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"isValid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def format_validation_error(error: ValidationError) -> List[str]:
    issues = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()))
        issues.append(f"{location}: {detail.get('msg')}")
    return issues


def check_settings(payload: Any) -> SettingsValidationReport:
    if isinstance(payload, ValidationSettings):
        settings = payload
    else:
        if not isinstance(payload, dict):
            return SettingsValidationReport(False, errors=["settings payload must be an object"])
        try:
            settings = ValidationSettings.model_validate(payload)
        except ValidationError as e:
            return SettingsValidationReport(False, errors=format_validation_error(e))

    warnings = []
    if not settings.enabled_aspects:
        warnings.append("all validation aspects are disabled")
    if settings.terminology.enabled and not settings.enabled_servers("terminology"):
        warnings.append("terminology aspect enabled without an enabled terminology server")
    if settings.profile.enabled and not settings.enabled_servers("profile"):
        warnings.append("profile aspect enabled without an enabled profile resolution server")
    if settings.max_concurrent_validations > 100:
        warnings.append("max_concurrent_validations above 100 may overload external servers")

    for kind in ("terminology", "profile"):
        servers = settings.terminology_servers if kind == "terminology" else settings.profile_resolution_servers
        ids = [s.id for s in servers]
        if len(ids) != len(set(ids)):
            warnings.append(f"duplicate {kind} server ids")

    return SettingsValidationReport(True, warnings=warnings)


def migrate_settings(payload: Dict[str, Any]) -> Tuple[ValidationSettings, List[str]]:
    """
    Repair a stored settings payload.

    Returns the migrated settings and the issues that were fixed.
    Identity fields (id, version, is_active) are kept when valid.
    """
    working = dict(payload)
    fixed: List[str] = []

    for _ in range(MAX_MIGRATION_PASSES):
        try:
            settings = ValidationSettings.model_validate(working)
            break
        except ValidationError as e:
            issues = format_validation_error(e)
            fixed.extend(issues)
            broken = {detail["loc"][0] for detail in e.errors() if detail.get("loc")}
            if not broken:
                raise
            for name in broken:
                working.pop(name, None)
    else:
        # Give up on the payload content, keep only identity
        identity = {k: payload[k] for k in ("id", "version") if k in payload}
        settings = ValidationSettings.model_validate(identity)
        fixed.append("payload replaced with defaults")

    if fixed:
        logger.warning(f"Migrated settings {settings.id}: {len(fixed)} issue(s) fixed")
    return settings, fixed
