# ============================================================================
# src/fhir_validation/settings/models.py
# ============================================================================
"""
Persisted Validation Settings

Versioned configuration record controlling which aspects run, which
external servers they use, and the thresholds they apply. Exactly one
record is active at a time (enforced by the settings service).
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..config.server_config import server_settings
from ..config.validation_config import validation_settings
from ..core.models import Aspect, Severity


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ms(seconds: float) -> int:
    return int(round(seconds * 1000))


class ServerConfig(BaseModel):
    """Terminology or profile resolution server."""
    id: str
    name: str
    url: str
    type: str = "generic"
    priority: int = 1
    enabled: bool = True
    timeout_ms: int = 15000

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"server url must be http(s): {value}")
        return value.rstrip("/")


class AspectConfig(BaseModel):
    enabled: bool = True
    severity: str = "error"

    @field_validator("severity")
    @classmethod
    def _check_severity(cls, value: str) -> str:
        if value not in ("error", "warning", "info", "information"):
            raise ValueError(f"invalid aspect severity: {value}")
        return value

    @property
    def max_severity(self) -> Severity:
        return Severity.parse(self.severity)


class TimeoutSettings(BaseModel):
    fhir_server_ms: int = Field(default_factory=lambda: _ms(server_settings.FHIR_TIMEOUT_SECONDS), ge=1000, le=300000)
    terminology_ms: int = Field(
        default_factory=lambda: _ms(server_settings.TERMINOLOGY_TIMEOUT_SECONDS), ge=1000, le=300000
    )
    profile_ms: int = Field(default_factory=lambda: _ms(server_settings.PROFILE_TIMEOUT_SECONDS), ge=1000, le=300000)


class CacheSettings(BaseModel):
    enabled: bool = True
    ttl_ms: int = Field(default=300000, ge=1000, le=3600000)
    max_entries: int = Field(default=100, ge=1)


class ReferenceSettings(BaseModel):
    validate_integrity: bool = True
    detect_circular: bool = True
    max_depth: int = Field(default_factory=lambda: validation_settings.MAX_REFERENCE_DEPTH, ge=0, le=10)


def default_terminology_servers() -> List[ServerConfig]:
    return [
        ServerConfig(
            id="ontoserver",
            name="CSIRO Ontoserver",
            url="https://r4.ontoserver.csiro.au/fhir",
            type="ontoserver",
            priority=1,
            timeout_ms=10000,
        ),
        ServerConfig(
            id="tx-fhir-org",
            name="HL7 Terminology Server",
            url="https://tx.fhir.org/r4",
            type="tx",
            priority=2,
            timeout_ms=10000,
        ),
        ServerConfig(
            id="snowstorm",
            name="SNOMED International Snowstorm",
            url="https://snowstorm.ihtsdotools.org/fhir",
            type="snowstorm",
            priority=3,
            enabled=False,
            timeout_ms=10000,
        ),
    ]


def default_profile_servers() -> List[ServerConfig]:
    return [
        ServerConfig(
            id="simplifier",
            name="Simplifier.net",
            url="https://packages.simplifier.net",
            type="simplifier",
            priority=1,
        ),
        ServerConfig(
            id="fhir-ci",
            name="FHIR CI Build",
            url="https://build.fhir.org",
            type="fhir-ci",
            priority=2,
        ),
        ServerConfig(
            id="fhir-registry",
            name="FHIR Registry",
            url="https://registry.fhir.org",
            type="fhir-registry",
            priority=3,
        ),
    ]


class ValidationSettings(BaseModel):
    """
    One persisted settings record.

    Aspect configs are keyed by Aspect value ("structural", ...,
    "businessRule"). Severity on an aspect is the most severe level its
    issues may carry; "error" leaves issues untouched.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 1
    is_active: bool = False

    structural: AspectConfig = Field(default_factory=lambda: AspectConfig(severity="error"))
    profile: AspectConfig = Field(default_factory=lambda: AspectConfig(severity="warning"))
    terminology: AspectConfig = Field(default_factory=lambda: AspectConfig(severity="warning"))
    reference: AspectConfig = Field(default_factory=lambda: AspectConfig(severity="error"))
    business_rule: AspectConfig = Field(default_factory=lambda: AspectConfig(severity="error"))
    metadata: AspectConfig = Field(default_factory=lambda: AspectConfig(severity="error"))

    terminology_servers: List[ServerConfig] = Field(default_factory=default_terminology_servers)
    profile_resolution_servers: List[ServerConfig] = Field(default_factory=default_profile_servers)

    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    references: ReferenceSettings = Field(default_factory=ReferenceSettings)

    batch_size: int = Field(default_factory=lambda: validation_settings.BULK_BATCH_SIZE, ge=1, le=10000)
    max_concurrent_validations: int = Field(
        default_factory=lambda: validation_settings.BULK_PARALLEL_WIDTH, ge=1, le=500
    )
    min_validation_score: float = Field(
        default_factory=lambda: validation_settings.MIN_VALIDATION_SCORE, ge=0, le=100
    )
    custom_profiles: Dict[str, List[str]] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_now)
    created_by: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)
    updated_by: Optional[str] = None

    def aspect_config(self, aspect: Aspect) -> AspectConfig:
        if aspect == Aspect.BUSINESS_RULE:
            return self.business_rule
        return getattr(self, aspect.value)

    def is_aspect_enabled(self, aspect: Aspect) -> bool:
        return self.aspect_config(aspect).enabled

    @property
    def enabled_aspects(self) -> List[Aspect]:
        return [a for a in Aspect if self.is_aspect_enabled(a)]

    def enabled_servers(self, kind: str) -> List[ServerConfig]:
        """Enabled servers of one kind ("terminology" or "profile"), ascending priority."""
        servers = self.terminology_servers if kind == "terminology" else self.profile_resolution_servers
        return sorted((s for s in servers if s.enabled), key=lambda s: s.priority)

    def content_dict(self) -> Dict[str, Any]:
        """Settings content without identity and audit fields."""
        return self.model_dump(
            mode="json",
            exclude={"id", "version", "is_active", "created_at", "created_by", "updated_at", "updated_by"},
        )


# ----------------------------------------------------------------------------
# Presets
# ----------------------------------------------------------------------------

def _aspects(**severities) -> Dict[str, Dict[str, Any]]:
    aspects = {}
    for name, value in severities.items():
        enabled, severity = value
        aspects[name] = {"enabled": enabled, "severity": severity}
    return aspects


SETTINGS_PRESETS: Dict[str, Dict[str, Any]] = {
    "strict": {
        "name": "Strict",
        "description": "All aspects enabled, every finding reported at full severity",
        "settings": {
            **_aspects(
                structural=(True, "error"),
                profile=(True, "error"),
                terminology=(True, "error"),
                reference=(True, "error"),
                business_rule=(True, "error"),
                metadata=(True, "error"),
            ),
            "batch_size": 250,
            "max_concurrent_validations": 10,
            "min_validation_score": 90.0,
        },
    },
    "permissive": {
        "name": "Permissive",
        "description": "All aspects enabled, non-structural findings capped at warning",
        "settings": {
            **_aspects(
                structural=(True, "error"),
                profile=(True, "warning"),
                terminology=(True, "warning"),
                reference=(True, "warning"),
                business_rule=(True, "warning"),
                metadata=(True, "warning"),
            ),
            "min_validation_score": 50.0,
        },
    },
    "minimal": {
        "name": "Minimal",
        "description": "Structural and reference checks only, high throughput",
        "settings": {
            **_aspects(
                structural=(True, "error"),
                profile=(False, "warning"),
                terminology=(False, "warning"),
                reference=(True, "error"),
                business_rule=(False, "warning"),
                metadata=(False, "info"),
            ),
            "batch_size": 2000,
            "max_concurrent_validations": 100,
        },
    },
}
