# ============================================================================
# src/fhir_validation/rules/models.py
# ============================================================================
"""
Custom business rule records.

- BusinessRule: administrative FHIRPath rule, soft-deleted via deleted_at
- RuleVersion: append-only snapshot written on every create/update/restore
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def bump_version(version: str, level: str = "minor") -> str:
    """Increment a major.minor.patch string."""
    try:
        major, minor, patch = (int(part) for part in version.split(".")[:3])
    except ValueError:
        major, minor, patch = 1, 0, 0

    if level == "major":
        return f"{major + 1}.0.0"
    if level == "minor":
        return f"{major}.{minor + 1}.0"
    if level == "patch":
        return f"{major}.{minor}.{patch + 1}"
    return version


@dataclass
class BusinessRule:
    name: str
    expression: str
    resource_types: List[str]
    description: str = ""
    severity: str = "warning"
    enabled: bool = True
    category: str = "Custom"
    version: str = "1.0.0"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    previous_version_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def applies_to(self, resource_type: str) -> bool:
        return resource_type in self.resource_types or "*" in self.resource_types

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "updated_at", "deleted_at"):
            data[key] = _iso(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusinessRule":
        data = dict(data)
        for key in ("created_at", "updated_at", "deleted_at"):
            if key in data:
                data[key] = _parse(data[key])
        return cls(**data)


@dataclass
class RuleVersion:
    rule_id: str
    version: str
    name: str
    expression: str
    resource_types: List[str]
    severity: str
    category: str
    description: str = ""
    change_description: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime = field(default_factory=_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def snapshot(
        cls,
        rule: BusinessRule,
        change_description: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> "RuleVersion":
        return cls(
            rule_id=rule.id,
            version=rule.version,
            name=rule.name,
            expression=rule.expression,
            resource_types=list(rule.resource_types),
            severity=rule.severity,
            category=rule.category,
            description=rule.description,
            change_description=change_description,
            changed_by=changed_by,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["changed_at"] = _iso(self.changed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleVersion":
        data = dict(data)
        data["changed_at"] = _parse(data.get("changed_at")) or _now()
        return cls(**data)
