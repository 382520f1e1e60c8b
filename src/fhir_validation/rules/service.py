# ============================================================================
# src/fhir_validation/rules/service.py
# ============================================================================
"""
Business Rule Administration

CRUD for custom FHIRPath rules plus:
- semantic versioning (minor bump when the expression changes, patch bump
  on restore)
- append-only version history written on create, update and restore
- soft delete, toggle, duplicate
- search, statistics, import/export

Expressions are checked by evaluating them with fhirpathpy against an
empty resource of the first target type; anything that does not parse is
rejected with RuleExpressionError.

Every change is published to RuleListener subscribers (the custom rule
executor uses this to drop its cache).
"""

import logging
from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fhirpathpy import evaluate

from ..core.events import EventPublisher
from ..storage.base import ValidationStorage
from ..utils.exceptions import BusinessRuleError, RuleExpressionError, RuleNotFoundError
from .models import BusinessRule, RuleVersion, bump_version

VALID_SEVERITIES = ("error", "warning", "information", "info")

REQUIRED_FIELDS = ("name", "expression", "resource_types")

UPDATABLE_FIELDS = (
    "name", "expression", "resource_types", "description", "severity",
    "enabled", "category", "tags", "metadata",
)

EXPORT_FORMAT_VERSION = "1.0"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_expression(expression: str, resource_type: str = "Patient") -> None:
    """Raise RuleExpressionError if the FHIRPath expression cannot be evaluated."""
    if not isinstance(expression, str) or not expression.strip():
        raise RuleExpressionError("Rule expression must not be empty", expression=expression or "")
    try:
        evaluate({"resourceType": resource_type}, expression)
    except Exception as e:
        raise RuleExpressionError(f"Invalid FHIRPath expression: {e}", expression=expression) from e


class BusinessRuleService(EventPublisher):

    def __init__(self, storage: ValidationStorage):
        super().__init__()
        self.storage = storage
        self.logger = logging.getLogger(__name__)

    # ========================================================================
    # CRUD
    # ========================================================================

    async def create_rule(self, data: Dict[str, Any], created_by: Optional[str] = None) -> BusinessRule:
        missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
        if missing:
            raise BusinessRuleError(f"Missing required rule fields: {', '.join(missing)}")

        fields = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS}
        rule = BusinessRule(**fields, created_by=created_by, updated_by=created_by)
        self._check_rule(rule)

        await self.storage.insert_rule(rule.to_dict())
        await self._record_version(rule, "Rule created", created_by)

        self.logger.info(f"Created business rule {rule.id} ({rule.name})")
        self._publish("on_rules_changed", rule.id)
        return rule

    async def get_rule(self, rule_id: str, include_deleted: bool = False) -> BusinessRule:
        record = await self.storage.get_rule(rule_id)
        if record is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found", rule_id=rule_id)
        rule = BusinessRule.from_dict(record)
        if rule.is_deleted and not include_deleted:
            raise RuleNotFoundError(f"Rule {rule_id} has been deleted", rule_id=rule_id)
        return rule

    async def list_rules(self, include_deleted: bool = False) -> List[BusinessRule]:
        records = await self.storage.list_rules(include_deleted=include_deleted)
        return [BusinessRule.from_dict(r) for r in records]

    async def list_rules_for_type(self, resource_type: str) -> List[BusinessRule]:
        return [rule for rule in await self.list_rules() if rule.applies_to(resource_type)]

    async def search_rules(
        self,
        text: Optional[str] = None,
        severity: Optional[str] = None,
        enabled: Optional[bool] = None,
        resource_type: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[BusinessRule]:
        needle = text.lower() if text else None
        results = []
        for rule in await self.list_rules():
            if needle and needle not in rule.name.lower() \
                    and needle not in rule.description.lower() \
                    and needle not in rule.expression.lower():
                continue
            if severity and rule.severity != severity:
                continue
            if enabled is not None and rule.enabled != enabled:
                continue
            if resource_type and not rule.applies_to(resource_type):
                continue
            if category and rule.category != category:
                continue
            results.append(rule)
        return results

    async def update_rule(
        self,
        rule_id: str,
        changes: Dict[str, Any],
        updated_by: Optional[str] = None,
        change_description: Optional[str] = None,
    ) -> BusinessRule:
        current = await self.get_rule(rule_id)

        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise BusinessRuleError(f"Fields cannot be updated: {', '.join(unknown)}")

        updated = replace(current, **changes, updated_at=_now(), updated_by=updated_by)
        expression_changed = updated.expression != current.expression
        if expression_changed:
            updated = replace(updated, version=bump_version(current.version, "minor"))
        self._check_rule(updated, check_expression_text=expression_changed)

        await self.storage.update_rule(updated.to_dict())
        await self._record_version(updated, change_description or "Rule updated", updated_by)

        self.logger.info(f"Updated business rule {rule_id} (version {updated.version})")
        self._publish("on_rules_changed", rule_id)
        return updated

    async def toggle_rule(
        self,
        rule_id: str,
        enabled: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> BusinessRule:
        current = await self.get_rule(rule_id)
        target = (not current.enabled) if enabled is None else enabled
        return await self.update_rule(
            rule_id, {"enabled": target}, updated_by,
            change_description="Rule enabled" if target else "Rule disabled",
        )

    async def delete_rule(self, rule_id: str, deleted_by: Optional[str] = None) -> None:
        """Soft delete; history is kept."""
        current = await self.get_rule(rule_id)
        deleted = replace(current, deleted_at=_now(), enabled=False, updated_at=_now(), updated_by=deleted_by)
        await self.storage.update_rule(deleted.to_dict())

        self.logger.info(f"Deleted business rule {rule_id}")
        self._publish("on_rules_changed", rule_id)

    async def duplicate_rule(self, rule_id: str, created_by: Optional[str] = None) -> BusinessRule:
        source = await self.get_rule(rule_id)
        data = {name: getattr(source, name) for name in UPDATABLE_FIELDS}
        data["name"] = f"{source.name} (Copy)"
        return await self.create_rule(data, created_by=created_by)

    # ========================================================================
    # VERSIONS
    # ========================================================================

    async def get_rule_versions(self, rule_id: str) -> List[RuleVersion]:
        """Newest first."""
        await self.get_rule(rule_id, include_deleted=True)
        return [RuleVersion.from_dict(v) for v in await self.storage.list_rule_versions(rule_id)]

    async def restore_version(
        self,
        rule_id: str,
        version_id: str,
        restored_by: Optional[str] = None,
    ) -> BusinessRule:
        current = await self.get_rule(rule_id)
        snapshot = next(
            (v for v in await self.get_rule_versions(rule_id) if v.id == version_id),
            None,
        )
        if snapshot is None:
            raise RuleNotFoundError(f"Version {version_id} of rule {rule_id} not found", rule_id=rule_id)

        restored = replace(
            current,
            name=snapshot.name,
            expression=snapshot.expression,
            resource_types=list(snapshot.resource_types),
            severity=snapshot.severity,
            category=snapshot.category,
            description=snapshot.description,
            version=bump_version(current.version, "patch"),
            previous_version_id=snapshot.id,
            updated_at=_now(),
            updated_by=restored_by,
        )
        await self.storage.update_rule(restored.to_dict())
        await self._record_version(restored, f"Restored from version {snapshot.version}", restored_by)

        self.logger.info(f"Restored business rule {rule_id} from version {snapshot.version}")
        self._publish("on_rules_changed", rule_id)
        return restored

    # ========================================================================
    # STATISTICS, IMPORT, EXPORT
    # ========================================================================

    async def get_statistics(self) -> Dict[str, Any]:
        rules = await self.list_rules()
        return {
            "total": len(rules),
            "enabled": sum(1 for r in rules if r.enabled),
            "disabled": sum(1 for r in rules if not r.enabled),
            "by_category": dict(Counter(r.category for r in rules)),
            "by_severity": dict(Counter(r.severity for r in rules)),
        }

    async def export_rules(self, rule_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        rules = await self.list_rules()
        if rule_ids is not None:
            wanted = set(rule_ids)
            rules = [r for r in rules if r.id in wanted]
        return {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": _now().isoformat(),
            "rules": [
                {name: getattr(rule, name) for name in UPDATABLE_FIELDS} | {"version": rule.version}
                for rule in rules
            ],
        }

    async def import_rules(
        self,
        payload: Dict[str, Any],
        on_duplicate: str = "skip",
        imported_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Import rules from an export payload. Duplicates are matched by name.

        Returns:
            {"imported": int, "updated": int, "skipped": int,
             "errors": [{"index", "name", "error"}]}
        """
        if on_duplicate not in ("skip", "overwrite"):
            raise BusinessRuleError(f"Unknown duplicate policy: {on_duplicate}")

        existing = {rule.name: rule for rule in await self.list_rules()}
        summary = {"imported": 0, "updated": 0, "skipped": 0, "errors": []}

        for index, data in enumerate(payload.get("rules") or []):
            name = data.get("name") if isinstance(data, dict) else None
            try:
                if not isinstance(data, dict):
                    raise BusinessRuleError("Rule entry must be an object")
                missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
                if missing:
                    raise BusinessRuleError(f"Missing required fields: {', '.join(missing)}")

                fields = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS}
                if name in existing:
                    if on_duplicate == "skip":
                        summary["skipped"] += 1
                        continue
                    await self.update_rule(
                        existing[name].id, fields, imported_by, change_description="Imported",
                    )
                    summary["updated"] += 1
                else:
                    created = await self.create_rule(fields, created_by=imported_by)
                    existing[created.name] = created
                    summary["imported"] += 1

            except BusinessRuleError as e:
                summary["errors"].append({"index": index, "name": name, "error": str(e)})

        self.logger.info(
            f"Imported rules: {summary['imported']} new, {summary['updated']} updated, "
            f"{summary['skipped']} skipped, {len(summary['errors'])} failed"
        )
        return summary

    # ========================================================================
    # PRIVATE METHODS
    # ========================================================================

    def _check_rule(self, rule: BusinessRule, check_expression_text: bool = True) -> None:
        if rule.severity not in VALID_SEVERITIES:
            raise BusinessRuleError(f"Invalid rule severity: {rule.severity}")
        if not rule.resource_types or not all(isinstance(t, str) for t in rule.resource_types):
            raise BusinessRuleError("Rule must target at least one resource type")
        if check_expression_text:
            first_type = next((t for t in rule.resource_types if t != "*"), "Patient")
            check_expression(rule.expression, first_type)

    async def _record_version(
        self,
        rule: BusinessRule,
        change_description: str,
        changed_by: Optional[str],
    ) -> None:
        snapshot = RuleVersion.snapshot(rule, change_description, changed_by)
        await self.storage.append_rule_version(snapshot.to_dict())
