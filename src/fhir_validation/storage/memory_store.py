# ============================================================================
# src/fhir_validation/storage/memory_store.py
# ============================================================================
"""
In-memory storage, used by tests and single-process runs without a database.
"""

import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional

from ..core.models import ValidationResult
from ..utils.exceptions import StorageError
from .base import ValidationStorage


class InMemoryStorage(ValidationStorage):

    def __init__(self):
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.results: Dict[str, List[ValidationResult]] = defaultdict(list)
        self.settings: Dict[str, Dict[str, Any]] = {}
        self.rules: Dict[str, Dict[str, Any]] = {}
        self.rule_versions: List[Dict[str, Any]] = []

    async def get_resource(self, resource_type, resource_id):
        resource = self.resources.get(f"{resource_type}/{resource_id}")
        return copy.deepcopy(resource) if resource is not None else None

    async def put_resource(self, resource):
        key = f"{resource.get('resourceType')}/{resource.get('id')}"
        self.resources[key] = copy.deepcopy(resource)

    async def save_result(self, result):
        if result.resource_key is None:
            raise StorageError("Cannot store a result without resource type and id")
        self.results[result.resource_key].append(result)

    async def get_latest_result(self, resource_type, resource_id):
        results = self.results.get(f"{resource_type}/{resource_id}")
        if not results:
            return None
        return max(results, key=lambda r: r.validated_at)

    async def get_results(self, resource_type, resource_id):
        return sorted(
            self.results.get(f"{resource_type}/{resource_id}", []),
            key=lambda r: r.validated_at
        )

    async def get_settings(self, settings_id):
        record = self.settings.get(settings_id)
        return copy.deepcopy(record) if record is not None else None

    async def get_active_settings(self):
        for record in self.settings.values():
            if record.get("is_active"):
                return copy.deepcopy(record)
        return None

    async def list_settings(self, limit=None):
        records = [copy.deepcopy(r) for r in self.settings.values()]
        return records[:limit] if limit else records

    async def list_recent_settings(self, limit=5):
        records = sorted(
            self.settings.values(),
            key=lambda r: str(r.get("updated_at", "")),
            reverse=True
        )
        return [copy.deepcopy(r) for r in records[:limit]]

    async def insert_settings(self, record):
        if record["id"] in self.settings:
            raise StorageError(f"Settings {record['id']} already exists")
        self.settings[record["id"]] = copy.deepcopy(record)

    async def update_settings(self, record):
        if record["id"] not in self.settings:
            raise StorageError(f"Settings {record['id']} does not exist")
        self.settings[record["id"]] = copy.deepcopy(record)

    async def delete_settings(self, settings_id):
        return self.settings.pop(settings_id, None) is not None

    async def activate_settings(self, settings_id):
        if settings_id not in self.settings:
            raise StorageError(f"Settings {settings_id} does not exist")
        for key, record in self.settings.items():
            record["is_active"] = key == settings_id

    async def get_rule(self, rule_id):
        record = self.rules.get(rule_id)
        return copy.deepcopy(record) if record is not None else None

    async def list_rules(self, include_deleted=False):
        return [
            copy.deepcopy(r) for r in self.rules.values()
            if include_deleted or not r.get("deleted_at")
        ]

    async def insert_rule(self, record):
        if record["id"] in self.rules:
            raise StorageError(f"Rule {record['id']} already exists")
        self.rules[record["id"]] = copy.deepcopy(record)

    async def update_rule(self, record):
        if record["id"] not in self.rules:
            raise StorageError(f"Rule {record['id']} does not exist")
        self.rules[record["id"]] = copy.deepcopy(record)

    async def append_rule_version(self, record):
        self.rule_versions.append(copy.deepcopy(record))

    async def list_rule_versions(self, rule_id):
        versions = [copy.deepcopy(v) for v in self.rule_versions if v["rule_id"] == rule_id]
        versions.reverse()
        return versions
