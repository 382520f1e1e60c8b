# ============================================================================
# src/fhir_validation/storage/base.py
# ============================================================================
"""
Storage contract consumed by the validation core.

Records are plain JSON-compatible dicts except validation results, which
are ValidationResult objects. Results are append-only; the newest by
validated_at is the current one.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.models import ValidationResult


class ValidationStorage(ABC):

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def put_resource(self, resource: Dict[str, Any]) -> None:
        pass

    # ------------------------------------------------------------------
    # Validation results
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_result(self, result: ValidationResult) -> None:
        pass

    @abstractmethod
    async def get_latest_result(self, resource_type: str, resource_id: str) -> Optional[ValidationResult]:
        pass

    @abstractmethod
    async def get_results(self, resource_type: str, resource_id: str) -> List[ValidationResult]:
        """All results for one resource, oldest first."""
        pass

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_settings(self, settings_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_active_settings(self) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_settings(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_recent_settings(self, limit: int = 5) -> List[Dict[str, Any]]:
        """Most recently updated first."""
        pass

    @abstractmethod
    async def insert_settings(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update_settings(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def delete_settings(self, settings_id: str) -> bool:
        pass

    @abstractmethod
    async def activate_settings(self, settings_id: str) -> None:
        """Deactivate every record and activate one, atomically."""
        pass

    # ------------------------------------------------------------------
    # Business rules
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_rules(self, include_deleted: bool = False) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert_rule(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update_rule(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def append_rule_version(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def list_rule_versions(self, rule_id: str) -> List[Dict[str, Any]]:
        """Newest first."""
        pass
