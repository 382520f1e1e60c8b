# ============================================================================
# src/fhir_validation/clients/base.py
# ============================================================================
"""
External collaborator contracts.

The validation core talks to FHIR and terminology servers only through
these interfaces; concrete adapters live beside them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ConnectionStatus:
    connected: bool
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SearchResult:
    entries: List[Dict[str, Any]] = field(default_factory=list)
    total: Optional[int] = None


class FHIRClient(ABC):
    """FHIR server collaborator."""

    @abstractmethod
    async def test_connection(self) -> ConnectionStatus:
        pass

    @abstractmethod
    async def search_resources(
        self,
        resource_type: str,
        params: Optional[Dict[str, Any]] = None,
        page_size: int = 100,
    ) -> SearchResult:
        pass

    @abstractmethod
    async def get_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        """Resource or None when the server reports it missing."""
        pass

    @abstractmethod
    async def get_resource_count(self, resource_type: str) -> int:
        pass

    @abstractmethod
    async def validate_resource(
        self,
        resource: Dict[str, Any],
        profile_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """OperationOutcome-shaped dict."""
        pass

    async def close(self) -> None:
        pass


class TerminologyClient(ABC):
    """Terminology server collaborator."""

    @abstractmethod
    async def validate_code(self, system: str, code: str) -> bool:
        """
        True if the server knows the code.

        Raises on any failure; callers treat failures as indeterminate.
        """
        pass

    async def close(self) -> None:
        pass
