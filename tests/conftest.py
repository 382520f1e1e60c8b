# ============================================================================
# tests/conftest.py
# ============================================================================
"""
Pytest configuration and shared fixtures for testing.

Collaborators are in-memory fakes; nothing here touches the network.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from fhir_validation.clients.base import ConnectionStatus, FHIRClient, SearchResult, TerminologyClient
from fhir_validation.config.settings_service_config import SettingsServiceSettings
from fhir_validation.core.context import ValidationContext
from fhir_validation.core.engine import ValidationEngine
from fhir_validation.settings.models import ValidationSettings
from fhir_validation.storage.memory_store import InMemoryStorage
from fhir_validation.utils.exceptions import FHIRServerError, TerminologyServerError


# ============================================================================
# Fakes
# ============================================================================

class FakeFHIRClient(FHIRClient):
    """FHIR server backed by a dict of resource lists per type."""

    def __init__(
        self,
        resources: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        counts: Optional[Dict[str, int]] = None,
        outcome: Optional[Dict[str, Any]] = None,
        unreachable: bool = False,
    ):
        self.resources = resources or {}
        self.counts = counts or {}
        self.outcome = outcome
        self.unreachable = unreachable
        self.validate_calls: List[Optional[str]] = []
        self.get_calls: List[str] = []
        self.search_calls: List[tuple] = []
        self.closed = False

    async def test_connection(self):
        if self.unreachable:
            return ConnectionStatus(connected=False, error="unreachable")
        return ConnectionStatus(connected=True, version="4.0.1")

    async def search_resources(self, resource_type, params=None, page_size=100):
        offset = int((params or {}).get("_offset", 0))
        self.search_calls.append((resource_type, offset, page_size))
        items = self.resources.get(resource_type, [])
        return SearchResult(entries=items[offset:offset + page_size], total=len(items))

    async def get_resource(self, resource_type, resource_id):
        self.get_calls.append(f"{resource_type}/{resource_id}")
        if self.unreachable:
            raise FHIRServerError("connection refused", url="http://fhir.test")
        for resource in self.resources.get(resource_type, []):
            if resource.get("id") == resource_id:
                return resource
        return None

    async def get_resource_count(self, resource_type):
        if resource_type in self.counts:
            return self.counts[resource_type]
        return len(self.resources.get(resource_type, []))

    async def validate_resource(self, resource, profile_url=None):
        self.validate_calls.append(profile_url)
        if self.unreachable:
            raise FHIRServerError("connection refused", url="http://fhir.test")
        return self.outcome or {"resourceType": "OperationOutcome", "issue": []}

    async def close(self):
        self.closed = True


class FakeTerminologyClient(TerminologyClient):
    """Knows every code except the ones listed as unknown."""

    def __init__(self, unknown=None, fail: bool = False):
        self.unknown = set(unknown or ())
        self.fail = fail
        self.calls: List[tuple] = []

    async def validate_code(self, system, code):
        self.calls.append((system, code))
        if self.fail:
            raise TerminologyServerError("all terminology servers failed")
        return (system, code) not in self.unknown


class FakeProfileResolver:
    """Returns StructureDefinitions from a dict keyed by canonical URL."""

    def __init__(self, definitions: Optional[Dict[str, Dict[str, Any]]] = None):
        self.definitions = definitions or {}
        self.calls: List[str] = []
        self.timeouts: List[Optional[float]] = []

    async def resolve(self, profile_url, servers, timeout_seconds=None):
        self.calls.append(profile_url)
        self.timeouts.append(timeout_seconds)
        return self.definitions.get(profile_url)

    async def close(self):
        pass


# ============================================================================
# Resource builders
# ============================================================================

def iso(days: int = 0) -> str:
    """ISO timestamp relative to now, with timezone."""
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def make_patient(resource_id: str = "p1", **fields) -> Dict[str, Any]:
    patient = {
        "resourceType": "Patient",
        "id": resource_id,
        "meta": {"versionId": "1", "lastUpdated": "2024-01-15T10:00:00Z"},
        "text": {"status": "generated", "div": "<div xmlns=\"http://www.w3.org/1999/xhtml\">Jane Doe</div>"},
        "name": [{"family": "Doe", "given": ["Jane"]}],
        "gender": "female",
        "birthDate": "1980-05-17",
    }
    patient.update(fields)
    return patient


def make_observation(resource_id: str = "o1", **fields) -> Dict[str, Any]:
    observation = {
        "resourceType": "Observation",
        "id": resource_id,
        "meta": {"versionId": "1", "lastUpdated": "2024-01-15T10:00:00Z"},
        "text": {"status": "generated", "div": "<div xmlns=\"http://www.w3.org/1999/xhtml\">Heart rate</div>"},
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4", "display": "Heart rate"}]},
        "effectiveDateTime": "2024-01-15T09:30:00Z",
        "valueQuantity": {"value": 72, "unit": "beats/min", "code": "/min", "system": "http://unitsofmeasure.org"},
    }
    observation.update(fields)
    return observation


def make_resources(resource_type: str, count: int) -> List[Dict[str, Any]]:
    return [{"resourceType": resource_type, "id": f"{resource_type.lower()}-{i}"} for i in range(count)]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def fhir_client():
    return FakeFHIRClient()


@pytest.fixture
def terminology_client():
    return FakeTerminologyClient()


@pytest.fixture
def profile_resolver():
    return FakeProfileResolver()


@pytest.fixture
def settings():
    return ValidationSettings()


@pytest.fixture
def context():
    return ValidationContext()


@pytest.fixture
def service_config():
    return SettingsServiceSettings(SETTINGS_RETRY_BASE_SECONDS=0, SETTINGS_AUTO_BACKUP=False)


@pytest.fixture
def engine(storage, fhir_client, terminology_client, profile_resolver):
    return ValidationEngine(
        fhir_client=fhir_client,
        terminology_client=terminology_client,
        profile_resolver=profile_resolver,
        storage=storage,
    )
