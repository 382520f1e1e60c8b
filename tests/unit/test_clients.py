# ============================================================================
# tests/unit/test_clients.py
# ============================================================================
"""
Tests for the aiohttp FHIR and terminology clients against a local server
"""

from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp import test_utils

from fhir_validation.clients.fhir_client import AiohttpFHIRClient
from fhir_validation.clients.settings_sync import ClientSettingsSync
from fhir_validation.clients.terminology_client import AiohttpTerminologyClient, CircuitState
from fhir_validation.core.events import SettingsChangeEvent, SettingsChangeType
from fhir_validation.profiles.resolver import ProfileResolver, ig_candidate_urls
from fhir_validation.settings.models import ServerConfig, ValidationSettings
from fhir_validation.settings.service import ValidationSettingsService
from fhir_validation.storage.memory_store import InMemoryStorage
from fhir_validation.utils.exceptions import FHIRServerError, TerminologyServerError

from conftest import make_patient


@asynccontextmanager
async def running(app: web.Application):
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/")
    finally:
        await server.close()


def fhir_app() -> web.Application:
    patients = {"p1": make_patient("p1"), "p2": make_patient("p2")}

    async def metadata(request):
        return web.json_response({"resourceType": "CapabilityStatement", "fhirVersion": "4.0.1"})

    async def search(request):
        if request.query.get("_summary") == "count":
            return web.json_response({"resourceType": "Bundle", "total": len(patients)})
        count = int(request.query.get("_count", 100))
        offset = int(request.query.get("_offset", 0))
        entries = [{"resource": r} for r in list(patients.values())[offset:offset + count]]
        return web.json_response({"resourceType": "Bundle", "total": len(patients), "entry": entries})

    async def read(request):
        resource = patients.get(request.match_info["id"])
        if resource is None:
            return web.json_response({"resourceType": "OperationOutcome"}, status=404)
        return web.json_response(resource)

    async def validate(request):
        body = await request.json()
        return web.json_response({
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "information", "code": "informational",
                       "diagnostics": f"{body['id']} {request.query.get('profile', '')}".strip()}],
        })

    async def broken(request):
        return web.Response(status=500, text="boom")

    app = web.Application()
    app.router.add_get("/metadata", metadata)
    app.router.add_get("/Patient", search)
    app.router.add_get("/Patient/{id}", read)
    app.router.add_post("/Patient/$validate", validate)
    app.router.add_get("/Observation", broken)
    return app


def terminology_app(known, status=200):
    """Terminology server app plus the list of (system, code) lookups it served."""
    hits = []

    async def validate_code(request):
        hits.append((request.query["url"], request.query["code"]))
        if status != 200:
            return web.Response(status=status)
        result = (request.query["url"], request.query["code"]) in known
        return web.json_response({
            "resourceType": "Parameters",
            "parameter": [{"name": "result", "valueBoolean": result}],
        })

    app = web.Application()
    app.router.add_get("/CodeSystem/$validate-code", validate_code)
    return app, hits


class TestFHIRClient:
    """Test the REST adapter"""

    @pytest.mark.asyncio
    async def test_connection(self):
        """Test the metadata capability check"""
        async with running(fhir_app()) as url:
            client = AiohttpFHIRClient(base_url=url, timeout=5)
            status = await client.test_connection()
            await client.close()

        assert status.connected
        assert status.version == "4.0.1"

    @pytest.mark.asyncio
    async def test_search_and_count(self):
        """Test paging parameters and summary count"""
        async with running(fhir_app()) as url:
            client = AiohttpFHIRClient(base_url=url, timeout=5)
            page = await client.search_resources("Patient", {"_offset": 1}, page_size=10)
            count = await client.get_resource_count("Patient")
            await client.close()

        assert [r["id"] for r in page.entries] == ["p2"]
        assert page.total == 2
        assert count == 2

    @pytest.mark.asyncio
    async def test_read(self):
        """Test read and 404 handling"""
        async with running(fhir_app()) as url:
            client = AiohttpFHIRClient(base_url=url, timeout=5)
            found = await client.get_resource("Patient", "p1")
            missing = await client.get_resource("Patient", "nope")
            await client.close()

        assert found["id"] == "p1"
        assert missing is None

    @pytest.mark.asyncio
    async def test_server_errors(self):
        """Test that HTTP failures raise, except for counts"""
        async with running(fhir_app()) as url:
            client = AiohttpFHIRClient(base_url=url, timeout=5)
            with pytest.raises(FHIRServerError) as exc_info:
                await client.search_resources("Observation")
            count = await client.get_resource_count("Observation")
            await client.close()

        assert exc_info.value.status == 500
        assert count == 0

    @pytest.mark.asyncio
    async def test_validate_operation(self):
        """Test the $validate operation with a profile"""
        async with running(fhir_app()) as url:
            client = AiohttpFHIRClient(base_url=url, timeout=5)
            outcome = await client.validate_resource(make_patient("p9"), profile_url="http://example.org/p")
            await client.close()

        assert outcome["issue"][0]["diagnostics"] == "p9 http://example.org/p"

    @pytest.mark.asyncio
    async def test_unreachable(self):
        """Test that a dead server reports disconnected"""
        client = AiohttpFHIRClient(base_url="http://127.0.0.1:1", timeout=1)
        status = await client.test_connection()
        await client.close()

        assert not status.connected
        assert status.error


class TestTerminologyClient:
    """Test code validation with failover"""

    @pytest.mark.asyncio
    async def test_validate_code(self):
        """Test valid and invalid codes"""
        app, _ = terminology_app({("http://loinc.org", "8867-4")})
        async with running(app) as url:
            client = AiohttpTerminologyClient([ServerConfig(id="tx", name="tx", url=url, timeout_ms=5000)])
            valid = await client.validate_code("http://loinc.org", "8867-4")
            invalid = await client.validate_code("http://loinc.org", "0000-0")
            await client.close()

        assert valid
        assert not invalid

    @pytest.mark.asyncio
    async def test_failover_by_priority(self):
        """Test that a failing server falls through to the next one"""
        (bad, bad_hits), (good, _) = terminology_app(set(), status=503), terminology_app({("http://loinc.org", "1-8")})
        async with running(bad) as bad_url, running(good) as good_url:
            client = AiohttpTerminologyClient([
                ServerConfig(id="backup", name="backup", url=good_url, priority=2, timeout_ms=5000),
                ServerConfig(id="primary", name="primary", url=bad_url, priority=1, timeout_ms=5000),
            ])
            result = await client.validate_code("http://loinc.org", "1-8")
            await client.close()

        assert result
        assert len(bad_hits) == 1
        assert client.circuits["primary"].failures == 1

    @pytest.mark.asyncio
    async def test_all_servers_down(self):
        """Test that exhaustion raises and trips the breaker"""
        app, hits = terminology_app(set(), status=500)
        async with running(app) as url:
            client = AiohttpTerminologyClient(
                [ServerConfig(id="tx", name="tx", url=url, timeout_ms=5000)],
                failure_threshold=1,
                reset_seconds=300,
            )
            with pytest.raises(TerminologyServerError):
                await client.validate_code("http://loinc.org", "1-8")
            with pytest.raises(TerminologyServerError, match="circuit open"):
                await client.validate_code("http://loinc.org", "1-8")
            await client.close()

        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_no_servers(self):
        """Test that an empty server list raises"""
        with pytest.raises(TerminologyServerError, match="no servers configured"):
            await AiohttpTerminologyClient([]).validate_code("http://loinc.org", "1-8")

    def test_disabled_servers_skipped(self):
        """Test that disabled servers are dropped"""
        client = AiohttpTerminologyClient([
            ServerConfig(id="off", name="off", url="http://a.example", enabled=False),
            ServerConfig(id="on", name="on", url="http://b.example"),
        ])

        assert [s.id for s in client.servers] == ["on"]

    @pytest.mark.asyncio
    async def test_non_object_body_is_server_failure(self):
        """Test that a JSON body that is not an object counts against the circuit"""
        async def validate_code(request):
            return web.json_response(["not", "parameters"])

        app = web.Application()
        app.router.add_get("/CodeSystem/$validate-code", validate_code)
        async with running(app) as url:
            client = AiohttpTerminologyClient([ServerConfig(id="tx", name="tx", url=url, timeout_ms=5000)])
            with pytest.raises(TerminologyServerError, match="not a Parameters resource"):
                await client.validate_code("http://loinc.org", "1-8")
            await client.close()

        assert client.circuits["tx"].failures == 1

    def test_configure_replaces_servers(self):
        """Test that reconfiguring keeps circuits of retained servers"""
        client = AiohttpTerminologyClient([
            ServerConfig(id="a", name="a", url="http://a.example"),
            ServerConfig(id="b", name="b", url="http://b.example"),
        ])
        client.circuits["a"].failures = 2

        client.configure([
            ServerConfig(id="a", name="a", url="http://a.example"),
            ServerConfig(id="c", name="c", url="http://c.example"),
        ], timeout_seconds=2.5)

        assert [s.id for s in client.servers] == ["a", "c"]
        assert client.circuits["a"].failures == 2
        assert "b" not in client.circuits
        assert client.timeout_seconds == 2.5


class TestCircuitState:
    """Test the breaker bookkeeping"""

    def test_opens_at_threshold(self):
        """Test open after N failures and reset after cool-down"""
        circuit = CircuitState()
        circuit.record_failure(2)
        assert not circuit.is_open(60)

        circuit.record_failure(2)
        assert circuit.is_open(60)
        assert not circuit.is_open(0)
        assert circuit.failures == 0


def definition(url):
    return {"resourceType": "StructureDefinition", "url": url, "differential": {"element": []}}


def registry_app(status=200):
    async def search(request):
        if status != 200:
            return web.Response(status=status)
        url = request.query["url"]
        return web.json_response({"resourceType": "Bundle", "entry": [{"resource": definition(url)}]})

    app = web.Application()
    app.router.add_get("/StructureDefinition", search)
    return app


def ig_app():
    async def published(request):
        return web.json_response(definition("us-core-patient"))

    app = web.Application()
    app.router.add_get("/us/core/StructureDefinition-us-core-patient.json", published)
    return app


class TestProfileResolver:
    """Test StructureDefinition resolution over HTTP"""

    def test_ig_candidates(self):
        """Test guessed download URLs for an IG profile"""
        candidates = ig_candidate_urls(
            "http://hl7.org/fhir/us/core/StructureDefinition/us-core-patient", "http://packages.test"
        )

        assert candidates == [
            "http://hl7.org/fhir/us/core/StructureDefinition-us-core-patient.json",
            "http://packages.test/us/core/StructureDefinition-us-core-patient.json",
            "http://packages.test/ig/us/core/StructureDefinition-us-core-patient.json",
            "http://hl7.org/fhir/us/core/StructureDefinition/us-core-patient.json",
        ]

    @pytest.mark.asyncio
    async def test_registry_failover(self):
        """Test that a failing registry falls through to the next one"""
        profile = "http://example.org/StructureDefinition/bp"
        async with running(registry_app(status=500)) as bad_url, running(registry_app()) as good_url:
            resolver = ProfileResolver()
            resolved = await resolver.resolve(profile, [
                ServerConfig(id="second", name="second", url=good_url, priority=2, timeout_ms=5000),
                ServerConfig(id="first", name="first", url=bad_url, priority=1, timeout_ms=5000),
            ])
            await resolver.close()

        assert resolved["url"] == profile

    @pytest.mark.asyncio
    async def test_ig_server(self):
        """Test pattern guessing against an IG-style server"""
        async with running(ig_app()) as url:
            resolver = ProfileResolver()
            resolved = await resolver.resolve(
                f"{url}/fhir/us/core/StructureDefinition/us-core-patient",
                [ServerConfig(id="ig", name="ig", url=url, type="fhir-ci", timeout_ms=5000)],
            )
            await resolver.close()

        assert resolved["resourceType"] == "StructureDefinition"

    @pytest.mark.asyncio
    async def test_unresolved(self):
        """Test that missing profiles and empty server lists give None"""
        async with running(registry_app(status=404)) as url:
            resolver = ProfileResolver()
            missing = await resolver.resolve(
                "http://example.org/StructureDefinition/none",
                [ServerConfig(id="reg", name="reg", url=url, timeout_ms=5000)],
            )
            await resolver.close()

        assert missing is None
        assert await ProfileResolver().resolve("http://example.org/x", []) is None


class TestClientSettingsSync:
    """Test that activated settings reach the HTTP clients"""

    @pytest.mark.asyncio
    async def test_activation_reconfigures_clients(self, service_config):
        """Test timeouts and terminology servers follow the active record"""
        service = ValidationSettingsService(InMemoryStorage(), config=service_config)
        fhir_client = AiohttpFHIRClient(base_url="http://fhir.example")
        terminology_client = AiohttpTerminologyClient([])
        service.subscribe(ClientSettingsSync(fhir_client, terminology_client))
        await service.initialize()

        created = await service.create_settings({
            "timeouts": {"fhir_server_ms": 5000, "terminology_ms": 2000},
            "terminology_servers": [{"id": "local", "name": "Local", "url": "http://tx.example"}],
        })
        await service.activate_settings(created.id)
        await service.shutdown()

        assert fhir_client.timeout == 5.0
        assert terminology_client.timeout_seconds == 2.0
        assert [s.id for s in terminology_client.servers] == ["local"]

    def test_inactive_records_ignored(self):
        """Test that changes to inactive records leave the clients alone"""
        terminology_client = AiohttpTerminologyClient([ServerConfig(id="tx", name="tx", url="http://tx.example")])
        sync = ClientSettingsSync(terminology_client=terminology_client)

        sync.on_settings_changed(SettingsChangeEvent(
            change_type=SettingsChangeType.CREATED,
            settings_id="draft",
            current=ValidationSettings(terminology_servers=[]),
        ))

        assert [s.id for s in terminology_client.servers] == ["tx"]
