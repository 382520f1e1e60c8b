# ============================================================================
# tests/unit/test_terminology.py
# ============================================================================
"""
Tests for the terminology aspect
"""

import pytest

from fhir_validation.aspects.terminology import (
    GENDER_SYSTEM,
    TerminologyValidator,
    is_valid_system,
)
from fhir_validation.core.models import Severity

from conftest import FakeTerminologyClient, make_observation


def with_coding(system, code, display=None):
    coding = {"system": system, "code": code}
    if display:
        coding["display"] = display
    return make_observation(code={"coding": [coding]})


def codes(outcome):
    return [issue.code for issue in outcome.issues]


class TestSystemUrls:
    """Test code system URL checks"""

    def test_valid_systems(self):
        """Test URIs and known prefixes"""
        assert is_valid_system("http://loinc.org")
        assert is_valid_system("urn:iso:std:iso:3166")
        assert not is_valid_system("not a url")
        assert not is_valid_system(None)


class TestTerminologyValidator:
    """Test local and server-backed code checks"""

    @pytest.fixture
    def validator(self):
        return TerminologyValidator()

    @pytest.mark.asyncio
    async def test_valid_loinc(self, validator, settings, context):
        """Test that a well-formed LOINC code passes"""
        outcome = await validator.run(make_observation(), settings, context)

        assert outcome.issues == []
        # code.coding[0] and the UCUM valueQuantity
        assert outcome.codes_checked == 2

    @pytest.mark.asyncio
    async def test_invalid_system(self, validator, settings, context):
        """Test that a malformed system is an error and stops further checks"""
        outcome = await validator.run(with_coding("loinc", "8867-4"), settings, context)

        assert codes(outcome) == ["invalid-system-url"]
        assert outcome.issues[0].path == "code.coding[0].system"

    @pytest.mark.asyncio
    async def test_denied_code(self, validator, settings, context):
        """Test the deny-list"""
        outcome = await validator.run(with_coding(GENDER_SYSTEM, "invalid"), settings, context)
        assert codes(outcome) == ["invalid-code"]

    @pytest.mark.asyncio
    async def test_enumerated_system(self, validator, settings, context):
        """Test enumerated value sets"""
        outcome = await validator.run(with_coding(GENDER_SYSTEM, "woman"), settings, context)
        assert codes(outcome) == ["invalid-gender-code"]

    @pytest.mark.asyncio
    async def test_format_checks(self, validator, settings, context):
        """Test LOINC, SNOMED and ISO 3166 formats"""
        loinc = await validator.run(with_coding("http://loinc.org", "ABC"), settings, context)
        snomed = await validator.run(with_coding("http://snomed.info/sct", "12a"), settings, context)
        country = await validator.run(with_coding("urn:iso:std:iso:3166", "usa"), settings, context)

        assert loinc.issues[0].code == "invalid-loinc-format"
        assert loinc.issues[0].severity == Severity.WARNING
        assert snomed.issues[0].code == "invalid-snomed-format"
        assert country.issues[0].code == "invalid-country-code"
        assert country.issues[0].severity == Severity.ERROR

    @pytest.mark.asyncio
    async def test_incorrect_display(self, validator, settings, context):
        """Test display text comparison"""
        outcome = await validator.run(with_coding(GENDER_SYSTEM, "male", "Man"), settings, context)

        assert codes(outcome) == ["incorrect-display"]
        assert "Male" in outcome.issues[0].suggestion

    @pytest.mark.asyncio
    async def test_incomplete_codings_not_counted(self, validator, settings, context):
        """Test that codings without a code are skipped (only the quantity counts)"""
        outcome = await validator.run(
            make_observation(code={"coding": [{"system": "http://loinc.org"}]}), settings, context
        )
        assert outcome.codes_checked == 1


class TestTerminologyServer:
    """Test the terminology server check"""

    @pytest.mark.asyncio
    async def test_unknown_code(self, settings, context):
        """Test that a code unknown to the server is an error"""
        client = FakeTerminologyClient(unknown={("http://loinc.org", "8867-4")})
        validator = TerminologyValidator(client)

        outcome = await validator.run(make_observation(), settings, context)

        assert codes(outcome) == ["terminology-server-validation-failed"]

    @pytest.mark.asyncio
    async def test_server_failure_is_information(self, settings, context):
        """Test that an unreachable server never fails the resource"""
        validator = TerminologyValidator(FakeTerminologyClient(fail=True))

        outcome = await validator.run(make_observation(), settings, context)

        assert codes(outcome) == ["terminology-server-unavailable"]
        assert outcome.issues[0].severity == Severity.INFORMATION
        assert outcome.passed

    @pytest.mark.asyncio
    async def test_results_cached(self, settings, context):
        """Test that repeated codes hit the server once when caching is on"""
        client = FakeTerminologyClient()
        validator = TerminologyValidator(client)

        await validator.run(make_observation(), settings, context)
        await validator.run(make_observation("o2"), settings, context)

        assert client.calls == [("http://loinc.org", "8867-4"), ("http://unitsofmeasure.org", "/min")]

    @pytest.mark.asyncio
    async def test_cache_bounded_by_max_entries(self, settings, context):
        """Test that the oldest cached codes are evicted past max_entries"""
        client = FakeTerminologyClient()
        validator = TerminologyValidator(client)
        settings.cache.max_entries = 1

        await validator.run(make_observation(), settings, context)
        await validator.run(make_observation("o2"), settings, context)

        assert len(client.calls) == 4
        assert len(validator._server_results) == 1

    @pytest.mark.asyncio
    async def test_no_servers_no_calls(self, settings, context):
        """Test that disabled servers skip the remote check"""
        client = FakeTerminologyClient()
        for server in settings.terminology_servers:
            server.enabled = False

        await TerminologyValidator(client).run(make_observation(), settings, context)

        assert client.calls == []
