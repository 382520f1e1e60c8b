# ============================================================================
# tests/unit/test_engine.py
# ============================================================================
"""
Tests for the multi-aspect validation engine
"""

import pytest

from fhir_validation.core.engine import ValidationEngine, cap_severity
from fhir_validation.core.models import Aspect, AspectOutcome, Severity
from fhir_validation.settings.models import ValidationSettings

from conftest import FakeTerminologyClient, iso, make_observation, make_patient


def codes(result):
    return [issue.code for issue in result.issues]


class RecordingListener:
    def __init__(self):
        self.results = []

    def on_validation_completed(self, result):
        self.results.append(result)


class TestEngineScenarios:
    """End-to-end validation of single resources"""

    @pytest.mark.asyncio
    async def test_bare_patient(self, engine):
        """Test that a Patient with only resourceType scores 40 and is invalid"""
        result = await engine.validate_resource({"resourceType": "Patient"})

        assert "missing-id" in codes(result)
        assert "cardinality-violation" in codes(result)
        assert result.validation_score == 40.0
        assert not result.is_valid
        assert result.resource_key is None

    @pytest.mark.asyncio
    async def test_future_observation_is_valid_with_warning(self, engine):
        """Test that a future-dated Observation stays valid"""
        result = await engine.validate_resource(make_observation(effectiveDateTime=iso(days=30)))

        assert "future-observation-date" in codes(result)
        assert 70.0 <= result.validation_score <= 95.0
        assert result.is_valid

    @pytest.mark.asyncio
    async def test_future_birth_date(self, engine):
        """Test that a future birth date makes the Patient invalid"""
        result = await engine.validate_resource(make_patient(birthDate="2999-01-01"))

        future = next(i for i in result.issues if i.code == "future-birth-date")
        assert future.severity == Severity.ERROR
        assert future.category == Aspect.BUSINESS_RULE
        assert result.validation_score == 40.0
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_circular_references(self, engine, storage):
        """Test that mutually referencing resources only warn"""
        a = {"resourceType": "Basic", "id": "a", "subject": {"reference": "Basic/b"}}
        b = {"resourceType": "Basic", "id": "b", "subject": {"reference": "Basic/a"}}
        await storage.put_resource(a)
        await storage.put_resource(b)

        result = await engine.validate_resource(a)

        assert "circular-reference" in codes(result)
        assert result.error_count == 0
        assert result.is_valid

    @pytest.mark.asyncio
    async def test_issues_follow_aspect_order(self, engine):
        """Test that the merged issue list is the union of aspect outcomes in order"""
        result = await engine.validate_resource({"resourceType": "Patient"})

        merged = [issue for outcome in result.aspect_outcomes.values() for issue in outcome.issues]
        assert merged == result.issues
        assert list(result.aspect_outcomes) == [
            Aspect.STRUCTURAL, Aspect.PROFILE, Aspect.TERMINOLOGY,
            Aspect.REFERENCE, Aspect.BUSINESS_RULE, Aspect.METADATA,
        ]


class TestEngineSettings:
    """Test how settings shape a validation run"""

    @pytest.mark.asyncio
    async def test_disabled_aspect_skipped(self, engine):
        """Test that disabled aspects produce no outcome"""
        settings = ValidationSettings()
        settings.metadata.enabled = False

        result = await engine.validate_resource({"resourceType": "Patient"}, settings)

        assert Aspect.METADATA not in result.aspect_outcomes
        assert not any(i.category == Aspect.METADATA for i in result.issues)

    @pytest.mark.asyncio
    async def test_severity_cap(self, storage, fhir_client, profile_resolver):
        """Test that terminology errors are capped at the configured warning level"""
        client = FakeTerminologyClient(unknown={("http://loinc.org", "8867-4")})
        engine = ValidationEngine(fhir_client=fhir_client, terminology_client=client,
                                  profile_resolver=profile_resolver, storage=storage)

        result = await engine.validate_resource(make_observation())

        issue = next(i for i in result.issues if i.code == "terminology-server-validation-failed")
        assert issue.severity == Severity.WARNING
        assert result.is_valid

    def test_cap_severity(self):
        """Test the cap helper directly"""
        outcome = AspectOutcome(aspect=Aspect.PROFILE)
        outcome.add_issue(Severity.FATAL, "a", "a")
        outcome.add_issue(Severity.WARNING, "b", "b")
        outcome.add_issue(Severity.INFORMATION, "c", "c")

        capped = cap_severity(outcome, Severity.INFORMATION)

        assert [i.severity for i in capped.issues] == [Severity.INFORMATION] * 3
        assert capped.passed


class TestEngineFailures:
    """Test that validate_resource never raises"""

    @pytest.mark.asyncio
    async def test_non_object_resource(self, engine):
        """Test that a structural exception becomes an engine error result"""
        result = await engine.validate_resource(["not", "a", "resource"])

        assert codes(result) == ["validation-engine-error"]
        assert result.validation_score == 0.0
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_settings_failure(self, storage):
        """Test that a failing settings lookup is reported, not raised"""
        class BrokenSettings:
            async def get_active_settings(self):
                raise RuntimeError("database is gone")

        engine = ValidationEngine(settings_service=BrokenSettings(), storage=storage)
        result = await engine.validate_resource(make_patient())

        assert codes(result) == ["validation-engine-error"]
        assert "database is gone" in result.issues[0].message


class TestEngineExtras:
    """Test listeners and bundle validation"""

    @pytest.mark.asyncio
    async def test_listener_notified(self, engine):
        """Test that validation listeners receive every result"""
        listener = RecordingListener()
        engine.subscribe(listener)

        result = await engine.validate_resource(make_patient())

        assert listener.results == [result]

    @pytest.mark.asyncio
    async def test_bundle_references(self, engine):
        """Test that bundle-local references resolve across entries"""
        patient_url = "urn:uuid:0c3151bd-1cbf-4d64-b04d-cd9187a4c6e0"
        bundle = {
            "resourceType": "Bundle",
            "type": "transaction",
            "entry": [
                {"fullUrl": patient_url, "resource": make_patient()},
                {"resource": make_observation(subject={"reference": patient_url})},
            ],
        }

        results = await engine.validate_bundle(bundle)

        assert len(results) == 2
        assert not any(i.code == "bundle-reference-not-found" for r in results for i in r.issues)
