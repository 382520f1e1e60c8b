# ============================================================================
# tests/unit/test_bulk.py
# ============================================================================
"""
Tests for bulk validation orchestration and progress tracking
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fhir_validation.bulk.orchestrator import (
    BulkValidationOptions,
    BulkValidationService,
    BulkValidationState,
)
from fhir_validation.bulk.progress import BulkValidationProgress
from fhir_validation.core.engine import ValidationEngine
from fhir_validation.core.events import BulkProgressListener
from fhir_validation.settings.service import ValidationSettingsService
from fhir_validation.utils.exceptions import InvalidStateTransitionError

from conftest import (
    FakeFHIRClient,
    FakeProfileResolver,
    FakeTerminologyClient,
    iso,
    make_observation,
    make_resources,
)

TYPES = ["Patient", "Observation", "Condition"]


def build_service(storage, fhir_client, settings_service=None):
    engine = ValidationEngine(
        settings_service=settings_service,
        fhir_client=fhir_client,
        terminology_client=FakeTerminologyClient(),
        profile_resolver=FakeProfileResolver(),
        storage=storage,
    )
    return BulkValidationService(fhir_client, engine, storage)


def server(**counts):
    return FakeFHIRClient(resources={t: make_resources(t, n) for t, n in counts.items()})


class GatedValidation:
    """Holds every resource validation until released."""

    def __init__(self, unified):
        self.unified = unified
        self.engine = unified.engine
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def validate_resource(self, resource, **kwargs):
        self.entered.set()
        await self.release.wait()
        return await self.unified.validate_resource(resource, **kwargs)


class StateRecorder(BulkProgressListener):
    def __init__(self):
        self.transitions = []

    def on_state_changed(self, previous, current):
        self.transitions.append((previous.value, current.value))


class CountFailingClient(FakeFHIRClient):
    async def get_resource_count(self, resource_type):
        if resource_type == "Observation":
            raise RuntimeError("count unavailable")
        return await super().get_resource_count(resource_type)


class SearchFailingClient(FakeFHIRClient):
    async def search_resources(self, resource_type, params=None, page_size=100):
        if resource_type == "Observation":
            raise RuntimeError("search timed out")
        return await super().search_resources(resource_type, params, page_size)


class TestBulkRun:
    """Test complete runs"""

    @pytest.mark.asyncio
    async def test_full_run(self, storage):
        """Test that every resource of every type is processed"""
        client = server(Patient=100, Observation=100, Condition=50)
        service = build_service(storage, client)
        recorder = StateRecorder()
        service.subscribe(recorder)

        progress = await service.validate_all_resources(
            BulkValidationOptions(resource_types=TYPES, batch_size=100, parallel_width=50)
        )

        assert progress.is_complete
        assert progress.total_resources == 250
        assert progress.processed_resources == 250
        assert progress.valid_resources + progress.error_resources == 250
        assert progress.estimated_time_remaining == 0.0
        assert service.get_state() == BulkValidationState.IDLE
        assert service.get_progress() is None
        assert recorder.transitions == [("idle", "running"), ("running", "idle")]

    @pytest.mark.asyncio
    async def test_pages_by_offset(self, storage):
        """Test that pages are requested with increasing offsets"""
        client = server(Patient=250)
        service = build_service(storage, client)

        await service.validate_all_resources(
            BulkValidationOptions(resource_types=["Patient"], batch_size=100, parallel_width=50)
        )

        assert [(t, o) for t, o, _ in client.search_calls] == [("Patient", 0), ("Patient", 100), ("Patient", 200)]

    @pytest.mark.asyncio
    async def test_sizes_follow_active_settings(self, storage, service_config):
        """Test that page size and sub-batch width default to the active settings"""
        settings_service = ValidationSettingsService(storage, config=service_config)
        await settings_service.update_settings({"batch_size": 30, "max_concurrent_validations": 7})
        client = server(Patient=60)
        service = build_service(storage, client, settings_service)
        processed = []

        await service.validate_all_resources(BulkValidationOptions(
            resource_types=["Patient"], on_progress=lambda p: processed.append(p.processed_resources),
        ))
        await settings_service.shutdown()

        assert [(o, size) for _, o, size in client.search_calls] == [(0, 30), (30, 30)]
        assert processed[:5] == [7, 14, 21, 28, 30]

    @pytest.mark.asyncio
    async def test_preset_changes_page_size(self, storage, service_config):
        """Test that applying a preset changes the bulk page size"""
        settings_service = ValidationSettingsService(storage, config=service_config)
        await settings_service.apply_preset("strict")
        client = server(Patient=300)
        service = build_service(storage, client, settings_service)

        progress = await service.validate_all_resources(BulkValidationOptions(resource_types=["Patient"]))
        await settings_service.shutdown()

        assert [(o, size) for _, o, size in client.search_calls] == [(0, 250), (250, 250)]
        assert progress.processed_resources == 300

    @pytest.mark.asyncio
    async def test_min_score_from_active_settings(self, storage, service_config):
        """Test that revalidated resources below the minimum score are not counted valid"""
        settings_service = ValidationSettingsService(storage, config=service_config)
        await settings_service.update_settings({"min_validation_score": 100})
        client = FakeFHIRClient(resources={"Observation": [
            make_observation(f"o{i}", effectiveDateTime=iso(days=30)) for i in range(4)
        ]})
        service = build_service(storage, client, settings_service)

        progress = await service.validate_all_resources(BulkValidationOptions(
            resource_types=["Observation"], batch_size=10, parallel_width=5,
        ))
        await settings_service.shutdown()

        assert progress.processed_resources == 4
        assert progress.valid_resources == 0
        assert progress.error_resources == 4

    @pytest.mark.asyncio
    async def test_unchanged_resources_skipped(self, storage):
        """Test that a second run reuses stored results"""
        client = server(Condition=20)
        service = build_service(storage, client)
        options = dict(resource_types=["Condition"], batch_size=10, parallel_width=5)

        await service.validate_all_resources(BulkValidationOptions(**options))
        calls = len(client.validate_calls)
        second = await service.validate_all_resources(BulkValidationOptions(**options))

        assert len(client.validate_calls) == calls
        assert second.processed_resources == 20

    @pytest.mark.asyncio
    async def test_type_failures_recorded(self, storage):
        """Test that count and fetch failures do not stop the run"""
        counted = build_service(storage, CountFailingClient(
            resources={t: make_resources(t, 5) for t in TYPES}))
        searched = build_service(storage, SearchFailingClient(
            resources={t: make_resources(t, 5) for t in TYPES}))
        options = dict(resource_types=TYPES, batch_size=10, parallel_width=5, skip_unchanged=False)

        count_progress = await counted.validate_all_resources(BulkValidationOptions(**options))
        search_progress = await searched.validate_all_resources(BulkValidationOptions(**options))

        assert count_progress.total_resources == 10
        assert count_progress.processed_resources == 10
        assert any(e.startswith("Failed to process Observation") for e in count_progress.errors)
        assert search_progress.processed_resources == 10
        assert any(e.startswith("Error processing Observation at offset 0") for e in search_progress.errors)


class TestBulkPauseResume:
    """Test pause, resume and stop"""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, storage):
        """Test that a run paused after the first type resumes at the second"""
        client = server(Patient=100, Observation=100, Condition=50)
        service = build_service(storage, client)

        def pause_after_first_type(progress):
            if progress.processed_resources == 100:
                service.pause_validation()

        paused = await service.validate_all_resources(BulkValidationOptions(
            resource_types=TYPES, batch_size=100, parallel_width=50, on_progress=pause_after_first_type,
        ))

        assert service.is_paused()
        assert paused.processed_resources == 100
        assert paused.total_resources == 250
        assert service.get_progress() is paused

        searches_before = len(client.search_calls)
        final = await service.resume_validation()

        assert client.search_calls[searches_before][0] == "Observation"
        assert final.processed_resources == 250
        assert final.is_complete
        assert service.get_state() == BulkValidationState.IDLE

    @pytest.mark.asyncio
    async def test_resume_recomputes_total(self, storage):
        """Test that new resources found on resume extend the total"""
        client = server(Patient=20, Observation=10)
        service = build_service(storage, client)

        def pause_at_ten(progress):
            if progress.processed_resources == 10:
                service.pause_validation()

        await service.validate_all_resources(BulkValidationOptions(
            resource_types=["Patient", "Observation"], batch_size=10, parallel_width=10,
            on_progress=pause_at_ten,
        ))
        client.resources["Observation"] = make_resources("Observation", 15)

        final = await service.resume_validation()

        assert final.total_resources == 35
        assert final.processed_resources == 35

    @pytest.mark.asyncio
    async def test_stop_while_running(self, storage):
        """Test that stop discards progress and returns to idle"""
        client = server(Patient=100)
        service = build_service(storage, client)

        def stop_early(progress):
            if progress.processed_resources == 50:
                service.stop_validation()

        progress = await service.validate_all_resources(BulkValidationOptions(
            resource_types=["Patient"], batch_size=100, parallel_width=50, on_progress=stop_early,
        ))

        assert progress.processed_resources == 50
        assert not progress.is_complete
        assert service.get_state() == BulkValidationState.IDLE
        assert service.get_progress() is None

    @pytest.mark.asyncio
    async def test_stop_while_paused(self, storage):
        """Test that stopping a paused run cannot be resumed"""
        client = server(Patient=100)
        service = build_service(storage, client)

        def pause_early(progress):
            service.pause_validation()

        await service.validate_all_resources(BulkValidationOptions(
            resource_types=["Patient"], batch_size=100, parallel_width=50, on_progress=pause_early,
        ))
        service.stop_validation()

        assert service.get_state() == BulkValidationState.IDLE
        assert service.get_progress() is None
        with pytest.raises(InvalidStateTransitionError):
            await service.resume_validation()

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, storage):
        """Test start while paused and pause while idle"""
        client = server(Patient=100)
        service = build_service(storage, client)

        assert not service.pause_validation()

        def pause_early(progress):
            service.pause_validation()

        options = BulkValidationOptions(resource_types=["Patient"], batch_size=100, parallel_width=50,
                                        on_progress=pause_early)
        await service.validate_all_resources(options)

        with pytest.raises(InvalidStateTransitionError):
            await service.validate_all_resources(options)
        service.stop_validation()

    @pytest.mark.asyncio
    async def test_stop_before_pause_checkpoint(self, storage):
        """Test that stopping a pause the loop has not reached lets the loop wind down"""
        client = server(Patient=20)
        service = build_service(storage, client)
        gate = GatedValidation(service.unified)
        service.unified = gate

        run = asyncio.create_task(service.validate_all_resources(BulkValidationOptions(
            resource_types=["Patient"], batch_size=10, parallel_width=5,
        )))
        await gate.entered.wait()
        service.pause_validation()
        service.stop_validation()

        assert service.get_state() == BulkValidationState.STOPPING
        with pytest.raises(InvalidStateTransitionError):
            await service.validate_all_resources(BulkValidationOptions(resource_types=["Patient"]))

        gate.release.set()
        progress = await run

        assert progress.processed_resources == 5
        assert not progress.is_complete
        assert not any(e.startswith("Failed to process") for e in progress.errors)
        assert service.get_state() == BulkValidationState.IDLE
        assert service.get_progress() is None

        service.unified = gate.unified
        again = await service.validate_all_resources(BulkValidationOptions(
            resource_types=["Patient"], batch_size=10, parallel_width=5,
        ))
        assert again.is_complete


class TestBulkProgress:
    """Test counter invariants and time estimates"""

    def test_sanitize_clamps_counters(self):
        """Test processed <= total and valid + error <= processed"""
        progress = BulkValidationProgress(total_resources=10, processed_resources=12,
                                          valid_resources=8, error_resources=5)

        progress.sanitize()

        assert progress.processed_resources == 10
        assert progress.valid_resources == 8
        assert progress.error_resources == 2

    def test_sanitize_negative_values(self):
        """Test that negative counters become zero"""
        progress = BulkValidationProgress(total_resources=-1, processed_resources=-3, error_resources=-2)
        progress.sanitize()
        assert (progress.total_resources, progress.processed_resources, progress.error_resources) == (0, 0, 0)

    def test_eta(self):
        """Test the linear estimate and its warm-up threshold"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        progress = BulkValidationProgress(total_resources=100, processed_resources=5, start_time=start)

        assert progress.update_eta(start + timedelta(seconds=5)) is None

        progress.processed_resources = 50
        assert progress.update_eta(start + timedelta(seconds=50)) == 50.0

    def test_eta_excludes_paused_time(self):
        """Test that time spent paused does not inflate the estimate"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        progress = BulkValidationProgress(total_resources=100, processed_resources=50, start_time=start)

        progress.mark_paused(start + timedelta(seconds=30))
        assert progress.update_eta(start + timedelta(seconds=90)) == pytest.approx(30.0)

        progress.mark_resumed(start + timedelta(seconds=130))
        assert progress.paused_seconds == 100.0
        assert progress.update_eta(start + timedelta(seconds=150)) == 50.0

    def test_eta_capped(self):
        """Test that the estimate never exceeds a day"""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        progress = BulkValidationProgress(total_resources=10_000_000, processed_resources=10, start_time=start)
        assert progress.update_eta(start + timedelta(hours=1)) == 24 * 60 * 60

    def test_to_dict(self):
        """Test the serialized progress"""
        progress = BulkValidationProgress(total_resources=4, processed_resources=1)
        data = progress.to_dict()

        assert data["percent_complete"] == 25.0
        assert data["is_complete"] is False
