# ============================================================================
# src/fhir_validation/bulk/orchestrator.py
# ============================================================================
"""
Bulk Validation Orchestrator

Validates every resource on the FHIR server, type by type.

States:
    idle -> running -> paused -> running (resume)
                    -> stopping -> idle

Flow:
1. Count resources per type and sum the total
2. For each type in order, page through resources (batch_size per page)
3. Validate each page in sub-batches of parallel_width, concurrently
4. After every sub-batch: update counters, sanitize, estimate time
   remaining, notify listeners, then check the pause/stop flags
5. On pause, record the resume point (type + offset) and keep progress

A failure on one resource is recorded in progress.errors and does not
stop the batch. A failure for one type is recorded and the loop moves on
to the next type.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..clients.base import FHIRClient
from ..config.validation_config import validation_settings
from ..core.engine import ValidationEngine
from ..core.events import EventPublisher
from ..core.hashing import rolling_hash
from ..core.unified import UnifiedValidationService
from ..settings.models import ValidationSettings
from ..storage.base import ValidationStorage
from ..utils.exceptions import InvalidStateTransitionError
from ..utils.logging import validation_log_context
from .progress import BulkValidationProgress
from .resource_types import R4_RESOURCE_TYPES


class BulkValidationState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"


@dataclass
class BulkValidationOptions:
    resource_types: Optional[List[str]] = None
    batch_size: Optional[int] = None
    parallel_width: Optional[int] = None
    skip_unchanged: bool = True
    force_revalidation: bool = False
    on_progress: Optional[Callable[[BulkValidationProgress], None]] = None


@dataclass
class ResumeState:
    resource_type: str
    offset: int


class BulkValidationService(EventPublisher):

    def __init__(
        self,
        fhir_client: FHIRClient,
        engine: ValidationEngine,
        storage: ValidationStorage,
    ):
        super().__init__()
        self.fhir_client = fhir_client
        self.unified = UnifiedValidationService(engine, storage, hash_fn=rolling_hash)
        self.logger = logging.getLogger(__name__)

        self._state = BulkValidationState.IDLE
        self._progress: Optional[BulkValidationProgress] = None
        self._options: Optional[BulkValidationOptions] = None
        self._resource_types: List[str] = []
        self._type_counts: Dict[str, int] = {}
        self._resume_state: Optional[ResumeState] = None
        self._pause_requested = False
        self._stop_requested = False
        self._run_id: Optional[str] = None
        self._settings: Optional[ValidationSettings] = None
        self._loop_active = False

    # ========================================================================
    # MAIN METHODS
    # ========================================================================

    async def validate_all_resources(
        self,
        options: Optional[BulkValidationOptions] = None,
    ) -> BulkValidationProgress:
        """
        Run a full bulk validation.

        Returns the final progress object. When the run was paused the same
        object stays available through get_progress() until resume or stop.

        Page size and sub-batch width default to the active settings'
        batch_size and max_concurrent_validations.

        Raises:
            InvalidStateTransitionError: a run is already in progress
        """
        if self._state != BulkValidationState.IDLE or self._loop_active:
            raise InvalidStateTransitionError(
                "Bulk validation already in progress", self._state.value, "start"
            )

        self._loop_active = True
        try:
            self._settings = await self.unified.engine.active_settings()
            self._options = options or BulkValidationOptions()
            self._options.batch_size = self._options.batch_size or self._settings.batch_size
            self._options.parallel_width = (
                self._options.parallel_width or self._settings.max_concurrent_validations
            )
            self._resource_types = list(self._options.resource_types or R4_RESOURCE_TYPES)
            self._pause_requested = False
            self._stop_requested = False
            self._resume_state = None
            self._run_id = uuid.uuid4().hex[:12]
            self._progress = BulkValidationProgress()
            self._set_state(BulkValidationState.RUNNING)

            self.logger.info(
                f"Starting bulk validation of {len(self._resource_types)} resource type(s), "
                f"batch size {self._options.batch_size}, width {self._options.parallel_width}"
            )

            self._type_counts = await self._count_types(self._resource_types)
            self._progress.total_resources = sum(self._type_counts.values())
            self.logger.info(f"Bulk validation total: {self._progress.total_resources} resources")
        except BaseException:
            self._loop_active = False
            self._progress = None
            self._set_state(BulkValidationState.IDLE)
            raise

        return await self._run(0, 0)

    def pause_validation(self) -> bool:
        """running -> paused; no-op in any other state."""
        if self._state != BulkValidationState.RUNNING:
            return False
        self._pause_requested = True
        self._set_state(BulkValidationState.PAUSED)
        self.logger.info("Bulk validation pause requested")
        return True

    async def resume_validation(self) -> BulkValidationProgress:
        """
        Continue a paused run from its recorded resource type and offset.

        Raises:
            InvalidStateTransitionError: the service is not paused
        """
        if self._state != BulkValidationState.PAUSED:
            raise InvalidStateTransitionError(
                "Bulk validation is not paused", self._state.value, "resume"
            )

        self._pause_requested = False

        # The loop has not reached a checkpoint yet; it simply keeps going.
        if self._resume_state is None:
            self._set_state(BulkValidationState.RUNNING)
            return self._progress

        resume = self._resume_state
        self._resume_state = None
        start_index = self._resource_types.index(resume.resource_type)
        self._loop_active = True
        try:
            await self._recompute_total(start_index, resume.offset)
        except BaseException:
            self._loop_active = False
            self._resume_state = resume
            raise

        self._progress.mark_resumed()
        self._set_state(BulkValidationState.RUNNING)
        self.logger.info(f"Resuming bulk validation at {resume.resource_type} offset {resume.offset}")
        return await self._run(start_index, resume.offset)

    def stop_validation(self) -> None:
        """Cancel unconditionally; progress is discarded and cannot be resumed."""
        previous = self._state
        self._stop_requested = True
        self._pause_requested = False
        self._resume_state = None

        if previous == BulkValidationState.RUNNING or self._loop_active:
            # The loop finishes its in-flight sub-batch and goes idle,
            # including a pause that has not reached a checkpoint yet.
            self._set_state(BulkValidationState.STOPPING)
        else:
            self._progress = None
            self._set_state(BulkValidationState.IDLE)

        self.logger.info(f"Bulk validation stopped (was {previous.value})")

    def get_progress(self) -> Optional[BulkValidationProgress]:
        return self._progress

    def get_state(self) -> BulkValidationState:
        return self._state

    def is_running(self) -> bool:
        return self._state == BulkValidationState.RUNNING

    def is_paused(self) -> bool:
        return self._state == BulkValidationState.PAUSED

    # ========================================================================
    # PRIVATE METHODS
    # ========================================================================

    async def _run(self, start_index: int, start_offset: int) -> BulkValidationProgress:
        with validation_log_context(run_id=self._run_id):
            return await self._run_types(start_index, start_offset)

    async def _run_types(self, start_index: int, start_offset: int) -> BulkValidationProgress:
        progress = self._progress
        halted = False
        try:
            for index in range(start_index, len(self._resource_types)):
                resource_type = self._resource_types[index]
                offset = start_offset if index == start_index else 0

                if self._should_halt(resource_type, offset):
                    halted = True
                    return progress

                progress.current_resource_type = resource_type
                try:
                    halted = await self._validate_resource_type(resource_type, offset)
                except Exception as e:
                    self.logger.error(f"Failed to process {resource_type}: {e}", exc_info=True)
                    progress.errors.append(f"Failed to process {resource_type}: {e}")
                    continue

                if halted:
                    return progress

            progress.is_complete = True
            progress.estimated_time_remaining = 0.0
            self._notify_progress(progress)
            self.logger.info(
                f"Bulk validation complete: {progress.processed_resources} processed, "
                f"{progress.valid_resources} valid, {progress.error_resources} with errors"
            )
            return progress

        finally:
            self._loop_active = False
            if not (halted and self._state == BulkValidationState.PAUSED):
                self._progress = None
                self._resume_state = None
                self._pause_requested = False
                self._stop_requested = False
                self._set_state(BulkValidationState.IDLE)

    async def _validate_resource_type(self, resource_type: str, offset: int) -> bool:
        """Validate one type from offset; True when a pause or stop halted the loop."""
        count = self._type_counts.get(resource_type, 0)
        batch_size = self._options.batch_size
        width = self._options.parallel_width

        while offset < count:
            try:
                page = await self.fhir_client.search_resources(
                    resource_type, {"_offset": offset}, page_size=batch_size
                )
            except Exception as e:
                self.logger.warning(f"Error processing {resource_type} at offset {offset}: {e}")
                self._progress.errors.append(f"Error processing {resource_type} at offset {offset}: {e}")
                return False

            entries = page.entries
            if not entries:
                break

            for start in range(0, len(entries), width):
                sub_batch = entries[start:start + width]
                await self._validate_sub_batch(resource_type, sub_batch)
                if self._should_halt(resource_type, offset + start + len(sub_batch)):
                    return True

            offset += len(entries)

        return False

    async def _validate_sub_batch(self, resource_type: str, resources: List[Dict[str, Any]]) -> None:
        outcomes = await asyncio.gather(
            *(self._validate_one(resource_type, resource) for resource in resources)
        )

        progress = self._progress
        progress.processed_resources += len(outcomes)
        progress.valid_resources += sum(1 for outcome in outcomes if outcome)
        progress.error_resources += sum(1 for outcome in outcomes if not outcome)
        progress.sanitize()
        progress.update_eta()
        self._notify_progress(progress)

    async def _validate_one(self, resource_type: str, resource: Dict[str, Any]) -> bool:
        """True if the resource counts as valid."""
        try:
            result, was_revalidated = await self.unified.validate_resource(
                resource,
                skip_unchanged=self._options.skip_unchanged,
                force_revalidation=self._options.force_revalidation,
                settings=self._settings,
            )
        except Exception as e:
            resource_id = resource.get("id", "unknown") if isinstance(resource, dict) else "unknown"
            self.logger.error(f"Error validating {resource_type}/{resource_id}: {e}", exc_info=True)
            self._progress.errors.append(f"Error validating {resource_type}/{resource_id}: {e}")
            return False

        if was_revalidated:
            return result.is_valid and result.validation_score >= self._settings.min_validation_score
        return result.is_valid and result.validation_score >= validation_settings.UNCHANGED_VALID_SCORE

    async def _count_types(self, resource_types: List[str]) -> Dict[str, int]:
        counts = {}
        for resource_type in resource_types:
            try:
                counts[resource_type] = max(0, int(await self.fhir_client.get_resource_count(resource_type)))
            except Exception as e:
                self.logger.warning(f"Could not count {resource_type}: {e}")
                if self._progress is not None:
                    self._progress.errors.append(f"Failed to process {resource_type}: {e}")
                counts[resource_type] = 0
        return counts

    async def _recompute_total(self, start_index: int, offset: int) -> None:
        """Total = processed + rest of the current type + all later types."""
        remaining_types = self._resource_types[start_index:]
        fresh = await self._count_types(remaining_types)

        if all(fresh[t] == self._type_counts.get(t) for t in remaining_types):
            return

        self._type_counts.update(fresh)
        current = remaining_types[0]
        remaining = max(0, fresh[current] - offset) + sum(fresh[t] for t in remaining_types[1:])
        self._progress.total_resources = self._progress.processed_resources + remaining
        self._progress.sanitize()
        self.logger.info(f"Recomputed bulk validation total: {self._progress.total_resources}")

    def _should_halt(self, resource_type: str, offset: int) -> bool:
        if self._stop_requested:
            return True
        if self._pause_requested:
            self._resume_state = ResumeState(resource_type=resource_type, offset=offset)
            self._progress.mark_paused()
            self.logger.info(f"Bulk validation paused at {resource_type} offset {offset}")
            return True
        return False

    def _notify_progress(self, progress: BulkValidationProgress) -> None:
        self._publish("on_progress", progress)
        callback = self._options.on_progress if self._options else None
        if callback is not None:
            try:
                callback(progress)
            except Exception as e:
                self.logger.error(f"Progress callback failed: {e}", exc_info=True)

    def _set_state(self, state: BulkValidationState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        self._publish("on_state_changed", previous, state)
