# ============================================================================
# src/fhir_validation/core/unified.py
# ============================================================================
"""
Unified Validation Service

Wraps the engine with change detection and persistence:
1. Hash the resource (meta bookkeeping ignored)
2. If the latest stored result has the same hash and is not older than
   meta.lastUpdated, return it without re-validating
3. Otherwise validate, score with the continuous formula, store the
   result with its hash

The bulk orchestrator uses the same service with the rolling hash.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..settings.models import ValidationSettings
from ..storage.base import ValidationStorage
from .engine import ValidationEngine
from .fhir_types import parse_fhir_datetime
from .hashing import content_hash
from .models import ValidationResult
from .scoring import continuous_score


def is_validation_outdated(resource: Dict[str, Any], result: ValidationResult) -> bool:
    """True when the resource was modified after the result was produced."""
    last_updated = parse_fhir_datetime((resource.get("meta") or {}).get("lastUpdated"))
    if last_updated is None:
        return False
    return last_updated > result.validated_at


class UnifiedValidationService:

    def __init__(
        self,
        engine: ValidationEngine,
        storage: ValidationStorage,
        hash_fn: Callable[[Dict[str, Any]], str] = content_hash,
    ):
        self.engine = engine
        self.storage = storage
        self.hash_fn = hash_fn
        self.logger = logging.getLogger(__name__)

    async def validate_resource(
        self,
        resource: Dict[str, Any],
        skip_unchanged: bool = True,
        force_revalidation: bool = False,
        settings: Optional[ValidationSettings] = None,
    ) -> Tuple[ValidationResult, bool]:
        """
        Validate a resource unless an up-to-date result already exists.

        Returns:
            (result, was_revalidated)
        """
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        resource_hash = self.hash_fn(resource)

        if skip_unchanged and not force_revalidation and resource_type and resource_id:
            cached = await self._latest_result(resource_type, resource_id)
            if (
                cached is not None
                and cached.resource_hash == resource_hash
                and not is_validation_outdated(resource, cached)
            ):
                self.logger.debug(f"{resource_type}/{resource_id} unchanged, reusing stored result")
                return cached, False

        result = await self.engine.validate_resource(resource, settings)
        result.validation_score = continuous_score(result.issues)
        result.score_method = "continuous"
        result.resource_hash = resource_hash

        if result.resource_key is not None:
            try:
                await self.storage.save_result(result)
            except Exception as e:
                self.logger.error(f"Could not store result for {result.resource_key}: {e}", exc_info=True)

        return result, True

    async def validate_batch(
        self,
        resources: List[Dict[str, Any]],
        skip_unchanged: bool = True,
        force_revalidation: bool = False,
        max_concurrent: Optional[int] = None,
    ) -> List[Tuple[ValidationResult, bool]]:
        """
        Validate many resources concurrently; output order matches input.
        """
        settings = await self.engine.active_settings()
        max_concurrent = max_concurrent or settings.max_concurrent_validations
        semaphore = asyncio.Semaphore(max_concurrent)

        async def validate_with_semaphore(resource):
            async with semaphore:
                return await self.validate_resource(
                    resource, skip_unchanged, force_revalidation, settings=settings
                )

        results = await asyncio.gather(*(validate_with_semaphore(r) for r in resources))

        revalidated = sum(1 for _, was_revalidated in results if was_revalidated)
        self.logger.info(
            f"Batch validation complete: {len(results)} resources, {revalidated} revalidated"
        )
        return list(results)

    async def get_latest_result(self, resource_type: str, resource_id: str) -> Optional[ValidationResult]:
        return await self._latest_result(resource_type, resource_id)

    async def _latest_result(self, resource_type: str, resource_id: str) -> Optional[ValidationResult]:
        try:
            return await self.storage.get_latest_result(resource_type, resource_id)
        except Exception as e:
            self.logger.warning(f"Could not read stored result for {resource_type}/{resource_id}: {e}")
            return None
