# ============================================================================
# src/fhir_validation/core/engine.py
# ============================================================================
"""
Validation Engine

This is the MAIN entry point for validating a single resource.

Flow:
1. Resolve the active settings (explicit argument, settings service, or
   built-in defaults)
2. Build a validation context (bundle, contained resources, traversal depth)
3. Run every enabled aspect in fixed order:
   structural, profile, terminology, reference, businessRule, metadata
4. Cap each aspect's issue severity to its configured level
5. Merge issues in aspect order and compute the tiered score
6. Notify validation listeners

validate_resource() never raises. A structural failure, or any failure
outside the aspects, produces a single "validation-engine-error" issue
with score 0.
"""

import logging
from typing import Any, Dict, List, Optional

from ..aspects.base import AspectValidator
from ..aspects.business_rule import BusinessRuleValidator
from ..aspects.metadata import MetadataValidator
from ..aspects.profile import ProfileValidator
from ..aspects.reference import ReferenceValidator
from ..aspects.structural import StructuralValidator
from ..aspects.terminology import TerminologyValidator
from ..settings.models import ValidationSettings
from ..utils.logging import validation_log_context
from ..utils.metrics import MetricsCollector, Timer
from .context import ValidationContext
from .events import EventPublisher
from .models import ASPECT_ORDER, Aspect, AspectOutcome, Severity, ValidationIssue, ValidationResult
from .scoring import is_valid, tiered_score


def cap_severity(outcome: AspectOutcome, max_severity: Severity) -> AspectOutcome:
    """Downgrade issues more severe than max_severity; "error" is a no-op."""
    if max_severity in (Severity.ERROR, Severity.FATAL):
        return outcome
    outcome.issues = [
        issue.with_severity(max_severity) if issue.severity.rank < max_severity.rank else issue
        for issue in outcome.issues
    ]
    return outcome.finalize()


class ValidationEngine(EventPublisher):
    """
    Multi-aspect validation pipeline.

    Collaborators are injected; any of them may be None, in which case the
    aspects that need them fall back to their offline checks.
    """

    def __init__(
        self,
        settings_service=None,
        fhir_client=None,
        terminology_client=None,
        profile_resolver=None,
        storage=None,
        rule_executor=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__()
        self.settings_service = settings_service
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self.validators: Dict[Aspect, AspectValidator] = {
            Aspect.STRUCTURAL: StructuralValidator(metrics=metrics),
            Aspect.PROFILE: ProfileValidator(profile_resolver, fhir_client, metrics=metrics),
            Aspect.TERMINOLOGY: TerminologyValidator(terminology_client, metrics=metrics),
            Aspect.REFERENCE: ReferenceValidator(storage, fhir_client, metrics=metrics),
            Aspect.BUSINESS_RULE: BusinessRuleValidator(rule_executor, metrics=metrics),
            Aspect.METADATA: MetadataValidator(metrics=metrics),
        }

        self.logger.info("Validation engine initialized")

    # ========================================================================
    # MAIN VALIDATION PIPELINE
    # ========================================================================

    async def validate_resource(
        self,
        resource: Dict[str, Any],
        settings: Optional[ValidationSettings] = None,
        context: Optional[ValidationContext] = None,
        bundle: Optional[Dict[str, Any]] = None,
    ) -> ValidationResult:
        """
        Validate one resource against all enabled aspects.

        Args:
            resource: FHIR resource as a JSON dict
            settings: Settings to use instead of the active settings
            context: Pre-built context (shared visited set, bundle)
            bundle: Enclosing Bundle, used to resolve bundle-local references

        Returns:
            A complete ValidationResult; never raises
        """
        resource_type, resource_id = _identity(resource)

        try:
            with validation_log_context(resource_type=resource_type, resource_id=resource_id), \
                    Timer(self.metrics, "validate_resource"):
                settings = settings or await self.active_settings()
                context = context or ValidationContext.for_resource(
                    resource, bundle=bundle, max_depth=settings.references.max_depth
                )
                result = await self._run_aspects(resource, settings, context)

        except Exception as e:
            self.logger.error(
                f"Validation failed for {resource_type}/{resource_id}: {e}", exc_info=True
            )
            result = engine_error_result(resource_type, resource_id, e)

        if self.metrics is not None:
            self.metrics.increment("resources_validated")
            self.metrics.increment("resources_valid" if result.is_valid else "resources_invalid")

        self.logger.debug(
            f"Validated {resource_type}/{resource_id}: score {result.validation_score}, "
            f"{result.error_count} error(s), {result.warning_count} warning(s)"
        )
        self._publish("on_validation_completed", result)
        return result

    async def validate_bundle(
        self,
        bundle: Dict[str, Any],
        settings: Optional[ValidationSettings] = None,
    ) -> List[ValidationResult]:
        """
        Validate every entry resource of a Bundle with the Bundle threaded
        through the context, so urn:uuid and bundle-local references resolve.
        """
        settings = settings or await self.active_settings()
        results = []
        for entry in bundle.get("entry") or []:
            resource = entry.get("resource") if isinstance(entry, dict) else None
            if isinstance(resource, dict):
                results.append(await self.validate_resource(resource, settings, bundle=bundle))
        return results

    async def active_settings(self) -> ValidationSettings:
        """Settings from the settings service, or the defaults without one."""
        if self.settings_service is None:
            return ValidationSettings()
        return await self.settings_service.get_active_settings()

    # ========================================================================
    # PRIVATE METHODS
    # ========================================================================

    async def _run_aspects(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> ValidationResult:
        resource_type, resource_id = _identity(resource)
        outcomes: Dict[Aspect, AspectOutcome] = {}
        issues: List[ValidationIssue] = []

        for aspect in ASPECT_ORDER:
            config = settings.aspect_config(aspect)
            if not config.enabled:
                continue

            # Structural exceptions propagate and fail the whole run
            with validation_log_context(aspect=aspect.value):
                outcome = await self.validators[aspect].run(resource, settings, context)
            outcome = cap_severity(outcome, config.max_severity)

            outcomes[aspect] = outcome
            issues.extend(outcome.issues)

        return ValidationResult(
            resource_type=resource_type,
            resource_id=resource_id,
            issues=issues,
            aspect_outcomes=outcomes,
            validation_score=tiered_score(issues),
            is_valid=is_valid(issues),
        )

    def clear_caches(self) -> None:
        """Drop cached profile definitions and terminology lookups."""
        self.validators[Aspect.PROFILE].clear_cache()
        self.validators[Aspect.TERMINOLOGY].clear_cache()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            aspect.value: {"average_duration_ms": round(validator.average_duration * 1000, 3)}
            for aspect, validator in self.validators.items()
        }


def _identity(resource: Any):
    if not isinstance(resource, dict):
        return None, None
    return resource.get("resourceType"), resource.get("id")


def engine_error_result(
    resource_type: Optional[str],
    resource_id: Optional[str],
    error: Exception,
) -> ValidationResult:
    issue = ValidationIssue(
        severity=Severity.ERROR,
        code="validation-engine-error",
        category=Aspect.STRUCTURAL,
        message=f"Validation failed: {error}",
    )
    outcome = AspectOutcome(aspect=Aspect.STRUCTURAL, passed=False, issues=[issue])
    return ValidationResult(
        resource_type=resource_type,
        resource_id=resource_id,
        issues=[issue],
        aspect_outcomes={Aspect.STRUCTURAL: outcome},
        validation_score=0.0,
        is_valid=False,
    )
