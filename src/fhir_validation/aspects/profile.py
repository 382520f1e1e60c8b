# ============================================================================
# src/fhir_validation/aspects/profile.py
# ============================================================================
"""
Profile Validation

Validates the resource against its declared profiles (meta.profile), the
profiles configured for its type in the settings, or a built-in default
table.

For each profile:
1. Resolve the StructureDefinition through the profile resolver
2. If resolved: check minimum cardinality, mustSupport presence and
   (simplified) required bindings from the differential elements
3. If not resolved: delegate to the FHIR server $validate operation and
   keep its error/fatal issues
4. If both fail: one "profile-validation-failed" warning
"""

from typing import Any, Dict, List, Optional, Tuple

from ..clients.base import FHIRClient
from ..core.context import ValidationContext
from ..core.models import Aspect, AspectOutcome, Severity
from ..core.tree_walker import get_values_at_path, has_choice_value
from ..profiles.resolver import ProfileResolver
from ..settings.models import ValidationSettings
from .base import AspectValidator

BASE_PROFILE = "http://hl7.org/fhir/StructureDefinition/{}"
US_CORE = "http://hl7.org/fhir/us/core/StructureDefinition/{}"

DEFAULT_PROFILES: Dict[str, List[str]] = {
    "Patient": [BASE_PROFILE.format("Patient"), US_CORE.format("us-core-patient")],
    "Observation": [BASE_PROFILE.format("Observation"), US_CORE.format("us-core-observation-lab")],
    "Condition": [BASE_PROFILE.format("Condition"), US_CORE.format("us-core-condition")],
    "Encounter": [BASE_PROFILE.format("Encounter"), US_CORE.format("us-core-encounter")],
}


def default_profiles_for(resource_type: str) -> List[str]:
    return list(DEFAULT_PROFILES.get(resource_type, [BASE_PROFILE.format(resource_type)]))


class ProfileValidator(AspectValidator):

    aspect = Aspect.PROFILE
    failure_code = "profile-validation-error"

    def __init__(
        self,
        resolver: Optional[ProfileResolver] = None,
        fhir_client: Optional[FHIRClient] = None,
        metrics=None,
    ):
        super().__init__(metrics)
        self.resolver = resolver
        self.fhir_client = fhir_client
        # url -> (expires_at, StructureDefinition)
        self._definitions: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get_name(self) -> str:
        return "ProfileValidator"

    def profiles_for(self, resource: Dict[str, Any], settings: ValidationSettings) -> List[str]:
        declared = (resource.get("meta") or {}).get("profile")
        if isinstance(declared, list) and declared:
            return [p for p in declared if isinstance(p, str)]

        resource_type = resource.get("resourceType", "")
        configured = settings.custom_profiles.get(resource_type)
        if configured:
            return list(configured)
        return default_profiles_for(resource_type)

    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        outcome = self.new_outcome()

        for profile_url in self.profiles_for(resource, settings):
            outcome.profiles_checked += 1

            definition = await self._resolve(profile_url, settings)
            if definition is not None:
                self._check_elements(resource, definition, profile_url, outcome)
                continue

            await self._validate_with_server(resource, profile_url, outcome)

        return outcome

    async def _resolve(self, profile_url: str, settings: ValidationSettings) -> Optional[Dict[str, Any]]:
        cached = self.recall(self._definitions, profile_url) if settings.cache.enabled else None
        if cached is not None:
            return cached

        if self.resolver is None:
            return None

        definition = await self.resolver.resolve(
            profile_url,
            settings.profile_resolution_servers,
            timeout_seconds=settings.timeouts.profile_ms / 1000,
        )
        if definition is not None and settings.cache.enabled:
            self.remember(self._definitions, profile_url, definition, settings.cache)
        return definition

    async def _validate_with_server(
        self,
        resource: Dict[str, Any],
        profile_url: str,
        outcome: AspectOutcome,
    ) -> None:
        if self.fhir_client is None:
            outcome.add_issue(
                Severity.WARNING, "profile-validation-failed",
                f"Could not validate against profile {profile_url}: profile not resolvable and no FHIR server available",
                suggestion="Ensure the profile is accessible and valid",
            )
            return

        try:
            operation_outcome = await self.fhir_client.validate_resource(resource, profile_url)
        except Exception as e:
            self.logger.warning(f"Profile validation failed for {profile_url}: {e}")
            outcome.add_issue(
                Severity.WARNING, "profile-validation-failed",
                f"Could not validate against profile {profile_url}: {e}",
                suggestion="Ensure the profile is accessible and valid",
            )
            return

        for issue in operation_outcome.get("issue", []) or []:
            severity = issue.get("severity")
            if severity not in ("error", "fatal"):
                continue
            locations = issue.get("location") or []
            expressions = issue.get("expression") or []
            outcome.add_issue(
                Severity(severity),
                issue.get("code") or "profile-violation",
                (issue.get("details") or {}).get("text") or issue.get("diagnostics") or "Profile validation failed",
                path=(locations or expressions or [""])[0],
                expression=expressions[0] if expressions else None,
                suggestion="Check profile constraints and requirements",
            )

    def _check_elements(
        self,
        resource: Dict[str, Any],
        definition: Dict[str, Any],
        profile_url: str,
        outcome: AspectOutcome,
    ) -> None:
        elements = (definition.get("differential") or {}).get("element") \
            or (definition.get("snapshot") or {}).get("element") \
            or []

        reported = set()
        for element in elements:
            element_path = element.get("path") or ""
            if "." not in element_path or element.get("sliceName") or ":" in (element.get("id") or ""):
                continue

            segments = element_path.split(".")[1:]
            leaf = segments[-1]
            parent_path = ".".join(segments[:-1])
            parents = get_values_at_path(resource, parent_path) if parent_path else [resource]
            parents = [p for p in parents if isinstance(p, dict)]
            if not parents:
                # Children of absent parents are not checked
                continue

            if leaf.endswith("[x]"):
                prefix = leaf[:-3]
                present = [p for p in parents if has_choice_value(p, prefix)]
                leaf_name = prefix
            else:
                present = [p for p in parents if p.get(leaf) not in (None, [], {}, "")]
                leaf_name = leaf

            issue_path = ".".join(segments[:-1] + [leaf_name])
            key = (issue_path, profile_url)
            if key in reported:
                continue

            if int(element.get("min") or 0) > 0 and len(present) < len(parents):
                reported.add(key)
                outcome.add_issue(
                    Severity.ERROR, "profile-required-element-missing",
                    f"Element {issue_path} is required by profile {profile_url} (min {element.get('min')})",
                    path=issue_path,
                    suggestion=f"Add {issue_path} to satisfy the profile",
                )
                continue

            if element.get("mustSupport") and not present:
                reported.add(key)
                outcome.add_issue(
                    Severity.INFORMATION, "profile-must-support-missing",
                    f"Must-support element {issue_path} from profile {profile_url} is not populated",
                    path=issue_path,
                )
                continue

            binding = element.get("binding") or {}
            if binding.get("strength") == "required" and present and not leaf.endswith("[x]"):
                for parent in present:
                    if not self._has_code(parent.get(leaf)):
                        reported.add(key)
                        outcome.add_issue(
                            Severity.WARNING, "profile-binding-missing-code",
                            f"Element {issue_path} has a required binding to {binding.get('valueSet', 'a value set')} but carries no code",
                            path=issue_path,
                        )
                        break

    @staticmethod
    def _has_code(value: Any) -> bool:
        """Simplified binding check: some code must be present."""
        if isinstance(value, list):
            return all(ProfileValidator._has_code(v) for v in value) if value else False
        if isinstance(value, str):
            return bool(value)
        if isinstance(value, dict):
            if value.get("code"):
                return True
            return any(isinstance(c, dict) and c.get("code") for c in value.get("coding") or [])
        return False

    def clear_cache(self) -> None:
        self._definitions.clear()
