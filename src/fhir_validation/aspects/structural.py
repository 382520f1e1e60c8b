# ============================================================================
# src/fhir_validation/aspects/structural.py
# ============================================================================
"""
Structural Validation

Checks that the resource is well-formed FHIR:
- resourceType and id presence
- known resource type
- primitive formats found anywhere in the tree (birthDate, gender)
- resource-type cardinality (Patient.name, Observation.status/code)
- narrative and meta presence (information only)

Exceptions raised here abort the whole validation run.
"""

import re
from typing import Any, Dict

from ..bulk.resource_types import is_known_resource_type
from ..core.context import ValidationContext
from ..core.fhir_types import is_valid_id
from ..core.models import Aspect, AspectOutcome, Severity
from ..core.tree_walker import iter_nodes
from ..settings.models import ValidationSettings
from .base import AspectValidator

DATE_FORMAT = re.compile(r"^\d{4}(-\d{2}(-\d{2})?)?$")

ADMINISTRATIVE_GENDERS = ["male", "female", "other", "unknown"]

# (resource type, element, message, suggestion)
REQUIRED_ELEMENTS = [
    ("Patient", "name", "Patient must have at least one name", "Add at least one HumanName element"),
    ("Observation", "status", "Observation must have a status",
     'Add a valid observation status (e.g., "final", "preliminary")'),
    ("Observation", "code", "Observation must have a code", "Add a CodeableConcept for the observation code"),
]


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, dict, str)):
        return len(value) > 0
    return True


class StructuralValidator(AspectValidator):

    aspect = Aspect.STRUCTURAL
    abort_on_failure = True

    def get_name(self) -> str:
        return "StructuralValidator"

    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        outcome = self.new_outcome()

        if not isinstance(resource, dict):
            raise TypeError(f"resource must be a JSON object, got {type(resource).__name__}")

        resource_type = resource.get("resourceType")
        if not resource_type:
            outcome.add_issue(
                Severity.ERROR, "missing-resource-type",
                "Resource is missing required resourceType field",
                path="resourceType",
                suggestion="Add a valid FHIR resourceType field",
            )
        elif not is_known_resource_type(resource_type):
            outcome.add_issue(
                Severity.WARNING, "unknown-resource-type",
                f"Unknown resource type: {resource_type}",
                path="resourceType",
                suggestion="Use a resource type defined by FHIR R4",
            )

        resource_id = resource.get("id")
        if not resource_id:
            outcome.add_issue(
                Severity.WARNING, "missing-id",
                "Resource is missing an id field",
                path="id",
                suggestion="Consider adding a unique identifier",
            )
        elif not is_valid_id(resource_id):
            outcome.add_issue(
                Severity.ERROR, "invalid-id-format",
                f"Invalid resource id: {resource_id}",
                path="id",
                suggestion="Ids are 1-64 characters of A-Z, a-z, 0-9, '-' and '.'",
            )

        self._validate_primitives(resource, outcome)
        self._validate_cardinality(resource, outcome)

        if "text" not in resource and resource_type not in (None, "Bundle", "Binary", "Parameters"):
            outcome.add_issue(
                Severity.INFORMATION, "missing-narrative",
                "Resource has no text narrative",
                path="text",
            )
        if "meta" not in resource:
            outcome.add_issue(
                Severity.INFORMATION, "missing-meta",
                "Resource has no meta element",
                path="meta",
            )

        return outcome

    def _validate_primitives(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        for path, value in iter_nodes(resource):
            key = path.rsplit(".", 1)[-1]
            if path.startswith("contained") or not value:
                continue

            if key == "birthDate" and (not isinstance(value, str) or not DATE_FORMAT.match(value)):
                outcome.add_issue(
                    Severity.ERROR, "invalid-date-format",
                    f"Invalid date format in {path}",
                    path=path,
                    suggestion="Use YYYY-MM-DD format for dates",
                )

            if key == "gender" and value not in ADMINISTRATIVE_GENDERS:
                outcome.add_issue(
                    Severity.ERROR, "invalid-gender-code",
                    f"Invalid gender value: {value}",
                    path=path,
                    suggestion=f"Use one of: {', '.join(ADMINISTRATIVE_GENDERS)}",
                )

    def _validate_cardinality(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        resource_type = resource.get("resourceType")

        for required_type, element, message, suggestion in REQUIRED_ELEMENTS:
            if resource_type != required_type:
                continue
            value = resource.get(element)
            if element == "name" and not isinstance(value, list):
                value = None
            if not _is_present(value):
                outcome.add_issue(
                    Severity.ERROR, "cardinality-violation",
                    message,
                    path=element,
                    suggestion=suggestion,
                )
