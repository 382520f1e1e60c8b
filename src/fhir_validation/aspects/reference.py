# ============================================================================
# src/fhir_validation/aspects/reference.py
# ============================================================================
"""
Reference Validation

- every {reference: "..."} object must use one of the accepted shapes:
  ResourceType/id, #fragment, absolute http(s) URL, urn:uuid:, urn:oid:
- well-known reference fields must hold Reference objects
- declared Reference.type must agree with the reference target
- #fragment targets are resolved against contained resources, and
  bundle-local references against the enclosing Bundle
- ResourceType/id targets are looked up in local storage, then on the
  FHIR server; unreachable servers only produce a warning
- cycles are detected with a push/pop active path held in the context
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

from ..clients.base import FHIRClient
from ..core.context import ValidationContext
from ..core.models import Aspect, AspectOutcome, Severity
from ..core.tree_walker import find_references
from ..settings.models import ValidationSettings
from ..storage.base import ValidationStorage
from .base import AspectValidator

RELATIVE_REFERENCE = re.compile(
    r"^([A-Z][A-Za-z]+)/([A-Za-z0-9\-\.]{1,64})(/_history/[A-Za-z0-9\-\.]{1,64})?$"
)
ABSOLUTE_REFERENCE = re.compile(r"^https?://[^\s/]+(/\S*)?$")
ABSOLUTE_TAIL = re.compile(
    r"/([A-Z][A-Za-z]+)/([A-Za-z0-9\-\.]{1,64})(/_history/[A-Za-z0-9\-\.]{1,64})?$"
)
UUID_REFERENCE = re.compile(
    r"^urn:uuid:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
OID_REFERENCE = re.compile(r"^urn:oid:[0-2](\.(0|[1-9]\d*))+$")

REFERENCE_FIELDS = (
    "subject", "patient", "encounter", "performer", "requester", "author",
    "recorder", "asserter", "practitioner", "organization",
    "managingOrganization", "generalPractitioner", "location", "basedOn",
    "partOf", "beneficiary",
)

# Members that make a Reference meaningful without a reference string
REFERENCE_MEMBERS = ("reference", "identifier", "display")

# Some well-known names are BackboneElements in a few resources
# (Encounter.location); only Reference-shaped objects are checked
REFERENCE_SHAPE = {"id", "extension", "type", *REFERENCE_MEMBERS}


@dataclass
class ParsedReference:
    kind: Optional[str]
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        if self.resource_type and self.resource_id:
            return f"{self.resource_type}/{self.resource_id}"
        return None


def parse_reference(reference: str) -> ParsedReference:
    """Classify a reference string; kind None means malformed."""
    if reference.startswith("#"):
        return ParsedReference("fragment", resource_id=reference[1:])

    match = RELATIVE_REFERENCE.match(reference)
    if match:
        return ParsedReference("relative", match.group(1), match.group(2))

    if ABSOLUTE_REFERENCE.match(reference):
        tail = ABSOLUTE_TAIL.search(reference)
        if tail:
            return ParsedReference("absolute", tail.group(1), tail.group(2))
        return ParsedReference("absolute")

    if UUID_REFERENCE.match(reference):
        return ParsedReference("uuid")
    if OID_REFERENCE.match(reference):
        return ParsedReference("oid")
    return ParsedReference(None)


class ReferenceValidator(AspectValidator):

    aspect = Aspect.REFERENCE
    failure_code = "reference-validation-error"

    def __init__(
        self,
        storage: Optional[ValidationStorage] = None,
        fhir_client: Optional[FHIRClient] = None,
        metrics=None,
    ):
        super().__init__(metrics)
        self.storage = storage
        self.fhir_client = fhir_client

    def get_name(self) -> str:
        return "ReferenceValidator"

    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        outcome = self.new_outcome()

        self._check_reference_fields(resource, outcome)
        self._check_contained(resource, outcome)

        resource_key = None
        if resource.get("resourceType") and resource.get("id"):
            resource_key = f"{resource['resourceType']}/{resource['id']}"
            context.push(resource_key)

        reported_edges: Set[Tuple[str, str]] = set()
        try:
            for ref in find_references(resource, skip_contained=False):
                outcome.references_checked += 1
                await self._check_reference(
                    ref.path, ref.reference, ref.node, resource, resource_key,
                    settings, context, outcome, reported_edges,
                )
        finally:
            if resource_key:
                context.pop(resource_key)

        return outcome

    # ------------------------------------------------------------------
    # Shape checks
    # ------------------------------------------------------------------

    def _check_reference_fields(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        for field_name in REFERENCE_FIELDS:
            if field_name not in resource:
                continue
            value = resource[field_name]
            items = list(enumerate(value)) if isinstance(value, list) else [(None, value)]

            for index, item in items:
                path = field_name if index is None else f"{field_name}[{index}]"
                if isinstance(item, str):
                    outcome.add_issue(
                        Severity.ERROR, "invalid-reference-structure",
                        f"{path} must be a Reference object, not a string",
                        path=path,
                        suggestion=f'Use {{"reference": "{item}"}}',
                    )
                elif isinstance(item, dict) and set(item) <= REFERENCE_SHAPE:
                    if not any(item.get(member) for member in REFERENCE_MEMBERS):
                        outcome.add_issue(
                            Severity.WARNING, "empty-reference",
                            f"{path} has no reference, identifier or display",
                            path=path,
                        )

    def _check_contained(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        contained = resource.get("contained")
        if not isinstance(contained, list):
            return
        for index, item in enumerate(contained):
            if isinstance(item, dict) and not item.get("id"):
                outcome.add_issue(
                    Severity.ERROR, "contained-resource-missing-id",
                    "Contained resource must have an id",
                    path=f"contained[{index}]",
                    suggestion="Add id field to contained resource",
                )

    # ------------------------------------------------------------------
    # Per-reference checks
    # ------------------------------------------------------------------

    async def _check_reference(
        self,
        path: str,
        reference: str,
        node: Dict[str, Any],
        resource: Dict[str, Any],
        resource_key: Optional[str],
        settings: ValidationSettings,
        context: ValidationContext,
        outcome: AspectOutcome,
        reported_edges: Set[Tuple[str, str]],
    ) -> None:
        parsed = parse_reference(reference)

        if parsed.kind is None:
            outcome.add_issue(
                Severity.ERROR, "invalid-reference-format",
                f"Invalid reference format: {reference}",
                path=path,
                suggestion="Use ResourceType/id, #id, an absolute URL, urn:uuid: or urn:oid:",
            )
            return

        declared_type = node.get("type")
        if declared_type and parsed.resource_type and declared_type != parsed.resource_type:
            outcome.add_issue(
                Severity.ERROR, "reference-type-mismatch",
                f"Reference type mismatch: declared type '{declared_type}' does not match reference '{parsed.resource_type}'",
                path=path,
                suggestion=f"Update reference.type to '{parsed.resource_type}'",
            )

        if parsed.kind == "fragment":
            self._check_fragment(path, parsed.resource_id, resource, context, outcome)
            return

        if parsed.kind == "absolute" and reference.startswith("http://"):
            outcome.add_issue(
                Severity.WARNING, "insecure-reference-url",
                f"Reference uses insecure HTTP: {reference}",
                path=path,
                suggestion="Use HTTPS for absolute references",
            )

        if parsed.kind == "uuid":
            if context.bundle is not None and context.find_in_bundle(reference) is None:
                outcome.add_issue(
                    Severity.ERROR, "bundle-reference-not-found",
                    f"No bundle entry has fullUrl {reference}",
                    path=path,
                )
            return

        if parsed.kind != "relative" or path.startswith("contained"):
            return

        target = None
        if context.bundle is not None:
            target = context.find_in_bundle(reference)

        if target is None and settings.references.validate_integrity:
            target, status = await self._fetch(parsed, context)
            if status == "missing":
                outcome.add_issue(
                    Severity.ERROR, "reference-not-found",
                    f"Referenced resource not found: {reference}",
                    path=path,
                    suggestion="Verify the reference points to an existing resource",
                )
                return
            if status == "unknown":
                outcome.add_issue(
                    Severity.WARNING, "reference-target-unverifiable",
                    f"Could not verify that {reference} exists: server unreachable",
                    path=path,
                )

        if settings.references.detect_circular and resource_key:
            await self._follow(resource_key, parsed.key, target, path, context, outcome, reported_edges)

    def _check_fragment(
        self,
        path: str,
        fragment_id: Optional[str],
        resource: Dict[str, Any],
        context: ValidationContext,
        outcome: AspectOutcome,
    ) -> None:
        if not fragment_id:
            outcome.add_issue(
                Severity.ERROR, "invalid-fragment-reference",
                "Fragment reference has an empty id",
                path=path,
                suggestion="Use #<id> of a contained resource",
            )
            return

        contained = context.contained or [
            c for c in resource.get("contained") or [] if isinstance(c, dict)
        ]
        if not contained:
            # No container to resolve against
            return
        if not any(c.get("id") == fragment_id for c in contained):
            outcome.add_issue(
                Severity.ERROR, "fragment-reference-not-found",
                f"No contained resource has id '{fragment_id}'",
                path=path,
            )

    # ------------------------------------------------------------------
    # Resolution and cycle detection
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        parsed: ParsedReference,
        context: ValidationContext,
    ) -> Tuple[Optional[Dict[str, Any]], str]:
        """
        Returns (target, status); status is found | missing | unknown | unchecked.
        """
        key = parsed.key
        if key in context.fetched:
            target = context.fetched[key]
            return target, "found" if target is not None else "missing"

        if self.storage is None and self.fhir_client is None:
            return None, "unchecked"

        try:
            if self.storage is not None:
                target = await self.storage.get_resource(parsed.resource_type, parsed.resource_id)
                if target is not None:
                    context.fetched[key] = target
                    return target, "found"

            if self.fhir_client is None:
                return None, "unchecked"

            target = await self.fhir_client.get_resource(parsed.resource_type, parsed.resource_id)
        except Exception as e:
            self.logger.warning(f"Reference lookup for {key} failed: {e}")
            return None, "unknown"

        context.fetched[key] = target
        return target, "found" if target is not None else "missing"

    async def _follow(
        self,
        from_key: str,
        to_key: str,
        target: Optional[Dict[str, Any]],
        origin_path: str,
        context: ValidationContext,
        outcome: AspectOutcome,
        reported_edges: Set[Tuple[str, str]],
    ) -> None:
        if context.is_active(to_key):
            edge = (from_key, to_key)
            if edge not in reported_edges:
                reported_edges.add(edge)
                outcome.add_issue(
                    Severity.WARNING, "circular-reference",
                    f"Circular reference detected: {from_key} -> {to_key}",
                    path=origin_path,
                    suggestion="Review resource relationship structure",
                )
            return

        if target is None or not context.can_descend:
            return

        context.push(to_key)
        try:
            for nested in find_references(target):
                parsed = parse_reference(nested.reference)
                if parsed.kind != "relative":
                    continue
                nested_target = None
                if not context.is_active(parsed.key):
                    nested_target, _ = await self._fetch(parsed, context)
                await self._follow(
                    to_key, parsed.key, nested_target, origin_path,
                    context, outcome, reported_edges,
                )
        finally:
            context.pop(to_key)
