# ============================================================================
# src/fhir_validation/aspects/metadata.py
# ============================================================================
"""
Metadata Validation

Checks the resource's meta block, narrative and extensions:
- meta.lastUpdated: instant format, explicit timezone, not in the future
- meta.versionId: FHIR id format
- meta.profile: canonical URLs, no duplicates
- meta.security / meta.tag: Coding objects with system and code
- meta.source: URI shape
- recommended metadata per resource type
- text.status / text.div
- every extension / modifierExtension needs a url and a value or
  nested extensions; top-level urls must be absolute (http(s) or urn)
- deprecated elements
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from ..core.context import ValidationContext
from ..core.fhir_types import INSTANT_PATTERN, has_timezone, is_valid_id, parse_fhir_datetime
from ..core.models import Aspect, AspectOutcome, Severity
from ..core.tree_walker import find_extensions, has_choice_value
from ..settings.models import ValidationSettings
from .base import AspectValidator

# resource type -> [(meta field, severity, reason)]
RECOMMENDED_METADATA: Dict[str, List[tuple]] = {
    "Patient": [
        ("lastUpdated", Severity.WARNING, "Patient resources should track last modification time"),
        ("versionId", Severity.INFORMATION, "Version tracking recommended for audit purposes"),
    ],
    "Observation": [
        ("lastUpdated", Severity.WARNING, "Observation resources should track last modification time"),
        ("security", Severity.INFORMATION, "Security labels recommended for sensitive observations"),
    ],
    "Condition": [
        ("lastUpdated", Severity.WARNING, "Condition resources should track last modification time"),
        ("versionId", Severity.INFORMATION, "Version tracking recommended for clinical accuracy"),
    ],
    "MedicationRequest": [
        ("lastUpdated", Severity.WARNING, "Medication orders should track last modification time"),
        ("versionId", Severity.WARNING, "Version tracking important for medication safety"),
        ("security", Severity.INFORMATION, "Security labels recommended for prescription data"),
    ],
    "AllergyIntolerance": [
        ("lastUpdated", Severity.WARNING, "Allergy records should track last modification time"),
        ("versionId", Severity.WARNING, "Version tracking critical for patient safety"),
    ],
    "Immunization": [
        ("lastUpdated", Severity.WARNING, "Immunization records should track last modification time"),
        ("versionId", Severity.INFORMATION, "Version tracking recommended for immunization history"),
    ],
    "Procedure": [
        ("lastUpdated", Severity.WARNING, "Procedure records should track last modification time"),
        ("versionId", Severity.INFORMATION, "Version tracking recommended for audit purposes"),
    ],
    "DiagnosticReport": [
        ("lastUpdated", Severity.WARNING, "Diagnostic reports should track last modification time"),
        ("versionId", Severity.INFORMATION, "Version tracking recommended for report history"),
    ],
    "Bundle": [
        ("lastUpdated", Severity.INFORMATION, "Bundle modification time helps track freshness"),
    ],
    "AuditEvent": [
        ("lastUpdated", Severity.WARNING, "Audit events must track creation time"),
        ("security", Severity.WARNING, "Security labels important for audit integrity"),
    ],
    "Consent": [
        ("lastUpdated", Severity.WARNING, "Consent records must track last modification time"),
        ("versionId", Severity.WARNING, "Version tracking critical for legal compliance"),
        ("security", Severity.WARNING, "Security labels required for consent data"),
    ],
}

NARRATIVE_STATUSES = ("generated", "extensions", "additional", "empty")

# resource type -> {element: replacement hint}
DEPRECATED_ELEMENTS = {
    "Patient": {"animal": "Use the patient-animal extension"},
}

CANONICAL_URL = re.compile(r"^https?://[^\s/]+/\S+$")
ABSOLUTE_URL = re.compile(r"^https?://[^\s/]+(/\S*)?$")
URN_PATTERN = re.compile(r"^urn:[A-Za-z0-9][A-Za-z0-9\-]{0,31}:\S+$")


def _is_absolute_uri(value: Any) -> bool:
    return isinstance(value, str) and bool(ABSOLUTE_URL.match(value) or URN_PATTERN.match(value))


def _is_nested_extension(path: str) -> bool:
    """Sub-extensions of a complex extension may use relative urls."""
    if "." not in path:
        return False
    parent = path.rsplit(".", 1)[0].rsplit(".", 1)[-1]
    return parent.startswith(("extension[", "modifierExtension["))


# Clock skew tolerated on lastUpdated
FUTURE_TOLERANCE = timedelta(minutes=5)


def is_valid_source_uri(value: str) -> bool:
    if value.startswith(("http://", "https://")):
        return bool(ABSOLUTE_URL.match(value))
    if value.startswith("urn:"):
        return bool(URN_PATTERN.match(value))
    # Scheme-less values that look like URLs
    return not ("." in value and "/" in value)


def _has_meta_field(meta: Dict[str, Any], field_name: str) -> bool:
    value = meta.get(field_name)
    if isinstance(value, list):
        return len(value) > 0
    return bool(value)


class MetadataValidator(AspectValidator):

    aspect = Aspect.METADATA
    failure_code = "metadata-validation-error"

    def get_name(self) -> str:
        return "MetadataValidator"

    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        outcome = self.new_outcome()
        resource_type = resource.get("resourceType", "")

        meta = resource.get("meta")
        if meta is not None and not isinstance(meta, dict):
            outcome.add_issue(
                Severity.ERROR, "invalid-meta-type",
                "meta must be an object",
                path="meta",
            )
            meta = None

        if meta:
            self._check_last_updated(meta, outcome)
            self._check_version_id(meta, outcome)
            self._check_profiles(meta, outcome)
            self._check_codings(meta, "security", outcome)
            self._check_codings(meta, "tag", outcome)
            self._check_source(meta, outcome)

        self._check_recommended(resource_type, meta or {}, outcome)
        self._check_narrative(resource, outcome)
        self._check_extensions(resource, outcome)
        self._check_deprecated(resource_type, resource, outcome)

        return outcome

    # ------------------------------------------------------------------
    # meta
    # ------------------------------------------------------------------

    def _check_last_updated(self, meta: Dict[str, Any], outcome: AspectOutcome) -> None:
        if "lastUpdated" not in meta:
            return
        value = meta["lastUpdated"]

        if not isinstance(value, str):
            outcome.add_issue(
                Severity.ERROR, "invalid-lastUpdated-type",
                "meta.lastUpdated must be a string",
                path="meta.lastUpdated",
            )
            return

        if "T" in value and not has_timezone(value):
            outcome.add_issue(
                Severity.ERROR, "lastUpdated-missing-timezone",
                f"meta.lastUpdated has no timezone: {value}",
                path="meta.lastUpdated",
                suggestion="Add 'Z' or an offset such as +00:00",
            )
            return

        if not INSTANT_PATTERN.match(value):
            outcome.add_issue(
                Severity.ERROR, "invalid-lastUpdated-format",
                f"meta.lastUpdated is not a valid instant: {value}",
                path="meta.lastUpdated",
                suggestion="Use YYYY-MM-DDThh:mm:ss[.sss]Z",
            )
            return

        parsed = parse_fhir_datetime(value)
        if parsed is not None and parsed > datetime.now(timezone.utc) + FUTURE_TOLERANCE:
            outcome.add_issue(
                Severity.WARNING, "future-lastUpdated",
                f"meta.lastUpdated is in the future: {value}",
                path="meta.lastUpdated",
            )

    def _check_version_id(self, meta: Dict[str, Any], outcome: AspectOutcome) -> None:
        if "versionId" not in meta:
            return
        value = meta["versionId"]

        if not isinstance(value, str) or not value.strip():
            outcome.add_issue(
                Severity.ERROR, "empty-versionId",
                "meta.versionId must be a non-empty string",
                path="meta.versionId",
            )
            return

        if not is_valid_id(value):
            outcome.add_issue(
                Severity.ERROR, "invalid-versionId-format",
                f"meta.versionId does not match the FHIR id pattern: {value}",
                path="meta.versionId",
                suggestion="Use 1-64 characters from A-Z, a-z, 0-9, '-' and '.'",
            )

    def _check_profiles(self, meta: Dict[str, Any], outcome: AspectOutcome) -> None:
        profiles = meta.get("profile")
        if profiles is None:
            return
        if not isinstance(profiles, list):
            outcome.add_issue(
                Severity.ERROR, "invalid-profile-array",
                "meta.profile must be an array",
                path="meta.profile",
            )
            return

        seen = set()
        for index, url in enumerate(profiles):
            path = f"meta.profile[{index}]"
            if not isinstance(url, str) or not CANONICAL_URL.match(url):
                outcome.add_issue(
                    Severity.WARNING, "invalid-profile-url",
                    f"Profile is not a canonical URL: {url}",
                    path=path,
                )
                continue
            if url in seen:
                outcome.add_issue(
                    Severity.INFORMATION, "profile-duplicate",
                    f"Profile listed more than once: {url}",
                    path=path,
                )
            seen.add(url)

    def _check_codings(self, meta: Dict[str, Any], field_name: str, outcome: AspectOutcome) -> None:
        entries = meta.get(field_name)
        if entries is None:
            return
        if not isinstance(entries, list):
            outcome.add_issue(
                Severity.ERROR, f"invalid-{field_name}-array",
                f"meta.{field_name} must be an array",
                path=f"meta.{field_name}",
            )
            return

        for index, coding in enumerate(entries):
            path = f"meta.{field_name}[{index}]"
            if not isinstance(coding, dict):
                outcome.add_issue(
                    Severity.ERROR, f"invalid-{field_name}-object",
                    f"{path} must be a Coding object",
                    path=path,
                )
                continue

            if field_name == "security" and not (coding.get("system") and coding.get("code")):
                outcome.add_issue(
                    Severity.ERROR, "security-missing-system-code",
                    f"{path} must have both system and code",
                    path=path,
                )
            elif field_name == "tag" and not (coding.get("system") or coding.get("code")):
                outcome.add_issue(
                    Severity.WARNING, "tag-missing-system-code",
                    f"{path} has neither system nor code",
                    path=path,
                )

    def _check_source(self, meta: Dict[str, Any], outcome: AspectOutcome) -> None:
        source = meta.get("source")
        if source is None:
            return
        if not isinstance(source, str) or not source.strip() or not is_valid_source_uri(source):
            outcome.add_issue(
                Severity.WARNING, "invalid-source-uri",
                f"meta.source is not a valid URI: {source}",
                path="meta.source",
            )

    def _check_recommended(self, resource_type: str, meta: Dict[str, Any], outcome: AspectOutcome) -> None:
        for field_name, severity, reason in RECOMMENDED_METADATA.get(resource_type, []):
            if not _has_meta_field(meta, field_name):
                outcome.add_issue(
                    severity, f"required-metadata-missing-{field_name}",
                    f"{resource_type} resource is missing recommended metadata field meta.{field_name}",
                    path=f"meta.{field_name}",
                    suggestion=reason,
                )

    # ------------------------------------------------------------------
    # Narrative, extensions, deprecated elements
    # ------------------------------------------------------------------

    def _check_narrative(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        text = resource.get("text")
        if not isinstance(text, dict):
            return

        status = text.get("status")
        if status not in NARRATIVE_STATUSES:
            outcome.add_issue(
                Severity.ERROR, "invalid-narrative-status",
                f"Invalid narrative status: {status}",
                path="text.status",
                suggestion=f"Valid statuses: {', '.join(NARRATIVE_STATUSES)}",
            )

        div = text.get("div")
        if not isinstance(div, str) or not div.strip():
            outcome.add_issue(
                Severity.ERROR, "missing-narrative-div",
                "Narrative must contain a non-empty div",
                path="text.div",
            )

    def _check_extensions(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        for path, extension in find_extensions(resource):
            if not isinstance(extension, dict):
                outcome.add_issue(
                    Severity.ERROR, "invalid-extension",
                    "Extension must be an object",
                    path=path,
                )
                continue

            url = extension.get("url")
            if not url:
                outcome.add_issue(
                    Severity.ERROR, "extension-missing-url",
                    "Extension must have a url",
                    path=f"{path}.url",
                )
            elif not _is_nested_extension(path) and not _is_absolute_uri(url):
                outcome.add_issue(
                    Severity.ERROR, "invalid-extension-url",
                    f"Extension url must be an absolute URI: {url}",
                    path=f"{path}.url",
                    suggestion="Use the canonical http(s) URL or urn of the extension definition",
                )

            if not has_choice_value(extension, "value") and not extension.get("extension"):
                outcome.add_issue(
                    Severity.ERROR, "extension-missing-value",
                    "Extension has neither a value nor nested extensions",
                    path=path,
                )

    def _check_deprecated(self, resource_type: str, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        for element, hint in DEPRECATED_ELEMENTS.get(resource_type, {}).items():
            if element in resource:
                outcome.add_issue(
                    Severity.WARNING, "deprecated-element",
                    f"{resource_type}.{element} is deprecated",
                    path=element,
                    suggestion=hint,
                )
