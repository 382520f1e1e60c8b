# ============================================================================
# src/fhir_validation/aspects/terminology.py
# ============================================================================
"""
Terminology Validation

For every Coding-shaped object (system + code) in the resource:
1. system must be a well-formed URI or a known FHIR system prefix
2. code must not be on the built-in deny-list for its system
3. system-specific value and format rules
4. display text compared with a small built-in display map
5. optional existence check on a terminology server; server failures
   only produce an information issue
"""

import re
from typing import Any, Dict, Optional, Tuple

from ..clients.base import TerminologyClient
from ..core.context import ValidationContext
from ..core.models import Aspect, AspectOutcome, Severity
from ..core.tree_walker import CodingNode, find_codings, join_path
from ..settings.models import ValidationSettings
from .base import AspectValidator

GENDER_SYSTEM = "http://hl7.org/fhir/administrative-gender"
OBSERVATION_STATUS_SYSTEM = "http://hl7.org/fhir/observation-status"
CONDITION_CLINICAL_SYSTEM = "http://hl7.org/fhir/condition-clinical"
LOINC_SYSTEM = "http://loinc.org"
SNOMED_SYSTEM = "http://snomed.info/sct"
ISO_3166_SYSTEM = "urn:iso:std:iso:3166"

KNOWN_SYSTEM_PREFIXES = [
    "http://hl7.org/fhir/",
    "http://loinc.org",
    "http://snomed.info/sct",
    "http://terminology.hl7.org/",
    "http://unitsofmeasure.org",
    ISO_3166_SYSTEM,
]

URI_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:\S+$")

DENIED_CODES = {
    GENDER_SYSTEM: {"invalid", "none", ""},
    OBSERVATION_STATUS_SYSTEM: {"invalid", "", "unknown"},
    CONDITION_CLINICAL_SYSTEM: {"invalid", "", "unknown"},
}

# system -> (allowed values, issue code, label)
ENUMERATED_SYSTEMS = {
    GENDER_SYSTEM: (
        ["male", "female", "other", "unknown"],
        "invalid-gender-code",
        "gender code",
    ),
    OBSERVATION_STATUS_SYSTEM: (
        ["registered", "preliminary", "final", "amended", "corrected",
         "cancelled", "entered-in-error", "unknown"],
        "invalid-observation-status",
        "observation status",
    ),
    CONDITION_CLINICAL_SYSTEM: (
        ["active", "recurrence", "relapse", "inactive", "remission", "resolved"],
        "invalid-condition-status",
        "condition clinical status",
    ),
}

# system -> (pattern, severity, issue code, message prefix, suggestion)
FORMATTED_SYSTEMS = {
    LOINC_SYSTEM: (
        re.compile(r"^\d{1,5}-\d{1,2}$"), Severity.WARNING, "invalid-loinc-format",
        "LOINC code format may be invalid", "LOINC codes should follow format: NNNNN-N",
    ),
    SNOMED_SYSTEM: (
        re.compile(r"^\d+$"), Severity.WARNING, "invalid-snomed-format",
        "SNOMED CT code should be numeric", "SNOMED CT codes should contain only digits",
    ),
    ISO_3166_SYSTEM: (
        re.compile(r"^[A-Z]{2}$"), Severity.ERROR, "invalid-country-code",
        "Invalid ISO 3166 country code", "Country codes should be 2 uppercase letters (e.g., US, DE, GB)",
    ),
}

DISPLAY_MAP = {
    GENDER_SYSTEM: {
        "male": "Male",
        "female": "Female",
        "other": "Other",
        "unknown": "Unknown",
    },
    OBSERVATION_STATUS_SYSTEM: {
        "final": "Final",
        "preliminary": "Preliminary",
        "registered": "Registered",
        "amended": "Amended",
        "cancelled": "Cancelled",
    },
}


def is_valid_system(system: Any) -> bool:
    if not isinstance(system, str):
        return False
    if URI_PATTERN.match(system):
        return True
    return any(system.startswith(prefix) for prefix in KNOWN_SYSTEM_PREFIXES)


def expected_display(system: str, code: str) -> Optional[str]:
    return DISPLAY_MAP.get(system, {}).get(code)


class TerminologyValidator(AspectValidator):

    aspect = Aspect.TERMINOLOGY
    failure_code = "terminology-validation-error"

    def __init__(self, terminology_client: Optional[TerminologyClient] = None, metrics=None):
        super().__init__(metrics)
        self.terminology_client = terminology_client
        self._server_results: Dict[str, Tuple[float, bool]] = {}

    def get_name(self) -> str:
        return "TerminologyValidator"

    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        outcome = self.new_outcome()

        for coding in find_codings(resource):
            if not coding.system or coding.code in (None, ""):
                # Incomplete pairs are not counted
                continue
            outcome.codes_checked += 1
            await self._validate_coding(coding, settings, outcome)

        return outcome

    async def _validate_coding(
        self,
        coding: CodingNode,
        settings: ValidationSettings,
        outcome: AspectOutcome,
    ) -> None:
        system = coding.system
        code = str(coding.code)

        if not is_valid_system(system):
            outcome.add_issue(
                Severity.ERROR, "invalid-system-url",
                f"Invalid code system URL: {system}",
                path=join_path(coding.path, "system"),
                suggestion="Use a valid URI for the code system",
            )
            return

        if code in DENIED_CODES.get(system, ()):
            outcome.add_issue(
                Severity.ERROR, "invalid-code",
                f"Invalid code '{code}' in system '{system}'",
                path=join_path(coding.path, "code"),
                suggestion="Check the code against the official code system",
            )
            return

        if system in ENUMERATED_SYSTEMS:
            allowed, issue_code, label = ENUMERATED_SYSTEMS[system]
            if code not in allowed:
                outcome.add_issue(
                    Severity.ERROR, issue_code,
                    f"Invalid {label}: {code}",
                    path=join_path(coding.path, "code"),
                    suggestion=f"Valid codes: {', '.join(allowed)}",
                )

        if system in FORMATTED_SYSTEMS:
            pattern, severity, issue_code, message, suggestion = FORMATTED_SYSTEMS[system]
            if not pattern.match(code):
                outcome.add_issue(
                    severity, issue_code,
                    f"{message}: {code}",
                    path=join_path(coding.path, "code"),
                    suggestion=suggestion,
                )

        if coding.display:
            expected = expected_display(system, code)
            if expected and expected != coding.display:
                outcome.add_issue(
                    Severity.WARNING, "incorrect-display",
                    f"Display text '{coding.display}' may be incorrect for code '{code}'",
                    path=join_path(coding.path, "display"),
                    suggestion=f"Consider using: '{expected}'",
                )

        if self.terminology_client is not None and settings.enabled_servers("terminology"):
            await self._check_with_server(system, code, coding.path, settings, outcome)

    async def _check_with_server(
        self,
        system: str,
        code: str,
        path: str,
        settings: ValidationSettings,
        outcome: AspectOutcome,
    ) -> None:
        key = f"{system}|{code}"
        use_cache = settings.cache.enabled

        try:
            cached = self.recall(self._server_results, key) if use_cache else None
            if cached is not None:
                is_known = cached
            else:
                is_known = await self.terminology_client.validate_code(system, code)
                if use_cache:
                    self.remember(self._server_results, key, is_known, settings.cache)
        except Exception as e:
            self.logger.warning(f"Terminology server check failed for {key}: {e}")
            outcome.add_issue(
                Severity.INFORMATION, "terminology-server-unavailable",
                f"Could not validate code with terminology server: {e}",
                path=path,
                suggestion="Terminology server validation temporarily unavailable",
            )
            return

        if not is_known:
            outcome.add_issue(
                Severity.ERROR, "terminology-server-validation-failed",
                f"Code '{code}' not found in system '{system}' according to terminology server",
                path=join_path(path, "code"),
                suggestion="Verify the code exists in the specified code system",
            )

    def clear_cache(self) -> None:
        self._server_results.clear()
