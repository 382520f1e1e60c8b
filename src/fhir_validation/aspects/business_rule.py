# ============================================================================
# src/fhir_validation/aspects/business_rule.py
# ============================================================================
"""
Business Rule Validation

Simple per-resource-type predicate tables:
- Patient: birth date sanity, death after birth
- Observation: effective date, status vs. value, vital sign ranges
- Condition: onset before abatement
- Encounter: period ordering, finished encounters need an end
- Procedure: performed period ordering and timing
- anything else: a generic period check

Enabled custom FHIRPath rules for the resource type are evaluated after
the built-in table when a rule executor is configured.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from ..core.context import ValidationContext
from ..core.fhir_types import parse_fhir_datetime
from ..core.models import Aspect, AspectOutcome, Severity
from ..settings.models import ValidationSettings
from .base import AspectValidator

MAX_AGE_YEARS = 150

# Clock skew tolerated before an observation counts as future-dated
FUTURE_TOLERANCE = timedelta(days=1)

# (LOINC code, accepted units, low, high, label)
VITAL_SIGN_RANGES = [
    ("85354-9", {"mm[Hg]", "mmHg"}, 50, 300, "Blood pressure"),
    ("8480-6", {"mm[Hg]", "mmHg"}, 50, 300, "Systolic blood pressure"),
    ("8462-4", {"mm[Hg]", "mmHg"}, 20, 200, "Diastolic blood pressure"),
    ("8867-4", {"/min", "beats/min", "{beats}/min"}, 30, 300, "Heart rate"),
    ("9279-1", {"/min", "breaths/min", "{breaths}/min"}, 4, 80, "Respiratory rate"),
    ("8310-5", {"Cel", "degC"}, 25, 45, "Body temperature"),
    ("2708-6", {"%"}, 50, 100, "Oxygen saturation"),
    ("59408-5", {"%"}, 50, 100, "Oxygen saturation"),
]

TEMPERATURE_UNITS = {"Cel", "degC"}

FINISHED_PROCEDURE_STATUSES = ("completed",)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _loinc_codes(concept: Any) -> set:
    if not isinstance(concept, dict):
        return set()
    return {
        coding.get("code")
        for coding in concept.get("coding") or []
        if isinstance(coding, dict) and coding.get("code")
    }


class BusinessRuleValidator(AspectValidator):

    aspect = Aspect.BUSINESS_RULE
    failure_code = "business-rule-validation-error"

    def __init__(self, rule_executor=None, metrics=None):
        super().__init__(metrics)
        self.rule_executor = rule_executor
        self._rules = {
            "Patient": self._check_patient,
            "Observation": self._check_observation,
            "Condition": self._check_condition,
            "Encounter": self._check_encounter,
            "Procedure": self._check_procedure,
        }

    def get_name(self) -> str:
        return "BusinessRuleValidator"

    async def execute(
        self,
        resource: Dict[str, Any],
        settings: ValidationSettings,
        context: ValidationContext,
    ) -> AspectOutcome:
        outcome = self.new_outcome()

        check = self._rules.get(resource.get("resourceType"), self._check_general)
        check(resource, outcome)

        if self.rule_executor is not None:
            issues, rules_checked = await self.rule_executor.execute(resource)
            outcome.issues.extend(issues)
            outcome.rules_checked += rules_checked

        return outcome

    # ------------------------------------------------------------------
    # Patient
    # ------------------------------------------------------------------

    def _check_patient(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        raw_birth = resource.get("birthDate")
        birth = None

        if raw_birth is not None:
            outcome.rules_checked += 1
            birth = parse_fhir_datetime(raw_birth)
            if birth is None:
                outcome.add_issue(
                    Severity.ERROR, "invalid-birth-date",
                    f"Birth date is not a valid date: {raw_birth}",
                    path="birthDate",
                    suggestion="Use YYYY, YYYY-MM or YYYY-MM-DD",
                )
            elif birth > _now():
                outcome.add_issue(
                    Severity.ERROR, "future-birth-date",
                    f"Birth date {raw_birth} is in the future",
                    path="birthDate",
                    suggestion="Verify the birth date",
                )
            else:
                age_years = (_now() - birth).days / 365.25
                if age_years > MAX_AGE_YEARS:
                    outcome.add_issue(
                        Severity.WARNING, "unreasonable-age",
                        f"Birth date {raw_birth} implies an age of {int(age_years)} years",
                        path="birthDate",
                        suggestion="Verify the birth date",
                    )

        raw_death = resource.get("deceasedDateTime")
        if raw_death is not None and birth is not None:
            outcome.rules_checked += 1
            death = parse_fhir_datetime(raw_death)
            if death is not None and death < birth:
                outcome.add_issue(
                    Severity.ERROR, "death-before-birth",
                    f"Death date {raw_death} is before birth date {raw_birth}",
                    path="deceasedDateTime",
                    suggestion="Verify birth and death dates",
                )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _check_observation(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        raw_effective = resource.get("effectiveDateTime") or resource.get("effectiveInstant")
        if raw_effective is not None:
            outcome.rules_checked += 1
            path = "effectiveDateTime" if "effectiveDateTime" in resource else "effectiveInstant"
            effective = parse_fhir_datetime(raw_effective)
            if effective is None:
                outcome.add_issue(
                    Severity.ERROR, "invalid-effective-date",
                    f"Effective date is not a valid dateTime: {raw_effective}",
                    path=path,
                )
            elif effective > _now() + FUTURE_TOLERANCE:
                outcome.add_issue(
                    Severity.WARNING, "future-observation-date",
                    f"Observation effective date {raw_effective} is in the future",
                    path=path,
                    suggestion="Verify the observation date",
                )

        if isinstance(resource.get("effectivePeriod"), dict):
            self._check_period(resource["effectivePeriod"], "effectivePeriod", "end-before-start", outcome)

        if resource.get("status") == "final":
            outcome.rules_checked += 1
            has_value = any(key.startswith("value") for key in resource) \
                or resource.get("dataAbsentReason") \
                or resource.get("component") \
                or resource.get("hasMember")
            if not has_value:
                outcome.add_issue(
                    Severity.WARNING, "final-status-no-value",
                    "Final observation has no value, component or dataAbsentReason",
                    path="status",
                    suggestion="Add a value[x] or a dataAbsentReason",
                )

        codes = _loinc_codes(resource.get("code"))
        self._check_quantity(codes, resource.get("valueQuantity"), "valueQuantity", outcome)

        for index, component in enumerate(resource.get("component") or []):
            if isinstance(component, dict):
                self._check_quantity(
                    _loinc_codes(component.get("code")),
                    component.get("valueQuantity"),
                    f"component[{index}].valueQuantity",
                    outcome,
                )

    def _check_quantity(
        self,
        codes: set,
        quantity: Any,
        path: str,
        outcome: AspectOutcome,
    ) -> None:
        if not isinstance(quantity, dict):
            return
        value = quantity.get("value")
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return

        outcome.rules_checked += 1
        unit = quantity.get("code") or quantity.get("unit")

        for loinc, units, low, high, label in VITAL_SIGN_RANGES:
            if loinc in codes and unit in units:
                if not low <= value <= high:
                    outcome.add_issue(
                        Severity.WARNING, "value-out-of-range",
                        f"{label} {value} {unit} is outside the expected range {low}-{high}",
                        path=f"{path}.value",
                        suggestion="Verify the measured value and unit",
                    )
                return

        if unit in TEMPERATURE_UNITS and not 25 <= value <= 45:
            outcome.add_issue(
                Severity.WARNING, "value-out-of-range",
                f"Temperature {value} {unit} is outside the expected range 25-45",
                path=f"{path}.value",
                suggestion="Verify the measured value and unit",
            )
            return

        if value < 0 and unit not in TEMPERATURE_UNITS:
            outcome.add_issue(
                Severity.WARNING, "negative-value",
                f"Quantity value {value} is negative",
                path=f"{path}.value",
            )

    # ------------------------------------------------------------------
    # Condition
    # ------------------------------------------------------------------

    def _check_condition(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        raw_onset = resource.get("onsetDateTime")
        onset = None

        if raw_onset is not None:
            outcome.rules_checked += 1
            onset = parse_fhir_datetime(raw_onset)
            if onset is None:
                outcome.add_issue(
                    Severity.ERROR, "invalid-onset-date",
                    f"Onset date is not a valid dateTime: {raw_onset}",
                    path="onsetDateTime",
                )
            elif onset > _now() + FUTURE_TOLERANCE:
                outcome.add_issue(
                    Severity.WARNING, "future-onset-date",
                    f"Condition onset {raw_onset} is in the future",
                    path="onsetDateTime",
                )

        raw_abatement = resource.get("abatementDateTime")
        if raw_abatement is not None and onset is not None:
            outcome.rules_checked += 1
            abatement = parse_fhir_datetime(raw_abatement)
            if abatement is not None and abatement < onset:
                outcome.add_issue(
                    Severity.ERROR, "abatement-before-onset",
                    f"Abatement date {raw_abatement} is before onset date {raw_onset}",
                    path="abatementDateTime",
                    suggestion="Verify onset and abatement dates",
                )

    # ------------------------------------------------------------------
    # Encounter
    # ------------------------------------------------------------------

    def _check_encounter(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        period = resource.get("period")
        if isinstance(period, dict):
            self._check_period(period, "period", "end-before-start", outcome)

        if resource.get("status") == "finished":
            outcome.rules_checked += 1
            if not isinstance(period, dict) or not period.get("end"):
                outcome.add_issue(
                    Severity.ERROR, "finished-status-no-end",
                    "Finished encounter has no period.end",
                    path="period.end",
                    suggestion="Add the encounter end time",
                )

    # ------------------------------------------------------------------
    # Procedure
    # ------------------------------------------------------------------

    def _check_procedure(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        performed_period = resource.get("performedPeriod")
        if isinstance(performed_period, dict):
            self._check_period(performed_period, "performedPeriod", "procedure-end-before-start", outcome)

        raw_performed = resource.get("performedDateTime")
        if raw_performed is not None:
            outcome.rules_checked += 1
            performed = parse_fhir_datetime(raw_performed)
            if performed is not None and performed > _now() + FUTURE_TOLERANCE:
                outcome.add_issue(
                    Severity.WARNING, "future-procedure-date",
                    f"Procedure performed date {raw_performed} is in the future",
                    path="performedDateTime",
                )

        if resource.get("status") in FINISHED_PROCEDURE_STATUSES:
            outcome.rules_checked += 1
            if not any(key.startswith("performed") for key in resource):
                outcome.add_issue(
                    Severity.WARNING, "completed-procedure-no-performed",
                    "Completed procedure has no performed[x] value",
                    path="performed[x]",
                    suggestion="Record when the procedure was performed",
                )

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _check_general(self, resource: Dict[str, Any], outcome: AspectOutcome) -> None:
        period = resource.get("period")
        if isinstance(period, dict):
            self._check_period(period, "period", "period-end-before-start", outcome)

    def _check_period(
        self,
        period: Dict[str, Any],
        path: str,
        code: str,
        outcome: AspectOutcome,
    ) -> None:
        outcome.rules_checked += 1
        raw_start, raw_end = period.get("start"), period.get("end")

        start = parse_fhir_datetime(raw_start) if raw_start is not None else None
        end = parse_fhir_datetime(raw_end) if raw_end is not None else None

        if raw_start is not None and start is None:
            outcome.add_issue(
                Severity.ERROR, "invalid-period-start",
                f"Period start is not a valid dateTime: {raw_start}",
                path=f"{path}.start",
            )
        if raw_end is not None and end is None:
            outcome.add_issue(
                Severity.ERROR, "invalid-period-end",
                f"Period end is not a valid dateTime: {raw_end}",
                path=f"{path}.end",
            )

        if start is None or end is None:
            return
        if end < start:
            outcome.add_issue(
                Severity.ERROR, code,
                f"{path}.end ({raw_end}) is before {path}.start ({raw_start})",
                path=f"{path}.end",
                suggestion="Verify the period start and end",
            )
