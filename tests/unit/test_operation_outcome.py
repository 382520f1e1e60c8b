# ============================================================================
# tests/unit/test_operation_outcome.py
# ============================================================================
"""
Tests for OperationOutcome rendering
"""

from fhir_validation.core.models import Aspect, Severity, ValidationIssue, ValidationResult
from fhir_validation.fhir_utils.operation_outcome import (
    issue_type,
    operation_outcome_dict,
    to_operation_outcome,
)


def issue(aspect, code="some-code", severity=Severity.ERROR, path="Patient.gender"):
    return ValidationIssue(severity, code, aspect, f"{code} happened", path)


class TestIssueType:
    """Test aspect to issue-type mapping"""

    def test_aspect_mapping(self):
        """Test one issue type per aspect"""
        assert issue_type(issue(Aspect.STRUCTURAL)) == "structure"
        assert issue_type(issue(Aspect.TERMINOLOGY)) == "code-invalid"
        assert issue_type(issue(Aspect.REFERENCE)) == "not-found"
        assert issue_type(issue(Aspect.BUSINESS_RULE)) == "business-rule"
        assert issue_type(issue(Aspect.PROFILE)) == "invariant"

    def test_engine_failure(self):
        """Test that engine failures map to exception"""
        assert issue_type(issue(Aspect.STRUCTURAL, code="validation-engine-error")) == "exception"


class TestToOperationOutcome:
    """Test result conversion"""

    def test_empty_result(self):
        """Test the informational issue for a clean result"""
        outcome = to_operation_outcome(ValidationResult(resource_type="Patient", resource_id="p1"))

        assert len(outcome.issue) == 1
        assert outcome.issue[0].severity == "information"
        assert outcome.issue[0].code == "informational"
        assert outcome.issue[0].details.text == "No issues detected"

    def test_issues_carried_over(self):
        """Test severity, message, code and path per issue"""
        result = ValidationResult(
            resource_type="Patient",
            resource_id="p1",
            issues=[
                issue(Aspect.STRUCTURAL, "invalid-gender-code"),
                issue(Aspect.METADATA, "missing-lastUpdated", Severity.WARNING, path=None),
            ],
        )

        outcome = to_operation_outcome(result)

        first, second = outcome.issue
        assert first.severity == "error"
        assert first.diagnostics == "invalid-gender-code"
        assert first.details.text == "invalid-gender-code happened"
        assert first.expression == ["Patient.gender"]
        assert second.severity == "warning"
        assert second.expression is None

    def test_dict_form(self):
        """Test the JSON form"""
        body = operation_outcome_dict(ValidationResult(resource_type="Patient", resource_id="p1"))

        assert body["resourceType"] == "OperationOutcome"
        assert body["issue"][0]["code"] == "informational"
