# ============================================================================
# src/fhir_validation/fhir_utils/operation_outcome.py
# ============================================================================
"""
ValidationResult -> FHIR OperationOutcome

Each ValidationIssue becomes one OperationOutcome.issue:
- severity is carried over unchanged (fatal, error, warning, information)
- code is the FHIR issue-type for the issue's aspect
- details.text carries the message, diagnostics the issue code
- expression carries the path
"""

import logging
from typing import Any, Dict, List

from fhir.resources.codeableconcept import CodeableConcept
from fhir.resources.operationoutcome import OperationOutcome, OperationOutcomeIssue

from ..core.models import Aspect, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

ISSUE_TYPE_BY_ASPECT = {
    Aspect.STRUCTURAL: "structure",
    Aspect.PROFILE: "invariant",
    Aspect.TERMINOLOGY: "code-invalid",
    Aspect.REFERENCE: "not-found",
    Aspect.BUSINESS_RULE: "business-rule",
    Aspect.METADATA: "invariant",
}

ENGINE_FAILURE_CODE = "validation-engine-error"


def issue_type(issue: ValidationIssue) -> str:
    if issue.code == ENGINE_FAILURE_CODE:
        return "exception"
    return ISSUE_TYPE_BY_ASPECT.get(issue.category, "invariant")


def _to_outcome_issue(issue: ValidationIssue) -> OperationOutcomeIssue:
    return OperationOutcomeIssue(
        severity=issue.severity.value,
        code=issue_type(issue),
        details=CodeableConcept(text=issue.message),
        diagnostics=issue.code,
        expression=[issue.path] if issue.path else None,
    )


def to_operation_outcome(result: ValidationResult) -> OperationOutcome:
    """
    Build an OperationOutcome for a validation result.

    A result without issues gets the single "information / informational"
    issue FHIR expects for a successful outcome.
    """
    issues: List[OperationOutcomeIssue] = [_to_outcome_issue(issue) for issue in result.issues]

    if not issues:
        issues.append(OperationOutcomeIssue(
            severity="information",
            code="informational",
            details=CodeableConcept(text="No issues detected"),
        ))

    outcome = OperationOutcome(issue=issues)
    logger.debug(
        f"Built OperationOutcome for {result.resource_type}/{result.resource_id} "
        f"with {len(issues)} issue(s)"
    )
    return outcome


def operation_outcome_dict(result: ValidationResult) -> Dict[str, Any]:
    return to_operation_outcome(result).model_dump()
