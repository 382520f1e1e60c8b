# ============================================================================
# src/fhir_validation/core/models.py
# ============================================================================
"""
Validation Result Data Model

- ValidationIssue: one finding from one aspect (immutable)
- AspectOutcome: everything one aspect produced for one run
- ValidationResult: merged outcome of all enabled aspects for one resource
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(str, Enum):
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"

    @property
    def rank(self) -> int:
        """Lower rank = more severe."""
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str) -> "Severity":
        """Accept the short 'info' spelling used by rule and settings payloads."""
        if isinstance(value, Severity):
            return value
        if value == "info":
            return cls.INFORMATION
        return cls(value)


_SEVERITY_RANK = {
    Severity.FATAL: 0,
    Severity.ERROR: 1,
    Severity.WARNING: 2,
    Severity.INFORMATION: 3,
}


class Aspect(str, Enum):
    STRUCTURAL = "structural"
    PROFILE = "profile"
    TERMINOLOGY = "terminology"
    REFERENCE = "reference"
    BUSINESS_RULE = "businessRule"
    METADATA = "metadata"


# Fixed execution order; merged issues follow it
ASPECT_ORDER: List[Aspect] = [
    Aspect.STRUCTURAL,
    Aspect.PROFILE,
    Aspect.TERMINOLOGY,
    Aspect.REFERENCE,
    Aspect.BUSINESS_RULE,
    Aspect.METADATA,
]


@dataclass(frozen=True)
class ValidationIssue:
    """
    Single validation finding.

    Attributes:
        severity: fatal | error | warning | information
        code: Machine-readable issue code (e.g. "missing-id")
        category: Aspect that produced the issue
        message: Human readable description
        path: Dot/bracket JSON path (e.g. "name[0].given[1]")
        expression: Optional FHIRPath-style expression
        suggestion: Optional hint for fixing the issue
    """
    severity: Severity
    code: str
    category: Aspect
    message: str
    path: str = ""
    expression: Optional[str] = None
    suggestion: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity in (Severity.ERROR, Severity.FATAL)

    def with_severity(self, severity: Severity) -> "ValidationIssue":
        return replace(self, severity=severity)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "severity": self.severity.value,
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "path": self.path,
        }
        if self.expression is not None:
            data["expression"] = self.expression
        if self.suggestion is not None:
            data["suggestion"] = self.suggestion
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationIssue":
        return cls(
            severity=Severity.parse(data["severity"]),
            code=data["code"],
            category=Aspect(data["category"]),
            message=data.get("message", ""),
            path=data.get("path", ""),
            expression=data.get("expression"),
            suggestion=data.get("suggestion"),
        )


@dataclass
class AspectOutcome:
    """
    Output of one aspect validator for one validation run.

    Counters are aspect specific; unused ones stay at zero.
    """
    aspect: Aspect
    passed: bool = True
    issues: List[ValidationIssue] = field(default_factory=list)
    profiles_checked: int = 0
    codes_checked: int = 0
    references_checked: int = 0
    rules_checked: int = 0
    duration_ms: float = 0.0

    def add_issue(
        self,
        severity: Severity,
        code: str,
        message: str,
        path: str = "",
        expression: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> ValidationIssue:
        issue = ValidationIssue(
            severity=severity,
            code=code,
            category=self.aspect,
            message=message,
            path=path,
            expression=expression,
            suggestion=suggestion,
        )
        self.issues.append(issue)
        return issue

    def finalize(self) -> "AspectOutcome":
        """Derive passed from the collected issues."""
        self.passed = not any(issue.is_error for issue in self.issues)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aspect": self.aspect.value,
            "passed": self.passed,
            "issues": [issue.to_dict() for issue in self.issues],
            "profilesChecked": self.profiles_checked,
            "codesChecked": self.codes_checked,
            "referencesChecked": self.references_checked,
            "rulesChecked": self.rules_checked,
            "durationMs": round(self.duration_ms, 3),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AspectOutcome":
        return cls(
            aspect=Aspect(data["aspect"]),
            passed=data.get("passed", True),
            issues=[ValidationIssue.from_dict(i) for i in data.get("issues", [])],
            profiles_checked=data.get("profilesChecked", 0),
            codes_checked=data.get("codesChecked", 0),
            references_checked=data.get("referencesChecked", 0),
            rules_checked=data.get("rulesChecked", 0),
            duration_ms=data.get("durationMs", 0.0),
        )


@dataclass
class ValidationResult:
    """
    Merged result of one validation invocation.

    A new result is created for every invocation; later validations of the
    same resource supersede it in storage rather than mutating it.
    """
    resource_type: Optional[str]
    resource_id: Optional[str]
    issues: List[ValidationIssue] = field(default_factory=list)
    aspect_outcomes: Dict[Aspect, AspectOutcome] = field(default_factory=dict)
    validation_score: float = 100.0
    is_valid: bool = True
    validated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resource_hash: Optional[str] = None
    score_method: str = "tiered"

    @property
    def resource_key(self) -> Optional[str]:
        if not self.resource_type or not self.resource_id:
            return None
        return f"{self.resource_type}/{self.resource_id}"

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.is_error)

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == Severity.WARNING)

    @property
    def information_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == Severity.INFORMATION)

    def issues_for(self, aspect: Aspect) -> List[ValidationIssue]:
        outcome = self.aspect_outcomes.get(aspect)
        return list(outcome.issues) if outcome else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "issues": [issue.to_dict() for issue in self.issues],
            "aspectOutcomes": {
                aspect.value: outcome.to_dict()
                for aspect, outcome in self.aspect_outcomes.items()
            },
            "validationScore": self.validation_score,
            "isValid": self.is_valid,
            "validatedAt": self.validated_at.isoformat(),
            "resourceHash": self.resource_hash,
            "scoreMethod": self.score_method,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationResult":
        validated_at = data.get("validatedAt")
        if isinstance(validated_at, str):
            validated_at = datetime.fromisoformat(validated_at)
        return cls(
            resource_type=data.get("resourceType"),
            resource_id=data.get("resourceId"),
            issues=[ValidationIssue.from_dict(i) for i in data.get("issues", [])],
            aspect_outcomes={
                Aspect(name): AspectOutcome.from_dict(outcome)
                for name, outcome in data.get("aspectOutcomes", {}).items()
            },
            validation_score=data.get("validationScore", 0.0),
            is_valid=data.get("isValid", False),
            validated_at=validated_at or datetime.now(timezone.utc),
            resource_hash=data.get("resourceHash"),
            score_method=data.get("scoreMethod", "tiered"),
        )
