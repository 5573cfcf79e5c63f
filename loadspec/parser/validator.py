"""Structural acceptance gate for produced load test specifications.

``CommandValidator`` runs an ordered list of independent rules over a
``LoadTestSpec``. A spec is valid when no rule reports an error; it can
proceed when no error is critical.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from loadspec.parser.models import LoadPatternType, LoadTestSpec, TestType
from loadspec.utils import clamp, unique

MAX_VIRTUAL_USERS = 10_000
MAX_REQUESTS_PER_SECOND = 1_000
MIN_DURATION_SECONDS = 10
MAX_DURATION_SECONDS = 3_600

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_PLACEHOLDER_HOSTS = ("example.com", "api.example.com")
_PLACEHOLDER_PATHS = ("/api/endpoint",)


class IssueType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    SUGGESTION = "suggestion"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ValidationIssue(BaseModel):
    type: IssueType
    field: str
    message: str
    suggestion: str = ""
    severity: Severity = Severity.MEDIUM


class ValidationContext(BaseModel):
    """What the validator knows about how the spec was produced."""
    original_input: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    ambiguities: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    can_proceed: bool
    confidence: float = Field(ge=0.0, le=1.0)
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    issues: list[ValidationIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{'valid' if self.is_valid else 'invalid'}: {len(self.errors)} error(s), "
            f"{len(self.warnings)} warning(s)"
        )


Rule = Callable[[LoadTestSpec], list[ValidationIssue]]


@dataclass(frozen=True)
class ValidationRule:
    name: str
    check: Rule


def _error(field: str, message: str, suggestion: str = "", severity: Severity = Severity.HIGH) -> ValidationIssue:
    return ValidationIssue(
        type=IssueType.ERROR, field=field, message=message, suggestion=suggestion, severity=severity
    )


def _warning(field: str, message: str, suggestion: str = "") -> ValidationIssue:
    return ValidationIssue(
        type=IssueType.WARNING, field=field, message=message, suggestion=suggestion, severity=Severity.MEDIUM
    )


def _suggestion(field: str, message: str, suggestion: str = "") -> ValidationIssue:
    return ValidationIssue(
        type=IssueType.SUGGESTION, field=field, message=message, suggestion=suggestion, severity=Severity.LOW
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def check_required_fields(spec: LoadTestSpec) -> list[ValidationIssue]:
    issues = []
    if not spec.id:
        issues.append(_error("id", "Test ID is required", "Generate a unique test identifier", Severity.CRITICAL))
    if not spec.name:
        issues.append(_error("name", "Test name is required", "Give the test a descriptive name"))
    if not spec.requests:
        issues.append(_error(
            "requests", "At least one request is required",
            "Describe the endpoint to test", Severity.CRITICAL,
        ))
    return issues


def _is_valid_url(url: str) -> bool:
    if url.startswith("/"):
        return True
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def check_url_format(spec: LoadTestSpec) -> list[ValidationIssue]:
    issues = []
    for index, request in enumerate(spec.requests):
        field = f"requests[{index}].url"
        url = request.url.strip()
        if not url:
            issues.append(_error(field, "Request URL is required", "Provide a full URL", Severity.CRITICAL))
            continue
        if not _is_valid_url(url):
            issues.append(_warning(field, f"URL {url!r} is not a valid absolute or path URL",
                                   "Use a URL such as https://api.example.com/resource"))
        host = urlparse(url).hostname or ""
        if host in _PLACEHOLDER_HOSTS or any(url.endswith(p) for p in _PLACEHOLDER_PATHS):
            issues.append(_warning(field, f"URL {url!r} looks like a placeholder",
                                   "Replace it with the real endpoint under test"))
    return issues


def check_load_parameters(spec: LoadTestSpec) -> list[ValidationIssue]:
    issues = []
    pattern = spec.load_pattern
    users, rps = pattern.virtual_users, pattern.requests_per_second
    if users is None and rps is None:
        issues.append(_error(
            "loadPattern", "Either virtual users or requests per second is required",
            "Specify how many users to simulate", Severity.CRITICAL,
        ))
    if users is not None:
        if users <= 0:
            issues.append(_error("loadPattern.virtualUsers", "Virtual users must be positive"))
        elif users > MAX_VIRTUAL_USERS:
            issues.append(_warning("loadPattern.virtualUsers",
                                   f"{users} virtual users is very high",
                                   "Confirm the load generator can sustain this"))
    if rps is not None:
        if rps <= 0:
            issues.append(_error("loadPattern.requestsPerSecond", "Requests per second must be positive"))
        elif rps > MAX_REQUESTS_PER_SECOND:
            issues.append(_warning("loadPattern.requestsPerSecond",
                                   f"{rps:g} requests per second is very high"))
    if pattern.type == LoadPatternType.RAMP_UP and pattern.ramp_up_time is None:
        issues.append(_warning("loadPattern.rampUpTime", "Ramp-up pattern without a ramp-up time",
                               "Add a rampUpTime such as 2 minutes"))
    return issues


def check_payload_structure(spec: LoadTestSpec) -> list[ValidationIssue]:
    issues = []
    for index, request in enumerate(spec.requests):
        field = f"requests[{index}].payload"
        payload = request.payload
        if payload is None or not payload.template.strip():
            if request.method.value in ("POST", "PUT", "PATCH"):
                issues.append(_suggestion(field, f"{request.method.value} request has no payload",
                                          "Add a request body if the endpoint expects one"))
            continue
        placeholders = set(_PLACEHOLDER.findall(payload.template))
        substituted = _PLACEHOLDER.sub("0", payload.template)
        stripped = substituted.strip()
        if stripped.startswith(("{", "[")):
            try:
                json.loads(substituted)
            except (json.JSONDecodeError, ValueError):
                issues.append(_error(f"{field}.template", "Payload template is not valid JSON",
                                     "Fix quoting and commas in the body"))
        declared = {v.name for v in payload.variables}
        for name in sorted(placeholders - declared):
            issues.append(_warning(f"{field}.variables", f"Placeholder {{{{{name}}}}} has no variable definition"))
        for name in sorted(declared - placeholders):
            issues.append(_suggestion(f"{field}.variables", f"Variable {name!r} is not used by the template"))
    return issues


def check_duration(spec: LoadTestSpec) -> list[ValidationIssue]:
    if spec.duration is None:
        return [_error("duration", "Test duration is required", "Add a duration such as 5 minutes",
                       Severity.CRITICAL)]
    seconds = spec.duration.total_seconds()
    if seconds <= 0:
        return [_error("duration", "Test duration must be positive")]
    if seconds < MIN_DURATION_SECONDS:
        return [_warning("duration", f"Duration of {seconds:g}s is too short for meaningful results",
                         "Run for at least 30 seconds")]
    if seconds > MAX_DURATION_SECONDS:
        return [_warning("duration", f"Duration of {seconds:g}s exceeds one hour")]
    return []


def check_test_type_consistency(spec: LoadTestSpec) -> list[ValidationIssue]:
    pattern = spec.load_pattern
    if spec.test_type == TestType.SPIKE and pattern.type != LoadPatternType.SPIKE:
        return [_warning("loadPattern.type", "Spike test without a spike load pattern",
                         "Use loadPattern.type 'spike'")]
    if spec.test_type == TestType.STRESS and pattern.type == LoadPatternType.CONSTANT:
        return [_suggestion("loadPattern.type", "Stress tests usually ramp load up",
                            "Use loadPattern.type 'ramp-up'")]
    return []


def check_workflow_integrity(spec: LoadTestSpec) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    step_ids = [step.id for step in spec.workflow or []]
    for step_id in sorted({s for s in step_ids if step_ids.count(s) > 1}):
        issues.append(_error("workflow", f"Duplicate workflow step id {step_id!r}"))
    known = set(step_ids)
    for rule in spec.data_correlation or []:
        for step in (rule.source_step, rule.target_step):
            if step not in known:
                issues.append(_error("dataCorrelation", f"Correlation references unknown step {step!r}"))
    return issues


DEFAULT_RULES: tuple[ValidationRule, ...] = (
    ValidationRule("required-fields", check_required_fields),
    ValidationRule("url-format", check_url_format),
    ValidationRule("load-parameters", check_load_parameters),
    ValidationRule("payload-structure", check_payload_structure),
    ValidationRule("duration-validity", check_duration),
    ValidationRule("test-type-consistency", check_test_type_consistency),
    ValidationRule("workflow-integrity", check_workflow_integrity),
)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class CommandValidator:
    """Run every rule and summarise the result."""

    def __init__(self, rules: tuple[ValidationRule, ...] = DEFAULT_RULES) -> None:
        self.rules = rules

    def validate(self, spec: LoadTestSpec, context: Optional[ValidationContext] = None) -> ValidationResult:
        context = context or ValidationContext()
        issues: list[ValidationIssue] = []
        for rule in self.rules:
            issues.extend(rule.check(spec))

        errors = [i for i in issues if i.type == IssueType.ERROR]
        warnings = [i for i in issues if i.type == IssueType.WARNING]
        confidence = clamp(context.confidence - 0.2 * len(errors) - 0.1 * len(warnings))

        return ValidationResult(
            is_valid=not errors,
            can_proceed=not any(i.severity == Severity.CRITICAL for i in errors),
            confidence=confidence,
            errors=errors,
            warnings=warnings,
            issues=issues,
            suggestions=self._suggestions(issues, context),
        )

    @staticmethod
    def _suggestions(issues: list[ValidationIssue], context: ValidationContext) -> list[str]:
        hints = [issue.suggestion for issue in issues if issue.suggestion]
        if context.confidence < 0.5:
            hints.append("Provide a more specific command: method, full URL, user count, and duration")
        if context.ambiguities:
            hints.append(f"Clarify: {', '.join(context.ambiguities)}")
        return unique(hints)
