"""
Success criteria, scoring and fix generation for milestone reviews.

Nine criteria are evaluated in a fixed order. Missing analyzer input is never
treated as a pass: the affected criteria get a failing value and are marked
degraded.

Score (0-100):
  requirements_coverage   20  proportional
  code_quality_score      20  proportional
  test_coverage           15  proportional
  critical_issues         15  minus 5 per issue, floor 0
  high_issues              5  full within threshold, else 5 - count, floor 0
  security_vulnerabilities 10 all or nothing
  static_type_strictness   5  all or nothing
  error_handling_coverage  5  proportional
  api_documentation        5  proportional
"""

import math
from typing import Dict, List, Optional, Tuple

from delivery_kernel.models.config import SuccessCriteria
from delivery_kernel.models.review import (
    CodeIssue,
    CoverageReport,
    CriterionResult,
    Grade,
    QualityReport,
    RequirementsReport,
    Severity,
)

CRITERIA_ORDER = (
    "requirements_coverage",
    "code_quality_score",
    "test_coverage",
    "critical_issues",
    "high_issues",
    "security_vulnerabilities",
    "static_type_strictness",
    "error_handling_coverage",
    "api_documentation",
)

# Which analyzer report each criterion is computed from.
CRITERION_SOURCE = {
    "requirements_coverage": "requirements",
    "code_quality_score": "quality",
    "test_coverage": "coverage",
    "critical_issues": "quality",
    "high_issues": "quality",
    "security_vulnerabilities": "quality",
    "static_type_strictness": "quality",
    "error_handling_coverage": "quality",
    "api_documentation": "quality",
}

# Criteria where lower is better (value must stay <= threshold).
COUNT_CRITERIA = ("critical_issues", "high_issues", "security_vulnerabilities")
BOOLEAN_CRITERIA = ("static_type_strictness",)

CRITERION_LABELS = {
    "requirements_coverage": "Requirements Coverage",
    "code_quality_score": "Code Quality Score",
    "test_coverage": "Test Coverage",
    "critical_issues": "Critical Issues",
    "high_issues": "High Issues",
    "security_vulnerabilities": "Security Issues",
    "static_type_strictness": "Static Type Strictness",
    "error_handling_coverage": "Error Handling",
    "api_documentation": "API Documentation",
}

GRADE_BOUNDS = ((90, Grade.A), (80, Grade.B), (70, Grade.C), (60, Grade.D))
PASSING_SCORE = 70

MAX_COVERAGE_FIXES = 10
MAX_GENERAL_FIXES = 5


def critical_issue_count(quality: QualityReport) -> int:
    return sum(1 for i in quality.issues if i.severity == Severity.CRITICAL)


def high_issue_count(quality: QualityReport) -> int:
    return sum(1 for i in quality.issues if i.severity == Severity.HIGH)


def security_issue_count(quality: QualityReport) -> int:
    return sum(1 for i in quality.issues if i.category == "security")


def api_documentation_value(quality: QualityReport) -> float:
    """Measured API docs, or maintainability (capped at 100) when not measured."""
    if quality.metrics.api_documentation is not None:
        return quality.metrics.api_documentation
    return min(quality.metrics.maintainability_index, 100.0)


def _measure(name: str, requirements, quality, coverage):
    if name == "requirements_coverage":
        return requirements.overall_coverage
    if name == "code_quality_score":
        return quality.overall_score
    if name == "test_coverage":
        return coverage.line_coverage
    if name == "critical_issues":
        return critical_issue_count(quality)
    if name == "high_issues":
        return high_issue_count(quality)
    if name == "security_vulnerabilities":
        return security_issue_count(quality)
    if name == "static_type_strictness":
        return quality.metrics.static_type_strictness
    if name == "error_handling_coverage":
        return quality.metrics.error_handling_coverage
    if name == "api_documentation":
        return api_documentation_value(quality)
    raise KeyError(name)


def _degraded_value(name: str, threshold):
    """A value guaranteed to fail the criterion."""
    if name in BOOLEAN_CRITERIA:
        return not threshold
    if name in COUNT_CRITERIA:
        return threshold + 1
    return 0.0


def _passes(name: str, value, threshold) -> bool:
    if name in BOOLEAN_CRITERIA:
        return value == threshold
    if name in COUNT_CRITERIA:
        return value <= threshold
    return value >= threshold


def evaluate_criteria(
    requirements: Optional[RequirementsReport],
    quality: Optional[QualityReport],
    coverage: Optional[CoverageReport],
    criteria: Optional[SuccessCriteria] = None,
) -> Dict[str, CriterionResult]:
    """Evaluate all nine criteria. A None report degrades every criterion it feeds."""
    criteria = criteria or SuccessCriteria()
    reports = {"requirements": requirements, "quality": quality, "coverage": coverage}

    results = {}
    for name in CRITERIA_ORDER:
        threshold = getattr(criteria, name)
        if reports[CRITERION_SOURCE[name]] is None:
            results[name] = CriterionResult(
                value=_degraded_value(name, threshold),
                threshold=threshold,
                passed=False,
                degraded=True,
            )
            continue
        value = _measure(name, requirements, quality, coverage)
        results[name] = CriterionResult(
            value=value,
            threshold=threshold,
            passed=_passes(name, value, threshold),
        )
    return results


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_score(criteria: Dict[str, CriterionResult]) -> int:
    """Weighted 0-100 score, rounded half up."""
    score = 0.0
    score += criteria["requirements_coverage"].value / 100 * 20
    score += criteria["code_quality_score"].value / 100 * 20
    score += criteria["test_coverage"].value / 100 * 15

    score += 15 - min(criteria["critical_issues"].value * 5, 15)

    high = criteria["high_issues"]
    score += 5 if high.passed else max(0, 5 - high.value)

    score += 10 if criteria["security_vulnerabilities"].passed else 0
    score += 5 if criteria["static_type_strictness"].passed else 0
    score += criteria["error_handling_coverage"].value / 100 * 5
    score += criteria["api_documentation"].value / 100 * 5

    return round_half_up(max(0.0, min(100.0, score)))


def grade_for(score: int) -> Grade:
    for bound, grade in GRADE_BOUNDS:
        if score >= bound:
            return grade
    return Grade.F


def overall_pass(criteria: Dict[str, CriterionResult], score: int) -> bool:
    """
    Critical and security failures veto regardless of score, and so does
    any criterion whose analyzer input was unavailable.
    """
    return (
        not any(c.degraded for c in criteria.values())
        and criteria["critical_issues"].passed
        and criteria["security_vulnerabilities"].passed
        and score >= PASSING_SCORE
    )


def _location(issue: CodeIssue) -> str:
    return f"{issue.file}:{issue.line}" if issue.line else issue.file


def generate_fixes(
    requirements: Optional[RequirementsReport],
    quality: Optional[QualityReport],
    coverage: Optional[CoverageReport],
) -> Tuple[List[str], List[str]]:
    """
    Build (critical_fixes, recommended_fixes).

    Critical: critical-severity or security issues, then missing critical
    requirements. Recommended: high issues, then up to 10 untested files,
    then up to 5 general recommendations.
    """
    critical: List[str] = []
    recommended: List[str] = []

    if quality is not None:
        for issue in quality.issues:
            if issue.severity == Severity.CRITICAL or issue.category == "security":
                critical.append(f"[CRITICAL] {_location(issue)} - {issue.message}")
    if requirements is not None:
        for req in requirements.critical_missing:
            critical.append(f"[CRITICAL] Missing requirement: {req.description}")

    if quality is not None:
        for issue in quality.issues:
            if issue.severity == Severity.HIGH:
                recommended.append(f"[HIGH] {_location(issue)} - {issue.message}")
    if coverage is not None:
        for module in coverage.uncovered_modules[:MAX_COVERAGE_FIXES]:
            recommended.append(f"[MEDIUM] Add tests for: {module.path}")
    if quality is not None:
        for rec in quality.recommendations[:MAX_GENERAL_FIXES]:
            recommended.append(f"[LOW] {rec}")

    return critical, recommended
