"""Review Model — analyzer reports consumed by the Quality Gate and the result it produces."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class Grade(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"


# --- Analyzer report shapes (produced externally) ---

class CodeIssue(BaseModel):
    id: str
    severity: Severity
    category: str                           # "security" | "quality" | "performance" | ...
    file: str
    line: Optional[int] = None
    column: Optional[int] = None
    message: str
    rule: Optional[str] = None
    suggestion: Optional[str] = None


class QualityMetrics(BaseModel):
    static_type_strictness: bool = False
    error_handling_coverage: float = Field(ge=0, le=100, default=0.0)
    security_score: float = Field(ge=0, le=100, default=0.0)
    maintainability_index: float = Field(ge=0, default=0.0)
    duplicate_code_percent: float = Field(ge=0, le=100, default=0.0)
    # When the linter does not measure docs directly, maintainability stands in.
    api_documentation: Optional[float] = Field(ge=0, le=100, default=None)


class QualityReport(BaseModel):
    overall_score: float = Field(ge=0, le=100)
    total_files: int = 0
    issues: List[CodeIssue] = []
    metrics: QualityMetrics = QualityMetrics()
    recommendations: List[str] = []


class Requirement(BaseModel):
    id: str
    category: str
    description: str
    priority: Severity = Severity.MEDIUM
    status: str = "unknown"                 # "implemented" | "partial" | "missing" | "unknown"
    coverage: float = 0.0


class RequirementsReport(BaseModel):
    overall_coverage: float = Field(ge=0, le=100)
    total_requirements: int = 0
    implemented_requirements: int = 0
    partial_requirements: int = 0
    missing_requirements: int = 0
    critical_missing: List[Requirement] = []
    recommendations: List[str] = []


class UncoveredModule(BaseModel):
    path: str
    priority: Severity = Severity.MEDIUM
    reason: str = ""


class CoverageMetrics(BaseModel):
    lines: float = Field(ge=0, le=100)
    statements: float = Field(ge=0, le=100, default=0.0)
    branches: float = Field(ge=0, le=100, default=0.0)
    functions: float = Field(ge=0, le=100, default=0.0)


class CoverageReport(BaseModel):
    test_coverage: float = Field(ge=0, le=100)
    has_test_framework: bool = True
    total_tests: int = 0
    uncovered_modules: List[UncoveredModule] = []
    coverage_metrics: Optional[CoverageMetrics] = None
    recommendations: List[str] = []

    @property
    def line_coverage(self) -> float:
        """Measured line coverage when available, otherwise the file-level estimate."""
        if self.coverage_metrics is not None:
            return self.coverage_metrics.lines
        return self.test_coverage


# --- Gate output ---

class CriterionResult(BaseModel):
    """One named success criterion."""
    value: Union[bool, float]
    threshold: Union[bool, float]
    passed: bool
    degraded: bool = False                  # Analyzer input was unavailable


class RewardApplication(BaseModel):
    agent_id: str
    agent_type: str
    policy_id: str
    reward: float = Field(ge=-1.0, le=1.0)
    reason: str


class ReviewResult(BaseModel):
    """
    Outcome of one milestone review. Immutable after creation; persisted as an audit trail.
    """

    id: str
    project_id: str
    milestone: str
    created_at: datetime
    duration_seconds: float = 0.0

    criteria: Dict[str, CriterionResult]
    score: int = Field(ge=0, le=100)
    grade: Grade
    overall_pass: bool

    critical_fixes: List[str] = []
    recommended_fixes: List[str] = []
    rewards_applied: List[RewardApplication] = []

    reviewer_agent_id: Optional[str] = None
    reviewer_policy_id: Optional[str] = None
    self_reward: Optional[float] = None

    requirements_report: Optional[RequirementsReport] = None
    quality_report: Optional[QualityReport] = None
    coverage_report: Optional[CoverageReport] = None
    degraded_inputs: List[str] = []

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None
