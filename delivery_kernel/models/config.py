"""Kernel configuration models."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class LifecycleThresholds(BaseModel):
    """
    Promotion/demotion rules for policies.

    These are tunable defaults, not discovered constants:
      experimental -> candidate:  >= candidate_min_uses at >= candidate_min_success_rate
      candidate -> production:    >= production_min_uses at >= production_min_success_rate
      production -> deprecated:   trailing success over the last demotion_window uses
                                  below demotion_max_success_rate
    """
    candidate_min_uses: int = Field(ge=1, default=20)
    candidate_min_success_rate: float = Field(ge=0, le=1, default=0.5)
    production_min_uses: int = Field(ge=1, default=50)
    production_min_success_rate: float = Field(ge=0, le=1, default=0.65)
    demotion_window: int = Field(ge=1, default=50)
    demotion_max_success_rate: float = Field(ge=0, le=1, default=0.4)


class SelectorConfig(BaseModel):
    """Configuration for the Thompson Sampling policy selector."""

    exploration_rate: float = Field(ge=0, le=1, default=0.1)
    candidate_rate: float = Field(ge=0, le=1, default=0.3)
    lifecycle: LifecycleThresholds = LifecycleThresholds()
    max_write_retries: int = Field(ge=1, default=5)


class CheckpointConfig(BaseModel):
    """Configuration for checkpointing and automatic snapshots."""

    interval_seconds: float = Field(gt=0, default=900.0)     # 15 minutes
    schedule: Optional[str] = None                            # Cron expression; overrides interval
    max_checkpoints_per_agent: int = Field(ge=1, default=10)
    excluded_dirs: List[str] = [
        ".git",
        ".hg",
        ".svn",
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        "dist",
        "build",
        "target",
        "coverage",
        ".next",
        ".tox",
        ".mypy_cache",
        ".pytest_cache",
    ]


class SuccessCriteria(BaseModel):
    """Thresholds a milestone must meet. Adjustable per project."""

    requirements_coverage: float = 90.0        # minimum %
    code_quality_score: float = 80.0           # minimum /100
    test_coverage: float = 70.0                # minimum %
    critical_issues: int = 0                   # maximum
    high_issues: int = 3                       # maximum
    security_vulnerabilities: int = 0          # maximum
    static_type_strictness: bool = True        # must equal
    error_handling_coverage: float = 90.0      # minimum %
    api_documentation: float = 80.0            # minimum %


class KernelConfig(BaseModel):
    """Top-level configuration for a kernel instance."""

    database_path: str = ":memory:"
    log_format: Literal["json", "text"] = "text"
    log_level: str = "INFO"
    selector: SelectorConfig = SelectorConfig()
    checkpoint: CheckpointConfig = CheckpointConfig()
    criteria: SuccessCriteria = SuccessCriteria()
