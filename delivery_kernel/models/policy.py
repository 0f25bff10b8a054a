"""Policy Model — versioned behavioral variants and the evidence gathered about them."""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


class PolicyStatus(str, Enum):
    EXPERIMENTAL = "experimental"
    CANDIDATE = "candidate"
    PRODUCTION = "production"
    DEPRECATED = "deprecated"


# Statuses that may be handed to an agent by the selector.
ELIGIBLE_STATUSES = (
    PolicyStatus.EXPERIMENTAL,
    PolicyStatus.CANDIDATE,
    PolicyStatus.PRODUCTION,
)


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class Policy(BaseModel):
    """A prompt variant assigned to an agent type, with its Beta(alpha, beta) belief."""

    id: str
    agent_type: str                         # e.g., "developer", "tester"
    version: int = Field(ge=1)
    status: PolicyStatus = PolicyStatus.EXPERIMENTAL
    content: str
    variables: List[str] = []
    alpha: float = Field(ge=1.0, default=1.0)
    beta: float = Field(ge=1.0, default=1.0)
    total_uses: int = Field(ge=0, default=0)
    successful_uses: int = Field(ge=0, default=0)
    created_at: datetime
    updated_at: datetime

    @property
    def success_rate(self) -> float:
        if self.total_uses == 0:
            return 0.0
        return self.successful_uses / self.total_uses

    @property
    def thompson_score(self) -> float:
        """Mean of the Beta belief."""
        return self.alpha / (self.alpha + self.beta)


class LearningEvent(BaseModel):
    """One scored contribution. Immutable once written."""

    id: str
    policy_id: str
    project_id: Optional[str] = None
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    event_type: str                         # e.g., "architect_review", "bug_found"
    outcome: Outcome
    reward: float = Field(ge=-1.0, le=1.0)
    context: dict = {}
    created_at: datetime


class PolicyStats(BaseModel):
    """Read-only aggregate for one policy version."""

    policy_id: str
    agent_type: str
    version: int
    status: PolicyStatus
    thompson_score: float
    total_uses: int
    successful_uses: int
    success_rate: float
    confidence_interval: Tuple[float, float]


class PolicyComparison(BaseModel):
    """Side-by-side view of every variant of one agent type."""

    agent_type: str
    total_policies: int
    production: Optional[PolicyStats] = None
    candidates: List[PolicyStats] = []
    experimental: List[PolicyStats] = []
    best_performer: Optional[PolicyStats] = None
    recommendations: List[str] = []


class StatusTransition(BaseModel):
    """A lifecycle change applied to a policy (promotion or demotion)."""

    policy_id: str
    agent_type: str
    from_status: PolicyStatus
    to_status: PolicyStatus
    reason: str
    replaced_policy_id: Optional[str] = None
