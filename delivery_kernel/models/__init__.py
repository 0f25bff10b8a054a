"""Delivery Kernel data models."""

from delivery_kernel.models.agent import AgentRecord, AgentStatus
from delivery_kernel.models.checkpoint import (
    AgentCheckpointStats,
    Checkpoint,
    CheckpointStats,
    CheckpointType,
    FileFingerprint,
    FileStateDiff,
    FileStateSnapshot,
    RestoreResult,
    StatePayload,
)
from delivery_kernel.models.config import (
    CheckpointConfig,
    KernelConfig,
    LifecycleThresholds,
    SelectorConfig,
    SuccessCriteria,
)
from delivery_kernel.models.events import EventType, KernelEvent
from delivery_kernel.models.policy import (
    LearningEvent,
    Outcome,
    Policy,
    PolicyComparison,
    PolicyStats,
    PolicyStatus,
    StatusTransition,
)
from delivery_kernel.models.review import (
    CodeIssue,
    CoverageMetrics,
    CoverageReport,
    CriterionResult,
    Grade,
    QualityMetrics,
    QualityReport,
    Requirement,
    RequirementsReport,
    ReviewResult,
    RewardApplication,
    Severity,
    UncoveredModule,
)

__all__ = [
    "AgentCheckpointStats",
    "AgentRecord",
    "AgentStatus",
    "Checkpoint",
    "CheckpointConfig",
    "CheckpointStats",
    "CheckpointType",
    "CodeIssue",
    "CoverageMetrics",
    "CoverageReport",
    "CriterionResult",
    "EventType",
    "FileFingerprint",
    "FileStateDiff",
    "FileStateSnapshot",
    "Grade",
    "KernelConfig",
    "KernelEvent",
    "LearningEvent",
    "LifecycleThresholds",
    "Outcome",
    "Policy",
    "PolicyComparison",
    "PolicyStats",
    "PolicyStatus",
    "QualityMetrics",
    "QualityReport",
    "Requirement",
    "RequirementsReport",
    "RestoreResult",
    "ReviewResult",
    "RewardApplication",
    "SelectorConfig",
    "Severity",
    "StatePayload",
    "StatusTransition",
    "SuccessCriteria",
    "UncoveredModule",
]
