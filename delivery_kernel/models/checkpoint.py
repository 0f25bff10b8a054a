"""Checkpoint Model — immutable snapshots of agent runtime and file-system state."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

AGENT_STATE_SCHEMA_VERSION = 1
FILE_STATE_SCHEMA_VERSION = 1


class CheckpointType(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    PRE_RISKY = "pre_risky"
    TASK_COMPLETE = "task_complete"
    SHUTDOWN = "shutdown"


class StatePayload(BaseModel):
    """
    Versioned envelope around an agent's opaque state.

    Readers check schema_version and upgrade older payloads before use.
    """
    schema_version: int = AGENT_STATE_SCHEMA_VERSION
    kind: str = "agent_state"
    data: dict = {}


class FileFingerprint(BaseModel):
    """Cheap change detector for one file: size + modification time, not a content hash."""
    size: int = Field(ge=0)
    mtime: float


class FileStateSnapshot(BaseModel):
    """Path → fingerprint map for a working directory."""
    schema_version: int = FILE_STATE_SCHEMA_VERSION
    kind: str = "file_state"
    root: str
    captured_at: datetime
    files: Dict[str, FileFingerprint] = {}


class FileStateDiff(BaseModel):
    """Difference between a captured snapshot and the directory as it is now."""
    added: List[str] = []
    removed: List[str] = []
    modified: List[str] = []

    @property
    def unchanged(self) -> bool:
        return not (self.added or self.removed or self.modified)


class Checkpoint(BaseModel):
    """
    Append-only snapshot record.

    is_valid only ever moves True -> False; restored_count never decreases.
    """

    id: str
    agent_id: str
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    checkpoint_type: CheckpointType = CheckpointType.MANUAL
    state: StatePayload
    file_state: Optional[FileStateSnapshot] = None
    conversation_summary: Optional[str] = None
    recovery_instructions: Optional[str] = None
    created_at: datetime
    is_valid: bool = True
    invalidation_reason: Optional[str] = None
    restored_count: int = Field(ge=0, default=0)
    last_restored_at: Optional[datetime] = None


class RestoreResult(BaseModel):
    """What restore_from_checkpoint hands back to the caller."""
    checkpoint: Checkpoint
    state: dict
    restored_file_count: int


class AgentCheckpointStats(BaseModel):
    agent_id: str
    count: int
    valid: int
    restores: int
    latest_checkpoint_at: Optional[datetime] = None


class CheckpointStats(BaseModel):
    """Aggregate counts, optionally scoped to one project."""
    project_id: Optional[str] = None
    total: int = 0
    valid: int = 0
    total_restores: int = 0
    by_agent: List[AgentCheckpointStats] = []
