"""Agent Model — the minimal view of an agent the control loop needs."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class AgentStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


class AgentRecord(BaseModel):
    id: str
    project_id: Optional[str] = None
    agent_type: str                         # e.g., "developer", "tester", "qa"
    status: AgentStatus = AgentStatus.IDLE
    policy_id: Optional[str] = None         # Policy the agent was spawned with
    recovered_state: Optional[dict] = None  # Attached on checkpoint restore
    updated_at: datetime
