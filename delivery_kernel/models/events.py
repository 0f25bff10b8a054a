"""Kernel Events — what external observers (notifications, dashboards) can subscribe to."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class EventType(str, Enum):
    CHECKPOINT_CREATED = "checkpoint.created"
    CHECKPOINT_RESTORED = "checkpoint.restored"
    CHECKPOINT_INVALIDATED = "checkpoint.invalidated"
    REVIEW_STARTED = "review.started"
    REVIEW_PHASE_COMPLETED = "review.phase_completed"
    REVIEW_COMPLETED = "review.completed"
    POLICY_PROMOTED = "policy.promoted"
    POLICY_DEMOTED = "policy.demoted"


class KernelEvent(BaseModel):
    id: str
    type: EventType
    subject_id: Optional[str] = None        # checkpoint, review or policy id
    payload: dict = {}
    occurred_at: datetime
