"""
Delivery Kernel API — FastAPI endpoints.

A thin façade over the kernel's operations for observers and tests:
- Policy registration, selection, outcomes and stats
- Agent registration
- Checkpoint creation, restore, invalidation and stats
- Milestone reviews and their audit chain
- Recent kernel events
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from delivery_kernel.agents.registry import AgentRegistry
from delivery_kernel.checkpoint.manager import CheckpointManager
from delivery_kernel.checkpoint.store import CheckpointStore
from delivery_kernel.config import load_config
from delivery_kernel.errors import ConflictError, InvalidStateError, NotFoundError
from delivery_kernel.events.bus import EventBus
from delivery_kernel.learning.outcome_store import OutcomeStore
from delivery_kernel.learning.selector import PolicySelector
from delivery_kernel.logging_setup import setup_logging
from delivery_kernel.models.agent import AgentStatus
from delivery_kernel.models.checkpoint import CheckpointType
from delivery_kernel.models.config import KernelConfig
from delivery_kernel.models.events import EventType
from delivery_kernel.models.policy import Outcome, PolicyStatus
from delivery_kernel.review.gate import QualityGate
from delivery_kernel.review.store import ReviewStore


# --- Request/Response Models ---

class PolicyCreateRequest(BaseModel):
    agent_type: str
    content: str
    status: PolicyStatus = PolicyStatus.EXPERIMENTAL
    variables: List[str] = []


class OutcomeRequest(BaseModel):
    outcome: Outcome
    reward: float
    project_id: Optional[str] = None
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    event_type: Optional[str] = None
    context: dict = {}


class AgentRegisterRequest(BaseModel):
    agent_id: str
    agent_type: str
    project_id: Optional[str] = None
    policy_id: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE


class CheckpointCreateRequest(BaseModel):
    agent_id: str
    state: dict = {}
    task_id: Optional[str] = None
    project_id: Optional[str] = None
    file_state: Optional[dict] = None
    conversation_summary: Optional[str] = None
    recovery_instructions: Optional[str] = None
    checkpoint_type: CheckpointType = CheckpointType.MANUAL


class InvalidateRequest(BaseModel):
    reason: Optional[str] = None


class ReviewRequest(BaseModel):
    project_id: str
    milestone: str
    criteria_overrides: Dict[str, Any] = {}


# --- Application Factory ---

def create_app(
    config: Optional[KernelConfig] = None,
    selector: Optional[PolicySelector] = None,
    checkpoint_manager: Optional[CheckpointManager] = None,
    registry: Optional[AgentRegistry] = None,
    quality_gate: Optional[QualityGate] = None,
    review_store: Optional[ReviewStore] = None,
    event_bus: Optional[EventBus] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.checkpoint_manager.shutdown()

    app = FastAPI(
        title="Delivery Kernel API",
        description="Policy selection, quality gating and checkpoint recovery for delivery agents",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Initialize components; a config read from the environment also sets up logging
    if config is None:
        config = load_config()
        setup_logging(config.log_format, config.log_level)
    cfg = config
    bus = event_bus or EventBus()
    reg = registry or AgentRegistry(cfg.database_path)
    sel = selector or PolicySelector(
        OutcomeStore(cfg.database_path, max_write_retries=cfg.selector.max_write_retries),
        cfg.selector,
        event_bus=bus,
    )
    cm = checkpoint_manager or CheckpointManager(
        CheckpointStore(cfg.database_path), cfg.checkpoint, registry=reg, event_bus=bus,
    )
    rs = review_store or ReviewStore(cfg.database_path)
    gate = quality_gate or QualityGate(
        sel, registry=reg, review_store=rs, event_bus=bus, criteria=cfg.criteria,
    )

    # Store components on app state for access in endpoints
    app.state.config = cfg
    app.state.event_bus = bus
    app.state.registry = reg
    app.state.selector = sel
    app.state.checkpoint_manager = cm
    app.state.review_store = rs
    app.state.quality_gate = gate

    @app.exception_handler(NotFoundError)
    def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateError)
    def handle_invalid_state(request: Request, exc: InvalidStateError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    def handle_conflict(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # === POLICIES ===

    @app.post("/policies")
    def register_policy(req: PolicyCreateRequest):
        """Register the next version of a policy."""
        policy = sel.register_policy(req.agent_type, req.content, req.status, req.variables)
        return policy.model_dump(mode="json")

    @app.get("/policies/{agent_type}/select")
    def select_policy(agent_type: str):
        """Thompson-sample a policy. `policy` is null when the type has none."""
        policy = sel.select_policy(agent_type)
        return {"policy": policy.model_dump(mode="json") if policy else None}

    @app.post("/policies/{policy_id}/outcomes")
    def record_outcome(policy_id: str, req: OutcomeRequest):
        policy = sel.record_outcome(
            policy_id,
            req.outcome,
            req.reward,
            project_id=req.project_id,
            agent_id=req.agent_id,
            task_id=req.task_id,
            event_type=req.event_type,
            context=req.context,
        )
        return policy.model_dump(mode="json")

    @app.get("/policies/{agent_type}/stats")
    def get_policy_stats(agent_type: str):
        return [s.model_dump(mode="json") for s in sel.get_policy_stats(agent_type)]

    @app.get("/policies/{agent_type}/comparison")
    def get_policy_comparison(agent_type: str):
        return sel.get_policy_comparison(agent_type).model_dump(mode="json")

    # === AGENTS ===

    @app.post("/agents")
    def register_agent(req: AgentRegisterRequest):
        agent = reg.register_agent(
            req.agent_id,
            req.agent_type,
            project_id=req.project_id,
            policy_id=req.policy_id,
            status=req.status,
        )
        return agent.model_dump(mode="json")

    # === CHECKPOINTS ===

    @app.post("/checkpoints")
    def create_checkpoint(req: CheckpointCreateRequest):
        checkpoint = cm.create_checkpoint(
            req.agent_id,
            req.state,
            task_id=req.task_id,
            file_state=req.file_state,
            conversation_summary=req.conversation_summary,
            recovery_instructions=req.recovery_instructions,
            checkpoint_type=req.checkpoint_type,
            project_id=req.project_id,
        )
        return checkpoint.model_dump(mode="json")

    @app.get("/checkpoints/stats")
    def get_checkpoint_stats(project_id: Optional[str] = None):
        return cm.get_checkpoint_stats(project_id).model_dump(mode="json")

    @app.post("/checkpoints/{checkpoint_id}/restore")
    def restore_checkpoint(checkpoint_id: str):
        return cm.restore_from_checkpoint(checkpoint_id).model_dump(mode="json")

    @app.post("/checkpoints/{checkpoint_id}/invalidate")
    def invalidate_checkpoint(checkpoint_id: str, req: InvalidateRequest):
        return cm.invalidate_checkpoint(checkpoint_id, req.reason).model_dump(mode="json")

    # === REVIEWS ===

    @app.post("/reviews")
    def run_review(req: ReviewRequest):
        """Review a milestone with whatever analyzers the gate was built with."""
        result = gate.run_review(req.project_id, req.milestone, req.criteria_overrides or None)
        return result.model_dump(mode="json")

    @app.get("/reviews/verify")
    def verify_reviews():
        """Verify the review chain."""
        return {
            "integrity_valid": rs.verify_chain_integrity(),
            "total_records": rs.count(),
        }

    @app.get("/reviews/{review_id}")
    def get_review(review_id: str):
        result = rs.get_by_id(review_id)
        if not result:
            raise HTTPException(404, "Review not found")
        return result.model_dump(mode="json")

    # === EVENTS ===

    @app.get("/events")
    def get_events(limit: int = 50, type: Optional[EventType] = None):
        """Recent kernel events, oldest first."""
        return [e.model_dump(mode="json") for e in bus.recent(limit, type)]

    return app
