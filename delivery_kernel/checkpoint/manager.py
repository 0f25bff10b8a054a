"""
Checkpoint & Recovery Manager — snapshot agents so they can resume after a crash.

Behavioral Contract:
- A checkpoint is written once; afterwards it can only be invalidated
  (one way) or have its restore counter bumped.
- After every write the agent's history is pruned to the newest
  max_checkpoints_per_agent records. Pruning failures are logged, never raised.
- Restoring requires a valid checkpoint; anything else raises
  CheckpointNotRestorableError and changes nothing.
- Auto-checkpointing runs as an asyncio task per agent. A failing tick is
  logged and the next tick still happens. Stopping prevents future ticks but
  lets a write already in flight finish. shutdown() also writes one final
  shutdown checkpoint per agent.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from croniter import croniter

from delivery_kernel.agents.registry import AgentRegistry
from delivery_kernel.checkpoint.file_state import capture_file_state, compare_file_state
from delivery_kernel.checkpoint.payloads import upgrade_file_state, wrap_state
from delivery_kernel.checkpoint.store import CheckpointStore
from delivery_kernel.errors import CheckpointNotRestorableError, NotFoundError
from delivery_kernel.events.bus import EventBus
from delivery_kernel.models.checkpoint import (
    Checkpoint,
    CheckpointStats,
    CheckpointType,
    FileStateDiff,
    FileStateSnapshot,
    RestoreResult,
)
from delivery_kernel.models.config import CheckpointConfig
from delivery_kernel.models.events import EventType

logger = logging.getLogger(__name__)

StateProvider = Callable[[], Union[dict, Awaitable[dict]]]


class CheckpointManager:
    """Creates, prunes, restores and invalidates agent checkpoints."""

    def __init__(
        self,
        store: CheckpointStore,
        config: Optional[CheckpointConfig] = None,
        registry: Optional[AgentRegistry] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.config = config or CheckpointConfig()
        self.registry = registry
        self.event_bus = event_bus
        self._auto: Dict[str, Tuple[asyncio.Task, asyncio.Event, StateProvider]] = {}

    def _emit(self, event_type: EventType, checkpoint: Checkpoint, **extra: Any) -> None:
        if self.event_bus is None:
            return
        payload = {
            "agent_id": checkpoint.agent_id,
            "project_id": checkpoint.project_id,
            "task_id": checkpoint.task_id,
            "checkpoint_type": checkpoint.checkpoint_type.value,
        }
        payload.update(extra)
        self.event_bus.emit(event_type, subject_id=checkpoint.id, payload=payload)

    # --- Creation ---

    def create_checkpoint(
        self,
        agent_id: str,
        state: Optional[dict],
        task_id: Optional[str] = None,
        file_state: Optional[Union[FileStateSnapshot, dict]] = None,
        conversation_summary: Optional[str] = None,
        recovery_instructions: Optional[str] = None,
        checkpoint_type: CheckpointType = CheckpointType.MANUAL,
        project_id: Optional[str] = None,
    ) -> Checkpoint:
        """
        Write a checkpoint, then prune the agent's history.

        A failed write propagates; a failed prune is only logged.
        """
        if project_id is None and self.registry is not None:
            agent = self.registry.get_agent(agent_id)
            if agent is not None:
                project_id = agent.project_id

        if isinstance(file_state, dict):
            file_state = upgrade_file_state(file_state)

        checkpoint = Checkpoint(
            id=f"ckpt_{uuid4().hex[:12]}",
            agent_id=agent_id,
            project_id=project_id,
            task_id=task_id,
            checkpoint_type=CheckpointType(checkpoint_type),
            state=wrap_state(state),
            file_state=file_state,
            conversation_summary=conversation_summary,
            recovery_instructions=recovery_instructions,
            created_at=datetime.now(timezone.utc),
        )
        self.store.insert(checkpoint)

        try:
            pruned = self.store.prune(agent_id, self.config.max_checkpoints_per_agent)
            if pruned:
                logger.debug("Pruned %d old checkpoints for agent %s", pruned, agent_id)
        except Exception:
            logger.warning(
                "Checkpoint pruning failed for agent %s", agent_id,
                exc_info=True, extra={"kernel_agent_id": agent_id},
            )

        self._emit(EventType.CHECKPOINT_CREATED, checkpoint)
        return checkpoint

    def create_pre_risky_checkpoint(
        self,
        agent_id: str,
        state: Optional[dict],
        operation: str,
        task_id: Optional[str] = None,
        file_state: Optional[Union[FileStateSnapshot, dict]] = None,
    ) -> Checkpoint:
        """Snapshot taken right before an operation that may need rolling back."""
        return self.create_checkpoint(
            agent_id,
            state,
            task_id=task_id,
            file_state=file_state,
            recovery_instructions=f"Restore this checkpoint if operation '{operation}' fails.",
            checkpoint_type=CheckpointType.PRE_RISKY,
        )

    def create_task_complete_checkpoint(
        self,
        agent_id: str,
        state: Optional[dict],
        task_id: str,
        summary: Optional[str] = None,
    ) -> Checkpoint:
        return self.create_checkpoint(
            agent_id,
            state,
            task_id=task_id,
            conversation_summary=summary,
            recovery_instructions=f"Task {task_id} completed; ready for next task after {task_id}.",
            checkpoint_type=CheckpointType.TASK_COMPLETE,
        )

    # --- Restore / invalidate ---

    def restore_from_checkpoint(self, checkpoint_id: str) -> RestoreResult:
        """
        Resume from a valid checkpoint.

        Bumps restored_count, stamps last_restored_at and resets the owning
        agent to idle with the recovered state attached.
        """
        checkpoint = self.store.get(checkpoint_id)
        if checkpoint is None or not checkpoint.is_valid:
            raise CheckpointNotRestorableError(checkpoint_id)

        # Conditional update: an invalidation racing with us wins cleanly
        if not self.store.record_restore(checkpoint_id, datetime.now(timezone.utc)):
            raise CheckpointNotRestorableError(checkpoint_id)

        checkpoint = self.store.get(checkpoint_id)
        state = checkpoint.state.data
        if self.registry is not None:
            self.registry.mark_recovered(checkpoint.agent_id, state)

        restored_file_count = len(checkpoint.file_state.files) if checkpoint.file_state else 0
        logger.info(
            "Agent %s restored from checkpoint %s (restore #%d)",
            checkpoint.agent_id, checkpoint_id, checkpoint.restored_count,
            extra={"kernel_agent_id": checkpoint.agent_id},
        )
        self._emit(
            EventType.CHECKPOINT_RESTORED, checkpoint,
            restored_count=checkpoint.restored_count,
        )
        return RestoreResult(
            checkpoint=checkpoint,
            state=state,
            restored_file_count=restored_file_count,
        )

    def invalidate_checkpoint(self, checkpoint_id: str, reason: Optional[str] = None) -> Checkpoint:
        """Mark a checkpoint as known-bad. Invalidating twice is a no-op."""
        checkpoint = self.store.get(checkpoint_id)
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint {checkpoint_id} not found")
        if self.store.invalidate(checkpoint_id, reason):
            checkpoint = self.store.get(checkpoint_id)
            self._emit(EventType.CHECKPOINT_INVALIDATED, checkpoint, reason=reason)
        return checkpoint

    # --- Queries ---

    def get_latest_checkpoint(self, agent_id: str) -> Optional[Checkpoint]:
        latest = self.store.list_for_agent(agent_id, limit=1)
        return latest[0] if latest else None

    def get_checkpoints(self, agent_id: str) -> List[Checkpoint]:
        return self.store.list_for_agent(agent_id)

    def get_checkpoint_stats(self, project_id: Optional[str] = None) -> CheckpointStats:
        return self.store.stats(project_id)

    def capture_file_state(self, working_directory: str) -> FileStateSnapshot:
        return capture_file_state(working_directory, self.config.excluded_dirs)

    def compare_file_state(self, snapshot: FileStateSnapshot, working_directory: str) -> FileStateDiff:
        return compare_file_state(snapshot, working_directory, self.config.excluded_dirs)

    # --- Automatic checkpoints ---

    def _next_delay(self) -> float:
        """Seconds until the next auto tick: cron schedule if set, else the fixed interval."""
        if self.config.schedule:
            now = datetime.now(timezone.utc)
            next_fire = croniter(self.config.schedule, now).get_next(datetime)
            return max(0.0, (next_fire - now).total_seconds())
        return self.config.interval_seconds

    def start_auto_checkpoint(self, agent_id: str, state_provider: StateProvider) -> asyncio.Task:
        """
        Checkpoint an agent periodically on the running event loop.

        Restarting for an agent that already has a timer replaces it.
        """
        # Fail fast on a bad cron expression instead of inside the task
        self._next_delay()
        if agent_id in self._auto:
            self.stop_auto_checkpoint(agent_id)

        stop_event = asyncio.Event()
        task = asyncio.get_running_loop().create_task(
            self._run_auto(agent_id, state_provider, stop_event),
            name=f"auto-checkpoint-{agent_id}",
        )
        self._auto[agent_id] = (task, stop_event, state_provider)
        return task

    def stop_auto_checkpoint(self, agent_id: str) -> bool:
        """Cancel future ticks. A write already in progress is allowed to finish."""
        entry = self._auto.pop(agent_id, None)
        if entry is None:
            return False
        entry[1].set()
        return True

    def stop_all(self) -> None:
        for agent_id in list(self._auto):
            self.stop_auto_checkpoint(agent_id)

    async def shutdown(self) -> List[Checkpoint]:
        """
        Stop every timer, wait for in-flight ticks, then write one final
        shutdown checkpoint per agent from its state provider.

        A provider that fails is logged and skipped; the other agents still
        get their checkpoint.
        """
        entries = list(self._auto.items())
        self.stop_all()
        await asyncio.gather(*(task for _, (task, _, _) in entries), return_exceptions=True)

        written = []
        for agent_id, (_, _, state_provider) in entries:
            checkpoint = await self._auto_tick(
                agent_id, state_provider, checkpoint_type=CheckpointType.SHUTDOWN
            )
            if checkpoint is not None:
                written.append(checkpoint)
        return written

    def is_auto_checkpointing(self, agent_id: str) -> bool:
        return agent_id in self._auto

    async def _run_auto(
        self, agent_id: str, state_provider: StateProvider, stop_event: asyncio.Event
    ) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._next_delay())
                break
            except asyncio.TimeoutError:
                pass
            await self._auto_tick(agent_id, state_provider)

    async def _auto_tick(
        self,
        agent_id: str,
        state_provider: StateProvider,
        checkpoint_type: CheckpointType = CheckpointType.AUTO,
    ) -> Optional[Checkpoint]:
        try:
            state = state_provider()
            if inspect.isawaitable(state):
                state = await state
            # The store is blocking; keep the agent's event loop free
            return await asyncio.to_thread(
                self.create_checkpoint, agent_id, state,
                checkpoint_type=checkpoint_type,
            )
        except Exception:
            logger.exception(
                "%s failed for agent %s",
                "Auto-checkpoint" if checkpoint_type == CheckpointType.AUTO else "Shutdown checkpoint",
                agent_id,
                extra={"kernel_agent_id": agent_id},
            )
            return None
