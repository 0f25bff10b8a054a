"""Tests for the Checkpoint & Recovery Manager."""

import asyncio
import logging
import sqlite3

import pytest

from delivery_kernel.agents.registry import AgentRegistry
from delivery_kernel.checkpoint.manager import CheckpointManager
from delivery_kernel.checkpoint.store import CheckpointStore
from delivery_kernel.errors import (
    CheckpointNotRestorableError,
    InvalidStateError,
    NotFoundError,
)
from delivery_kernel.events.bus import EventBus
from delivery_kernel.models.agent import AgentStatus
from delivery_kernel.models.checkpoint import CheckpointType
from delivery_kernel.models.config import CheckpointConfig
from delivery_kernel.models.events import EventType


def _make_state(step: int = 1) -> dict:
    return {
        "step": step,
        "task": {"id": "task_1", "files": ["a.py", "b.py"]},
        "notes": ["started", "halfway"],
        "progress": 0.5,
    }


class TestCheckpointCreation:
    def setup_method(self):
        self.store = CheckpointStore()
        self.registry = AgentRegistry()
        self.bus = EventBus()
        self.manager = CheckpointManager(
            self.store,
            CheckpointConfig(max_checkpoints_per_agent=3),
            registry=self.registry,
            event_bus=self.bus,
        )

    def test_create_checkpoint(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state(), task_id="task_1")

        assert checkpoint.id.startswith("ckpt_")
        assert checkpoint.is_valid is True
        assert checkpoint.restored_count == 0
        assert checkpoint.state.schema_version == 1
        stored = self.store.get(checkpoint.id)
        assert stored.state.data == _make_state()
        assert stored.task_id == "task_1"

    def test_pruning_keeps_most_recent(self):
        created = [self.manager.create_checkpoint("agent_1", _make_state(i)) for i in range(5)]

        remaining = self.manager.get_checkpoints("agent_1")

        assert len(remaining) == 3
        assert [c.id for c in remaining] == [c.id for c in reversed(created[2:])]

    def test_pruning_ignores_validity(self):
        first = self.manager.create_checkpoint("agent_1", _make_state(0))
        self.manager.invalidate_checkpoint(first.id, "bad")
        for i in range(3):
            self.manager.create_checkpoint("agent_1", _make_state(i + 1))

        assert self.store.get(first.id) is None
        assert len(self.manager.get_checkpoints("agent_1")) == 3

    def test_pruning_is_per_agent(self):
        for i in range(4):
            self.manager.create_checkpoint("agent_1", _make_state(i))
        self.manager.create_checkpoint("agent_2", _make_state())

        assert len(self.manager.get_checkpoints("agent_1")) == 3
        assert len(self.manager.get_checkpoints("agent_2")) == 1

    def test_pruning_failure_is_swallowed(self, monkeypatch, caplog):
        def broken_prune(agent_id, keep):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(self.store, "prune", broken_prune)
        with caplog.at_level(logging.WARNING, logger="delivery_kernel.checkpoint.manager"):
            checkpoint = self.manager.create_checkpoint("agent_1", _make_state())

        assert self.store.get(checkpoint.id) is not None
        assert any("pruning failed" in r.getMessage() for r in caplog.records)

    def test_write_failure_propagates(self, monkeypatch):
        def broken_insert(checkpoint):
            raise sqlite3.OperationalError("disk full")

        monkeypatch.setattr(self.store, "insert", broken_insert)
        with pytest.raises(sqlite3.OperationalError):
            self.manager.create_checkpoint("agent_1", _make_state())

    def test_project_resolved_from_registry(self):
        self.registry.register_agent("agent_1", "developer", project_id="proj_1")
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        assert checkpoint.project_id == "proj_1"

    def test_pre_risky_checkpoint(self):
        checkpoint = self.manager.create_pre_risky_checkpoint(
            "agent_1", _make_state(), operation="database migration"
        )
        assert checkpoint.checkpoint_type == CheckpointType.PRE_RISKY
        assert "database migration" in checkpoint.recovery_instructions
        assert "fails" in checkpoint.recovery_instructions

    def test_task_complete_checkpoint(self):
        checkpoint = self.manager.create_task_complete_checkpoint(
            "agent_1", _make_state(), task_id="task_7", summary="Built the login form"
        )
        assert checkpoint.checkpoint_type == CheckpointType.TASK_COMPLETE
        assert checkpoint.task_id == "task_7"
        assert "ready for next task" in checkpoint.recovery_instructions
        assert checkpoint.conversation_summary == "Built the login form"

    def test_created_event(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        events = self.bus.recent(event_type=EventType.CHECKPOINT_CREATED)
        assert events[-1].subject_id == checkpoint.id
        assert events[-1].payload["agent_id"] == "agent_1"

    def test_get_latest_checkpoint(self):
        assert self.manager.get_latest_checkpoint("agent_1") is None
        self.manager.create_checkpoint("agent_1", _make_state(1))
        latest = self.manager.create_checkpoint("agent_1", _make_state(2))
        assert self.manager.get_latest_checkpoint("agent_1").id == latest.id


class TestRestore:
    def setup_method(self):
        self.store = CheckpointStore()
        self.registry = AgentRegistry()
        self.bus = EventBus()
        self.manager = CheckpointManager(
            self.store, CheckpointConfig(), registry=self.registry, event_bus=self.bus
        )
        self.registry.register_agent(
            "agent_1", "developer", project_id="proj_1", status=AgentStatus.FAILED
        )

    def test_restore_valid_checkpoint(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())

        result = self.manager.restore_from_checkpoint(checkpoint.id)

        assert result.state == _make_state()
        assert result.checkpoint.restored_count == 1
        assert result.checkpoint.last_restored_at is not None
        assert result.restored_file_count == 0

    def test_restore_resets_agent(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        self.manager.restore_from_checkpoint(checkpoint.id)

        agent = self.registry.get_agent("agent_1")
        assert agent.status == AgentStatus.IDLE
        assert agent.recovered_state == _make_state()

    def test_restore_twice_counts_twice(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        self.manager.restore_from_checkpoint(checkpoint.id)
        result = self.manager.restore_from_checkpoint(checkpoint.id)
        assert result.checkpoint.restored_count == 2

    def test_restore_invalidated_checkpoint(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        self.manager.invalidate_checkpoint(checkpoint.id, "corrupted workspace")

        with pytest.raises(InvalidStateError):
            self.manager.restore_from_checkpoint(checkpoint.id)

        stored = self.store.get(checkpoint.id)
        assert stored.restored_count == 0
        assert stored.last_restored_at is None
        assert self.registry.get_agent("agent_1").status == AgentStatus.FAILED

    def test_restore_unknown_checkpoint(self):
        with pytest.raises(CheckpointNotRestorableError) as exc_info:
            self.manager.restore_from_checkpoint("ckpt_missing")
        assert exc_info.value.checkpoint_id == "ckpt_missing"
        assert "not found or invalid" in str(exc_info.value)

    def test_restore_counts_fingerprinted_files(self, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "b.txt").write_text("bb")
        snapshot = self.manager.capture_file_state(str(tmp_path))
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state(), file_state=snapshot)

        result = self.manager.restore_from_checkpoint(checkpoint.id)

        assert result.restored_file_count == 2

    def test_restored_event(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        self.manager.restore_from_checkpoint(checkpoint.id)
        events = self.bus.recent(event_type=EventType.CHECKPOINT_RESTORED)
        assert events[-1].payload["restored_count"] == 1


class TestInvalidate:
    def setup_method(self):
        self.store = CheckpointStore()
        self.bus = EventBus()
        self.manager = CheckpointManager(self.store, event_bus=self.bus)

    def test_invalidate(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        invalidated = self.manager.invalidate_checkpoint(checkpoint.id, "stale")

        assert invalidated.is_valid is False
        assert invalidated.invalidation_reason == "stale"

    def test_invalidate_is_idempotent(self):
        checkpoint = self.manager.create_checkpoint("agent_1", _make_state())
        self.manager.invalidate_checkpoint(checkpoint.id, "first")
        again = self.manager.invalidate_checkpoint(checkpoint.id, "second")

        assert again.is_valid is False
        assert again.invalidation_reason == "first"
        assert len(self.bus.recent(event_type=EventType.CHECKPOINT_INVALIDATED)) == 1

    def test_invalidate_unknown(self):
        with pytest.raises(NotFoundError):
            self.manager.invalidate_checkpoint("ckpt_missing")


class TestStats:
    def setup_method(self):
        self.store = CheckpointStore()
        self.manager = CheckpointManager(self.store, CheckpointConfig(max_checkpoints_per_agent=10))

    def test_stats(self):
        a1 = self.manager.create_checkpoint("agent_1", _make_state(), project_id="proj_1")
        self.manager.create_checkpoint("agent_1", _make_state(), project_id="proj_1")
        b1 = self.manager.create_checkpoint("agent_2", _make_state(), project_id="proj_1")
        self.manager.create_checkpoint("agent_3", _make_state(), project_id="proj_2")
        self.manager.restore_from_checkpoint(a1.id)
        self.manager.invalidate_checkpoint(b1.id)

        stats = self.manager.get_checkpoint_stats("proj_1")

        assert stats.total == 3
        assert stats.valid == 2
        assert stats.total_restores == 1
        by_agent = {a.agent_id: a for a in stats.by_agent}
        assert by_agent["agent_1"].count == 2
        assert by_agent["agent_1"].restores == 1
        assert by_agent["agent_2"].valid == 0
        assert by_agent["agent_1"].latest_checkpoint_at is not None

    def test_stats_across_projects(self):
        self.manager.create_checkpoint("agent_1", _make_state(), project_id="proj_1")
        self.manager.create_checkpoint("agent_3", _make_state(), project_id="proj_2")
        assert self.manager.get_checkpoint_stats().total == 2


class TestAutoCheckpoint:
    def setup_method(self):
        self.store = CheckpointStore()
        self.manager = CheckpointManager(
            self.store,
            CheckpointConfig(interval_seconds=0.01, max_checkpoints_per_agent=1000),
        )

    def test_ticks_create_auto_checkpoints(self):
        calls = []

        def provider():
            calls.append(1)
            return {"tick": len(calls)}

        async def scenario():
            task = self.manager.start_auto_checkpoint("agent_1", provider)
            await asyncio.sleep(0.15)
            assert self.manager.stop_auto_checkpoint("agent_1") is True
            await task

        asyncio.run(scenario())

        checkpoints = self.manager.get_checkpoints("agent_1")
        assert len(checkpoints) >= 2
        assert all(c.checkpoint_type == CheckpointType.AUTO for c in checkpoints)

    def test_failing_tick_does_not_stop_timer(self, caplog):
        calls = []

        async def provider():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("state capture failed")
            return {"tick": len(calls)}

        async def scenario():
            task = self.manager.start_auto_checkpoint("agent_1", provider)
            await asyncio.sleep(0.15)
            self.manager.stop_all()
            await task

        with caplog.at_level(logging.ERROR, logger="delivery_kernel.checkpoint.manager"):
            asyncio.run(scenario())

        assert len(calls) >= 2
        assert len(self.manager.get_checkpoints("agent_1")) == len(calls) - 1
        assert any("Auto-checkpoint failed" in r.getMessage() for r in caplog.records)

    def test_stop_prevents_future_ticks(self):
        async def scenario():
            task = self.manager.start_auto_checkpoint("agent_1", lambda: {"x": 1})
            await asyncio.sleep(0.05)
            self.manager.stop_auto_checkpoint("agent_1")
            await task
            count = len(self.manager.get_checkpoints("agent_1"))
            await asyncio.sleep(0.05)
            return count

        count_at_stop = asyncio.run(scenario())

        assert len(self.manager.get_checkpoints("agent_1")) == count_at_stop
        assert self.manager.is_auto_checkpointing("agent_1") is False

    def test_shutdown_writes_final_checkpoint_per_agent(self, caplog):
        manager = CheckpointManager(self.store, CheckpointConfig(interval_seconds=3600))

        async def failing():
            raise RuntimeError("state capture failed")

        async def scenario():
            manager.start_auto_checkpoint("agent_1", lambda: {"step": 7})
            manager.start_auto_checkpoint("agent_2", failing)
            return await manager.shutdown()

        with caplog.at_level(logging.ERROR, logger="delivery_kernel.checkpoint.manager"):
            written = asyncio.run(scenario())

        assert [c.agent_id for c in written] == ["agent_1"]
        assert written[0].checkpoint_type == CheckpointType.SHUTDOWN
        assert written[0].state.data == {"step": 7}
        assert manager.get_checkpoints("agent_2") == []
        assert manager.is_auto_checkpointing("agent_1") is False
        assert any("Shutdown checkpoint failed" in r.getMessage() for r in caplog.records)

    def test_shutdown_without_timers(self):
        assert asyncio.run(self.manager.shutdown()) == []

    def test_stop_unknown_agent(self):
        assert self.manager.stop_auto_checkpoint("nobody") is False

    @pytest.mark.parametrize("schedule,upper", [
        ("* * * * *", 60),
        ("*/5 * * * *", 300),
    ])
    def test_cron_schedule_delay_until_next_fire(self, schedule, upper):
        manager = CheckpointManager(self.store, CheckpointConfig(schedule=schedule))
        assert 0 < manager._next_delay() <= upper

    def test_interval_used_without_schedule(self):
        manager = CheckpointManager(self.store, CheckpointConfig(interval_seconds=42))
        assert manager._next_delay() == 42

    def test_invalid_schedule_rejected(self):
        manager = CheckpointManager(self.store, CheckpointConfig(schedule="not a cron"))

        async def scenario():
            manager.start_auto_checkpoint("agent_1", lambda: {})

        with pytest.raises(ValueError):
            asyncio.run(scenario())
