"""
Checkpoint Store — append-only persistence of agent snapshots.

Behavioral Contract:
- Rows are inserted once. The only updates are the is_valid 1 -> 0 flip and
  the restored_count / last_restored_at increment, each a single conditional
  UPDATE statement.
- Pruning deletes whole rows outside the newest-N window for an agent,
  regardless of validity.
- Newest is insertion order (rowid), so checkpoints created within the same
  clock tick still order correctly.
"""

import json
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from delivery_kernel.checkpoint.payloads import upgrade_file_state, upgrade_state
from delivery_kernel.models.checkpoint import (
    AgentCheckpointStats,
    Checkpoint,
    CheckpointStats,
    CheckpointType,
)


class CheckpointStore:
    """
    SQLite-backed checkpoint table.
    Each agent only contends with itself; a process-local lock guards the
    shared connection.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the checkpoints table if it doesn't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    project_id TEXT,
                    task_id TEXT,
                    checkpoint_type TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    file_state_json TEXT,
                    conversation_summary TEXT,
                    recovery_instructions TEXT,
                    created_at TEXT NOT NULL,
                    is_valid INTEGER NOT NULL DEFAULT 1,
                    invalidation_reason TEXT,
                    restored_count INTEGER NOT NULL DEFAULT 0,
                    last_restored_at TEXT
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_checkpoints_agent ON checkpoints(agent_id)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_checkpoints_project ON checkpoints(project_id)
            """)
            self._conn.commit()

    def insert(self, checkpoint: Checkpoint) -> Checkpoint:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO checkpoints (
                    id, agent_id, project_id, task_id, checkpoint_type,
                    state_json, file_state_json, conversation_summary,
                    recovery_instructions, created_at, is_valid, restored_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 0)
                """,
                (
                    checkpoint.id,
                    checkpoint.agent_id,
                    checkpoint.project_id,
                    checkpoint.task_id,
                    checkpoint.checkpoint_type.value,
                    json.dumps(checkpoint.state.model_dump(mode="json")),
                    json.dumps(checkpoint.file_state.model_dump(mode="json"))
                    if checkpoint.file_state else None,
                    checkpoint.conversation_summary,
                    checkpoint.recovery_instructions,
                    checkpoint.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return checkpoint

    def _deserialize(self, row: sqlite3.Row) -> Checkpoint:
        file_state = row["file_state_json"]
        return Checkpoint(
            id=row["id"],
            agent_id=row["agent_id"],
            project_id=row["project_id"],
            task_id=row["task_id"],
            checkpoint_type=CheckpointType(row["checkpoint_type"]),
            state=upgrade_state(json.loads(row["state_json"])),
            file_state=upgrade_file_state(json.loads(file_state)) if file_state else None,
            conversation_summary=row["conversation_summary"],
            recovery_instructions=row["recovery_instructions"],
            created_at=datetime.fromisoformat(row["created_at"]),
            is_valid=bool(row["is_valid"]),
            invalidation_reason=row["invalidation_reason"],
            restored_count=row["restored_count"],
            last_restored_at=(
                datetime.fromisoformat(row["last_restored_at"])
                if row["last_restored_at"] else None
            ),
        )

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def list_for_agent(self, agent_id: str, limit: Optional[int] = None) -> List[Checkpoint]:
        """Checkpoints for an agent, newest first, valid and invalid."""
        query = "SELECT * FROM checkpoints WHERE agent_id = ? ORDER BY rowid DESC"
        params: list = [agent_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._deserialize(r) for r in rows]

    def prune(self, agent_id: str, keep: int) -> int:
        """Delete everything but the newest `keep` checkpoints of an agent. Returns rows deleted."""
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM checkpoints
                WHERE agent_id = ?
                AND rowid NOT IN (
                    SELECT rowid FROM checkpoints
                    WHERE agent_id = ?
                    ORDER BY rowid DESC
                    LIMIT ?
                )
                """,
                (agent_id, agent_id, keep),
            )
            self._conn.commit()
            return cursor.rowcount

    def invalidate(self, checkpoint_id: str, reason: Optional[str]) -> bool:
        """Flip is_valid to false. Returns False if it was already invalid."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE checkpoints SET is_valid = 0, invalidation_reason = ? "
                "WHERE id = ? AND is_valid = 1",
                (reason, checkpoint_id),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def record_restore(self, checkpoint_id: str, restored_at: datetime) -> bool:
        """Count one restore of a valid checkpoint. Returns False when not restorable."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE checkpoints SET restored_count = restored_count + 1, "
                "last_restored_at = ? WHERE id = ? AND is_valid = 1",
                (restored_at.isoformat(), checkpoint_id),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def stats(self, project_id: Optional[str] = None) -> CheckpointStats:
        where = ""
        params: list = []
        if project_id is not None:
            where = "WHERE project_id = ?"
            params.append(project_id)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT agent_id,
                       COUNT(*) AS count,
                       SUM(is_valid) AS valid,
                       SUM(restored_count) AS restores,
                       MAX(created_at) AS latest
                FROM checkpoints {where}
                GROUP BY agent_id
                ORDER BY agent_id
                """,
                params,
            ).fetchall()

        by_agent = [
            AgentCheckpointStats(
                agent_id=r["agent_id"],
                count=r["count"],
                valid=r["valid"] or 0,
                restores=r["restores"] or 0,
                latest_checkpoint_at=(
                    datetime.fromisoformat(r["latest"]) if r["latest"] else None
                ),
            )
            for r in rows
        ]
        return CheckpointStats(
            project_id=project_id,
            total=sum(a.count for a in by_agent),
            valid=sum(a.valid for a in by_agent),
            total_restores=sum(a.restores for a in by_agent),
            by_agent=by_agent,
        )

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM checkpoints").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
