"""
Agent Registry — who is running, as which type, with which policy.

The Quality Gate reads contributors from here; the Checkpoint Manager resets
an agent to idle (with its recovered state attached) on restore.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import List, Optional

from delivery_kernel.errors import NotFoundError
from delivery_kernel.models.agent import AgentRecord, AgentStatus


class AgentRegistry:
    """SQLite-backed agent table."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    id TEXT PRIMARY KEY,
                    project_id TEXT,
                    agent_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    policy_id TEXT,
                    recovered_state_json TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agents_project ON agents(project_id)
            """)
            self._conn.commit()

    def register_agent(
        self,
        agent_id: str,
        agent_type: str,
        project_id: Optional[str] = None,
        policy_id: Optional[str] = None,
        status: AgentStatus = AgentStatus.IDLE,
    ) -> AgentRecord:
        """Insert or replace an agent record."""
        record = AgentRecord(
            id=agent_id,
            project_id=project_id,
            agent_type=agent_type,
            status=status,
            policy_id=policy_id,
            updated_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO agents (
                    id, project_id, agent_type, status, policy_id,
                    recovered_state_json, updated_at
                ) VALUES (?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    record.id,
                    record.project_id,
                    record.agent_type,
                    record.status.value,
                    record.policy_id,
                    record.updated_at.isoformat(),
                ),
            )
            self._conn.commit()
        return record

    def _deserialize(self, row: sqlite3.Row) -> AgentRecord:
        recovered = row["recovered_state_json"]
        return AgentRecord(
            id=row["id"],
            project_id=row["project_id"],
            agent_type=row["agent_type"],
            status=AgentStatus(row["status"]),
            policy_id=row["policy_id"],
            recovered_state=json.loads(recovered) if recovered else None,
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM agents WHERE id = ?", (agent_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def set_status(self, agent_id: str, status: AgentStatus) -> AgentRecord:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE agents SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, datetime.now(timezone.utc).isoformat(), agent_id),
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Agent {agent_id} not found")
        return self.get_agent(agent_id)

    def mark_recovered(self, agent_id: str, state: dict) -> Optional[AgentRecord]:
        """Reset an agent to idle with its recovered state attached. None if unknown."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE agents SET status = ?, recovered_state_json = ?, updated_at = ? "
                "WHERE id = ?",
                (
                    AgentStatus.IDLE.value,
                    json.dumps(state, default=str),
                    datetime.now(timezone.utc).isoformat(),
                    agent_id,
                ),
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get_agent(agent_id)

    def list_agents(self, project_id: str) -> List[AgentRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM agents WHERE project_id = ? ORDER BY rowid",
                (project_id,),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def list_contributors(self, project_id: str) -> List[AgentRecord]:
        """Agents of a project that were spawned with a policy."""
        return [a for a in self.list_agents(project_id) if a.policy_id is not None]

    def close(self) -> None:
        self._conn.close()
