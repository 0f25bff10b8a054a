"""
Outcome Store — persistence for policy belief state and learning events.

Behavioral Contract:
- Learning events are append-only. No event is ever modified or deleted.
- Policy counters (alpha, beta, total_uses, successful_uses) are only changed
  by single-statement increments, in the same transaction as the event
  insert. Concurrent outcomes for one policy never lose updates.
- Policies are never deleted, only moved to "deprecated".
- At most one "production" policy per agent type (enforced by a partial
  unique index).
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from delivery_kernel.errors import ConflictError, NotFoundError
from delivery_kernel.models.policy import (
    LearningEvent,
    Outcome,
    Policy,
    PolicyStatus,
)

logger = logging.getLogger(__name__)


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class OutcomeStore:
    """
    SQLite-backed policy and learning-event store.
    Several processes may share one database file; SQLite's write lock plus
    bounded retries provide the atomic read-modify-write.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        max_write_retries: int = 5,
        retry_backoff_seconds: float = 0.05,
    ):
        self.db_path = db_path
        self.max_write_retries = max_write_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._conn = sqlite3.connect(
            db_path, timeout=5.0, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the policy and event tables if they don't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS policies (
                    id TEXT PRIMARY KEY,
                    agent_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    content TEXT NOT NULL,
                    variables_json TEXT NOT NULL DEFAULT '[]',
                    alpha REAL NOT NULL DEFAULT 1.0 CHECK (alpha >= 1.0),
                    beta REAL NOT NULL DEFAULT 1.0 CHECK (beta >= 1.0),
                    total_uses INTEGER NOT NULL DEFAULT 0,
                    successful_uses INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (agent_type, version)
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_policies_agent_type
                ON policies(agent_type, status)
            """)
            self._conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_policies_single_production
                ON policies(agent_type) WHERE status = 'production'
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_events (
                    id TEXT PRIMARY KEY,
                    policy_id TEXT NOT NULL REFERENCES policies(id),
                    project_id TEXT,
                    agent_id TEXT,
                    task_id TEXT,
                    event_type TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    reward REAL NOT NULL,
                    context_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_learning_events_policy
                ON learning_events(policy_id)
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Immediate-mode write transaction: takes the write lock up front.

        A failed COMMIT (e.g. busy while a reader holds its shared lock) leaves
        SQLite inside the transaction, so it is rolled back like any other
        failure before the error reaches the retry loop.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    def _with_retry(self, operation, description: str):
        """Run a write, retrying while another writer holds the database lock."""
        for attempt in range(1, self.max_write_retries + 1):
            try:
                return operation()
            except sqlite3.OperationalError as exc:
                if not _is_lock_error(exc):
                    raise
                logger.warning(
                    "%s lost a write race (attempt %d/%d)",
                    description, attempt, self.max_write_retries,
                )
                time.sleep(self.retry_backoff_seconds * attempt)
        raise ConflictError(
            f"{description}: database stayed locked after {self.max_write_retries} attempts"
        )

    # --- Policies ---

    def insert_policy(
        self,
        agent_type: str,
        content: str,
        status: PolicyStatus = PolicyStatus.EXPERIMENTAL,
        variables: Optional[List[str]] = None,
        policy_id: Optional[str] = None,
    ) -> Policy:
        """Insert the next version of a policy for an agent type."""
        new_id = policy_id or f"pol_{uuid4().hex[:12]}"
        now = datetime.now(timezone.utc).isoformat()

        def _insert() -> None:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT COALESCE(MAX(version), 0) + 1 AS next FROM policies "
                    "WHERE agent_type = ?",
                    (agent_type,),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO policies (
                        id, agent_type, version, status, content, variables_json,
                        alpha, beta, total_uses, successful_uses, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 1.0, 1.0, 0, 0, ?, ?)
                    """,
                    (
                        new_id,
                        agent_type,
                        row["next"],
                        status.value,
                        content,
                        json.dumps(variables or []),
                        now,
                        now,
                    ),
                )

        self._with_retry(_insert, f"insert policy for {agent_type}")
        return self.get_policy(new_id)

    def _row_to_policy(self, row: sqlite3.Row) -> Policy:
        return Policy(
            id=row["id"],
            agent_type=row["agent_type"],
            version=row["version"],
            status=PolicyStatus(row["status"]),
            content=row["content"],
            variables=json.loads(row["variables_json"]),
            alpha=row["alpha"],
            beta=row["beta"],
            total_uses=row["total_uses"],
            successful_uses=row["successful_uses"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM policies WHERE id = ?", (policy_id,)
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def list_policies(
        self,
        agent_type: str,
        statuses: Optional[Sequence[PolicyStatus]] = None,
    ) -> List[Policy]:
        """All policies of an agent type, newest version first."""
        query = "SELECT * FROM policies WHERE agent_type = ?"
        params: list = [agent_type]
        if statuses:
            query += " AND status IN (%s)" % ",".join("?" for _ in statuses)
            params.extend(s.value for s in statuses)
        query += " ORDER BY version DESC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_policy(r) for r in rows]

    def get_production_policy(self, agent_type: str) -> Optional[Policy]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM policies WHERE agent_type = ? AND status = 'production'",
                (agent_type,),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def apply_outcome(
        self,
        event: LearningEvent,
        alpha_delta: float,
        beta_delta: float,
    ) -> Policy:
        """
        Atomically apply one outcome: increment counters and append the event.

        The counters are incremented in SQL (never read-then-written from
        Python), so concurrent writers cannot overwrite each other.
        """
        success_increment = 1 if event.outcome == Outcome.SUCCESS else 0

        def _apply() -> None:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE policies
                    SET alpha = alpha + ?,
                        beta = beta + ?,
                        total_uses = total_uses + 1,
                        successful_uses = successful_uses + ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        max(0.0, alpha_delta),
                        max(0.0, beta_delta),
                        success_increment,
                        event.created_at.isoformat(),
                        event.policy_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"Policy {event.policy_id} not found")
                conn.execute(
                    """
                    INSERT INTO learning_events (
                        id, policy_id, project_id, agent_id, task_id,
                        event_type, outcome, reward, context_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.policy_id,
                        event.project_id,
                        event.agent_id,
                        event.task_id,
                        event.event_type,
                        event.outcome.value,
                        event.reward,
                        json.dumps(event.context, default=str),
                        event.created_at.isoformat(),
                    ),
                )

        self._with_retry(_apply, f"record outcome for {event.policy_id}")
        return self.get_policy(event.policy_id)

    def compare_and_set_status(
        self,
        policy_id: str,
        expected: PolicyStatus,
        new_status: PolicyStatus,
    ) -> bool:
        """Change status only if it is still `expected`. Returns whether it changed."""
        def _update() -> int:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE policies SET status = ?, updated_at = ? "
                    "WHERE id = ? AND status = ?",
                    (
                        new_status.value,
                        datetime.now(timezone.utc).isoformat(),
                        policy_id,
                        expected.value,
                    ),
                )
                return cursor.rowcount

        return self._with_retry(_update, f"set status of {policy_id}") == 1

    def promote_to_production(
        self, policy_id: str, expected: PolicyStatus
    ) -> Tuple[bool, Optional[str]]:
        """
        Make a policy the production holder for its agent type, deprecating
        the previous holder in the same transaction.

        Returns (promoted, replaced_policy_id). Nothing changes when the
        policy is no longer in `expected`.
        """
        now = datetime.now(timezone.utc).isoformat()

        def _promote() -> Tuple[bool, Optional[str]]:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT agent_type, status FROM policies WHERE id = ?",
                    (policy_id,),
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"Policy {policy_id} not found")
                if row["status"] != expected.value:
                    return False, None
                previous = conn.execute(
                    "SELECT id FROM policies WHERE agent_type = ? "
                    "AND status = 'production' AND id != ?",
                    (row["agent_type"], policy_id),
                ).fetchone()
                if previous is not None:
                    conn.execute(
                        "UPDATE policies SET status = 'deprecated', updated_at = ? WHERE id = ?",
                        (now, previous["id"]),
                    )
                conn.execute(
                    "UPDATE policies SET status = 'production', updated_at = ? WHERE id = ?",
                    (now, policy_id),
                )
                return True, (previous["id"] if previous is not None else None)

        return self._with_retry(_promote, f"promote {policy_id}")

    # --- Learning events ---

    def _row_to_event(self, row: sqlite3.Row) -> LearningEvent:
        return LearningEvent(
            id=row["id"],
            policy_id=row["policy_id"],
            project_id=row["project_id"],
            agent_id=row["agent_id"],
            task_id=row["task_id"],
            event_type=row["event_type"],
            outcome=Outcome(row["outcome"]),
            reward=row["reward"],
            context=json.loads(row["context_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_events(self, policy_id: str, limit: int = 50) -> List[LearningEvent]:
        """Most recent learning events for a policy, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM learning_events WHERE policy_id = ? "
                "ORDER BY rowid DESC LIMIT ?",
                (policy_id, limit),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def get_events_by_type(self, event_type: str, project_id: Optional[str] = None) -> List[LearningEvent]:
        query = "SELECT * FROM learning_events WHERE event_type = ?"
        params: list = [event_type]
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def trailing_success_rate(self, policy_id: str, window: int) -> Optional[float]:
        """Success rate over the most recent `window` outcomes, None if fewer exist."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT outcome FROM learning_events WHERE policy_id = ? "
                "ORDER BY rowid DESC LIMIT ?",
                (policy_id, window),
            ).fetchall()
        if len(rows) < window:
            return None
        successes = sum(1 for r in rows if r["outcome"] == Outcome.SUCCESS.value)
        return successes / len(rows)

    def count_events(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM learning_events").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
