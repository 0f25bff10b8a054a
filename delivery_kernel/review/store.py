"""
Review Store — append-only, hash-chained audit trail of milestone reviews.

Behavioral Contract:
- Append-only. No review is ever modified or deleted.
- Each review is hashed (SHA-256 over its canonical JSON with an empty
  signature) and chained to the previous review's signature.
- verify_chain_integrity() detects any edited or re-ordered row.
"""

import hashlib
import json
import sqlite3
import threading
from typing import List, Optional

from delivery_kernel.models.review import ReviewResult


def compute_signature(result: ReviewResult) -> str:
    record_dict = result.model_dump(mode="json")
    record_dict["signature"] = ""
    record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(record_bytes).hexdigest()


class ReviewStore:
    """SQLite-backed review ledger."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS reviews (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    milestone TEXT NOT NULL,
                    score INTEGER NOT NULL,
                    grade TEXT NOT NULL,
                    overall_pass INTEGER NOT NULL,
                    signature TEXT NOT NULL,
                    prior_record_hash TEXT,
                    record_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_reviews_project ON reviews(project_id)
            """)
            self._conn.commit()

    def append(self, result: ReviewResult) -> ReviewResult:
        """
        Persist a review, chained to the previous one.
        Returns the stored copy carrying its signature and prior hash.
        """
        with self._lock:
            chained = result.model_copy(update={
                "prior_record_hash": self._get_latest_hash(),
                "signature": "",
            })
            chained = chained.model_copy(update={"signature": compute_signature(chained)})

            self._conn.execute(
                """
                INSERT INTO reviews (
                    id, project_id, milestone, score, grade, overall_pass,
                    signature, prior_record_hash, record_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chained.id,
                    chained.project_id,
                    chained.milestone,
                    chained.score,
                    chained.grade.value,
                    int(chained.overall_pass),
                    chained.signature,
                    chained.prior_record_hash,
                    chained.model_dump_json(),
                    chained.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return chained

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM reviews ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def get_by_id(self, review_id: str) -> Optional[ReviewResult]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM reviews WHERE id = ?", (review_id,)
            ).fetchone()
        return ReviewResult.model_validate_json(row["record_json"]) if row else None

    def query_by_project(self, project_id: str, milestone: Optional[str] = None) -> List[ReviewResult]:
        """Reviews for a project in the order they were recorded."""
        query = "SELECT record_json FROM reviews WHERE project_id = ?"
        params: list = [project_id]
        if milestone is not None:
            query += " AND milestone = ?"
            params.append(milestone)
        query += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [ReviewResult.model_validate_json(r["record_json"]) for r in rows]

    def verify_chain_integrity(self) -> bool:
        """Verify no review has been tampered with or re-ordered."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json, signature FROM reviews ORDER BY rowid"
            ).fetchall()

        prior_sig = None
        for row in rows:
            record = ReviewResult.model_validate_json(row["record_json"])
            if record.signature != row["signature"]:
                return False
            if compute_signature(record) != record.signature:
                return False
            if record.prior_record_hash != prior_sig:
                return False
            prior_sig = record.signature
        return True

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM reviews").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
