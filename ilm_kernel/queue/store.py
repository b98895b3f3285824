"""
Evaluation Queue — pending and terminal (policy, segment) action records.

Behavioral Contract:
- At most one live (PENDING or CLAIMED) entry per (policy, segment);
  enqueueing a duplicate is a silent no-op.
- Every status write goes through the queue state machine.
- Terminal entries are never modified again; re-running a FAILED action
  means enqueueing a fresh entry (`requeue_failed`).
- A batch claim carries the batch owner's token; only that owner may close
  the entry.
- Only never-started PENDING entries are purged by the retention sweep.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Iterable, List, Optional

from ilm_kernel.errors import BatchOwnershipLost, EntryNotFoundError
from ilm_kernel.models.execution import ActionResult
from ilm_kernel.models.policy import Policy
from ilm_kernel.models.queue import QueueEntry, QueueStatus, QueueSummary
from ilm_kernel.models.transitions import check_queue_transition
from ilm_kernel.storage import Database, to_db_time

logger = logging.getLogger(__name__)

_ORDER_BY = "ORDER BY policy_priority, policy_id, enqueued_at, id"


class QueueStore:
    """SQLite-backed evaluation queue."""

    def __init__(self, db_path: str = ":memory:", db: Optional[Database] = None):
        self.db = db or Database(db_path)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the queue table if it doesn't exist."""
        with self.db.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS queue_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    policy_id INTEGER NOT NULL,
                    segment_id TEXT NOT NULL,
                    policy_priority INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    batch_id TEXT,
                    batch_sequence INTEGER,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    claimed_at TEXT,
                    claim_token TEXT,
                    completed_at TEXT,
                    action_status TEXT,
                    action_script TEXT,
                    error_detail TEXT
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_live_pair
                ON queue_entries(policy_id, segment_id)
                WHERE status IN ('PENDING', 'CLAIMED')
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_status ON queue_entries(status)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_batch ON queue_entries(batch_id)
            """)

    # --- Helpers ---

    def _deserialize(self, row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(**dict(row))

    def _load_for_update(self, conn: sqlite3.Connection, entry_id: int) -> QueueEntry:
        row = conn.execute(
            "SELECT * FROM queue_entries WHERE id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            raise EntryNotFoundError(f"Queue entry {entry_id} not found")
        return self._deserialize(row)

    @staticmethod
    def _policy_filter(policy_ids: Optional[Iterable[int]]) -> tuple:
        """SQL fragment + params restricting rows to the given policies."""
        if policy_ids is None:
            return "", ()
        ids = tuple(policy_ids)
        if not ids:
            return " AND 0", ()
        placeholders = ", ".join("?" for _ in ids)
        return f" AND policy_id IN ({placeholders})", ids

    # --- Enqueue / retention ---

    def enqueue(
        self,
        policy: Policy,
        segment_id: str,
        reason: str,
        now: datetime,
    ) -> Optional[QueueEntry]:
        """
        Insert a PENDING entry. Returns None when a live entry for the same
        (policy, segment) already exists.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO queue_entries (
                    policy_id, segment_id, policy_priority, reason, enqueued_at, status
                ) VALUES (?, ?, ?, ?, ?, 'PENDING')
                """,
                (policy.id, segment_id, policy.priority, reason, to_db_time(now)),
            )
            if cursor.rowcount == 0:
                return None
            return self._load_for_update(conn, cursor.lastrowid)

    def purge_stale(self, older_than: datetime) -> int:
        """Delete PENDING entries enqueued before `older_than` that never started."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM queue_entries
                WHERE status = 'PENDING' AND attempt_count = 0 AND enqueued_at < ?
                """,
                (to_db_time(older_than),),
            )
            purged = cursor.rowcount
        if purged:
            logger.info("Purged %d stale pending queue entries", purged)
        return purged

    def clear_pending(self, policy_id: Optional[int] = None) -> int:
        """Delete PENDING entries, optionally only for one policy."""
        with self.db.transaction() as conn:
            if policy_id is None:
                cursor = conn.execute(
                    "DELETE FROM queue_entries WHERE status = 'PENDING'"
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM queue_entries WHERE status = 'PENDING' AND policy_id = ?",
                    (policy_id,),
                )
            cleared = cursor.rowcount
        logger.info("Cleared %d pending queue entries", cleared)
        return cleared

    def requeue_failed(self, entry_id: int, now: datetime) -> Optional[QueueEntry]:
        """
        Manual operator retry: enqueue a fresh PENDING entry for a FAILED one.
        The FAILED entry itself stays as the audit record.
        """
        with self.db.transaction() as conn:
            failed = self._load_for_update(conn, entry_id)
            if failed.status != QueueStatus.FAILED:
                return None
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO queue_entries (
                    policy_id, segment_id, policy_priority, reason, enqueued_at, status
                ) VALUES (?, ?, ?, ?, ?, 'PENDING')
                """,
                (
                    failed.policy_id,
                    failed.segment_id,
                    failed.policy_priority,
                    f"Manual requeue of entry {entry_id}",
                    to_db_time(now),
                ),
            )
            if cursor.rowcount == 0:
                return None
            return self._load_for_update(conn, cursor.lastrowid)

    # --- Reads ---

    def get(self, entry_id: int) -> Optional[QueueEntry]:
        row = self.db.fetchone(
            "SELECT * FROM queue_entries WHERE id = ?", (entry_id,)
        )
        return self._deserialize(row) if row else None

    def count_pending(self, policy_ids: Optional[Iterable[int]] = None) -> int:
        """Eligible PENDING entries, optionally restricted to some policies."""
        fragment, params = self._policy_filter(policy_ids)
        row = self.db.fetchone(
            "SELECT COUNT(*) AS cnt FROM queue_entries WHERE status = 'PENDING'" + fragment,
            params,
        )
        return row["cnt"]

    def next_pending(
        self,
        limit: int,
        policy_ids: Optional[Iterable[int]] = None,
    ) -> List[QueueEntry]:
        """PENDING entries in execution order: priority, policy id, enqueue time."""
        fragment, params = self._policy_filter(policy_ids)
        rows = self.db.fetchall(
            "SELECT * FROM queue_entries WHERE status = 'PENDING'"
            + fragment + " " + _ORDER_BY + " LIMIT ?",
            params + (limit,),
        )
        return [self._deserialize(r) for r in rows]

    def list_entries(
        self,
        status: Optional[QueueStatus] = None,
        policy_id: Optional[int] = None,
    ) -> List[QueueEntry]:
        sql = "SELECT * FROM queue_entries WHERE 1 = 1"
        params: tuple = ()
        if status is not None:
            sql += " AND status = ?"
            params += (status.value,)
        if policy_id is not None:
            sql += " AND policy_id = ?"
            params += (policy_id,)
        rows = self.db.fetchall(sql + " " + _ORDER_BY, params)
        return [self._deserialize(r) for r in rows]

    def list_for_batch(self, batch_id: str) -> List[QueueEntry]:
        rows = self.db.fetchall(
            "SELECT * FROM queue_entries WHERE batch_id = ? ORDER BY batch_sequence, id",
            (batch_id,),
        )
        return [self._deserialize(r) for r in rows]

    def count_processed_by_batch(self, batch_id: str) -> int:
        """Terminal entries a batch has already taken to completion."""
        row = self.db.fetchone(
            """
            SELECT COUNT(*) AS cnt FROM queue_entries
            WHERE batch_id = ? AND status IN ('EXECUTED', 'FAILED', 'SKIPPED')
            """,
            (batch_id,),
        )
        return row["cnt"]

    def summary(self) -> QueueSummary:
        rows = self.db.fetchall(
            "SELECT status, COUNT(*) AS cnt FROM queue_entries GROUP BY status"
        )
        counts = {r["status"]: r["cnt"] for r in rows}
        oldest = self.db.fetchone(
            "SELECT MIN(enqueued_at) AS oldest FROM queue_entries WHERE status = 'PENDING'"
        )
        return QueueSummary(
            pending=counts.get("PENDING", 0),
            claimed=counts.get("CLAIMED", 0),
            executed=counts.get("EXECUTED", 0),
            failed=counts.get("FAILED", 0),
            skipped=counts.get("SKIPPED", 0),
            oldest_pending_at=oldest["oldest"] if oldest else None,
        )

    # --- Transitions (Orchestrator only) ---

    @staticmethod
    def _check_claim(entry: QueueEntry, owner_token: Optional[str]) -> None:
        """A token-carrying close must come from the run that holds the claim."""
        if owner_token is None:
            return
        if entry.status != QueueStatus.CLAIMED or entry.claim_token != owner_token:
            raise BatchOwnershipLost(
                entry.batch_id or "-",
                f"queue entry {entry.id} is {entry.status.value} under another claim",
            )

    def claim(
        self,
        entry_id: int,
        batch_id: Optional[str],
        sequence: Optional[int],
        now: datetime,
        owner_token: Optional[str] = None,
    ) -> QueueEntry:
        """PENDING -> CLAIMED, tagging the entry with the batch processing it."""
        with self.db.transaction() as conn:
            entry = self._load_for_update(conn, entry_id)
            check_queue_transition(entry_id, entry.status, QueueStatus.CLAIMED)
            conn.execute(
                """
                UPDATE queue_entries
                SET status = 'CLAIMED', batch_id = ?, batch_sequence = ?,
                    attempt_count = attempt_count + 1, claimed_at = ?,
                    claim_token = ?, error_detail = NULL
                WHERE id = ?
                """,
                (batch_id, sequence, to_db_time(now), owner_token, entry_id),
            )
            return self._load_for_update(conn, entry_id)

    def complete(
        self,
        entry_id: int,
        status: QueueStatus,
        result: ActionResult,
        now: datetime,
        owner_token: Optional[str] = None,
    ) -> QueueEntry:
        """CLAIMED -> EXECUTED | FAILED | SKIPPED with the executor's outcome."""
        with self.db.transaction() as conn:
            entry = self._load_for_update(conn, entry_id)
            self._check_claim(entry, owner_token)
            check_queue_transition(entry_id, entry.status, status)
            conn.execute(
                """
                UPDATE queue_entries
                SET status = ?, completed_at = ?, action_status = ?,
                    action_script = ?, error_detail = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    to_db_time(now),
                    result.status.value,
                    result.action_script,
                    result.error_detail,
                    entry_id,
                ),
            )
            return self._load_for_update(conn, entry_id)

    def skip(
        self,
        entry_id: int,
        reason: str,
        now: datetime,
        owner_token: Optional[str] = None,
    ) -> QueueEntry:
        """Close an entry whose policy or segment no longer exists."""
        with self.db.transaction() as conn:
            entry = self._load_for_update(conn, entry_id)
            self._check_claim(entry, owner_token)
            check_queue_transition(entry_id, entry.status, QueueStatus.SKIPPED)
            conn.execute(
                """
                UPDATE queue_entries
                SET status = 'SKIPPED', completed_at = ?, error_detail = ?
                WHERE id = ?
                """,
                (to_db_time(now), reason, entry_id),
            )
            return self._load_for_update(conn, entry_id)

    def release_claims(self, batch_id: str, reason: Optional[str] = None) -> List[int]:
        """
        CLAIMED -> PENDING for every entry a crashed or failed batch left in
        flight. The executor outcome for these is unknown, so they run again.
        `reason` is kept in the entry's error_detail until it is claimed again.
        """
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM queue_entries WHERE batch_id = ? AND status = 'CLAIMED'",
                (batch_id,),
            ).fetchall()
            released = [r["id"] for r in rows]
            for entry_id in released:
                check_queue_transition(entry_id, QueueStatus.CLAIMED, QueueStatus.PENDING)
                conn.execute(
                    """
                    UPDATE queue_entries
                    SET status = 'PENDING', claimed_at = NULL, claim_token = NULL,
                        error_detail = ?
                    WHERE id = ?
                    """,
                    (reason, entry_id),
                )
        if released:
            logger.warning(
                "Released %d in-flight entries of batch %s for retry: %s",
                len(released), batch_id, released,
            )
        return released
