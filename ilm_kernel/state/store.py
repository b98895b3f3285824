"""
Execution State Store — batches, condition statistics and the execution log.

Behavioral Contract:
- At most one RUNNING batch per schedule. The check and the insert happen in
  one BEGIN IMMEDIATE transaction, so two concurrent starts cannot both win.
- Batch status changes go through the batch state machine.
- Every open, resume or takeover hands the batch a fresh owner token. Writes
  that carry a token only apply while that token still owns the batch.
- Condition stats and execution log rows are append/accumulate only.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Collection, List, Optional, Tuple
from uuid import uuid4

from ilm_kernel.errors import BatchOwnershipLost, ConcurrencyViolation
from ilm_kernel.models.execution import (
    BatchStatus,
    ExecutionBatch,
    ExecutionLogRecord,
)
from ilm_kernel.models.schedule import ConditionStats, Schedule
from ilm_kernel.models.transitions import check_batch_transition
from ilm_kernel.storage import Database, to_db_time

logger = logging.getLogger(__name__)

_RESUMABLE_SQL = """
    SELECT * FROM execution_batches
    WHERE schedule_name = ? AND status = 'INTERRUPTED'
      AND last_processed_entry_id IS NOT NULL
    ORDER BY start_time DESC, rowid DESC LIMIT 1
"""


class ExecutionStateStore:
    """SQLite-backed batch registry plus condition and action audit tables."""

    def __init__(self, db_path: str = ":memory:", db: Optional[Database] = None):
        self.db = db or Database(db_path)
        self._init_schema()

    def _init_schema(self) -> None:
        with self.db.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS execution_batches (
                    id TEXT PRIMARY KEY,
                    schedule_id INTEGER NOT NULL,
                    schedule_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    last_checkpoint TEXT,
                    operations_completed INTEGER NOT NULL DEFAULT 0,
                    operations_total INTEGER NOT NULL DEFAULT 0,
                    last_processed_entry_id INTEGER,
                    forced INTEGER NOT NULL DEFAULT 0,
                    interrupt_requested INTEGER NOT NULL DEFAULT 0,
                    status_reason TEXT,
                    owner_token TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_batches_schedule_status
                ON execution_batches(schedule_name, status)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS condition_stats (
                    condition_id INTEGER PRIMARY KEY,
                    evaluation_count INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    last_evaluated_at TEXT,
                    last_result INTEGER,
                    last_error TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS execution_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id INTEGER NOT NULL,
                    batch_id TEXT,
                    policy_id INTEGER NOT NULL,
                    policy_name TEXT NOT NULL,
                    segment_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    action_script TEXT,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    duration_seconds REAL NOT NULL,
                    size_before_mb REAL,
                    size_after_mb REAL,
                    space_saved_mb REAL,
                    compression_ratio REAL,
                    error_detail TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_exec_log_batch ON execution_log(batch_id)
            """)

    # --- Batches ---

    def _deserialize_batch(self, row: sqlite3.Row) -> ExecutionBatch:
        data = dict(row)
        data["forced"] = bool(data["forced"])
        data["interrupt_requested"] = bool(data["interrupt_requested"])
        return ExecutionBatch(**data)

    def _load_batch(self, conn: sqlite3.Connection, batch_id: str) -> Optional[ExecutionBatch]:
        row = conn.execute(
            "SELECT * FROM execution_batches WHERE id = ?", (batch_id,)
        ).fetchone()
        return self._deserialize_batch(row) if row else None

    def _running_batch(self, conn: sqlite3.Connection, schedule_name: str) -> Optional[ExecutionBatch]:
        row = conn.execute(
            "SELECT * FROM execution_batches WHERE schedule_name = ? AND status = 'RUNNING'",
            (schedule_name,),
        ).fetchone()
        return self._deserialize_batch(row) if row else None

    def _set_status(
        self,
        conn: sqlite3.Connection,
        batch: ExecutionBatch,
        target: BatchStatus,
        reason: Optional[str],
        now: datetime,
        end: bool,
    ) -> None:
        check_batch_transition(batch.id, batch.status, target)
        conn.execute(
            """
            UPDATE execution_batches
            SET status = ?, status_reason = ?, end_time = ?, last_checkpoint = ?
            WHERE id = ?
            """,
            (
                target.value,
                reason,
                to_db_time(now) if end else None,
                to_db_time(now),
                batch.id,
            ),
        )

    def get_batch(self, batch_id: str) -> Optional[ExecutionBatch]:
        row = self.db.fetchone(
            "SELECT * FROM execution_batches WHERE id = ?", (batch_id,)
        )
        return self._deserialize_batch(row) if row else None

    def get_running_batch(self, schedule_name: str) -> Optional[ExecutionBatch]:
        row = self.db.fetchone(
            "SELECT * FROM execution_batches WHERE schedule_name = ? AND status = 'RUNNING'",
            (schedule_name,),
        )
        return self._deserialize_batch(row) if row else None

    def list_batches(
        self,
        schedule_name: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        limit: int = 100,
    ) -> List[ExecutionBatch]:
        sql = "SELECT * FROM execution_batches WHERE 1 = 1"
        params: tuple = ()
        if schedule_name is not None:
            sql += " AND schedule_name = ?"
            params += (schedule_name,)
        if status is not None:
            sql += " AND status = ?"
            params += (status.value,)
        sql += " ORDER BY start_time DESC, rowid DESC LIMIT ?"
        rows = self.db.fetchall(sql, params + (limit,))
        return [self._deserialize_batch(r) for r in rows]

    def find_resumable(self, schedule_name: str) -> Optional[ExecutionBatch]:
        """The latest INTERRUPTED batch for the schedule that has a resume pointer."""
        row = self.db.fetchone(_RESUMABLE_SQL, (schedule_name,))
        return self._deserialize_batch(row) if row else None

    def try_start_batch(
        self,
        schedule: Schedule,
        now: datetime,
        forced: bool = False,
        resume_batch_id: Optional[str] = None,
        stale_after_seconds: Optional[int] = None,
        live_batch_ids: Collection[str] = (),
    ) -> Tuple[ExecutionBatch, Optional[ExecutionBatch], bool]:
        """
        Open (or reopen) the RUNNING batch for a schedule.

        Returns (batch, reclaimed, resumed). `reclaimed` is the crashed batch the
        caller must release claims for, if one was taken over. Raises
        ConcurrencyViolation when a live batch already holds the schedule.
        A RUNNING batch listed in `live_batch_ids` is known to be in progress
        and is never taken over, however old its liveness timestamp.
        """
        token = uuid4().hex
        with self.db.transaction() as conn:
            running = self._running_batch(conn, schedule.name)
            if running is not None:
                if (
                    running.id in live_batch_ids
                    or not self.is_stale(running, now, stale_after_seconds)
                ):
                    raise ConcurrencyViolation(schedule.name, running.id)
                # A crashed loop never reached its finally block; take it over
                conn.execute(
                    """
                    UPDATE execution_batches
                    SET last_checkpoint = ?, forced = ?, interrupt_requested = 0,
                        status_reason = ?, owner_token = ?
                    WHERE id = ?
                    """,
                    (
                        to_db_time(now),
                        int(forced),
                        f"Reclaimed stale batch (last checkpoint {running.last_checkpoint})",
                        token,
                        running.id,
                    ),
                )
                logger.warning(
                    "Reclaiming stale batch %s for schedule %s", running.id, schedule.name
                )
                return self._load_batch(conn, running.id), running, True

            resumable = None
            if resume_batch_id is not None:
                resumable = self._load_batch(conn, resume_batch_id)
                if resumable is None or resumable.schedule_name != schedule.name:
                    resumable = None
            else:
                row = conn.execute(_RESUMABLE_SQL, (schedule.name,)).fetchone()
                resumable = self._deserialize_batch(row) if row else None

            if resumable is not None and resumable.status == BatchStatus.INTERRUPTED:
                check_batch_transition(resumable.id, resumable.status, BatchStatus.RUNNING)
                conn.execute(
                    """
                    UPDATE execution_batches
                    SET status = 'RUNNING', end_time = NULL, last_checkpoint = ?,
                        forced = ?, interrupt_requested = 0, status_reason = NULL,
                        owner_token = ?
                    WHERE id = ?
                    """,
                    (to_db_time(now), int(forced), token, resumable.id),
                )
                return self._load_batch(conn, resumable.id), None, True

            check_batch_transition("new", None, BatchStatus.RUNNING)
            batch = ExecutionBatch(
                id=f"batch_{uuid4().hex[:12]}",
                schedule_id=schedule.id,
                schedule_name=schedule.name,
                start_time=now,
                last_checkpoint=now,
                forced=forced,
                owner_token=token,
            )
            conn.execute(
                """
                INSERT INTO execution_batches (
                    id, schedule_id, schedule_name, status, start_time,
                    last_checkpoint, forced, owner_token
                ) VALUES (?, ?, ?, 'RUNNING', ?, ?, ?, ?)
                """,
                (
                    batch.id,
                    batch.schedule_id,
                    batch.schedule_name,
                    to_db_time(now),
                    to_db_time(now),
                    int(forced),
                    token,
                ),
            )
            return batch, None, False

    @staticmethod
    def is_stale(
        batch: ExecutionBatch, now: datetime, stale_after_seconds: Optional[int]
    ) -> bool:
        if stale_after_seconds is None:
            return False
        heartbeat = batch.last_checkpoint or batch.start_time
        return now - heartbeat > timedelta(seconds=stale_after_seconds)

    def _check_owner(
        self, conn: sqlite3.Connection, batch_id: str, owner_token: Optional[str]
    ) -> None:
        if owner_token is None:
            return
        row = conn.execute(
            "SELECT owner_token FROM execution_batches WHERE id = ?", (batch_id,)
        ).fetchone()
        if row is None or row["owner_token"] != owner_token:
            raise BatchOwnershipLost(batch_id)

    def owns(self, batch_id: str, owner_token: str) -> bool:
        row = self.db.fetchone(
            "SELECT owner_token FROM execution_batches WHERE id = ?", (batch_id,)
        )
        return row is not None and row["owner_token"] == owner_token

    def touch(
        self, batch_id: str, now: datetime, owner_token: Optional[str] = None
    ) -> bool:
        """
        Refresh the liveness timestamp used for stale-batch detection.
        With a token, only the current owner may refresh; returns False otherwise.
        """
        with self.db.transaction() as conn:
            if owner_token is None:
                cursor = conn.execute(
                    "UPDATE execution_batches SET last_checkpoint = ? WHERE id = ?",
                    (to_db_time(now), batch_id),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE execution_batches SET last_checkpoint = ?
                    WHERE id = ? AND owner_token = ?
                    """,
                    (to_db_time(now), batch_id, owner_token),
                )
        return cursor.rowcount > 0

    def add_to_total(self, batch_id: str, count: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE execution_batches SET operations_total = operations_total + ? WHERE id = ?",
                (count, batch_id),
            )

    def set_progress(
        self,
        batch_id: str,
        operations_completed: int,
        operations_total: Optional[int] = None,
    ) -> None:
        with self.db.transaction() as conn:
            if operations_total is None:
                conn.execute(
                    "UPDATE execution_batches SET operations_completed = ? WHERE id = ?",
                    (operations_completed, batch_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE execution_batches
                    SET operations_completed = ?, operations_total = ?
                    WHERE id = ?
                    """,
                    (operations_completed, operations_total, batch_id),
                )

    def checkpoint(
        self,
        batch_id: str,
        last_processed_entry_id: Optional[int],
        operations_completed: int,
        now: datetime,
        owner_token: Optional[str] = None,
    ) -> bool:
        """
        Persist the resume pointer and completed count.
        Returns True when an operator interrupt is pending for the batch.
        Raises BatchOwnershipLost if `owner_token` no longer owns the batch.
        """
        with self.db.transaction() as conn:
            self._check_owner(conn, batch_id, owner_token)
            conn.execute(
                """
                UPDATE execution_batches
                SET last_processed_entry_id = ?, operations_completed = ?,
                    last_checkpoint = ?
                WHERE id = ?
                """,
                (last_processed_entry_id, operations_completed, to_db_time(now), batch_id),
            )
            row = conn.execute(
                "SELECT interrupt_requested FROM execution_batches WHERE id = ?",
                (batch_id,),
            ).fetchone()
        return bool(row and row["interrupt_requested"])

    def interrupt_pending(self, batch_id: str) -> bool:
        row = self.db.fetchone(
            "SELECT interrupt_requested FROM execution_batches WHERE id = ?",
            (batch_id,),
        )
        return bool(row and row["interrupt_requested"])

    def request_interrupt(self, batch_id: str) -> Optional[ExecutionBatch]:
        """Flag a RUNNING batch to stop at its next checkpoint boundary."""
        with self.db.transaction() as conn:
            batch = self._load_batch(conn, batch_id)
            if batch is None or batch.status != BatchStatus.RUNNING:
                return batch
            conn.execute(
                "UPDATE execution_batches SET interrupt_requested = 1 WHERE id = ?",
                (batch_id,),
            )
            logger.info("Interrupt requested for batch %s", batch_id)
            return self._load_batch(conn, batch_id)

    def finish_batch(
        self,
        batch_id: str,
        status: BatchStatus,
        reason: Optional[str],
        now: datetime,
        owner_token: Optional[str] = None,
    ) -> ExecutionBatch:
        """RUNNING -> COMPLETED | INTERRUPTED | FAILED."""
        with self.db.transaction() as conn:
            self._check_owner(conn, batch_id, owner_token)
            batch = self._load_batch(conn, batch_id)
            self._set_status(conn, batch, status, reason, now, end=True)
            return self._load_batch(conn, batch_id)

    # --- Condition statistics ---

    def record_condition_result(
        self,
        condition_id: int,
        result: bool,
        error: Optional[str],
        now: datetime,
    ) -> None:
        """
        Accumulate one evaluation. A predicate error counts as a failure
        regardless of what the fail-policy mapped it to.
        """
        succeeded = result and error is None
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO condition_stats (
                    condition_id, evaluation_count, success_count, failure_count,
                    last_evaluated_at, last_result, last_error
                ) VALUES (?, 1, ?, ?, ?, ?, ?)
                ON CONFLICT(condition_id) DO UPDATE SET
                    evaluation_count = evaluation_count + 1,
                    success_count = success_count + excluded.success_count,
                    failure_count = failure_count + excluded.failure_count,
                    last_evaluated_at = excluded.last_evaluated_at,
                    last_result = excluded.last_result,
                    last_error = excluded.last_error
                """,
                (
                    condition_id,
                    1 if succeeded else 0,
                    0 if succeeded else 1,
                    to_db_time(now),
                    int(result),
                    error,
                ),
            )

    def get_condition_stats(self, condition_id: int) -> ConditionStats:
        row = self.db.fetchone(
            "SELECT * FROM condition_stats WHERE condition_id = ?", (condition_id,)
        )
        if row is None:
            return ConditionStats(condition_id=condition_id)
        data = dict(row)
        if data["last_result"] is not None:
            data["last_result"] = bool(data["last_result"])
        return ConditionStats(**data)

    def list_condition_stats(self) -> List[ConditionStats]:
        rows = self.db.fetchall("SELECT condition_id FROM condition_stats ORDER BY condition_id")
        return [self.get_condition_stats(r["condition_id"]) for r in rows]

    # --- Execution log ---

    def log_execution(self, record: ExecutionLogRecord) -> ExecutionLogRecord:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO execution_log (
                    entry_id, batch_id, policy_id, policy_name, segment_id,
                    action_type, action_script, status, started_at, finished_at,
                    duration_seconds, size_before_mb, size_after_mb,
                    space_saved_mb, compression_ratio, error_detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.entry_id,
                    record.batch_id,
                    record.policy_id,
                    record.policy_name,
                    record.segment_id,
                    record.action_type,
                    record.action_script,
                    record.status.value,
                    to_db_time(record.started_at),
                    to_db_time(record.finished_at),
                    record.duration_seconds,
                    record.size_before_mb,
                    record.size_after_mb,
                    record.space_saved_mb,
                    record.compression_ratio,
                    record.error_detail,
                ),
            )
        return record.model_copy(update={"id": cursor.lastrowid})

    def list_execution_log(
        self,
        batch_id: Optional[str] = None,
        entry_id: Optional[int] = None,
    ) -> List[ExecutionLogRecord]:
        sql = "SELECT * FROM execution_log WHERE 1 = 1"
        params: tuple = ()
        if batch_id is not None:
            sql += " AND batch_id = ?"
            params += (batch_id,)
        if entry_id is not None:
            sql += " AND entry_id = ?"
            params += (entry_id,)
        rows = self.db.fetchall(sql + " ORDER BY id", params)
        return [ExecutionLogRecord(**dict(r)) for r in rows]
