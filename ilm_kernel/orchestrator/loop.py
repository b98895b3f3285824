"""
Execution Orchestrator — drains the evaluation queue for a schedule.

States (per batch):
  RUNNING -> COMPLETED | INTERRUPTED | FAILED
  INTERRUPTED -> RUNNING (resume)

Loop:
  window closed (unless forced)   -> INTERRUPTED mid-flight, else exit
  no eligible PENDING entries     -> COMPLETED (or nothing to do)
  open/resume the batch           -> concurrency gate
  pull <batch_size> entries by (priority, policy id, enqueue time)
  claim -> execute -> EXECUTED | FAILED, checkpoint every N entries
  cooldown (interruptible), then re-check the window

Crash semantics: a claim is committed before the executor is called and
the terminal status after it returns. If the process dies in between, the
entry stays CLAIMED; when the stale batch is reclaimed the entry is released
to PENDING and executed again. Actions are therefore at-least-once and
handlers must be idempotent, while each queue transition happens at most once.

Ownership: every open, resume or takeover gives the batch a fresh owner
token. While an action runs, a lease thread keeps the batch's liveness
timestamp fresh so slow actions do not make it look crashed. A loop whose
batch was taken over anyway stops with SUPERSEDED and writes nothing more.
An orchestrator-level failure marks the batch FAILED and releases its
in-flight claims back to PENDING.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from ilm_kernel.config.source import ConfigSource
from ilm_kernel.errors import (
    ActionExecutionError,
    BatchOwnershipLost,
    ConcurrencyViolation,
    EntryNotFoundError,
    IllegalTransitionError,
    OrchestratorError,
    ScheduleNotFoundError,
)
from ilm_kernel.events.bus import EventBus
from ilm_kernel.execution.fabric import ActionExecutor
from ilm_kernel.inventory.store import SegmentInventory
from ilm_kernel.models.config import ConfigSnapshot
from ilm_kernel.models.execution import (
    ActionResult,
    ActionStatus,
    BatchStatus,
    ExecutionBatch,
    ExecutionLogRecord,
    RunOutcome,
    RunResult,
)
from ilm_kernel.models.policy import Policy
from ilm_kernel.models.queue import QueueEntry, QueueStatus
from ilm_kernel.models.schedule import Schedule
from ilm_kernel.policy.evaluator import PolicyEvaluator
from ilm_kernel.queue.store import QueueStore
from ilm_kernel.schedule.readiness import ReadinessChecker, eligible_policy_ids
from ilm_kernel.schedule.window import is_in_window
from ilm_kernel.state.store import ExecutionStateStore

logger = logging.getLogger(__name__)


class _BatchRun:
    """Mutable bookkeeping for one run() call."""

    def __init__(self, schedule: Schedule, forced: bool):
        self.schedule = schedule
        self.forced = forced
        self.batch: Optional[ExecutionBatch] = None
        self.owner_token: Optional[str] = None
        self.resumed = False
        self.completed = 0
        self.since_checkpoint = 0
        self.last_entry_id: Optional[int] = None
        self.processed: List[int] = []
        self.failed = 0


class _Lease:
    """Refreshes a batch's liveness timestamp from a background thread."""

    def __init__(
        self,
        state_store: ExecutionStateStore,
        batch_id: Optional[str],
        owner_token: Optional[str],
        clock: Callable[[], datetime],
        interval: Optional[float],
    ):
        self.state_store = state_store
        self.batch_id = batch_id
        self.owner_token = owner_token
        self.clock = clock
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "_Lease":
        if self.batch_id is not None and self.interval:
            self._thread = threading.Thread(
                target=self._renew, name=f"lease-{self.batch_id}", daemon=True
            )
            self._thread.start()
        return self

    def __exit__(self, *exc_info) -> bool:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        return False

    def _renew(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                if not self.state_store.touch(self.batch_id, self.clock(), self.owner_token):
                    logger.warning("Lease on batch %s lost", self.batch_id)
                    return
            except Exception:
                logger.exception("Could not renew lease on batch %s", self.batch_id)
                return


class ExecutionOrchestrator:

    def __init__(
        self,
        config: ConfigSource,
        queue: QueueStore,
        state_store: ExecutionStateStore,
        executor: ActionExecutor,
        inventory: SegmentInventory,
        readiness: ReadinessChecker,
        policy_evaluator: Optional[PolicyEvaluator] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        lease_interval: Optional[float] = None,
    ):
        self.config = config
        self.queue = queue
        self.state_store = state_store
        self.executor = executor
        self.inventory = inventory
        self.readiness = readiness
        self.policy_evaluator = policy_evaluator
        self.events = events or EventBus()
        self.clock = clock or datetime.utcnow
        # seconds between lease renewals; default is a third of the stale timeout
        self.lease_interval = lease_interval
        self._sleep = sleep
        # batches this orchestrator is currently running, with their cooldown wake-ups
        self._wakes: Dict[str, threading.Event] = {}
        self._wakes_lock = threading.Lock()

    # --- Operator controls ---

    def force_run(self, schedule_name: str) -> RunResult:
        """Run now, ignoring day, window and condition gates."""
        return self.run(schedule_name, force=True)

    def interrupt(self, batch_id: str) -> Optional[ExecutionBatch]:
        """
        Ask a RUNNING batch to stop. Honoured at the next checkpoint
        boundary; a batch waiting out its cooldown is woken immediately.
        """
        batch = self.state_store.request_interrupt(batch_id)
        with self._wakes_lock:
            wake = self._wakes.get(batch_id)
        if wake is not None:
            wake.set()
        return batch

    def run_cycle(self, schedule_name: str) -> RunResult:
        """Evaluate all policies, then force-run the schedule."""
        if self.policy_evaluator is None:
            raise OrchestratorError("run_cycle requires a policy evaluator")
        self.policy_evaluator.evaluate_all(self.clock())
        return self.force_run(schedule_name)

    # --- Main loop ---

    def run(
        self,
        schedule_name: str,
        force: bool = False,
        resume_batch_id: Optional[str] = None,
    ) -> RunResult:
        snapshot = self.config.snapshot()
        schedule = snapshot.schedule(schedule_name)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_name} not found")

        if not schedule.enabled:
            return self._skipped(schedule_name, "Schedule is disabled")
        if not force:
            report = self.readiness.check(schedule_name, self.clock(), snapshot)
            if not report.ready:
                return self._skipped(schedule_name, f"{report.gate.value}: {report.detail}")

        state = _BatchRun(schedule, force)
        try:
            return self._loop(state, snapshot, resume_batch_id)
        except ConcurrencyViolation as e:
            logger.info("Skipping run: %s", e)
            return self._skipped(schedule_name, str(e))
        except BatchOwnershipLost as e:
            return self._superseded(state, e)
        except Exception as e:
            self._fail(state, e)
            raise OrchestratorError(
                f"Execution loop for schedule {schedule_name} failed: {e}"
            ) from e
        finally:
            if state.batch is not None:
                with self._wakes_lock:
                    self._wakes.pop(state.batch.id, None)

    def _loop(
        self,
        state: _BatchRun,
        snapshot: ConfigSnapshot,
        resume_batch_id: Optional[str],
    ) -> RunResult:
        schedule = state.schedule
        policy_ids = eligible_policy_ids(snapshot)

        while True:
            if state.batch is not None:
                self._assert_owner(state)

            if not state.forced and not is_in_window(schedule, self.clock()):
                if state.batch is None:
                    return self._skipped(schedule.name, "Outside execution window")
                return self._finish(state, BatchStatus.INTERRUPTED, "Execution window closed")

            if self.queue.count_pending(policy_ids) == 0:
                if state.batch is None:
                    return RunResult(
                        schedule_name=schedule.name,
                        outcome=RunOutcome.NO_WORK,
                        reason="No eligible pending work",
                    )
                return self._finish(state, BatchStatus.COMPLETED, "Queue drained")

            if state.batch is None:
                self._open_batch(state, snapshot, resume_batch_id)

            entries = self.queue.next_pending(snapshot.engine.batch_size, policy_ids)
            self.state_store.add_to_total(state.batch.id, len(entries))

            for entry in entries:
                self._assert_owner(state)
                claimed = self._claim_for_batch(entry, state)
                if claimed is None:
                    continue
                result = self._process_claimed(
                    claimed, snapshot, state.batch.id, state.owner_token
                )
                state.completed += 1
                state.since_checkpoint += 1
                state.last_entry_id = entry.id
                state.processed.append(entry.id)
                if result.status == QueueStatus.FAILED:
                    state.failed += 1

                if (
                    schedule.checkpointing_enabled
                    and state.since_checkpoint >= schedule.checkpoint_frequency
                ):
                    if self._checkpoint(state):
                        return self._finish(
                            state, BatchStatus.INTERRUPTED, "Interrupted by operator"
                        )

            if not schedule.checkpointing_enabled:
                self.state_store.set_progress(state.batch.id, state.completed)
            if self.state_store.interrupt_pending(state.batch.id):
                return self._finish(state, BatchStatus.INTERRUPTED, "Interrupted by operator")

            if schedule.cooldown_minutes > 0:
                self._cooldown(state)
                if self.state_store.interrupt_pending(state.batch.id):
                    return self._finish(
                        state, BatchStatus.INTERRUPTED, "Interrupted by operator"
                    )

    def _live_batch_ids(self) -> Set[str]:
        with self._wakes_lock:
            return set(self._wakes)

    def _open_batch(
        self,
        state: _BatchRun,
        snapshot: ConfigSnapshot,
        resume_batch_id: Optional[str],
    ) -> None:
        now = self.clock()
        batch, reclaimed, resumed = self.state_store.try_start_batch(
            state.schedule,
            now,
            forced=state.forced,
            resume_batch_id=resume_batch_id,
            stale_after_seconds=snapshot.engine.stale_batch_timeout_seconds,
            live_batch_ids=self._live_batch_ids(),
        )
        if reclaimed is not None:
            self.queue.release_claims(
                reclaimed.id, f"Released from stale batch {reclaimed.id} for retry"
            )

        state.batch = batch
        state.owner_token = batch.owner_token
        state.resumed = resumed
        state.completed = self.queue.count_processed_by_batch(batch.id)
        state.last_entry_id = batch.last_processed_entry_id
        self.state_store.set_progress(batch.id, state.completed, state.completed)

        with self._wakes_lock:
            self._wakes[batch.id] = threading.Event()

        if state.resumed:
            logger.info(
                "Resumed batch %s for schedule %s (%d entries already done)",
                batch.id, state.schedule.name, state.completed,
            )
            self.events.emit(
                "batch.resumed",
                occurred_at=now,
                schedule_name=state.schedule.name,
                batch_id=batch.id,
                payload={
                    "operations_completed": state.completed,
                    "reclaimed": reclaimed is not None,
                },
            )
        else:
            logger.info(
                "Started batch %s for schedule %s%s",
                batch.id, state.schedule.name, " (forced)" if state.forced else "",
            )
            self.events.emit(
                "batch.started",
                occurred_at=now,
                schedule_name=state.schedule.name,
                batch_id=batch.id,
                payload={"forced": state.forced},
            )

    def _assert_owner(self, state: _BatchRun) -> None:
        if not self.state_store.owns(state.batch.id, state.owner_token):
            raise BatchOwnershipLost(state.batch.id)

    def _checkpoint(self, state: _BatchRun) -> bool:
        """Persist progress. Returns True if an operator interrupt is pending."""
        now = self.clock()
        interrupt = self.state_store.checkpoint(
            state.batch.id, state.last_entry_id, state.completed, now, state.owner_token
        )
        state.since_checkpoint = 0
        self.events.emit(
            "batch.checkpoint",
            occurred_at=now,
            schedule_name=state.schedule.name,
            batch_id=state.batch.id,
            payload={
                "operations_completed": state.completed,
                "last_processed_entry_id": state.last_entry_id,
            },
        )
        return interrupt

    def _cooldown(self, state: _BatchRun) -> None:
        seconds = state.schedule.cooldown_minutes * 60
        logger.debug("Batch %s cooling down for %.0fs", state.batch.id, seconds)
        if self._sleep is not None:
            self._sleep(seconds)
            return
        with self._wakes_lock:
            wake = self._wakes.get(state.batch.id)
        if wake is not None:
            wake.wait(timeout=seconds)

    def _finish(
        self, state: _BatchRun, status: BatchStatus, reason: str
    ) -> RunResult:
        now = self.clock()
        self.state_store.checkpoint(
            state.batch.id, state.last_entry_id, state.completed, now, state.owner_token
        )
        batch = self.state_store.finish_batch(
            state.batch.id, status, reason, now, state.owner_token
        )
        state.batch = batch

        logger.info(
            "Batch %s %s: %s (%d processed, %d failed)",
            batch.id, status.value, reason, len(state.processed), state.failed,
        )
        self.events.emit(
            "batch.finished",
            occurred_at=now,
            schedule_name=state.schedule.name,
            batch_id=batch.id,
            payload={
                "status": status.value,
                "reason": reason,
                "operations_completed": batch.operations_completed,
                "operations_total": batch.operations_total,
            },
        )
        outcome = (
            RunOutcome.COMPLETED if status == BatchStatus.COMPLETED
            else RunOutcome.INTERRUPTED
        )
        return RunResult(
            schedule_name=state.schedule.name,
            outcome=outcome,
            batch_id=batch.id,
            resumed=state.resumed,
            reason=reason,
            entries_processed=len(state.processed),
            entries_failed=state.failed,
            processed_entry_ids=state.processed,
        )

    def _fail(self, state: _BatchRun, error: Exception) -> None:
        """
        Orchestrator-level failure: mark the batch FAILED, hand its in-flight
        claims back to the queue and report it.
        """
        logger.critical(
            "Execution loop for schedule %s failed: %s",
            state.schedule.name, error, exc_info=True,
        )
        if state.batch is not None:
            batch_id = state.batch.id
            owned = True
            try:
                self.state_store.finish_batch(
                    batch_id, BatchStatus.FAILED, f"Orchestrator error: {error}",
                    self.clock(), state.owner_token,
                )
            except BatchOwnershipLost:
                owned = False
                logger.warning("Batch %s already belongs to another run", batch_id)
            except Exception:
                logger.exception("Could not mark batch %s FAILED", batch_id)
            if owned:
                try:
                    self.queue.release_claims(
                        batch_id, f"Released after batch {batch_id} failed: {error}"
                    )
                except Exception:
                    logger.exception("Could not release claims of batch %s", batch_id)
        self.events.emit(
            "orchestrator.failed",
            schedule_name=state.schedule.name,
            batch_id=state.batch.id if state.batch else None,
            payload={"error": str(error)},
        )

    def _superseded(self, state: _BatchRun, error: BatchOwnershipLost) -> RunResult:
        """Another run owns the batch now; stop without writing to it."""
        logger.warning("Run of schedule %s stopped: %s", state.schedule.name, error)
        self.events.emit(
            "batch.superseded",
            schedule_name=state.schedule.name,
            batch_id=error.batch_id,
            payload={
                "reason": str(error),
                "entries_processed": len(state.processed),
            },
        )
        return RunResult(
            schedule_name=state.schedule.name,
            outcome=RunOutcome.SUPERSEDED,
            batch_id=error.batch_id,
            resumed=state.resumed,
            reason=str(error),
            entries_processed=len(state.processed),
            entries_failed=state.failed,
            processed_entry_ids=state.processed,
        )

    def _skipped(self, schedule_name: str, reason: str) -> RunResult:
        logger.info("Run of schedule %s skipped: %s", schedule_name, reason)
        self.events.emit(
            "run.skipped",
            schedule_name=schedule_name,
            payload={"reason": reason},
        )
        return RunResult(
            schedule_name=schedule_name,
            outcome=RunOutcome.SKIPPED,
            reason=reason,
        )

    # --- Entry processing ---

    def _claim_for_batch(
        self, entry: QueueEntry, state: _BatchRun
    ) -> Optional[QueueEntry]:
        """
        Claim a pulled entry for the batch. Returns None when another run
        (an ad-hoc execution, say) claimed or closed it since the pull.
        """
        now = self.clock()
        try:
            claimed = self.queue.claim(
                entry.id, state.batch.id, state.completed + 1, now, state.owner_token
            )
        except (IllegalTransitionError, EntryNotFoundError) as e:
            logger.info("Entry %s was taken by another run, skipping: %s", entry.id, e)
            self.state_store.add_to_total(state.batch.id, -1)
            self.events.emit(
                "entry.claim_lost",
                occurred_at=now,
                batch_id=state.batch.id,
                entry_id=entry.id,
                payload={"reason": str(e)},
            )
            return None
        self.state_store.touch(state.batch.id, now, state.owner_token)
        return claimed

    def _lease_interval(self, snapshot: ConfigSnapshot) -> Optional[float]:
        if self.lease_interval is not None:
            return self.lease_interval
        timeout = snapshot.engine.stale_batch_timeout_seconds
        return timeout / 3 if timeout > 0 else None

    def _process_claimed(
        self,
        claimed: QueueEntry,
        snapshot: ConfigSnapshot,
        batch_id: Optional[str],
        owner_token: Optional[str],
    ) -> QueueEntry:
        """
        Execute and close one claimed entry. Executor failures are isolated
        here; anything else raised is an orchestrator failure.
        """
        policy = snapshot.policy(claimed.policy_id)
        segment = self.inventory.get_segment(claimed.segment_id)
        if policy is None or segment is None:
            missing = "policy" if policy is None else "segment"
            reason = f"The {missing} no longer exists"
            closed = self.queue.skip(claimed.id, reason, self.clock(), owner_token)
            logger.warning("Skipped entry %s: %s", claimed.id, reason)
            self.events.emit(
                "entry.skipped",
                batch_id=batch_id,
                entry_id=claimed.id,
                payload={"reason": reason},
            )
            return closed

        started_at = self.clock()
        start = time.monotonic()
        lease = _Lease(
            self.state_store, batch_id, owner_token, self.clock,
            self._lease_interval(snapshot),
        )
        with lease:
            try:
                result = self.executor.execute(claimed, policy, segment)
            except Exception as e:
                error = ActionExecutionError(
                    f"Action {policy.action_type.value} on {segment.id} raised: {e}"
                )
                result = ActionResult(
                    status=ActionStatus.ERROR,
                    error_detail=str(error),
                    size_before_mb=segment.size_mb,
                )
        duration = round(time.monotonic() - start, 3)
        finished_at = self.clock()

        # the executor call happened either way, so the audit row comes first
        self.state_store.log_execution(
            self._log_record(claimed, policy, batch_id, result, started_at, finished_at, duration)
        )
        status = QueueStatus.EXECUTED if result.succeeded else QueueStatus.FAILED
        closed = self.queue.complete(claimed.id, status, result, finished_at, owner_token)

        if status == QueueStatus.FAILED:
            logger.warning(
                "Entry %s (%s on %s) failed: %s",
                claimed.id, policy.name, segment.id, result.error_detail,
            )
        self.events.emit(
            "entry.executed" if status == QueueStatus.EXECUTED else "entry.failed",
            occurred_at=finished_at,
            batch_id=batch_id,
            entry_id=claimed.id,
            payload={
                "policy_id": policy.id,
                "segment_id": segment.id,
                "action_status": result.status.value,
                "error_detail": result.error_detail,
            },
        )
        return closed

    @staticmethod
    def _log_record(
        entry: QueueEntry,
        policy: Policy,
        batch_id: Optional[str],
        result: ActionResult,
        started_at: datetime,
        finished_at: datetime,
        duration: float,
    ) -> ExecutionLogRecord:
        space_saved = None
        ratio = None
        if result.size_before_mb is not None and result.size_after_mb is not None:
            space_saved = round(result.size_before_mb - result.size_after_mb, 2)
            if result.size_after_mb > 0:
                ratio = round(result.size_before_mb / result.size_after_mb, 2)
        return ExecutionLogRecord(
            entry_id=entry.id,
            batch_id=batch_id,
            policy_id=policy.id,
            policy_name=policy.name,
            segment_id=entry.segment_id,
            action_type=policy.action_type.value,
            action_script=result.action_script,
            status=result.status,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=duration,
            size_before_mb=result.size_before_mb,
            size_after_mb=result.size_after_mb,
            space_saved_mb=space_saved,
            compression_ratio=ratio,
            error_detail=result.error_detail,
        )

    # --- Ad-hoc execution ---

    def execute_entry(self, entry_id: int) -> QueueEntry:
        """
        Run one queued action outside any batch. Raises IllegalTransitionError
        if the entry is no longer PENDING.
        """
        entry = self.queue.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Queue entry {entry_id} not found")
        claimed = self.queue.claim(entry.id, None, None, self.clock())
        return self._process_claimed(claimed, self.config.snapshot(), None, None)

    def execute_policy(
        self, policy_id: int, max_operations: Optional[int] = None
    ) -> List[QueueEntry]:
        """Drain one enabled policy's PENDING entries without opening a schedule batch."""
        snapshot = self.config.snapshot()
        policy = snapshot.policy(policy_id)
        if policy is None:
            logger.warning("Policy %s not found", policy_id)
            return []
        if not policy.enabled:
            logger.warning("Policy %s is disabled, not executing its entries", policy.name)
            return []

        done: List[QueueEntry] = []
        while max_operations is None or len(done) < max_operations:
            limit = snapshot.engine.batch_size
            if max_operations is not None:
                limit = min(limit, max_operations - len(done))
            entries = self.queue.next_pending(limit, [policy_id])
            if not entries:
                break
            for entry in entries:
                try:
                    claimed = self.queue.claim(entry.id, None, None, self.clock())
                except (IllegalTransitionError, EntryNotFoundError):
                    logger.info("Entry %s was taken by another run, skipping", entry.id)
                    continue
                done.append(self._process_claimed(claimed, snapshot, None, None))
        logger.info("Executed %d entries for policy %s", len(done), policy_id)
        return done
