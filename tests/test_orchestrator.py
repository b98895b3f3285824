"""Tests for the Execution Orchestrator."""

import sqlite3
import threading
import time
from datetime import datetime, timedelta

import pytest

from ilm_kernel.config.source import InMemoryConfigSource
from ilm_kernel.errors import IllegalTransitionError, OrchestratorError, ScheduleNotFoundError
from ilm_kernel.events.bus import EventBus, MemoryEventSink
from ilm_kernel.inventory.store import InMemorySegmentInventory
from ilm_kernel.kernel import IlmKernel
from ilm_kernel.models.config import ConfigSnapshot, EngineConfig
from ilm_kernel.models.execution import (
    ActionResult,
    ActionStatus,
    BatchStatus,
    RunOutcome,
)
from ilm_kernel.models.policy import ActionType, Policy, PredicateKind, TargetSelector
from ilm_kernel.models.queue import QueueStatus
from ilm_kernel.models.schedule import Condition, Schedule
from ilm_kernel.models.segment import Segment
from ilm_kernel.orchestrator.loop import ExecutionOrchestrator

NIGHTS = "22:00-06:00"
# 2024-01-02 is a Tuesday
TUESDAY_NIGHT = datetime(2024, 1, 2, 23, 0)


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingExecutor:
    """Returns scripted results per segment and records every call."""

    def __init__(self, results=None, on_call=None):
        self.calls = []
        self.segments = []
        self.results = results or {}
        self.on_call = on_call

    def execute(self, entry, policy, segment):
        self.calls.append(entry.id)
        self.segments.append(segment.id)
        if self.on_call is not None:
            self.on_call(entry)
        outcome = self.results.get(segment.id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            outcome = ActionResult(
                status=ActionStatus.SUCCESS,
                action_script=f"compress {segment.id}",
                size_before_mb=segment.size_mb,
                size_after_mb=segment.size_mb / 4,
            )
        return outcome


def _make_schedule(**overrides) -> Schedule:
    data = dict(
        id=1,
        name="nightly",
        monday_hours=None,
        tuesday_hours=NIGHTS,
        wednesday_hours=NIGHTS,
        thursday_hours=NIGHTS,
        friday_hours=NIGHTS,
        saturday_hours=NIGHTS,
        sunday_hours=NIGHTS,
        cooldown_minutes=0,
    )
    data.update(overrides)
    return Schedule(**data)


def _make_policy(policy_id: int = 1, table: str = "FACT_ORDERS", priority: int = 100) -> Policy:
    return Policy(
        id=policy_id,
        name=f"compress_{table.lower()}",
        target=TargetSelector(owner="SALES", table_name=table),
        action_type=ActionType.COMPRESS,
        priority=priority,
    )


def _make_segments(count: int, table: str = "FACT_ORDERS"):
    return [
        Segment(
            id=f"SALES.{table}.P{i:03d}",
            owner="SALES",
            table_name=table,
            partition_name=f"P{i:03d}",
            age_days=400,
            size_mb=100.0,
        )
        for i in range(count)
    ]


class OrchestratorTestBase:
    def setup_method(self):
        self.clock = FakeClock(TUESDAY_NIGHT)
        self.sink = MemoryEventSink()
        self.executor = RecordingExecutor()

    def _build(
        self,
        segments=None,
        policies=None,
        schedule=None,
        conditions=None,
        batch_size: int = 10,
        sleep=None,
    ) -> IlmKernel:
        snapshot = ConfigSnapshot(
            policies=policies or [_make_policy()],
            schedules=[schedule or _make_schedule()],
            conditions=conditions or [],
            engine=EngineConfig(batch_size=batch_size),
        )
        self.kernel = IlmKernel(
            config=InMemoryConfigSource(snapshot),
            inventory=InMemorySegmentInventory(
                segments if segments is not None else _make_segments(10)
            ),
            executor=self.executor,
            events=EventBus([self.sink]),
            clock=self.clock,
            sleep=sleep,
        )
        self.kernel.policy_evaluator.evaluate_all(self.clock())
        return self.kernel

    def _statuses(self):
        return [e.status for e in self.kernel.queue.list_entries()]


class TestRun(OrchestratorTestBase):
    def test_drains_queue_and_completes(self):
        kernel = self._build()
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert result.entries_processed == 10
        assert self._statuses() == [QueueStatus.EXECUTED] * 10

        batch = kernel.state_store.get_batch(result.batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.operations_completed == 10
        assert batch.operations_total == 10
        assert batch.end_time == TUESDAY_NIGHT
        assert self.sink.names()[0] == "batch.started"
        assert self.sink.names()[-1] == "batch.finished"

    def test_multiple_pulls_reuse_one_batch(self):
        kernel = self._build(batch_size=3)
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert len(kernel.state_store.list_batches()) == 1
        assert {e.batch_id for e in kernel.queue.list_entries()} == {result.batch_id}
        assert [e.batch_sequence for e in kernel.queue.list_for_batch(result.batch_id)] == list(range(1, 11))

    def test_priority_100_before_900(self):
        kernel = self._build(
            segments=_make_segments(4, "FACT_ORDERS") + _make_segments(4, "FACT_RETURNS"),
            policies=[
                _make_policy(1, "FACT_RETURNS", priority=900),
                _make_policy(2, "FACT_ORDERS", priority=100),
            ],
            batch_size=3,
        )
        kernel.orchestrator.run("nightly")

        tables = [s.split(".")[1] for s in self.executor.segments]
        assert tables == ["FACT_ORDERS"] * 4 + ["FACT_RETURNS"] * 4

    def test_warning_lands_executed_with_text(self):
        target = "SALES.FACT_ORDERS.P000"
        self.executor.results[target] = ActionResult(
            status=ActionStatus.WARNING,
            action_script=f"compress {target}",
            error_detail="Index rebuild deferred",
        )
        kernel = self._build(segments=_make_segments(1))
        kernel.orchestrator.run("nightly")

        entry = kernel.queue.list_entries()[0]
        assert entry.status == QueueStatus.EXECUTED
        assert entry.action_status == "WARNING"
        assert entry.error_detail == "Index rebuild deferred"

    def test_error_result_fails_entry_and_batch_continues(self):
        self.executor.results["SALES.FACT_ORDERS.P001"] = ActionResult(
            status=ActionStatus.ERROR, error_detail="ORA-01652 unable to extend"
        )
        kernel = self._build(segments=_make_segments(3))
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert result.entries_failed == 1
        assert self._statuses().count(QueueStatus.FAILED) == 1
        assert self._statuses().count(QueueStatus.EXECUTED) == 2
        assert len(self.sink.of("entry.failed")) == 1

    def test_executor_exception_isolated(self):
        self.executor.results["SALES.FACT_ORDERS.P000"] = RuntimeError("connection reset")
        kernel = self._build(segments=_make_segments(2))
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        failed = kernel.queue.list_entries(QueueStatus.FAILED)
        assert len(failed) == 1
        assert "connection reset" in failed[0].error_detail
        assert failed[0].action_status == "ERROR"

    def test_missing_segment_skipped(self):
        kernel = self._build(segments=_make_segments(2))
        kernel.inventory.remove("SALES.FACT_ORDERS.P000")
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert QueueStatus.SKIPPED in self._statuses()
        assert len(self.executor.calls) == 1
        assert len(self.sink.of("entry.skipped")) == 1

    def test_execution_log_written(self):
        kernel = self._build(segments=_make_segments(1))
        result = kernel.orchestrator.run("nightly")

        log = kernel.state_store.list_execution_log(batch_id=result.batch_id)
        assert len(log) == 1
        assert log[0].status == ActionStatus.SUCCESS
        assert log[0].space_saved_mb == 75.0
        assert log[0].compression_ratio == 4.0
        assert log[0].action_type == "COMPRESS"

    def test_unknown_schedule(self):
        kernel = self._build()
        with pytest.raises(ScheduleNotFoundError):
            kernel.orchestrator.run("missing")


class TestGates(OrchestratorTestBase):
    def test_outside_window_skipped(self):
        self.clock.now = datetime(2024, 1, 2, 12, 0)
        kernel = self._build()
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.SKIPPED
        assert "OUTSIDE_WINDOW" in result.reason
        assert kernel.state_store.list_batches() == []
        assert self.executor.calls == []
        assert self.sink.names() == ["run.skipped"]

    def test_no_window_today_skipped(self):
        self.clock.now = datetime(2024, 1, 1, 23, 0)   # Monday
        kernel = self._build()
        result = kernel.orchestrator.run("nightly")
        assert result.outcome == RunOutcome.SKIPPED
        assert "NO_WINDOW_TODAY" in result.reason

    def test_force_bypasses_day_and_window(self):
        self.clock.now = datetime(2024, 1, 1, 12, 0)   # Monday noon
        kernel = self._build()
        result = kernel.orchestrator.force_run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert kernel.state_store.get_batch(result.batch_id).forced is True

    def test_conditions_failing_skipped_but_force_bypasses(self):
        kernel = self._build(conditions=[
            Condition(id=1, schedule_id=1, name="etl_done",
                      kind=PredicateKind.NAMED_PREDICATE, code="etl_done"),
        ])
        kernel.resolver.register_predicate("etl_done", lambda ctx: False)

        assert kernel.orchestrator.run("nightly").outcome == RunOutcome.SKIPPED
        assert kernel.orchestrator.force_run("nightly").outcome == RunOutcome.COMPLETED

    def test_disabled_schedule_skipped_even_when_forced(self):
        kernel = self._build(schedule=_make_schedule(enabled=False))
        assert kernel.orchestrator.force_run("nightly").outcome == RunOutcome.SKIPPED

    def test_no_pending_work(self):
        kernel = self._build(segments=[])
        assert kernel.orchestrator.run("nightly").outcome == RunOutcome.SKIPPED
        assert kernel.orchestrator.force_run("nightly").outcome == RunOutcome.NO_WORK
        assert kernel.state_store.list_batches() == []

    def test_entries_of_disabled_policy_not_pulled(self):
        kernel = self._build(segments=_make_segments(2))
        kernel.config.update(ConfigSnapshot(
            policies=[_make_policy().model_copy(update={"enabled": False})],
            schedules=[_make_schedule()],
        ))
        result = kernel.orchestrator.force_run("nightly")
        assert result.outcome == RunOutcome.NO_WORK
        assert kernel.queue.count_pending() == 2


class TestConcurrency(OrchestratorTestBase):
    def test_second_concurrent_start_is_a_noop(self):
        started = threading.Event()
        release = threading.Event()

        def block_first_call(entry):
            if not started.is_set():
                started.set()
                release.wait(timeout=5)

        self.executor.on_call = block_first_call
        kernel = self._build(segments=_make_segments(3))

        results = {}
        worker = threading.Thread(
            target=lambda: results.update(first=kernel.orchestrator.force_run("nightly"))
        )
        worker.start()
        assert started.wait(timeout=5)

        second = kernel.orchestrator.force_run("nightly")
        running = kernel.state_store.list_batches(status=BatchStatus.RUNNING)

        release.set()
        worker.join(timeout=5)

        assert second.outcome == RunOutcome.SKIPPED
        assert len(running) == 1
        assert results["first"].outcome == RunOutcome.COMPLETED
        assert len(kernel.state_store.list_batches()) == 1
        assert len(self.executor.calls) == 3

    def test_readiness_reports_already_running(self):
        kernel = self._build()
        kernel.state_store.try_start_batch(_make_schedule(), self.clock())
        result = kernel.orchestrator.run("nightly")
        assert result.outcome == RunOutcome.SKIPPED
        assert "ALREADY_RUNNING" in result.reason


class TestInterruptAndResume(OrchestratorTestBase):
    def test_operator_interrupt_then_resume_processes_remainder(self):
        def interrupt_after_third(entry):
            if len(self.executor.calls) == 3:
                self.kernel.orchestrator.interrupt(entry.batch_id)

        self.executor.on_call = interrupt_after_third
        kernel = self._build(schedule=_make_schedule(checkpoint_frequency=1))

        first = kernel.orchestrator.run("nightly")
        assert first.outcome == RunOutcome.INTERRUPTED
        assert first.entries_processed == 3
        batch = kernel.state_store.get_batch(first.batch_id)
        assert batch.status == BatchStatus.INTERRUPTED
        assert batch.operations_completed == 3
        assert batch.last_processed_entry_id == self.executor.calls[2]

        self.executor.on_call = None
        self.clock.advance(minutes=30)
        second = kernel.orchestrator.run("nightly")

        assert second.outcome == RunOutcome.COMPLETED
        assert second.resumed is True
        assert second.batch_id == first.batch_id
        assert second.entries_processed == 7
        assert len(self.executor.calls) == 10
        assert len(set(self.executor.calls)) == 10

        batch = kernel.state_store.get_batch(first.batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.operations_completed == 10
        assert "batch.resumed" in self.sink.names()

    def test_window_close_interrupts_and_next_window_resumes(self):
        self.clock.now = datetime(2024, 1, 3, 5, 50)   # Wednesday, window ends 06:00

        def sleep(seconds):
            self.clock.advance(seconds=seconds)

        kernel = self._build(
            segments=_make_segments(6),
            schedule=_make_schedule(cooldown_minutes=5),
            batch_size=2,
            sleep=sleep,
        )

        first = kernel.orchestrator.run("nightly")
        assert first.outcome == RunOutcome.INTERRUPTED
        assert first.reason == "Execution window closed"
        assert first.entries_processed == 4
        assert kernel.queue.count_pending() == 2

        self.clock.now = datetime(2024, 1, 3, 22, 0)
        second = kernel.orchestrator.run("nightly")
        assert second.outcome == RunOutcome.COMPLETED
        assert second.batch_id == first.batch_id
        assert second.entries_processed == 2
        assert kernel.state_store.get_batch(first.batch_id).operations_completed == 6

    def test_forced_run_ignores_window_close(self):
        self.clock.now = datetime(2024, 1, 3, 5, 58)

        def sleep(seconds):
            self.clock.advance(seconds=seconds)

        kernel = self._build(
            segments=_make_segments(6),
            schedule=_make_schedule(cooldown_minutes=5),
            batch_size=2,
            sleep=sleep,
        )
        result = kernel.orchestrator.force_run("nightly")
        assert result.outcome == RunOutcome.COMPLETED
        assert result.entries_processed == 6

    def test_interrupt_wakes_cooldown(self):
        kernel = self._build(
            segments=_make_segments(4),
            schedule=_make_schedule(cooldown_minutes=60),
            batch_size=2,
        )
        results = {}
        worker = threading.Thread(
            target=lambda: results.update(run=kernel.orchestrator.run("nightly"))
        )
        worker.start()

        deadline = time.monotonic() + 5
        while len(self.executor.calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        batch = kernel.state_store.get_running_batch("nightly")
        kernel.orchestrator.interrupt(batch.id)
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert results["run"].outcome == RunOutcome.INTERRUPTED
        assert results["run"].entries_processed == 2

    def test_checkpointing_disabled_still_records_progress(self):
        kernel = self._build(schedule=_make_schedule(checkpointing_enabled=False))
        result = kernel.orchestrator.run("nightly")
        batch = kernel.state_store.get_batch(result.batch_id)
        assert batch.operations_completed == 10
        assert batch.last_processed_entry_id is not None
        assert "batch.checkpoint" not in self.sink.names()

    def test_checkpoint_events_follow_frequency(self):
        kernel = self._build(schedule=_make_schedule(checkpoint_frequency=4))
        kernel.orchestrator.run("nightly")
        assert len(self.sink.of("batch.checkpoint")) == 2


class TestCrashRecovery(OrchestratorTestBase):
    def _simulate_crash(self, kernel, executed: int, in_flight: int):
        """Leave a RUNNING batch behind with some entries done and one CLAIMED."""
        batch, _, _ = kernel.state_store.try_start_batch(_make_schedule(), self.clock())
        entries = kernel.queue.next_pending(10)
        done = []
        for seq, entry in enumerate(entries[:executed], start=1):
            kernel.queue.claim(entry.id, batch.id, seq, self.clock())
            kernel.queue.complete(
                entry.id, QueueStatus.EXECUTED,
                ActionResult(status=ActionStatus.SUCCESS), self.clock(),
            )
            done.append(entry.id)
        claimed = entries[executed:executed + in_flight]
        for seq, entry in enumerate(claimed, start=executed + 1):
            kernel.queue.claim(entry.id, batch.id, seq, self.clock())
        kernel.state_store.checkpoint(batch.id, done[-1] if done else None, executed, self.clock())
        return batch, done, [e.id for e in claimed]

    def test_stale_batch_reclaimed_and_in_flight_entry_retried(self):
        kernel = self._build(segments=_make_segments(5))
        crashed, done, in_flight = self._simulate_crash(kernel, executed=2, in_flight=1)

        self.clock.advance(hours=2)
        result = kernel.orchestrator.force_run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert result.batch_id == crashed.id
        assert result.resumed is True
        # the in-flight action runs again, the executed ones never do
        assert in_flight[0] in self.executor.calls
        assert not set(done) & set(self.executor.calls)
        assert len(self.executor.calls) == 3

        retried = kernel.queue.get(in_flight[0])
        assert retried.status == QueueStatus.EXECUTED
        assert retried.attempt_count == 2
        assert kernel.state_store.get_batch(crashed.id).operations_completed == 5

    def test_live_batch_not_reclaimed(self):
        kernel = self._build(segments=_make_segments(3))
        self._simulate_crash(kernel, executed=1, in_flight=1)

        self.clock.advance(minutes=5)
        result = kernel.orchestrator.force_run("nightly")

        assert result.outcome == RunOutcome.SKIPPED
        assert self.executor.calls == []

    def test_terminal_entries_never_retransitioned(self):
        kernel = self._build(segments=_make_segments(2))
        _, done, _ = self._simulate_crash(kernel, executed=1, in_flight=0)
        with pytest.raises(IllegalTransitionError):
            kernel.queue.complete(
                done[0], QueueStatus.FAILED,
                ActionResult(status=ActionStatus.ERROR), self.clock(),
            )


class TestOrchestratorFailure(OrchestratorTestBase):
    def test_bookkeeping_failure_marks_batch_failed(self):
        kernel = self._build(schedule=_make_schedule(checkpoint_frequency=2))

        def broken_checkpoint(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        kernel.state_store.checkpoint = broken_checkpoint

        with pytest.raises(OrchestratorError, match="disk I/O error"):
            kernel.orchestrator.run("nightly")

        batch = kernel.state_store.list_batches()[0]
        assert batch.status == BatchStatus.FAILED
        assert "disk I/O error" in batch.status_reason
        assert len(self.sink.of("orchestrator.failed")) == 1
        # work not yet pulled stays queued for the next run
        assert kernel.queue.count_pending() == 8

    def test_failure_after_claim_releases_entry_for_next_run(self):
        kernel = self._build(segments=_make_segments(2))

        def broken_lookup(segment_id):
            raise RuntimeError("inventory unavailable")

        kernel.inventory.get_segment = broken_lookup
        with pytest.raises(OrchestratorError, match="inventory unavailable"):
            kernel.orchestrator.run("nightly")

        failed_batch = kernel.state_store.list_batches()[0]
        assert failed_batch.status == BatchStatus.FAILED
        assert self._statuses() == [QueueStatus.PENDING, QueueStatus.PENDING]
        released = kernel.queue.list_entries()[0]
        assert "inventory unavailable" in released.error_detail
        assert failed_batch.id in released.error_detail

        del kernel.inventory.get_segment
        summary = kernel.policy_evaluator.evaluate_all(self.clock())
        assert summary.already_queued == 2

        result = kernel.orchestrator.run("nightly")
        assert result.outcome == RunOutcome.COMPLETED
        assert result.entries_processed == 2
        assert self._statuses() == [QueueStatus.EXECUTED, QueueStatus.EXECUTED]
        assert kernel.queue.get(released.id).attempt_count == 2


class TestBatchOwnership(OrchestratorTestBase):
    def _other_orchestrator(self, kernel) -> ExecutionOrchestrator:
        """A second orchestrator over the same stores, as another process would have."""
        return ExecutionOrchestrator(
            config=kernel.config,
            queue=kernel.queue,
            state_store=kernel.state_store,
            executor=kernel.executor,
            inventory=kernel.inventory,
            readiness=kernel.readiness,
            events=kernel.events,
            clock=self.clock,
        )

    def _slow_first_action(self, then):
        """Executor hook: the first action outlives the stale timeout, then `then` runs."""
        fired = []
        inner = {}

        def hook(entry):
            if fired:
                return
            fired.append(entry.id)
            self.clock.advance(hours=2)
            inner["result"] = then(entry)

        self.executor.on_call = hook
        return fired, inner

    def test_rerun_in_same_process_during_slow_action_is_a_noop(self):
        kernel = self._build(segments=_make_segments(2))
        _, inner = self._slow_first_action(lambda entry: kernel.orchestrator.run("nightly"))

        result = kernel.orchestrator.run("nightly")

        assert inner["result"].outcome == RunOutcome.SKIPPED
        assert "already has running batch" in inner["result"].reason
        assert result.outcome == RunOutcome.COMPLETED
        assert len(self.executor.calls) == 2
        assert len(set(self.executor.calls)) == 2
        assert kernel.state_store.get_batch(result.batch_id).status == BatchStatus.COMPLETED

    def test_lease_keeps_slow_action_from_looking_stale(self):
        kernel = self._build(segments=_make_segments(2))
        kernel.orchestrator.lease_interval = 0.01
        other = self._other_orchestrator(kernel)

        def wait_for_lease_then_run(entry):
            deadline = time.monotonic() + 5
            while (
                kernel.state_store.get_batch(entry.batch_id).last_checkpoint != self.clock()
                and time.monotonic() < deadline
            ):
                time.sleep(0.01)
            return other.run("nightly")

        _, inner = self._slow_first_action(wait_for_lease_then_run)

        result = kernel.orchestrator.run("nightly")

        assert inner["result"].outcome == RunOutcome.SKIPPED
        assert "ALREADY_RUNNING" in inner["result"].reason
        assert result.outcome == RunOutcome.COMPLETED
        assert len(set(self.executor.calls)) == 2

    def test_taken_over_loop_stops_without_writing(self):
        kernel = self._build(segments=_make_segments(2))
        other = self._other_orchestrator(kernel)
        fired, inner = self._slow_first_action(lambda entry: other.run("nightly"))

        result = kernel.orchestrator.run("nightly")

        takeover = inner["result"]
        assert takeover.outcome == RunOutcome.COMPLETED
        assert takeover.resumed is True
        assert result.outcome == RunOutcome.SUPERSEDED
        assert result.batch_id == takeover.batch_id
        # the in-flight action ran again under the new owner
        assert self.executor.calls[:2] == [fired[0], fired[0]]
        assert len(self.executor.calls) == 3

        batch = kernel.state_store.get_batch(takeover.batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.operations_completed == 2
        assert self._statuses() == [QueueStatus.EXECUTED, QueueStatus.EXECUTED]
        assert len(kernel.state_store.list_execution_log(batch_id=batch.id)) == 3
        assert "batch.superseded" in self.sink.names()
        assert "orchestrator.failed" not in self.sink.names()


class TestAdHocExecution(OrchestratorTestBase):
    def test_execute_policy_drains_only_that_policy(self):
        kernel = self._build(
            segments=_make_segments(3, "FACT_ORDERS") + _make_segments(2, "FACT_RETURNS"),
            policies=[_make_policy(1, "FACT_ORDERS"), _make_policy(2, "FACT_RETURNS")],
        )
        done = kernel.orchestrator.execute_policy(2)

        assert len(done) == 2
        assert all(e.status == QueueStatus.EXECUTED for e in done)
        assert all(e.batch_id is None for e in done)
        assert kernel.queue.count_pending([1]) == 3

    def test_execute_policy_max_operations(self):
        kernel = self._build(batch_size=2)
        done = kernel.orchestrator.execute_policy(1, max_operations=3)
        assert len(done) == 3
        assert kernel.queue.count_pending() == 7

    def test_execute_entry(self):
        kernel = self._build(segments=_make_segments(2))
        entry = kernel.queue.next_pending(1)[0]
        done = kernel.orchestrator.execute_entry(entry.id)
        assert done.status == QueueStatus.EXECUTED
        assert self.executor.calls == [entry.id]
        with pytest.raises(IllegalTransitionError):
            kernel.orchestrator.execute_entry(entry.id)


    def test_batch_skips_entry_taken_by_ad_hoc_execution(self):
        kernel = self._build(segments=_make_segments(3))
        taken = []

        def execute_next_ad_hoc(entry):
            if not taken:
                taken.append(entry.id + 1)
                kernel.orchestrator.execute_entry(entry.id + 1)

        self.executor.on_call = execute_next_ad_hoc
        result = kernel.orchestrator.run("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert result.entries_processed == 2
        assert taken[0] not in result.processed_entry_ids
        assert self._statuses() == [QueueStatus.EXECUTED] * 3
        assert kernel.queue.get(taken[0]).batch_id is None
        assert len(self.executor.calls) == 3
        assert len(self.sink.of("entry.claim_lost")) == 1
        assert kernel.state_store.get_batch(result.batch_id).pct_complete == 100.0

    def test_execute_policy_refuses_disabled_policy(self):
        kernel = self._build(segments=_make_segments(2))
        kernel.config.update(ConfigSnapshot(
            policies=[_make_policy().model_copy(update={"enabled": False})],
            schedules=[_make_schedule()],
        ))

        assert kernel.orchestrator.execute_policy(1) == []
        assert kernel.queue.count_pending() == 2
        assert self.executor.calls == []

    def test_run_cycle_evaluates_then_runs(self):
        kernel = self._build(segments=_make_segments(2))
        kernel.inventory.upsert(_make_segments(3)[2])
        self.clock.now = datetime(2024, 1, 3, 12, 0)   # outside the window

        result = kernel.orchestrator.run_cycle("nightly")

        assert result.outcome == RunOutcome.COMPLETED
        assert result.entries_processed == 3
