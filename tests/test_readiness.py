"""Tests for schedule readiness gates."""

from datetime import datetime, timedelta

import pytest

from ilm_kernel.conditions.evaluator import ConditionEvaluator
from ilm_kernel.conditions.resolver import PredicateResolver
from ilm_kernel.config.source import InMemoryConfigSource
from ilm_kernel.errors import ScheduleNotFoundError
from ilm_kernel.models.config import ConfigSnapshot
from ilm_kernel.models.policy import ActionType, Policy, PredicateKind, TargetSelector
from ilm_kernel.models.schedule import Condition, Schedule
from ilm_kernel.queue.store import QueueStore
from ilm_kernel.schedule.readiness import ReadinessChecker, ReadinessGate
from ilm_kernel.state.store import ExecutionStateStore
from ilm_kernel.storage import Database

# 2024-01-02 is a Tuesday
TUESDAY_NIGHT = datetime(2024, 1, 2, 23, 0)


def _make_schedule(**overrides) -> Schedule:
    data = dict(id=1, name="nightly", tuesday_hours="22:00-06:00")
    data.update(overrides)
    return Schedule(**data)


def _make_policy(policy_id: int = 1, enabled: bool = True) -> Policy:
    return Policy(
        id=policy_id,
        name=f"policy_{policy_id}",
        target=TargetSelector(owner="SALES", table_name="FACT_ORDERS"),
        action_type=ActionType.COMPRESS,
        enabled=enabled,
    )


class TestReadinessChecker:
    def setup_method(self):
        db = Database(":memory:")
        self.queue = QueueStore(db=db)
        self.state_store = ExecutionStateStore(db=db)
        self.resolver = PredicateResolver()
        self.config = InMemoryConfigSource()
        self.checker = ReadinessChecker(
            self.config,
            self.queue,
            self.state_store,
            ConditionEvaluator(self.config, self.resolver, self.state_store),
        )
        self.condition_calls = []

    def _configure(self, schedule=None, policies=None, conditions=None, enqueue=1):
        policies = policies or [_make_policy()]
        self.config.update(ConfigSnapshot(
            policies=policies,
            schedules=[schedule or _make_schedule()],
            conditions=conditions or [],
        ))
        for i in range(enqueue):
            self.queue.enqueue(policies[0], f"seg_{i}", "eligible", TUESDAY_NIGHT)

    def _condition(self, answer: bool) -> Condition:
        def predicate(ctx):
            self.condition_calls.append(ctx["schedule_id"])
            return answer
        self.resolver.register_predicate("etl_done", predicate)
        return Condition(
            id=1, schedule_id=1, name="etl_done",
            kind=PredicateKind.NAMED_PREDICATE, code="etl_done",
        )

    def test_ready(self):
        self._configure(enqueue=3)
        report = self.checker.check("nightly", TUESDAY_NIGHT)
        assert report.ready
        assert report.gate == ReadinessGate.READY
        assert report.pending_entries == 3
        assert report.window == "22:00-06:00"
        assert self.checker.should_execute_now("nightly", TUESDAY_NIGHT) is True

    def test_disabled_fails_first(self):
        self._configure(schedule=_make_schedule(enabled=False), conditions=[self._condition(True)])
        report = self.checker.check("nightly", TUESDAY_NIGHT)
        assert report.gate == ReadinessGate.SCHEDULE_DISABLED
        assert self.condition_calls == []

    def test_already_running(self):
        self._configure()
        batch, _, _ = self.state_store.try_start_batch(_make_schedule(), TUESDAY_NIGHT)
        report = self.checker.check("nightly", TUESDAY_NIGHT + timedelta(minutes=10))
        assert report.gate == ReadinessGate.ALREADY_RUNNING
        assert report.running_batch_id == batch.id

    def test_stale_running_batch_does_not_block(self):
        self._configure()
        self.state_store.try_start_batch(_make_schedule(), TUESDAY_NIGHT - timedelta(hours=3))
        assert self.checker.check("nightly", TUESDAY_NIGHT).ready

    def test_no_pending_work(self):
        self._configure(enqueue=0)
        assert self.checker.check("nightly", TUESDAY_NIGHT).gate == ReadinessGate.NO_PENDING_WORK

    def test_pending_work_of_disabled_policy_does_not_count(self):
        self._configure(policies=[_make_policy(enabled=False)])
        assert self.checker.check("nightly", TUESDAY_NIGHT).gate == ReadinessGate.NO_PENDING_WORK

    def test_no_window_today(self):
        self._configure()
        report = self.checker.check("nightly", datetime(2024, 1, 3, 23, 0))   # Wednesday
        assert report.gate == ReadinessGate.NO_WINDOW_TODAY
        assert "Wednesday" in report.detail

    def test_outside_window(self):
        self._configure()
        report = self.checker.check("nightly", datetime(2024, 1, 2, 14, 30))
        assert report.gate == ReadinessGate.OUTSIDE_WINDOW
        assert "14:30" in report.detail

    def test_window_gate_skips_conditions(self):
        self._configure(conditions=[self._condition(True)])
        self.checker.check("nightly", datetime(2024, 1, 2, 14, 30))
        assert self.condition_calls == []

    def test_conditions_failing(self):
        self._configure(conditions=[self._condition(False)])
        report = self.checker.check("nightly", TUESDAY_NIGHT)
        assert report.gate == ReadinessGate.CONDITIONS_FAILING
        assert "etl_done" in report.detail
        assert len(report.condition_outcomes) == 1
        assert self.condition_calls == [1]

    def test_conditions_passing(self):
        self._configure(conditions=[self._condition(True)])
        report = self.checker.check("nightly", TUESDAY_NIGHT)
        assert report.ready
        assert report.condition_outcomes[0].result is True

    def test_unknown_schedule(self):
        self._configure()
        with pytest.raises(ScheduleNotFoundError):
            self.checker.check("weekend", TUESDAY_NIGHT)
