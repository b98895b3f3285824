"""
Readiness gates for a schedule.

Gates run in fail-fast order and the first failing one decides:
  enabled -> no RUNNING batch -> eligible PENDING work -> window open
  -> business conditions pass
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from ilm_kernel.conditions.evaluator import ConditionEvaluator
from ilm_kernel.config.source import ConfigSource
from ilm_kernel.errors import ScheduleNotFoundError
from ilm_kernel.models.config import ConfigSnapshot
from ilm_kernel.models.schedule import ConditionOutcome, Schedule
from ilm_kernel.queue.store import QueueStore
from ilm_kernel.schedule.window import is_in_window, window_for
from ilm_kernel.state.store import ExecutionStateStore

logger = logging.getLogger(__name__)


class ReadinessGate(str, Enum):
    READY = "READY"
    SCHEDULE_DISABLED = "SCHEDULE_DISABLED"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NO_PENDING_WORK = "NO_PENDING_WORK"
    NO_WINDOW_TODAY = "NO_WINDOW_TODAY"
    OUTSIDE_WINDOW = "OUTSIDE_WINDOW"
    CONDITIONS_FAILING = "CONDITIONS_FAILING"


class ReadinessReport(BaseModel):
    schedule_name: str
    ready: bool
    gate: ReadinessGate
    detail: str = ""
    pending_entries: int = 0
    running_batch_id: Optional[str] = None
    window: Optional[str] = None
    condition_outcomes: List[ConditionOutcome] = []


def eligible_policy_ids(snapshot: ConfigSnapshot) -> List[int]:
    """Policies whose PENDING entries may run under the current config."""
    return [p.id for p in snapshot.enabled_policies()]


class ReadinessChecker:

    def __init__(
        self,
        config: ConfigSource,
        queue: QueueStore,
        state_store: ExecutionStateStore,
        condition_evaluator: ConditionEvaluator,
    ):
        self.config = config
        self.queue = queue
        self.state_store = state_store
        self.conditions = condition_evaluator

    def should_execute_now(
        self,
        schedule_name: str,
        current_time: Optional[datetime] = None,
    ) -> bool:
        return self.check(schedule_name, current_time).ready

    def check(
        self,
        schedule_name: str,
        current_time: Optional[datetime] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> ReadinessReport:
        """Run the gates and name the first one that fails."""
        if current_time is None:
            current_time = datetime.utcnow()
        if snapshot is None:
            snapshot = self.config.snapshot()

        schedule = snapshot.schedule(schedule_name)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule {schedule_name} not found")

        report = self._check(schedule, snapshot, current_time)
        logger.debug(
            "Readiness for %s: %s %s", schedule_name, report.gate.value, report.detail
        )
        return report

    def _check(
        self,
        schedule: Schedule,
        snapshot: ConfigSnapshot,
        current_time: datetime,
    ) -> ReadinessReport:
        def report(gate: ReadinessGate, detail: str = "", **extra) -> ReadinessReport:
            return ReadinessReport(
                schedule_name=schedule.name,
                ready=gate == ReadinessGate.READY,
                gate=gate,
                detail=detail,
                **extra,
            )

        if not schedule.enabled:
            return report(ReadinessGate.SCHEDULE_DISABLED, "Schedule is disabled")

        running = self.state_store.get_running_batch(schedule.name)
        # A stale RUNNING batch belongs to a crashed loop and will be reclaimed
        stale_after = snapshot.engine.stale_batch_timeout_seconds
        if running is not None and not self.state_store.is_stale(
            running, current_time, stale_after
        ):
            return report(
                ReadinessGate.ALREADY_RUNNING,
                f"Batch {running.id} is running",
                running_batch_id=running.id,
            )

        pending = self.queue.count_pending(eligible_policy_ids(snapshot))
        if pending == 0:
            return report(ReadinessGate.NO_PENDING_WORK, "No eligible pending work")

        window = window_for(schedule, current_time)
        if window is None:
            return report(
                ReadinessGate.NO_WINDOW_TODAY,
                f"No execution window on {current_time.strftime('%A')}",
                pending_entries=pending,
            )
        if not is_in_window(schedule, current_time):
            return report(
                ReadinessGate.OUTSIDE_WINDOW,
                f"{current_time.strftime('%H:%M')} is outside {window}",
                pending_entries=pending,
                window=window,
            )

        passed, outcomes = self.conditions.evaluate_detailed(
            schedule.id, current_time, snapshot
        )
        if not passed:
            failing = [o.name for o in outcomes if o.evaluated and not o.result]
            return report(
                ReadinessGate.CONDITIONS_FAILING,
                f"Conditions failing: {', '.join(failing)}",
                pending_entries=pending,
                window=window,
                condition_outcomes=outcomes,
            )

        return report(
            ReadinessGate.READY,
            "All gates passed",
            pending_entries=pending,
            window=window,
            condition_outcomes=outcomes,
        )
