"""
Heartbeat — the coarse timer that wakes the orchestrator.

On each tick every enabled schedule gets a run() call; the orchestrator's
readiness gates decide whether anything actually happens. The wake cadence
is a cron expression (hourly by default).
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from croniter import croniter

from ilm_kernel.config.source import ConfigSource
from ilm_kernel.errors import ConfigError
from ilm_kernel.models.execution import RunResult
from ilm_kernel.orchestrator.loop import ExecutionOrchestrator
from ilm_kernel.policy.evaluator import PolicyEvaluator

logger = logging.getLogger(__name__)


class Heartbeat:

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        config: ConfigSource,
        policy_evaluator: Optional[PolicyEvaluator] = None,
        cron: Optional[str] = None,
    ):
        self.orchestrator = orchestrator
        self.config = config
        self.policy_evaluator = policy_evaluator
        self.cron = cron or config.snapshot().engine.heartbeat_cron
        if not croniter.is_valid(self.cron):
            raise ConfigError(f"Invalid heartbeat cron expression: {self.cron!r}")
        self._running = False

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    def next_wake(self, after: Optional[datetime] = None) -> datetime:
        if after is None:
            after = datetime.utcnow()
        return croniter(self.cron, after).get_next(datetime)

    def tick(self, current_time: Optional[datetime] = None) -> List[RunResult]:
        """
        One wake-up: optionally refresh the queue, then offer every enabled
        schedule a run. A failing schedule does not stop the others, and a
        failed queue refresh does not stop the runs.
        """
        snapshot = self.config.snapshot()
        if self.policy_evaluator is not None:
            try:
                self.policy_evaluator.evaluate_all(current_time, snapshot)
            except Exception:
                logger.exception("Queue refresh failed")

        results = []
        for schedule in snapshot.schedules:
            if not schedule.enabled:
                continue
            try:
                results.append(self.orchestrator.run(schedule.name))
            except Exception:
                logger.exception("Schedule %s run failed", schedule.name)
        return results

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick on the cron cadence until `stop_event` is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                try:
                    await asyncio.to_thread(self.tick)
                except Exception:
                    # e.g. the config file became unreadable; retry next wake
                    logger.exception("Heartbeat tick failed")
                now = datetime.utcnow()
                timeout = (self.next_wake(now) - now).total_seconds()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
