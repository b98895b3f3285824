"""Wires the kernel components around one shared database."""

from datetime import datetime
from typing import Callable, Optional

from ilm_kernel.conditions.evaluator import ConditionEvaluator
from ilm_kernel.conditions.resolver import PredicateResolver
from ilm_kernel.config.source import ConfigSource, InMemoryConfigSource
from ilm_kernel.events.bus import EventBus, LoggingEventSink
from ilm_kernel.execution.fabric import ActionExecutor, ExecutionFabric
from ilm_kernel.inventory.store import InMemorySegmentInventory, SegmentInventory
from ilm_kernel.orchestrator.loop import ExecutionOrchestrator
from ilm_kernel.policy.evaluator import PolicyEvaluator
from ilm_kernel.queue.store import QueueStore
from ilm_kernel.schedule.readiness import ReadinessChecker
from ilm_kernel.state.store import ExecutionStateStore
from ilm_kernel.storage import Database


class IlmKernel:
    """All components of one kernel instance. Missing parts get defaults."""

    def __init__(
        self,
        config: Optional[ConfigSource] = None,
        inventory: Optional[SegmentInventory] = None,
        executor: Optional[ActionExecutor] = None,
        resolver: Optional[PredicateResolver] = None,
        events: Optional[EventBus] = None,
        db_path: str = ":memory:",
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or InMemoryConfigSource()
        self.inventory = inventory or InMemorySegmentInventory()
        self.executor = executor or ExecutionFabric()
        self.resolver = resolver or PredicateResolver()
        self.events = events or EventBus([LoggingEventSink()])
        self.clock = clock or datetime.utcnow

        self.db = Database(db_path)
        self.queue = QueueStore(db=self.db)
        self.state_store = ExecutionStateStore(db=self.db)

        self.conditions = ConditionEvaluator(
            self.config, self.resolver, self.state_store, self.events
        )
        self.policy_evaluator = PolicyEvaluator(
            self.config, self.inventory, self.queue, self.resolver
        )
        self.readiness = ReadinessChecker(
            self.config, self.queue, self.state_store, self.conditions
        )
        self.orchestrator = ExecutionOrchestrator(
            config=self.config,
            queue=self.queue,
            state_store=self.state_store,
            executor=self.executor,
            inventory=self.inventory,
            readiness=self.readiness,
            policy_evaluator=self.policy_evaluator,
            events=self.events,
            clock=self.clock,
            sleep=sleep,
        )

    def close(self) -> None:
        self.events.close()
        self.db.close()
