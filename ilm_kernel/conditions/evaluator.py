"""
Condition Evaluator — combines a schedule's gating predicates into one boolean.

Combination rules:
- Enabled conditions run in evaluation_order (then id).
- The running result starts as the first outcome. Every later condition's
  logical_operator links it to the result so far: result = result OP value.
  The first condition's operator is ignored.
- An AND link on a false result cannot change it, so the condition is
  skipped without calling the resolver. An OR link is always evaluated and
  can flip the aggregate back to true.
- A predicate error, of any kind, maps to false (fail-closed) or true
  (fail-open) and is never raised to the caller.
- Stats are written only for conditions that were actually evaluated.
- No enabled conditions means the gate passes.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from ilm_kernel.conditions.resolver import PredicateResolver
from ilm_kernel.config.source import ConfigSource
from ilm_kernel.errors import PredicateEvaluationError
from ilm_kernel.events.bus import EventBus
from ilm_kernel.models.config import ConfigSnapshot
from ilm_kernel.models.schedule import (
    Condition,
    ConditionOutcome,
    FailPolicy,
    LogicalOperator,
)
from ilm_kernel.state.store import ExecutionStateStore

logger = logging.getLogger(__name__)


class ConditionEvaluator:

    def __init__(
        self,
        config: ConfigSource,
        resolver: PredicateResolver,
        state_store: ExecutionStateStore,
        events: Optional[EventBus] = None,
    ):
        self.config = config
        self.resolver = resolver
        self.state_store = state_store
        self.events = events or EventBus()

    def evaluate(
        self,
        schedule_id: int,
        current_time: Optional[datetime] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> bool:
        result, _ = self.evaluate_detailed(schedule_id, current_time, snapshot)
        return result

    def evaluate_detailed(
        self,
        schedule_id: int,
        current_time: Optional[datetime] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> Tuple[bool, List[ConditionOutcome]]:
        """Evaluate the chain and report what happened to every condition."""
        if current_time is None:
            current_time = datetime.utcnow()
        if snapshot is None:
            snapshot = self.config.snapshot()

        conditions = snapshot.conditions_for(schedule_id)
        outcomes: List[ConditionOutcome] = []
        result: Optional[bool] = None

        for condition in conditions:
            link = condition.logical_operator
            if result is False and link == LogicalOperator.AND:
                outcomes.append(ConditionOutcome(
                    condition_id=condition.id,
                    name=condition.name,
                    evaluated=False,
                ))
                self.events.emit(
                    "condition.skipped",
                    occurred_at=current_time,
                    payload={"schedule_id": schedule_id, "condition_id": condition.id},
                )
                continue

            value, error = self._run(condition, schedule_id, current_time)
            outcomes.append(ConditionOutcome(
                condition_id=condition.id,
                name=condition.name,
                evaluated=True,
                result=value,
                error=error,
            ))

            if result is None:
                result = value
            elif link == LogicalOperator.OR:
                result = result or value
            else:
                result = result and value

        final = True if result is None else result
        logger.info(
            "Schedule %s conditions: %s (%d evaluated, %d skipped)",
            schedule_id,
            "PASS" if final else "FAIL",
            sum(1 for o in outcomes if o.evaluated),
            sum(1 for o in outcomes if not o.evaluated),
        )
        return final, outcomes

    def _run(
        self,
        condition: Condition,
        schedule_id: int,
        current_time: datetime,
    ) -> Tuple[bool, Optional[str]]:
        """Run one predicate, apply the fail-policy and record stats."""
        context = {
            "schedule_id": schedule_id,
            "condition_id": condition.id,
            "condition_name": condition.name,
            "current_time": current_time,
        }
        error = None
        try:
            value = self.resolver.run(condition.kind, condition.code, context)
        except PredicateEvaluationError as e:
            error = str(e)
        except Exception as e:
            # a plugged-in resolver may raise anything
            error = f"{type(e).__name__}: {e}"
        if error is not None:
            value = condition.fail_policy == FailPolicy.FAIL_OPEN
            logger.warning(
                "Condition %s (%s) failed to evaluate, treating as %s: %s",
                condition.name, condition.fail_policy.value, value, error,
            )

        self.state_store.record_condition_result(
            condition.id, value, error, current_time
        )
        self.events.emit(
            "condition.evaluated",
            occurred_at=current_time,
            payload={
                "schedule_id": schedule_id,
                "condition_id": condition.id,
                "name": condition.name,
                "result": value,
                "error": error,
            },
        )
        return value, error
