"""
Error classes for the ILM kernel.

Where each error is handled:
- PredicateEvaluationError: caught by whoever ran the predicate and mapped
  to a boolean (fail-policy for conditions, ineligible for policies).
- ActionExecutionError: caught at the entry-processing call site; the entry
  is marked FAILED and the batch continues.
- OrchestratorError: the loop's own bookkeeping failed. The batch is marked
  FAILED and the error propagates to whoever invoked the loop.
- ConcurrencyViolation: a second start for a schedule that already has a
  RUNNING batch. A normal skip, not a failure.
- BatchOwnershipLost: another run took over this loop's batch. The loop stops
  without touching the batch again; not a failure.
"""


class IlmKernelError(Exception):
    """Base exception for the ILM kernel."""
    pass


class PredicateEvaluationError(IlmKernelError):
    """A condition or custom eligibility predicate could not be evaluated."""
    pass


class UnknownPredicateError(PredicateEvaluationError):
    """The predicate kind or name is not registered with the resolver."""
    pass


class ActionExecutionError(IlmKernelError):
    """The Action Executor failed for a single queue entry."""
    pass


class OrchestratorError(IlmKernelError):
    """
    Failure in the execution loop's own bookkeeping (e.g. a checkpoint could
    not be persisted). Signals a systemic issue, not a data issue.
    """
    pass


class ConcurrencyViolation(IlmKernelError):
    """A batch is already RUNNING for this schedule."""

    def __init__(self, schedule_name: str, running_batch_id: str):
        self.schedule_name = schedule_name
        self.running_batch_id = running_batch_id
        super().__init__(
            f"Schedule {schedule_name} already has running batch {running_batch_id}"
        )


class IllegalTransitionError(IlmKernelError):
    """A queue entry or batch was asked to move to a state it cannot reach."""
    pass


class ScheduleNotFoundError(IlmKernelError):
    """No schedule with the requested name exists in the configuration."""
    pass


class ConfigError(IlmKernelError):
    """A configuration file could not be read or failed validation."""
    pass


class ScheduleConfigError(ConfigError):
    """A schedule window or setting is malformed."""
    pass


class EntryNotFoundError(IlmKernelError):
    """No queue entry with the requested id exists."""
    pass


class BatchOwnershipLost(IlmKernelError):
    """The batch (or an entry claimed for it) now belongs to another run."""

    def __init__(self, batch_id: str, detail: str = ""):
        self.batch_id = batch_id
        message = f"Batch {batch_id} was taken over by another run"
        super().__init__(f"{message}: {detail}" if detail else message)
