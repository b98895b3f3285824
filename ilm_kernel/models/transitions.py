"""
Queue entry and execution batch state machines.

Each table maps a current state to the states it may legally move to.
Stores call `check_*_transition` before every status write; an illegal
move raises IllegalTransitionError instead of silently overwriting a row.
"""

from typing import Dict, FrozenSet, Optional

from ilm_kernel.errors import IllegalTransitionError
from ilm_kernel.models.execution import BatchStatus
from ilm_kernel.models.queue import QueueStatus

# Key   : current state
# Value : allowed next states
QUEUE_ALLOWED_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.CLAIMED, QueueStatus.SKIPPED}),
    QueueStatus.CLAIMED: frozenset(
        {
            QueueStatus.EXECUTED,
            QueueStatus.FAILED,
            QueueStatus.SKIPPED,
            QueueStatus.PENDING,    # in-flight claim released on resume
        }
    ),
    QueueStatus.EXECUTED: frozenset(),
    QueueStatus.FAILED: frozenset(),
    QueueStatus.SKIPPED: frozenset(),
}

# None is the state of a batch that does not exist yet.
BATCH_ALLOWED_TRANSITIONS: Dict[Optional[BatchStatus], FrozenSet[BatchStatus]] = {
    None: frozenset({BatchStatus.RUNNING}),
    BatchStatus.RUNNING: frozenset(
        {BatchStatus.COMPLETED, BatchStatus.INTERRUPTED, BatchStatus.FAILED}
    ),
    BatchStatus.INTERRUPTED: frozenset({BatchStatus.RUNNING}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}


def is_valid_queue_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in QUEUE_ALLOWED_TRANSITIONS.get(current, frozenset())


def is_valid_batch_transition(
    current: Optional[BatchStatus], target: BatchStatus
) -> bool:
    return target in BATCH_ALLOWED_TRANSITIONS.get(current, frozenset())


def check_queue_transition(
    entry_id: int, current: QueueStatus, target: QueueStatus
) -> None:
    if not is_valid_queue_transition(current, target):
        raise IllegalTransitionError(
            f"Queue entry {entry_id}: {current.value} -> {target.value} is not allowed"
        )


def check_batch_transition(
    batch_id: str, current: Optional[BatchStatus], target: BatchStatus
) -> None:
    if not is_valid_batch_transition(current, target):
        current_name = current.value if current else "NEW"
        raise IllegalTransitionError(
            f"Batch {batch_id}: {current_name} -> {target.value} is not allowed"
        )
