"""Evaluation Queue entry — one decision to apply a policy's action to a segment."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"      # tagged by a batch, executor call in flight
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_QUEUE_STATES = frozenset(
    {QueueStatus.EXECUTED, QueueStatus.FAILED, QueueStatus.SKIPPED}
)


class QueueEntry(BaseModel):
    """A queued (policy, segment) action and its execution bookkeeping."""

    id: int
    policy_id: int
    segment_id: str
    policy_priority: int
    reason: str
    enqueued_at: datetime
    status: QueueStatus = QueueStatus.PENDING

    batch_id: Optional[str] = None
    batch_sequence: Optional[int] = None
    attempt_count: int = 0
    claimed_at: Optional[datetime] = None
    claim_token: Optional[str] = Field(default=None, exclude=True)   # owner of the claim
    completed_at: Optional[datetime] = None

    # Outcome as reported by the Action Executor
    action_status: Optional[str] = None
    action_script: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATES


class QueueSummary(BaseModel):
    """Counts by status and the age of the oldest pending entry."""

    pending: int = 0
    claimed: int = 0
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    oldest_pending_at: Optional[datetime] = None
