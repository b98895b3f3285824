"""Execution Batch, Action Result and execution log models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class BatchStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    INTERRUPTED = "INTERRUPTED"
    FAILED = "FAILED"


class ActionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class ActionResult(BaseModel):
    """Outcome reported by the Action Executor for one queue entry."""

    status: ActionStatus
    action_script: Optional[str] = None
    error_detail: Optional[str] = None
    size_before_mb: Optional[float] = None
    size_after_mb: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        """SUCCESS, WARNING and SKIPPED all count as success with caveats."""
        return self.status != ActionStatus.ERROR


class ExecutionBatch(BaseModel):
    """One continuous execution-loop run for a schedule."""

    id: str
    schedule_id: int
    schedule_name: str
    status: BatchStatus = BatchStatus.RUNNING
    start_time: datetime
    end_time: Optional[datetime] = None
    last_checkpoint: Optional[datetime] = None
    operations_completed: int = 0
    operations_total: int = 0
    last_processed_entry_id: Optional[int] = None   # resume pointer
    forced: bool = False
    interrupt_requested: bool = False
    status_reason: Optional[str] = None
    owner_token: Optional[str] = Field(default=None, exclude=True)   # current loop's lease

    @property
    def pct_complete(self) -> Optional[float]:
        if not self.operations_total:
            return None
        return round(self.operations_completed * 100.0 / self.operations_total, 1)


class ExecutionLogRecord(BaseModel):
    """One Action Executor call, kept for audit."""

    id: Optional[int] = None
    entry_id: int
    batch_id: Optional[str] = None
    policy_id: int
    policy_name: str
    segment_id: str
    action_type: str
    action_script: Optional[str] = None
    status: ActionStatus
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    size_before_mb: Optional[float] = None
    size_after_mb: Optional[float] = None
    space_saved_mb: Optional[float] = None
    compression_ratio: Optional[float] = None
    error_detail: Optional[str] = None


class RunOutcome(str, Enum):
    SKIPPED = "skipped"          # a gate failed, nothing started
    NO_WORK = "no_work"          # started but the queue was already empty
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    SUPERSEDED = "superseded"    # another run took the batch over mid-flight


class RunResult(BaseModel):
    """What a call to the orchestrator did."""

    schedule_name: str
    outcome: RunOutcome
    batch_id: Optional[str] = None
    resumed: bool = False
    reason: Optional[str] = None
    entries_processed: int = 0
    entries_failed: int = 0
    processed_entry_ids: List[int] = []
