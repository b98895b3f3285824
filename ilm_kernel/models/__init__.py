"""ILM Kernel data models."""

from ilm_kernel.models.config import ConfigSnapshot, EngineConfig
from ilm_kernel.models.execution import (
    ActionResult,
    ActionStatus,
    BatchStatus,
    ExecutionBatch,
    ExecutionLogRecord,
    RunOutcome,
    RunResult,
)
from ilm_kernel.models.policy import (
    DEFAULT_THRESHOLD_PROFILE,
    ActionType,
    Policy,
    PolicyType,
    PredicateKind,
    PredicateRef,
    TargetSelector,
    Temperature,
    ThresholdProfile,
)
from ilm_kernel.models.queue import QueueEntry, QueueStatus, QueueSummary
from ilm_kernel.models.schedule import (
    Condition,
    ConditionOutcome,
    ConditionStats,
    FailPolicy,
    LogicalOperator,
    Schedule,
)
from ilm_kernel.models.segment import Segment

__all__ = [
    "ActionResult",
    "ActionStatus",
    "ActionType",
    "BatchStatus",
    "Condition",
    "ConditionOutcome",
    "ConditionStats",
    "ConfigSnapshot",
    "DEFAULT_THRESHOLD_PROFILE",
    "EngineConfig",
    "ExecutionBatch",
    "ExecutionLogRecord",
    "FailPolicy",
    "LogicalOperator",
    "Policy",
    "PolicyType",
    "PredicateKind",
    "PredicateRef",
    "QueueEntry",
    "QueueStatus",
    "QueueSummary",
    "RunOutcome",
    "RunResult",
    "Schedule",
    "Segment",
    "TargetSelector",
    "Temperature",
    "ThresholdProfile",
]
