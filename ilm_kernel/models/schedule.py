"""Execution schedules and the conditions that gate them."""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ilm_kernel.models.policy import PredicateKind

WINDOW_PATTERN = re.compile(r"^\d{2}:\d{2}-\d{2}:\d{2}$")

WEEKDAY_FIELDS = (
    "monday_hours",
    "tuesday_hours",
    "wednesday_hours",
    "thursday_hours",
    "friday_hours",
    "saturday_hours",
    "sunday_hours",
)


class Schedule(BaseModel):
    """
    Per-day execution windows and pacing for one orchestrator loop.

    Each day holds an "HH:MM-HH:MM" window or None (no execution that day).
    A window whose start is after its end crosses midnight.
    """

    id: int
    name: str
    schedule_type: str = "ILM"
    description: str = ""
    enabled: bool = True

    monday_hours: Optional[str] = None
    tuesday_hours: Optional[str] = None
    wednesday_hours: Optional[str] = None
    thursday_hours: Optional[str] = None
    friday_hours: Optional[str] = None
    saturday_hours: Optional[str] = None
    sunday_hours: Optional[str] = None

    cooldown_minutes: float = Field(ge=0, default=5)
    checkpointing_enabled: bool = True
    checkpoint_frequency: int = Field(gt=0, default=5)

    @field_validator(*WEEKDAY_FIELDS)
    @classmethod
    def _check_window_format(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not WINDOW_PATTERN.match(value):
            raise ValueError(f"Window {value!r} must match HH:MM-HH:MM")
        return value

    def hours_for(self, when: datetime) -> Optional[str]:
        """Today's window for the weekday of `when`."""
        return getattr(self, WEEKDAY_FIELDS[when.weekday()])


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class FailPolicy(str, Enum):
    FAIL_CLOSED = "fail-closed"   # evaluation error counts as false
    FAIL_OPEN = "fail-open"       # evaluation error counts as true


class Condition(BaseModel):
    """
    A business predicate that must hold before a schedule may run.

    logical_operator links this condition to the result of the ones before
    it in evaluation order; the first condition's operator is ignored.
    """

    id: int
    schedule_id: int
    name: str
    kind: PredicateKind
    code: str
    evaluation_order: int = Field(gt=0, default=1)
    logical_operator: LogicalOperator = LogicalOperator.AND
    enabled: bool = True
    fail_policy: FailPolicy = FailPolicy.FAIL_CLOSED
    description: str = ""


class ConditionStats(BaseModel):
    """Rolling evaluation history for a condition."""

    condition_id: int
    evaluation_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_evaluated_at: Optional[datetime] = None
    last_result: Optional[bool] = None
    last_error: Optional[str] = None

    @property
    def success_rate(self) -> Optional[float]:
        if self.evaluation_count == 0:
            return None
        return round(self.success_count * 100.0 / self.evaluation_count, 1)


class ConditionOutcome(BaseModel):
    """What happened to one condition during a chain evaluation."""

    condition_id: int
    name: str
    evaluated: bool
    result: Optional[bool] = None
    error: Optional[str] = None
