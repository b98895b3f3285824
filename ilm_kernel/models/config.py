"""Engine settings and the immutable configuration snapshot read each cycle."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ilm_kernel.models.policy import (
    DEFAULT_THRESHOLD_PROFILE,
    Policy,
    ThresholdProfile,
)
from ilm_kernel.models.schedule import Condition, Schedule


class EngineConfig(BaseModel):
    """Global settings for the evaluator and the execution loop."""

    batch_size: int = Field(gt=0, default=10)              # entries pulled per iteration
    queue_retention_days: int = Field(ge=0, default=7)     # purge never-started entries
    stale_batch_timeout_seconds: int = Field(ge=0, default=3600)
    heartbeat_cron: str = "0 * * * *"
    default_profile: str = DEFAULT_THRESHOLD_PROFILE.name


class ConfigSnapshot(BaseModel):
    """
    Operator-managed configuration as of one cycle.

    The kernel never mutates a snapshot; sources hand out deep copies so a
    change made mid-cycle is only seen by the next cycle.
    """

    policies: List[Policy] = []
    schedules: List[Schedule] = []
    conditions: List[Condition] = []
    threshold_profiles: List[ThresholdProfile] = [DEFAULT_THRESHOLD_PROFILE]
    engine: EngineConfig = EngineConfig()

    def policy(self, policy_id: int) -> Optional[Policy]:
        return next((p for p in self.policies if p.id == policy_id), None)

    def enabled_policies(self) -> List[Policy]:
        """Enabled policies, most urgent first."""
        return sorted(
            (p for p in self.policies if p.enabled),
            key=lambda p: (p.priority, p.id),
        )

    def schedule(self, name: str) -> Optional[Schedule]:
        return next((s for s in self.schedules if s.name == name), None)

    def conditions_for(self, schedule_id: int) -> List[Condition]:
        """Enabled conditions for a schedule in evaluation order."""
        return sorted(
            (
                c for c in self.conditions
                if c.schedule_id == schedule_id and c.enabled
            ),
            key=lambda c: (c.evaluation_order, c.id),
        )

    def profiles(self) -> Dict[str, ThresholdProfile]:
        profiles = {p.name: p for p in self.threshold_profiles}
        profiles.setdefault(DEFAULT_THRESHOLD_PROFILE.name, DEFAULT_THRESHOLD_PROFILE)
        return profiles
