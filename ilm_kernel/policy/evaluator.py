"""
Policy Evaluator — decides which segments a policy should act on and
enqueues them.

Behavioral Contract:
- Policies are evaluated by (priority asc, id asc).
- Eligibility checks run in a fixed order and stop at the first failure;
  every decision carries a human-readable reason.
- Enqueueing is idempotent: a (policy, segment) pair that already has a
  live entry is not queued twice.
- A failure while evaluating one policy never stops the others.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from ilm_kernel.conditions.resolver import PredicateResolver
from ilm_kernel.config.source import ConfigSource
from ilm_kernel.errors import PredicateEvaluationError
from ilm_kernel.inventory.store import SegmentInventory
from ilm_kernel.models.config import ConfigSnapshot
from ilm_kernel.models.policy import (
    DEFAULT_THRESHOLD_PROFILE,
    ActionType,
    Policy,
    ThresholdProfile,
)
from ilm_kernel.models.segment import Segment
from ilm_kernel.queue.store import QueueStore

logger = logging.getLogger(__name__)

ELIGIBLE_REASON = "Segment meets all policy criteria"


class EvaluationSummary(BaseModel):
    """Counts from one evaluation pass."""

    policies_evaluated: int = 0
    segments_checked: int = 0
    enqueued: int = 0
    already_queued: int = 0
    ineligible: int = 0
    purged: int = 0
    failed_policies: List[int] = []

    def merge(self, other: "EvaluationSummary") -> None:
        self.policies_evaluated += other.policies_evaluated
        self.segments_checked += other.segments_checked
        self.enqueued += other.enqueued
        self.already_queued += other.already_queued
        self.ineligible += other.ineligible
        self.purged += other.purged
        self.failed_policies.extend(other.failed_policies)


class PolicyEvaluator:

    def __init__(
        self,
        config: ConfigSource,
        inventory: SegmentInventory,
        queue: QueueStore,
        resolver: Optional[PredicateResolver] = None,
    ):
        self.config = config
        self.inventory = inventory
        self.queue = queue
        self.resolver = resolver or PredicateResolver()

    # --- Eligibility ---

    def is_eligible(
        self,
        policy: Policy,
        segment: Segment,
        profiles: Optional[Dict[str, ThresholdProfile]] = None,
        default_profile: str = DEFAULT_THRESHOLD_PROFILE.name,
    ) -> Tuple[bool, str]:
        """Run the eligibility checks for one (policy, segment) pair."""
        if not policy.enabled:
            return False, "Policy is disabled"

        if policy.age_days is not None:
            if segment.age_days is None or segment.age_days < policy.age_days:
                age = "unknown" if segment.age_days is None else segment.age_days
                return False, (
                    f"Segment age {age} days is less than threshold "
                    f"{policy.age_days} days"
                )

        if policy.age_months is not None:
            if segment.age_months is None or segment.age_months < policy.age_months:
                age = "unknown" if segment.age_months is None else segment.age_months
                return False, (
                    f"Segment age {age} months is less than threshold "
                    f"{policy.age_months} months"
                )

        if policy.size_threshold_mb is not None:
            if segment.size_mb < policy.size_threshold_mb:
                return False, (
                    f"Segment size {segment.size_mb} MB is less than threshold "
                    f"{policy.size_threshold_mb} MB"
                )

        if policy.access_pattern is not None:
            if segment.age_days is None:
                return False, "Segment age unknown, cannot classify temperature"
            profile = self._profile_for(policy, profiles, default_profile)
            temperature = profile.classify(segment.age_days)
            if temperature != policy.access_pattern:
                return False, (
                    f"Segment temperature ({temperature.value}) does not match "
                    f"required {policy.access_pattern.value} "
                    f"[thresholds: HOT<{profile.hot_threshold_days}, "
                    f"WARM<{profile.warm_threshold_days}]"
                )

        if policy.action_type == ActionType.COMPRESS and segment.compressed:
            return False, "Segment already compressed"
        if (
            policy.action_type == ActionType.MOVE
            and segment.location is not None
            and segment.location == policy.target_location
        ):
            return False, "Segment already in target location"
        if policy.action_type == ActionType.READ_ONLY and segment.read_only:
            return False, "Segment already read-only"

        if policy.custom_predicate is not None:
            context = segment.model_dump()
            context.update(
                policy_id=policy.id,
                policy_name=policy.name,
                age_months=segment.age_months,
            )
            try:
                matched = self.resolver.run(
                    policy.custom_predicate.kind,
                    policy.custom_predicate.code,
                    context,
                )
            except PredicateEvaluationError as e:
                logger.warning(
                    "Custom predicate of policy %s failed for %s: %s",
                    policy.name, segment.id, e,
                )
                return False, f"Error evaluating custom predicate: {e}"
            except Exception as e:
                logger.warning(
                    "Custom predicate of policy %s raised for %s: %s",
                    policy.name, segment.id, e, exc_info=True,
                )
                return False, f"Error evaluating custom predicate: {type(e).__name__}: {e}"
            if not matched:
                return False, "Custom predicate not met"

        return True, ELIGIBLE_REASON

    def _profile_for(
        self,
        policy: Policy,
        profiles: Optional[Dict[str, ThresholdProfile]],
        default_profile: str,
    ) -> ThresholdProfile:
        profiles = profiles or {DEFAULT_THRESHOLD_PROFILE.name: DEFAULT_THRESHOLD_PROFILE}
        name = policy.threshold_profile or default_profile
        profile = profiles.get(name)
        if profile is None:
            logger.warning(
                "Policy %s references unknown threshold profile %s, using %s",
                policy.name, name, DEFAULT_THRESHOLD_PROFILE.name,
            )
            profile = profiles.get(DEFAULT_THRESHOLD_PROFILE.name, DEFAULT_THRESHOLD_PROFILE)
        return profile

    # --- Evaluation passes ---

    def evaluate_all(
        self,
        current_time: Optional[datetime] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> EvaluationSummary:
        """Purge stale entries, then evaluate every enabled policy."""
        if current_time is None:
            current_time = datetime.utcnow()
        if snapshot is None:
            snapshot = self.config.snapshot()

        summary = EvaluationSummary()
        retention = timedelta(days=snapshot.engine.queue_retention_days)
        summary.purged = self.queue.purge_stale(current_time - retention)

        for policy in snapshot.enabled_policies():
            summary.merge(self._evaluate_one(policy, snapshot, current_time))

        logger.info(
            "Policy evaluation: %d policies, %d segments, %d enqueued, %d failed policies",
            summary.policies_evaluated,
            summary.segments_checked,
            summary.enqueued,
            len(summary.failed_policies),
        )
        return summary

    def evaluate_policy(
        self,
        policy_id: int,
        current_time: Optional[datetime] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> EvaluationSummary:
        if current_time is None:
            current_time = datetime.utcnow()
        if snapshot is None:
            snapshot = self.config.snapshot()

        policy = snapshot.policy(policy_id)
        if policy is None:
            logger.warning("Policy %s not found", policy_id)
            return EvaluationSummary()
        return self._evaluate_one(policy, snapshot, current_time)

    def evaluate_target(
        self,
        owner: str,
        table_name: str,
        current_time: Optional[datetime] = None,
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> EvaluationSummary:
        """Evaluate every enabled policy that targets one table."""
        if current_time is None:
            current_time = datetime.utcnow()
        if snapshot is None:
            snapshot = self.config.snapshot()

        summary = EvaluationSummary()
        for policy in snapshot.enabled_policies():
            if policy.target.matches(owner, table_name):
                summary.merge(self._evaluate_one(policy, snapshot, current_time))
        return summary

    def clear_queue(self, policy_id: Optional[int] = None) -> int:
        return self.queue.clear_pending(policy_id)

    def refresh_queue(self, current_time: Optional[datetime] = None) -> EvaluationSummary:
        """Drop all PENDING entries and rebuild them from the current config."""
        self.clear_queue()
        return self.evaluate_all(current_time)

    def _evaluate_one(
        self,
        policy: Policy,
        snapshot: ConfigSnapshot,
        current_time: datetime,
    ) -> EvaluationSummary:
        summary = EvaluationSummary(policies_evaluated=1)
        profiles = snapshot.profiles()
        try:
            segments = self.inventory.list_candidate_segments(policy)
            for segment in segments:
                summary.segments_checked += 1
                eligible, reason = self.is_eligible(
                    policy, segment, profiles, snapshot.engine.default_profile
                )
                if not eligible:
                    summary.ineligible += 1
                    logger.debug("%s not eligible for %s: %s", segment.id, policy.name, reason)
                    continue
                entry = self.queue.enqueue(policy, segment.id, reason, current_time)
                if entry is None:
                    summary.already_queued += 1
                else:
                    summary.enqueued += 1
        except Exception:
            logger.exception("Error evaluating policy %s", policy.name)
            summary.failed_policies.append(policy.id)
        return summary
