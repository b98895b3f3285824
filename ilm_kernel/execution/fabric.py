"""
Execution Fabric — the Action Executor boundary.

The orchestrator hands one queue entry at a time to an ActionExecutor and
records the ActionResult it gets back. How an action is carried out on the
storage engine lives behind this interface.

Behavioral Contract:
- One handler per action type; an unregistered type yields an ERROR result.
- A handler that raises yields an ERROR result carrying the exception text.
- Handlers must be idempotent: an entry released after a crash is executed
  again, so a handler that finds its work already done reports SKIPPED.
"""

import logging
from typing import Callable, Dict, Protocol

from ilm_kernel.models.execution import ActionResult, ActionStatus
from ilm_kernel.models.policy import ActionType, Policy
from ilm_kernel.models.queue import QueueEntry
from ilm_kernel.models.segment import Segment

logger = logging.getLogger(__name__)

ActionHandler = Callable[[QueueEntry, Policy, Segment], ActionResult]


class ActionExecutor(Protocol):
    def execute(
        self, entry: QueueEntry, policy: Policy, segment: Segment
    ) -> ActionResult:
        """Carry out the policy's action on the segment."""


class ExecutionFabric:
    """
    Dispatches actions to handlers by action type. The default handlers are
    dry runs: they detect no-ops and describe the action without touching
    storage. Deployments register real handlers over them.
    """

    def __init__(self):
        self._handlers: Dict[ActionType, ActionHandler] = {}
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        self._handlers[ActionType.COMPRESS] = self._dry_run_compress
        self._handlers[ActionType.MOVE] = self._dry_run_move
        self._handlers[ActionType.READ_ONLY] = self._dry_run_read_only

    def register_handler(self, action_type: ActionType, handler: ActionHandler) -> None:
        """Register a handler for an action type, replacing any existing one."""
        self._handlers[action_type] = handler

    def supports(self, action_type: ActionType) -> bool:
        return action_type in self._handlers

    def execute(
        self, entry: QueueEntry, policy: Policy, segment: Segment
    ) -> ActionResult:
        handler = self._handlers.get(policy.action_type)
        if handler is None:
            return ActionResult(
                status=ActionStatus.ERROR,
                error_detail=f"No handler registered for action type: {policy.action_type.value}",
                size_before_mb=segment.size_mb,
            )

        try:
            return handler(entry, policy, segment)
        except Exception as e:
            logger.warning(
                "Handler for %s raised on entry %s: %s",
                policy.action_type.value, entry.id, e,
            )
            return ActionResult(
                status=ActionStatus.ERROR,
                error_detail=f"{type(e).__name__}: {e}",
                size_before_mb=segment.size_mb,
            )

    # --- Dry-run handlers ---

    def _dry_run_compress(
        self, entry: QueueEntry, policy: Policy, segment: Segment
    ) -> ActionResult:
        if segment.compressed:
            return ActionResult(
                status=ActionStatus.SKIPPED,
                error_detail="Segment already compressed",
                size_before_mb=segment.size_mb,
                size_after_mb=segment.size_mb,
            )
        return ActionResult(
            status=ActionStatus.SUCCESS,
            action_script=f"compress {segment.id} ({policy.compression_type or 'default'})",
            size_before_mb=segment.size_mb,
        )

    def _dry_run_move(
        self, entry: QueueEntry, policy: Policy, segment: Segment
    ) -> ActionResult:
        if segment.location == policy.target_location:
            return ActionResult(
                status=ActionStatus.SKIPPED,
                error_detail=f"Segment already in {policy.target_location}",
                size_before_mb=segment.size_mb,
                size_after_mb=segment.size_mb,
            )
        return ActionResult(
            status=ActionStatus.SUCCESS,
            action_script=f"move {segment.id} to {policy.target_location}",
            size_before_mb=segment.size_mb,
        )

    def _dry_run_read_only(
        self, entry: QueueEntry, policy: Policy, segment: Segment
    ) -> ActionResult:
        if segment.read_only:
            return ActionResult(
                status=ActionStatus.SKIPPED,
                error_detail="Segment already read-only",
                size_before_mb=segment.size_mb,
                size_after_mb=segment.size_mb,
            )
        return ActionResult(
            status=ActionStatus.SUCCESS,
            action_script=f"set {segment.id} read-only",
            size_before_mb=segment.size_mb,
        )
