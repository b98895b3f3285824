"""
ILM Kernel API — FastAPI operator surface.

Exposes:
- Schedule readiness, runs and force-runs
- Batch inspection and interrupts
- Queue inspection, clearing and manual re-queue of FAILED entries
- Policy evaluation triggers
- Condition statistics and the execution log
"""

from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ilm_kernel.errors import IllegalTransitionError, OrchestratorError, ScheduleNotFoundError
from ilm_kernel.kernel import IlmKernel
from ilm_kernel.models.execution import BatchStatus
from ilm_kernel.models.queue import QueueStatus


# --- Request/Response Models ---

class EvaluateRequest(BaseModel):
    policy_id: Optional[int] = None
    owner: Optional[str] = None
    table_name: Optional[str] = None


class ExecutePolicyRequest(BaseModel):
    max_operations: Optional[int] = None


# --- Application Factory ---

def create_app(kernel: Optional[IlmKernel] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="ILM Kernel API",
        description="Information lifecycle orchestration — operator controls",
        version="0.1.0",
    )

    k = kernel or IlmKernel()
    app.state.kernel = k

    # === SCHEDULES ===

    @app.get("/schedules")
    def list_schedules():
        return [s.model_dump(mode="json") for s in k.config.snapshot().schedules]

    @app.get("/schedules/{schedule_name}/readiness")
    def schedule_readiness(schedule_name: str):
        """Which readiness gate currently decides for the schedule."""
        try:
            report = k.readiness.check(schedule_name, k.clock())
        except ScheduleNotFoundError:
            raise HTTPException(404, "Schedule not found")
        return report.model_dump(mode="json")

    @app.post("/schedules/{schedule_name}/run")
    def run_schedule(schedule_name: str, resume_batch_id: Optional[str] = None):
        return _run(schedule_name, force=False, resume_batch_id=resume_batch_id)

    @app.post("/schedules/{schedule_name}/force-run")
    def force_run_schedule(schedule_name: str):
        """Run now, bypassing the day, window and condition gates."""
        return _run(schedule_name, force=True)

    @app.post("/schedules/{schedule_name}/cycle")
    def run_cycle(schedule_name: str):
        """Evaluate all policies, then force-run the schedule."""
        try:
            result = k.orchestrator.run_cycle(schedule_name)
        except ScheduleNotFoundError:
            raise HTTPException(404, "Schedule not found")
        except OrchestratorError as e:
            raise HTTPException(500, str(e))
        return result.model_dump(mode="json")

    def _run(schedule_name: str, force: bool, resume_batch_id: Optional[str] = None):
        try:
            result = k.orchestrator.run(
                schedule_name, force=force, resume_batch_id=resume_batch_id
            )
        except ScheduleNotFoundError:
            raise HTTPException(404, "Schedule not found")
        except OrchestratorError as e:
            raise HTTPException(500, str(e))
        return result.model_dump(mode="json")

    # === BATCHES ===

    @app.get("/batches")
    def list_batches(
        schedule_name: Optional[str] = None,
        status: Optional[BatchStatus] = None,
        limit: int = 50,
    ):
        batches = k.state_store.list_batches(schedule_name, status, limit)
        return [_batch_view(b) for b in batches]

    @app.get("/batches/{batch_id}")
    def get_batch(batch_id: str):
        batch = k.state_store.get_batch(batch_id)
        if not batch:
            raise HTTPException(404, "Batch not found")
        return _batch_view(batch)

    @app.get("/batches/{batch_id}/entries")
    def get_batch_entries(batch_id: str):
        if not k.state_store.get_batch(batch_id):
            raise HTTPException(404, "Batch not found")
        return [e.model_dump(mode="json") for e in k.queue.list_for_batch(batch_id)]

    @app.get("/batches/{batch_id}/log")
    def get_batch_log(batch_id: str):
        if not k.state_store.get_batch(batch_id):
            raise HTTPException(404, "Batch not found")
        return [r.model_dump(mode="json") for r in k.state_store.list_execution_log(batch_id)]

    @app.post("/batches/{batch_id}/interrupt")
    def interrupt_batch(batch_id: str):
        """Stop a running batch at its next checkpoint."""
        batch = k.orchestrator.interrupt(batch_id)
        if not batch:
            raise HTTPException(404, "Batch not found")
        return _batch_view(batch)

    # === QUEUE ===

    @app.get("/queue")
    def list_queue(status: Optional[QueueStatus] = None, policy_id: Optional[int] = None):
        return [e.model_dump(mode="json") for e in k.queue.list_entries(status, policy_id)]

    @app.get("/queue/summary")
    def queue_summary():
        return k.queue.summary().model_dump(mode="json")

    @app.delete("/queue/pending")
    def clear_pending(policy_id: Optional[int] = None):
        cleared = k.policy_evaluator.clear_queue(policy_id)
        return {"cleared": cleared, "policy_id": policy_id}

    @app.get("/queue/{entry_id}")
    def get_entry(entry_id: int):
        entry = k.queue.get(entry_id)
        if not entry:
            raise HTTPException(404, "Queue entry not found")
        return entry.model_dump(mode="json")

    @app.post("/queue/{entry_id}/requeue")
    def requeue_entry(entry_id: int):
        """Manual retry: enqueue a fresh PENDING entry for a FAILED one."""
        if not k.queue.get(entry_id):
            raise HTTPException(404, "Queue entry not found")
        fresh = k.queue.requeue_failed(entry_id, k.clock())
        if not fresh:
            raise HTTPException(409, "Entry is not FAILED or a live entry already exists")
        return fresh.model_dump(mode="json")

    @app.post("/queue/{entry_id}/execute")
    def execute_entry(entry_id: int):
        if not k.queue.get(entry_id):
            raise HTTPException(404, "Queue entry not found")
        try:
            entry = k.orchestrator.execute_entry(entry_id)
        except IllegalTransitionError as e:
            raise HTTPException(409, str(e))
        return entry.model_dump(mode="json")

    # === POLICIES ===

    @app.get("/policies")
    def list_policies():
        return [p.model_dump(mode="json") for p in k.config.snapshot().policies]

    @app.post("/policies/evaluate")
    def evaluate_policies(req: EvaluateRequest):
        """Evaluate all policies, one policy, or every policy on one table."""
        if req.policy_id is not None:
            summary = k.policy_evaluator.evaluate_policy(req.policy_id, k.clock())
        elif req.owner and req.table_name:
            summary = k.policy_evaluator.evaluate_target(req.owner, req.table_name, k.clock())
        else:
            summary = k.policy_evaluator.evaluate_all(k.clock())
        return summary.model_dump(mode="json")

    @app.post("/policies/refresh")
    def refresh_queue():
        """Clear PENDING entries and re-evaluate everything."""
        return k.policy_evaluator.refresh_queue(k.clock()).model_dump(mode="json")

    @app.post("/policies/{policy_id}/execute")
    def execute_policy(policy_id: int, req: ExecutePolicyRequest):
        policy = k.config.snapshot().policy(policy_id)
        if policy is None:
            raise HTTPException(404, "Policy not found")
        if not policy.enabled:
            raise HTTPException(409, "Policy is disabled")
        entries = k.orchestrator.execute_policy(policy_id, req.max_operations)
        return [e.model_dump(mode="json") for e in entries]

    # === CONDITIONS ===

    @app.get("/conditions/stats")
    def list_condition_stats():
        return [_stats_view(s) for s in k.state_store.list_condition_stats()]

    @app.get("/conditions/{condition_id}/stats")
    def get_condition_stats(condition_id: int):
        snapshot = k.config.snapshot()
        if not any(c.id == condition_id for c in snapshot.conditions):
            raise HTTPException(404, "Condition not found")
        return _stats_view(k.state_store.get_condition_stats(condition_id))

    return app


def _batch_view(batch) -> dict:
    view = batch.model_dump(mode="json")
    view["pct_complete"] = batch.pct_complete
    return view


def _stats_view(stats) -> dict:
    view = stats.model_dump(mode="json")
    view["success_rate"] = stats.success_rate
    return view


# Default application instance
app = create_app()
