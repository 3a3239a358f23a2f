"""
Run tracking: writes run and node-execution status transitions through the
run store and derives the final run status.

Run-level policy: a run is COMPLETED when every node was *attempted*
(has an entry in the output map), whatever the individual outcome. A FAILED
node therefore does not fail its run; callers that need real success read
the per-node statuses (see `RunStatusSummary.failed`).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.db.run_store import RunNotFoundError, RunStore
from nodeflow.models.workflow import (
    NodeExecution,
    NodeExecutionStatus,
    RunStatus,
    WorkflowRun,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeStatusEntry(BaseModel):
    node_id: str
    status: NodeExecutionStatus
    error: str | None = None
    duration: int | None = None


class RunStatusSummary(BaseModel):
    run_id: str
    workflow_id: str
    status: RunStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    node_executions: list[NodeStatusEntry] = Field(default_factory=list)
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class RunTracker:
    """Status bookkeeping for runs, backed by a RunStore."""

    def __init__(self, store: RunStore):
        self.store = store

    # -- creation -----------------------------------------------------------

    def create_run(
        self,
        workflow_id: str,
        node_ids: list[str],
        user_id: str | None = None,
    ) -> tuple[WorkflowRun, dict[str, NodeExecution]]:
        """Insert the run and one PENDING execution per node."""
        run = self.store.create_run(WorkflowRun(workflow_id=workflow_id, user_id=user_id))
        executions = self.store.create_node_executions(
            [NodeExecution(run_id=run.id, node_id=nid) for nid in node_ids]
        )
        logger.info("Created run %s for workflow %s (%d nodes)", run.id, workflow_id, len(node_ids))
        return run, {e.node_id: e for e in executions}

    # -- run transitions ------------------------------------------------------

    def mark_run_running(self, run_id: str) -> None:
        self.store.update_run(run_id, {"status": "RUNNING", "started_at": _utcnow()})

    def mark_run_failed(self, run_id: str, error: str) -> None:
        self.store.update_run(
            run_id,
            {"status": "FAILED", "error": error, "completed_at": _utcnow()},
        )

    def finalize(
        self,
        run_id: str,
        executions: dict[str, NodeExecution],
        node_outputs: dict[str, dict[str, Any]],
    ) -> RunStatus:
        """Derive and write the terminal status from which nodes were attempted."""
        all_attempted = all(node_id in node_outputs for node_id in executions)
        status: RunStatus = "COMPLETED" if all_attempted else "FAILED"
        changes: dict[str, Any] = {"status": status, "completed_at": _utcnow()}
        if not all_attempted:
            missing = [nid for nid in executions if nid not in node_outputs]
            changes["error"] = f"Nodes never executed: {', '.join(missing)}"
        self.store.update_run(run_id, changes)
        logger.info("Run %s finished with status %s", run_id, status)
        return status

    def cancel(self, run_id: str) -> None:
        self.store.update_run(run_id, {"status": "CANCELLED", "completed_at": _utcnow()})
        logger.info("Run %s cancelled", run_id)

    # -- node transitions -----------------------------------------------------

    def mark_node_running(self, execution: NodeExecution) -> datetime:
        started_at = _utcnow()
        self.store.update_node_execution(
            execution.id, {"status": "RUNNING", "started_at": started_at}
        )
        return started_at

    def mark_node_completed(
        self,
        execution: NodeExecution,
        inputs: dict[str, Any],
        outputs: dict[str, Any],
        duration_ms: int,
    ) -> None:
        self.store.update_node_execution(
            execution.id,
            {
                "status": "COMPLETED",
                "completed_at": _utcnow(),
                "duration": duration_ms,
                "inputs": inputs,
                "outputs": outputs,
            },
        )

    def mark_node_failed(
        self,
        execution: NodeExecution,
        error: str,
        duration_ms: int,
        inputs: dict[str, Any] | None = None,
    ) -> None:
        self.store.update_node_execution(
            execution.id,
            {
                "status": "FAILED",
                "completed_at": _utcnow(),
                "duration": duration_ms,
                "inputs": inputs,
                "error": error,
            },
        )

    def mark_nodes_skipped(self, executions: list[NodeExecution], reason: str) -> None:
        for execution in executions:
            self.store.update_node_execution(
                execution.id, {"status": "SKIPPED", "error": reason}
            )

    # -- read surface ---------------------------------------------------------

    def get_run_status(self, run_id: str) -> RunStatusSummary:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        entries = [
            NodeStatusEntry(
                node_id=e.node_id,
                status=e.status,
                error=e.error,
                duration=e.duration,
            )
            for e in self.store.list_node_executions(run_id)
        ]
        return RunStatusSummary(
            run_id=run.id,
            workflow_id=run.workflow_id,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            error=run.error,
            node_executions=entries,
            completed=sum(1 for e in entries if e.status == "COMPLETED"),
            failed=sum(1 for e in entries if e.status == "FAILED"),
            skipped=sum(1 for e in entries if e.status == "SKIPPED"),
        )
