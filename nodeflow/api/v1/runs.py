"""
Run API endpoints.

Starting a run returns its id immediately and executes the workflow in the
background; clients poll GET /runs/{run_id} until a terminal status.
/runs/execute runs synchronously and returns every node's output.

Request validation (workflow id, existence, ownership, graph shape) happens
before any run or node-execution row is written.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nodeflow.auth.dependencies import User, get_current_user
from nodeflow.db.run_store import RunNotFoundError
from nodeflow.services.graph import GraphCycleError
from nodeflow.services.run_tracker import RunStatusSummary
from nodeflow.services.workflow_executor import (
    RunManager,
    WorkflowAccessError,
    WorkflowNotFoundError,
    get_run_manager,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRunRequest(CamelModel):
    workflow_id: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class StartRunResponse(CamelModel):
    run_id: str


class ExecuteRunResponse(CamelModel):
    run_id: str
    status: str
    results: Dict[str, Dict[str, Any]]
    error: Optional[str] = None
    total_execution_time_ms: int = 0


class NodeExecutionStatusResponse(CamelModel):
    node_id: str
    status: str
    error: Optional[str] = None
    duration: Optional[int] = None


class RunStatusResponse(CamelModel):
    run_id: str
    workflow_id: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    node_executions: List[NodeExecutionStatusResponse]
    nodes_completed: int
    nodes_failed: int
    nodes_skipped: int


class RunSummaryResponse(CamelModel):
    id: str
    workflow_id: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime


router = APIRouter(tags=["runs"])


def _to_status_response(summary: RunStatusSummary) -> RunStatusResponse:
    return RunStatusResponse(
        run_id=summary.run_id,
        workflow_id=summary.workflow_id,
        status=summary.status,
        started_at=summary.started_at,
        completed_at=summary.completed_at,
        error=summary.error,
        node_executions=[
            NodeExecutionStatusResponse(
                node_id=e.node_id, status=e.status, error=e.error, duration=e.duration
            )
            for e in summary.node_executions
        ],
        nodes_completed=summary.completed,
        nodes_failed=summary.failed,
        nodes_skipped=summary.skipped,
    )


def _validation_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, WorkflowNotFoundError):
        return HTTPException(status_code=404, detail="Workflow not found")
    if isinstance(exc, WorkflowAccessError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to access this workflow",
        )
    if isinstance(exc, GraphCycleError):
        return HTTPException(
            status_code=422,
            detail={
                "message": "Invalid workflow graph",
                "diagnostics": [d.model_dump() for d in exc.diagnostics],
            },
        )
    return HTTPException(status_code=500, detail=f"Failed to start run: {str(exc)}")


def _require_workflow_id(request: StartRunRequest) -> str:
    workflow_id = (request.workflow_id or "").strip()
    if not workflow_id:
        raise HTTPException(status_code=400, detail="workflowId required")
    return workflow_id


def _assert_run_access_or_404(manager: RunManager, run_id: str, user: User) -> None:
    run = manager.store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if run.user_id and run.user_id != user.sub:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to access this run",
        )


@router.post("/runs/start", response_model=StartRunResponse)
async def start_run(
    request: StartRunRequest,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """Create a run and execute it in the background. Returns the run id."""
    workflow_id = _require_workflow_id(request)
    try:
        run_id = await manager.start_run(workflow_id, request.inputs, user_id=user.sub)
    except HTTPException:
        raise
    except Exception as e:
        raise _validation_http_error(e)
    return StartRunResponse(run_id=run_id)


@router.post("/runs/execute", response_model=ExecuteRunResponse)
async def execute_run(
    request: StartRunRequest,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """Execute a workflow to completion and return every node's output."""
    workflow_id = _require_workflow_id(request)
    try:
        result = await manager.execute_run(workflow_id, request.inputs, user_id=user.sub)
    except HTTPException:
        raise
    except Exception as e:
        raise _validation_http_error(e)

    return ExecuteRunResponse(
        run_id=result.run_id,
        status=result.status,
        results=result.results,
        error=result.error,
        total_execution_time_ms=result.total_execution_time_ms,
    )


@router.get("/runs/{run_id}", response_model=RunStatusResponse)
async def get_run_status(
    run_id: str,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    _assert_run_access_or_404(manager, run_id, user)
    try:
        return _to_status_response(manager.get_run_status(run_id))
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")


@router.post("/runs/{run_id}/cancel", response_model=RunStatusResponse)
async def cancel_run(
    run_id: str,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """Cancel a pending or running run. Finished runs keep their status."""
    _assert_run_access_or_404(manager, run_id, user)
    try:
        await manager.cancel_run(run_id)
        return _to_status_response(manager.get_run_status(run_id))
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to cancel run: {str(e)}")


@router.get("/workflows/{workflow_id}/runs", response_model=List[RunSummaryResponse])
async def list_workflow_runs(
    workflow_id: str,
    limit: int = 50,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """Run history for a workflow, newest first."""
    workflow = manager.store.fetch_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    if workflow.user_id != user.sub:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to access this workflow",
        )

    limit = max(1, min(limit, 200))
    return [
        RunSummaryResponse(
            id=run.id,
            workflow_id=run.workflow_id,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            error=run.error,
            created_at=run.created_at,
        )
        for run in manager.list_runs(workflow_id, limit)
    ]
