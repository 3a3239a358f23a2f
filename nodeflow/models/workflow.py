"""
Workflow models: the persisted graph records and the run bookkeeping rows.

Node and edge records mirror what the editor saves. Runs and node executions
are written by the RunTracker and read back by the status endpoint.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


RunStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED"]
NodeExecutionStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED", "SKIPPED"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowNode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    # Kept as a plain string: unknown kinds still execute (as "unknown_type").
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] | None = None


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    source_id: str
    target_id: str
    source_handle: str | None = None
    target_handle: str | None = None


class WorkflowGraph(BaseModel):
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)


class WorkflowRecord(BaseModel):
    """Workflow metadata: ownership for request validation, plus what listings show."""
    id: str = Field(default_factory=_new_id)
    name: str = "Untitled Workflow"
    description: str | None = None
    user_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class WorkflowRun(BaseModel):
    id: str = Field(default_factory=_new_id)
    workflow_id: str
    user_id: str | None = None
    status: RunStatus = "PENDING"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class NodeExecution(BaseModel):
    id: str = Field(default_factory=_new_id)
    run_id: str
    node_id: str
    status: NodeExecutionStatus = "PENDING"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration: int | None = None  # milliseconds
    inputs: dict[str, Any] | None = None
    outputs: dict[str, Any] | None = None
    error: str | None = None


class GraphDiagnostic(BaseModel):
    level: Literal["error", "warning"]
    message: str
    node_id: str | None = None
    edge_id: str | None = None
