"""
Run store: the persistence contract the engine writes runs and node
executions through, and reads workflow graphs from.

Two backends:
- InMemoryRunStore for tests and local development
- SupabaseRunStore for deployments (tables: workflows, workflow_nodes,
  workflow_edges, workflow_runs, node_executions)
"""

from __future__ import annotations

import json
import os
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from nodeflow.config import get_run_store_backend, get_supabase_url
from nodeflow.models.workflow import (
    NodeExecution,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    WorkflowRecord,
    WorkflowRun,
)

logger = logging.getLogger(__name__)


class RunNotFoundError(LookupError):
    """Raised when a run id does not exist in the store."""


class RunStore(ABC):
    @abstractmethod
    def fetch_workflow(self, workflow_id: str) -> WorkflowRecord | None: ...

    @abstractmethod
    def fetch_workflow_graph(self, workflow_id: str) -> WorkflowGraph: ...

    @abstractmethod
    def create_workflow(self, workflow: WorkflowRecord, graph: WorkflowGraph) -> WorkflowRecord: ...

    @abstractmethod
    def update_workflow(
        self,
        workflow_id: str,
        graph: WorkflowGraph | None = None,
        name: str | None = None,
    ) -> WorkflowRecord: ...

    @abstractmethod
    def list_workflows(self, user_id: str) -> list[WorkflowRecord]: ...

    @abstractmethod
    def create_run(self, run: WorkflowRun) -> WorkflowRun: ...

    @abstractmethod
    def create_node_executions(self, executions: list[NodeExecution]) -> list[NodeExecution]: ...

    @abstractmethod
    def update_node_execution(self, execution_id: str, changes: dict[str, Any]) -> None: ...

    @abstractmethod
    def update_run(self, run_id: str, changes: dict[str, Any]) -> None: ...

    @abstractmethod
    def get_run(self, run_id: str) -> WorkflowRun | None: ...

    @abstractmethod
    def list_node_executions(self, run_id: str) -> list[NodeExecution]: ...

    @abstractmethod
    def list_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRun]: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryRunStore(RunStore):
    """Process-local store. Thread-safe so the API and background runs can share it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._workflows: dict[str, WorkflowRecord] = {}
        self._graphs: dict[str, WorkflowGraph] = {}
        self._runs: dict[str, WorkflowRun] = {}
        self._executions: dict[str, NodeExecution] = {}

    def fetch_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return workflow.model_copy() if workflow else None

    def fetch_workflow_graph(self, workflow_id: str) -> WorkflowGraph:
        with self._lock:
            graph = self._graphs.get(workflow_id)
            return graph.model_copy(deep=True) if graph else WorkflowGraph()

    def create_workflow(self, workflow: WorkflowRecord, graph: WorkflowGraph) -> WorkflowRecord:
        with self._lock:
            self._workflows[workflow.id] = workflow.model_copy()
            self._graphs[workflow.id] = graph.model_copy(deep=True)
        return workflow

    def update_workflow(
        self,
        workflow_id: str,
        graph: WorkflowGraph | None = None,
        name: str | None = None,
    ) -> WorkflowRecord:
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                raise LookupError(f"Workflow {workflow_id} not found")
            changes: dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
            if name is not None:
                changes["name"] = name
            updated = current.model_copy(update=changes)
            self._workflows[workflow_id] = updated
            if graph is not None:
                self._graphs[workflow_id] = graph.model_copy(deep=True)
        return updated.model_copy()

    def list_workflows(self, user_id: str) -> list[WorkflowRecord]:
        with self._lock:
            workflows = [w for w in self._workflows.values() if w.user_id == user_id]
        workflows.sort(key=lambda w: w.updated_at, reverse=True)
        return [w.model_copy() for w in workflows]

    def create_run(self, run: WorkflowRun) -> WorkflowRun:
        with self._lock:
            self._runs[run.id] = run.model_copy()
        return run

    def create_node_executions(self, executions: list[NodeExecution]) -> list[NodeExecution]:
        with self._lock:
            for execution in executions:
                self._executions[execution.id] = execution.model_copy()
        return executions

    def update_node_execution(self, execution_id: str, changes: dict[str, Any]) -> None:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise LookupError(f"Node execution {execution_id} not found")
            self._executions[execution_id] = current.model_copy(update=changes)

    def update_run(self, run_id: str, changes: dict[str, Any]) -> None:
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise RunNotFoundError(run_id)
            self._runs[run_id] = current.model_copy(update=changes)

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy() if run else None

    def list_node_executions(self, run_id: str) -> list[NodeExecution]:
        with self._lock:
            return [e.model_copy() for e in self._executions.values() if e.run_id == run_id]

    def list_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.workflow_id == workflow_id]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy() for r in runs[:limit]]


# ---------------------------------------------------------------------------
# Supabase backend
# ---------------------------------------------------------------------------


def _to_row(changes: dict[str, Any]) -> dict[str, Any]:
    """Make a change set JSON-safe (datetimes, nested snapshots)."""
    row: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, datetime):
            row[key] = value.isoformat()
        elif isinstance(value, (dict, list)):
            row[key] = json.loads(json.dumps(value, default=str))
        else:
            row[key] = value
    return row


def create_supabase_client():
    """Service-role client built from SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."""
    from supabase import create_client

    supabase_url = get_supabase_url()
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not supabase_url:
        raise ValueError("SUPABASE_URL environment variable is required")
    if not supabase_key:
        raise ValueError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")
    return create_client(supabase_url, supabase_key)


def _workflow_from_row(row: dict[str, Any]) -> WorkflowRecord:
    fields: dict[str, Any] = {
        "id": str(row["id"]),
        "name": row.get("name") or "Untitled Workflow",
        "description": row.get("description"),
        "user_id": str(row["user_id"]) if row.get("user_id") else None,
    }
    for key in ("created_at", "updated_at"):
        if row.get(key):
            fields[key] = row[key]
    return WorkflowRecord(**fields)


def _graph_rows(workflow_id: str, graph: WorkflowGraph) -> tuple[list[dict], list[dict]]:
    node_rows = [
        {
            "id": n.id,
            "workflow_id": workflow_id,
            "type": n.type,
            "config": _to_row(n.config),
            "position_x": (n.position or {}).get("x", 0),
            "position_y": (n.position or {}).get("y", 0),
        }
        for n in graph.nodes
    ]
    edge_rows = [
        {
            "id": e.id,
            "workflow_id": workflow_id,
            "source_id": e.source_id,
            "target_id": e.target_id,
            "source_handle": e.source_handle,
            "target_handle": e.target_handle,
        }
        for e in graph.edges
    ]
    return node_rows, edge_rows


class SupabaseRunStore(RunStore):
    def __init__(self, client=None):
        self._client = client if client is not None else create_supabase_client()

    def fetch_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        result = self._client.table("workflows")\
            .select("*")\
            .eq("id", workflow_id)\
            .execute()
        if not result.data:
            return None
        return _workflow_from_row(result.data[0])

    def _insert_graph(self, workflow_id: str, graph: WorkflowGraph) -> None:
        node_rows, edge_rows = _graph_rows(workflow_id, graph)
        if node_rows:
            self._client.table("workflow_nodes").insert(node_rows).execute()
        if edge_rows:
            self._client.table("workflow_edges").insert(edge_rows).execute()

    def create_workflow(self, workflow: WorkflowRecord, graph: WorkflowGraph) -> WorkflowRecord:
        result = self._client.table("workflows").insert(workflow.model_dump(mode="json")).execute()
        if not result.data:
            raise RuntimeError("Failed to create workflow")
        try:
            self._insert_graph(workflow.id, graph)
        except Exception:
            # Rollback: delete the workflow if its graph cannot be stored
            self._client.table("workflows").delete().eq("id", workflow.id).execute()
            raise
        return _workflow_from_row(result.data[0])

    def update_workflow(
        self,
        workflow_id: str,
        graph: WorkflowGraph | None = None,
        name: str | None = None,
    ) -> WorkflowRecord:
        changes: dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
        if name is not None:
            changes["name"] = name
        result = self._client.table("workflows")\
            .update(_to_row(changes))\
            .eq("id", workflow_id)\
            .execute()
        if not result.data:
            raise LookupError(f"Workflow {workflow_id} not found")

        if graph is not None:
            # Edges first: they reference nodes
            self._client.table("workflow_edges").delete().eq("workflow_id", workflow_id).execute()
            self._client.table("workflow_nodes").delete().eq("workflow_id", workflow_id).execute()
            self._insert_graph(workflow_id, graph)
        return _workflow_from_row(result.data[0])

    def list_workflows(self, user_id: str) -> list[WorkflowRecord]:
        result = self._client.table("workflows")\
            .select("*")\
            .eq("user_id", user_id)\
            .order("updated_at", desc=True)\
            .execute()
        return [_workflow_from_row(row) for row in result.data or []]

    def fetch_workflow_graph(self, workflow_id: str) -> WorkflowGraph:
        nodes_result = self._client.table("workflow_nodes")\
            .select("*")\
            .eq("workflow_id", workflow_id)\
            .execute()
        edges_result = self._client.table("workflow_edges")\
            .select("*")\
            .eq("workflow_id", workflow_id)\
            .execute()

        nodes = [
            WorkflowNode(
                id=str(row["id"]),
                type=row.get("type") or "",
                config=row.get("config") or {},
                position={"x": row.get("position_x") or 0, "y": row.get("position_y") or 0},
            )
            for row in nodes_result.data or []
        ]
        edges = [
            WorkflowEdge(
                id=str(row["id"]),
                source_id=str(row["source_id"]),
                target_id=str(row["target_id"]),
                source_handle=row.get("source_handle"),
                target_handle=row.get("target_handle"),
            )
            for row in edges_result.data or []
        ]
        return WorkflowGraph(nodes=nodes, edges=edges)

    def create_run(self, run: WorkflowRun) -> WorkflowRun:
        self._client.table("workflow_runs").insert(run.model_dump(mode="json")).execute()
        return run

    def create_node_executions(self, executions: list[NodeExecution]) -> list[NodeExecution]:
        if executions:
            self._client.table("node_executions")\
                .insert([e.model_dump(mode="json") for e in executions])\
                .execute()
        return executions

    def update_node_execution(self, execution_id: str, changes: dict[str, Any]) -> None:
        self._client.table("node_executions")\
            .update(_to_row(changes))\
            .eq("id", execution_id)\
            .execute()

    def update_run(self, run_id: str, changes: dict[str, Any]) -> None:
        self._client.table("workflow_runs")\
            .update(_to_row(changes))\
            .eq("id", run_id)\
            .execute()

    def get_run(self, run_id: str) -> WorkflowRun | None:
        result = self._client.table("workflow_runs")\
            .select("*")\
            .eq("id", run_id)\
            .execute()
        if not result.data:
            return None
        return WorkflowRun.model_validate(result.data[0])

    def list_node_executions(self, run_id: str) -> list[NodeExecution]:
        result = self._client.table("node_executions")\
            .select("*")\
            .eq("run_id", run_id)\
            .execute()
        return [NodeExecution.model_validate(row) for row in result.data or []]

    def list_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRun]:
        result = self._client.table("workflow_runs")\
            .select("*")\
            .eq("workflow_id", workflow_id)\
            .order("created_at", desc=True)\
            .limit(limit)\
            .execute()
        return [WorkflowRun.model_validate(row) for row in result.data or []]


_store: RunStore | None = None


def get_run_store() -> RunStore:
    """Process-wide run store, chosen by NODEFLOW_RUN_STORE."""
    global _store
    if _store is None:
        backend = get_run_store_backend()
        logger.info("Using %s run store", backend)
        _store = SupabaseRunStore() if backend == "supabase" else InMemoryRunStore()
    return _store
