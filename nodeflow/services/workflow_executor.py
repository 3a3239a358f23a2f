"""
Workflow execution engine.

Loads a workflow graph, walks the toposorted execution order, resolves
inputs from upstream outputs via edges, dispatches each node to its
executor, and records every transition through the RunTracker.

Key concepts:
- One RunCoordinator per run owns the graph, the in-degree counts and the
  node output map. Nothing is shared between runs.
- A failed node does not stop the run: its output map entry is the failed
  marker and dependents simply receive no data from it.
- Sequential by default. With max_concurrency > 1 a ready-queue launches
  every node whose producers are all terminal; the coordinating coroutine
  is the only writer of the output map and in-degree counts.
- RunManager submits runs as background tasks and keeps their handles so
  they can be awaited or cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from nodeflow import config
from nodeflow.db.run_store import RunStore
from nodeflow.llm.gemini import GenerationService, get_generation_service
from nodeflow.models.workflow import (
    TERMINAL_RUN_STATUSES,
    NodeExecution,
    RunStatus,
    WorkflowGraph,
    WorkflowNode,
    WorkflowRun,
)
from nodeflow.services.graph import (
    build_graph,
    filter_dangling_edges,
    plan_execution,
    topological_order,
)
from nodeflow.services.input_resolver import resolve_node_inputs
from nodeflow.services.node_executors import ExecutionContext, execute_node, failed_output
from nodeflow.services.run_tracker import RunStatusSummary, RunTracker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Errors and result models
# ---------------------------------------------------------------------------


class WorkflowNotFoundError(LookupError):
    """The requested workflow does not exist."""


class WorkflowAccessError(PermissionError):
    """The requesting user does not own the workflow."""


class NodeRunResult(BaseModel):
    node_id: str
    node_type: str | None = None
    status: Literal["completed", "failed"]
    outputs: dict[str, Any] | None = None
    error: str | None = None
    execution_time_ms: int = 0


class RunResult(BaseModel):
    run_id: str
    status: RunStatus
    results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    node_results: list[NodeRunResult] = Field(default_factory=list)
    total_execution_time_ms: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Per-run coordinator
# ---------------------------------------------------------------------------


class RunCoordinator:
    """Executes one run of one workflow graph."""

    def __init__(
        self,
        run: WorkflowRun,
        executions: dict[str, NodeExecution],
        graph: WorkflowGraph,
        tracker: RunTracker,
        ctx: ExecutionContext,
        run_inputs: dict[str, Any] | None = None,
        max_concurrency: int = 1,
        node_timeout: float | None = None,
    ):
        self.run = run
        self.executions = executions
        self.tracker = tracker
        self.ctx = ctx
        self.run_inputs = run_inputs or {}
        self.max_concurrency = max(1, max_concurrency)
        self.node_timeout = node_timeout

        self.nodes: list[WorkflowNode] = list(graph.nodes)
        self.node_map: dict[str, WorkflowNode] = {n.id: n for n in self.nodes}
        self.edges = filter_dangling_edges(self.nodes, graph.edges)
        self.adjacency, self.in_degree = build_graph(self.nodes, self.edges)

        self.node_outputs: dict[str, dict[str, Any]] = {}
        self.node_results: list[NodeRunResult] = []
        self._started: set[str] = set()

    @property
    def run_id(self) -> str:
        return self.run.id

    async def execute(self) -> RunResult:
        start_time = time.perf_counter()
        self.tracker.mark_run_running(self.run_id)
        logger.info("Run %s started (%d nodes, %d edges)", self.run_id, len(self.nodes), len(self.edges))

        try:
            order = topological_order(self.adjacency, self.in_degree)
            if len(order) < len(self.nodes):
                return self._fail_graph(order, start_time)

            if self.max_concurrency > 1:
                await self._execute_parallel()
            else:
                for node_id in order:
                    self._record(await self._run_node(node_id))

            status = self.tracker.finalize(self.run_id, self.executions, self.node_outputs)
            return self._result(status, start_time)

        except asyncio.CancelledError:
            self._skip_unattempted("Run cancelled")
            self.tracker.cancel(self.run_id)
            raise

        except Exception as e:
            error_msg = f"Internal error: {type(e).__name__}: {e}"
            logger.exception("Run %s failed: %s", self.run_id, error_msg)
            self.tracker.mark_run_failed(self.run_id, error_msg)
            return self._result("FAILED", start_time, error=error_msg)

    # -- scheduling -----------------------------------------------------------

    async def _execute_parallel(self) -> None:
        in_degree = dict(self.in_degree)
        ready_queue: list[str] = [nid for nid, deg in in_degree.items() if deg == 0]
        pending_tasks: dict[asyncio.Task, str] = {}  # task -> node_id

        try:
            while ready_queue or pending_tasks:
                while ready_queue and len(pending_tasks) < self.max_concurrency:
                    node_id = ready_queue.pop(0)
                    task = asyncio.create_task(self._run_node(node_id))
                    pending_tasks[task] = node_id
                    logger.debug("Started execution of node %s", node_id)

                done, _ = await asyncio.wait(
                    pending_tasks.keys(), return_when=asyncio.FIRST_COMPLETED
                )

                for task in done:
                    node_id = pending_tasks.pop(task)
                    self._record(task.result())

                    for downstream in self.adjacency[node_id]:
                        in_degree[downstream] -= 1
                        if in_degree[downstream] == 0:
                            ready_queue.append(downstream)
                            logger.debug("Node %s now ready (unblocked by %s)", downstream, node_id)
        finally:
            if pending_tasks:
                for task in pending_tasks:
                    task.cancel()
                await asyncio.gather(*pending_tasks.keys(), return_exceptions=True)

    def _record(self, result: NodeRunResult) -> None:
        self.node_results.append(result)
        self.node_outputs[result.node_id] = (
            result.outputs if result.outputs is not None else failed_output(result.error or "")
        )

    # -- single node ------------------------------------------------------------

    async def _run_node(self, node_id: str) -> NodeRunResult:
        node = self.node_map[node_id]
        execution = self.executions.get(node_id)
        if execution is None:
            # Every node gets an execution row at run creation.
            raise RuntimeError(f"No execution record for node {node_id} in run {self.run_id}")

        self.tracker.mark_node_running(execution)
        self._started.add(node_id)
        node_start = time.perf_counter()
        inputs: dict[str, Any] = {}

        try:
            inputs = resolve_node_inputs(
                node_id=node_id,
                config=node.config,
                edges=self.edges,
                node_outputs=self.node_outputs,
                run_inputs=self.run_inputs,
            )
            outputs, error = await execute_node(
                node.type, inputs, node.config, self.ctx, timeout=self.node_timeout
            )
        except asyncio.CancelledError:
            elapsed_ms = int((time.perf_counter() - node_start) * 1000)
            self.tracker.mark_node_failed(execution, "Execution cancelled", elapsed_ms, inputs)
            raise
        except Exception as e:
            # Input resolution problems are node failures too.
            error = f"{type(e).__name__}: {e}"
            logger.exception("Node %s failed: %s", node_id, error)
            outputs = failed_output(error)

        elapsed_ms = int((time.perf_counter() - node_start) * 1000)

        if error:
            self.tracker.mark_node_failed(execution, error, elapsed_ms, inputs)
            return NodeRunResult(
                node_id=node_id,
                node_type=node.type,
                status="failed",
                outputs=outputs,
                error=error,
                execution_time_ms=elapsed_ms,
            )

        self.tracker.mark_node_completed(execution, inputs, outputs, elapsed_ms)
        logger.info("Node %s (%s) completed in %dms", node_id, node.type, elapsed_ms)
        return NodeRunResult(
            node_id=node_id,
            node_type=node.type,
            status="completed",
            outputs=outputs,
            execution_time_ms=elapsed_ms,
        )

    # -- terminal paths -----------------------------------------------------------

    def _fail_graph(self, order: list[str], start_time: float) -> RunResult:
        visited = set(order)
        cycle_nodes = [n.id for n in self.nodes if n.id not in visited]
        error_msg = f"Cycle detected involving nodes: {', '.join(cycle_nodes)}"
        logger.error("Run %s: %s", self.run_id, error_msg)
        self._skip_unattempted(error_msg)
        self.tracker.mark_run_failed(self.run_id, error_msg)
        return self._result("FAILED", start_time, error=error_msg)

    def _skip_unattempted(self, reason: str) -> None:
        # Started nodes are closed out by their own task (COMPLETED or FAILED).
        skipped = [e for nid, e in self.executions.items() if nid not in self._started]
        if skipped:
            self.tracker.mark_nodes_skipped(skipped, reason)

    def _result(self, status: RunStatus, start_time: float, error: str | None = None) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            status=status,
            results=dict(self.node_outputs),
            node_results=list(self.node_results),
            total_execution_time_ms=int((time.perf_counter() - start_time) * 1000),
            error=error,
        )


# ---------------------------------------------------------------------------
# Run manager (API-facing)
# ---------------------------------------------------------------------------


class RunManager:
    """
    Creates runs, submits them as background tasks and owns the task handles.
    """

    def __init__(
        self,
        store: RunStore,
        generation: GenerationService | None = None,
        max_concurrency: int | None = None,
        node_timeout: float | None = None,
        default_model: str | None = None,
    ):
        self.store = store
        self.tracker = RunTracker(store)
        self._generation = generation
        self.max_concurrency = max_concurrency or config.get_max_concurrency()
        self.node_timeout = node_timeout if node_timeout is not None else config.get_node_timeout_seconds()
        self.default_model = default_model or config.get_default_model()
        self._tasks: dict[str, asyncio.Task] = {}

    def _context(self) -> ExecutionContext:
        if self._generation is None:
            try:
                self._generation = get_generation_service()
            except ValueError as e:
                logger.warning("Generation service unavailable, llm nodes will fail: %s", e)
        return ExecutionContext(generation=self._generation, default_model=self.default_model)

    def load_workflow(self, workflow_id: str, user_id: str | None = None) -> WorkflowGraph:
        """
        Validate the request against the stored workflow and return its graph.

        Raises WorkflowNotFoundError, WorkflowAccessError or GraphCycleError;
        nothing is written when validation fails.
        """
        workflow = self.store.fetch_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if user_id is not None and workflow.user_id != user_id:
            raise WorkflowAccessError(workflow_id)

        graph = self.store.fetch_workflow_graph(workflow_id)
        usable_edges, _ = plan_execution(graph.nodes, graph.edges)
        return WorkflowGraph(nodes=graph.nodes, edges=usable_edges)

    def create_coordinator(
        self,
        workflow_id: str,
        graph: WorkflowGraph,
        inputs: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> RunCoordinator:
        run, executions = self.tracker.create_run(
            workflow_id, [n.id for n in graph.nodes], user_id=user_id
        )
        return RunCoordinator(
            run=run,
            executions=executions,
            graph=graph,
            tracker=self.tracker,
            ctx=self._context(),
            run_inputs=inputs,
            max_concurrency=self.max_concurrency,
            node_timeout=self.node_timeout,
        )

    async def start_run(
        self,
        workflow_id: str,
        inputs: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> str:
        """Create the run and execute it in the background. Returns the run id."""
        graph = self.load_workflow(workflow_id, user_id)
        coordinator = self.create_coordinator(workflow_id, graph, inputs, user_id)

        task = asyncio.create_task(coordinator.execute(), name=f"run-{coordinator.run_id}")
        self._tasks[coordinator.run_id] = task
        task.add_done_callback(lambda t, run_id=coordinator.run_id: self._on_task_done(run_id, t))
        return coordinator.run_id

    async def execute_run(
        self,
        workflow_id: str,
        inputs: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> RunResult:
        """Create the run and execute it to completion in the caller's task."""
        graph = self.load_workflow(workflow_id, user_id)
        coordinator = self.create_coordinator(workflow_id, graph, inputs, user_id)
        return await coordinator.execute()

    def _on_task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            logger.info("Background run %s was cancelled", run_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background run %s raised: %s", run_id, exc, exc_info=exc)

    async def wait(self, run_id: str) -> RunResult | None:
        task = self._tasks.get(run_id)
        if task is None:
            return None
        try:
            return await task
        except asyncio.CancelledError:
            return None

    async def cancel_run(self, run_id: str) -> RunStatus:
        """
        Cancel a run. An in-flight run is stopped through its task, which
        writes CANCELLED itself; a run not executing in this process is
        marked CANCELLED directly unless it already finished.
        """
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        # A task cancelled before its first step never wrote anything.
        summary = self.tracker.get_run_status(run_id)
        if summary.status not in TERMINAL_RUN_STATUSES:
            pending = [
                e for e in self.store.list_node_executions(run_id)
                if e.status in ("PENDING", "RUNNING")
            ]
            if pending:
                self.tracker.mark_nodes_skipped(pending, "Run cancelled")
            self.tracker.cancel(run_id)

        return self.tracker.get_run_status(run_id).status

    def get_run_status(self, run_id: str) -> RunStatusSummary:
        return self.tracker.get_run_status(run_id)

    def list_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRun]:
        return self.store.list_runs(workflow_id, limit)

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


_manager: RunManager | None = None


def get_run_manager() -> RunManager:
    """Process-wide RunManager used by the API."""
    global _manager
    if _manager is None:
        from nodeflow.db.run_store import get_run_store

        _manager = RunManager(get_run_store())
    return _manager


async def shutdown_run_manager() -> None:
    """Cancel in-flight background runs, if a manager was ever created."""
    if _manager is not None:
        await _manager.shutdown()
