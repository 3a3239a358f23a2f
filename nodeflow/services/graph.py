"""
Graph building and scheduling.

Turns the persisted node/edge records of one workflow into the adjacency
list and in-degree table, and produces an execution order with Kahn's
algorithm. A cyclic graph yields a short order; callers that must not run
a partial graph use `require_acyclic`.
"""

from __future__ import annotations

import logging
from collections import deque

from nodeflow.models.workflow import GraphDiagnostic, WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)


class GraphCycleError(Exception):
    """Raised when a workflow graph cannot be fully ordered."""

    def __init__(self, cycle_nodes: list[str]):
        self.cycle_nodes = cycle_nodes
        self.diagnostics = [
            GraphDiagnostic(
                level="error",
                message=f"Cycle detected involving nodes: {', '.join(cycle_nodes)}",
            )
        ]
        super().__init__(self.diagnostics[0].message)


def filter_dangling_edges(
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
) -> list[WorkflowEdge]:
    """Drop edges whose source or target node is not part of the graph."""
    node_ids = {n.id for n in nodes}
    kept: list[WorkflowEdge] = []
    for edge in edges:
        if edge.source_id not in node_ids or edge.target_id not in node_ids:
            logger.warning(
                "Dropping edge %s: references unknown node (%s -> %s)",
                edge.id,
                edge.source_id,
                edge.target_id,
            )
            continue
        kept.append(edge)
    return kept


def build_graph(
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
) -> tuple[dict[str, list[str]], dict[str, int]]:
    """
    Build dependency tracking structures from the node and edge lists.

    Returns:
        adjacency: node -> downstream nodes, one entry per edge, in edge order
        in_degree: node -> number of incoming edges
    """
    adjacency: dict[str, list[str]] = {n.id: [] for n in nodes}
    in_degree: dict[str, int] = {n.id: 0 for n in nodes}

    for edge in edges:
        if edge.source_id not in adjacency or edge.target_id not in in_degree:
            continue
        adjacency[edge.source_id].append(edge.target_id)
        in_degree[edge.target_id] += 1

    return adjacency, in_degree


def topological_order(
    adjacency: dict[str, list[str]],
    in_degree: dict[str, int],
) -> list[str]:
    """
    Kahn's algorithm. Ties are broken by the iteration order of `in_degree`
    (the node list order). The returned order is shorter than the node count
    when the graph contains a cycle.
    """
    remaining = dict(in_degree)
    queue: deque[str] = deque(nid for nid, deg in remaining.items() if deg == 0)
    order: list[str] = []

    while queue:
        nid = queue.popleft()
        order.append(nid)
        for neighbor in adjacency.get(nid, []):
            remaining[neighbor] -= 1
            if remaining[neighbor] == 0:
                queue.append(neighbor)

    return order


def require_acyclic(order: list[str], nodes: list[WorkflowNode]) -> None:
    if len(order) == len(nodes):
        return
    visited = set(order)
    raise GraphCycleError([n.id for n in nodes if n.id not in visited])


def plan_execution(
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
) -> tuple[list[WorkflowEdge], list[str]]:
    """
    Validate a loaded graph and return (usable edges, execution order).

    Raises GraphCycleError instead of returning a partial order.
    """
    usable = filter_dangling_edges(nodes, edges)
    adjacency, in_degree = build_graph(nodes, usable)
    order = topological_order(adjacency, in_degree)
    require_acyclic(order, nodes)
    return usable, order
