"""
Shared fixtures: an in-memory run store and a scripted generation service,
so no test talks to Supabase or Gemini.
"""

import asyncio

import pytest

from nodeflow.models.workflow import (
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    WorkflowRecord,
)
from nodeflow.db.run_store import InMemoryRunStore

TEST_USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER_ID = "22222222-2222-2222-2222-222222222222"


class FakeGeneration:
    """Records every call and answers from a script."""

    def __init__(self, reply: str = "generated", error: Exception | None = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.text_calls: list[tuple[str, str]] = []
        self.vision_calls: list[tuple[str, list[str], str]] = []

    async def generate_text(self, prompt: str, model: str) -> str:
        self.text_calls.append((prompt, model))
        return await self._answer()

    async def generate_vision(self, prompt: str, images: list[str], model: str) -> str:
        self.vision_calls.append((prompt, list(images), model))
        return await self._answer()

    async def _answer(self) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


def node(node_id: str, kind: str, **config) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=kind, config=config)


def edge(source: str, target: str, target_handle: str | None = None, edge_id: str | None = None) -> WorkflowEdge:
    return WorkflowEdge(
        id=edge_id or f"{source}->{target}:{target_handle or ''}",
        source_id=source,
        target_id=target,
        target_handle=target_handle,
    )


def save_workflow(
    store: InMemoryRunStore,
    workflow_id: str,
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
    user_id: str = TEST_USER_ID,
) -> None:
    store.create_workflow(
        WorkflowRecord(id=workflow_id, name="Test Workflow", user_id=user_id),
        WorkflowGraph(nodes=nodes, edges=edges),
    )


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def generation() -> FakeGeneration:
    return FakeGeneration()
