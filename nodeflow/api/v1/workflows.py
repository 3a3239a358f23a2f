"""
Workflow endpoints: list, create, save and the sample workflow.

Definitions arrive in the editor's shape (nodes carry their settings under
`data`, edges use `source`/`target`) and are stored as node and edge rows,
which is what the run endpoints execute. Every route is scoped to the
authenticated owner.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from nodeflow.api.v1.runs import CamelModel
from nodeflow.auth.dependencies import User, get_current_user
from nodeflow.models.workflow import WorkflowEdge, WorkflowGraph, WorkflowNode, WorkflowRecord
from nodeflow.services.workflow_executor import RunManager, get_run_manager

router = APIRouter(prefix="/workflows", tags=["workflows"])

SAMPLE_WORKFLOW_NAME = "Product Marketing Kit (Sample)"
SAMPLE_WORKFLOW_DESCRIPTION = "A sample workflow demonstrating parallel execution and multimodal AI."


class EditorNode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    position: Optional[Dict[str, float]] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class EditorEdge(CamelModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """Workflow structure as the editor saves it."""
    nodes: List[EditorNode] = Field(default_factory=list)
    edges: List[EditorEdge] = Field(default_factory=list)

    def to_graph(self) -> WorkflowGraph:
        return WorkflowGraph(
            nodes=[
                WorkflowNode(id=n.id, type=n.type, config=n.data, position=n.position)
                for n in self.nodes
            ],
            edges=[
                WorkflowEdge(
                    id=e.id or str(uuid4()),
                    source_id=e.source,
                    target_id=e.target,
                    source_handle=e.source_handle,
                    target_handle=e.target_handle,
                )
                for e in self.edges
            ],
        )


class WorkflowCreate(CamelModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    definition: Optional[WorkflowDefinition] = None


class WorkflowSave(CamelModel):
    name: Optional[str] = Field(None, max_length=255)
    definition: Optional[WorkflowDefinition] = None


class WorkflowResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    user_id: Optional[str] = None
    node_count: int
    edge_count: int
    created_at: datetime
    updated_at: datetime


def _to_response(workflow: WorkflowRecord, graph: WorkflowGraph) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        description=workflow.description,
        user_id=workflow.user_id,
        node_count=len(graph.nodes),
        edge_count=len(graph.edges),
        created_at=workflow.created_at,
        updated_at=workflow.updated_at,
    )


def build_sample_graph() -> WorkflowGraph:
    """
    Two branches that converge on a final llm node: a product photo plus
    copywriting prompt, and a demo video whose frame feeds the final post.
    """
    ids = {
        key: str(uuid4())
        for key in (
            "upload_image",
            "crop_image",
            "text_system_1",
            "text_product",
            "llm_1",
            "upload_video",
            "extract_frame",
            "text_system_2",
            "llm_2",
        )
    }

    def sample_node(key: str, kind: str, x: float, y: float, **config) -> WorkflowNode:
        return WorkflowNode(id=ids[key], type=kind, config=config, position={"x": x, "y": y})

    def sample_edge(source: str, target: str, target_handle: str) -> WorkflowEdge:
        return WorkflowEdge(
            id=str(uuid4()),
            source_id=ids[source],
            target_id=ids[target],
            source_handle="output",
            target_handle=target_handle,
        )

    nodes = [
        sample_node("upload_image", "image", 50, 50),
        sample_node("crop_image", "crop", 50, 300, x_percent=10, y_percent=10, width_percent=80, height_percent=80),
        sample_node(
            "text_system_1", "text", 300, 50,
            text="You are a professional marketing copywriter. "
                 "Generate a compelling one-paragraph product description.",
        ),
        sample_node(
            "text_product", "text", 300, 200,
            text="Product: Wireless Bluetooth Headphones. "
                 "Features: Noise cancellation, 30-hour battery, foldable design.",
        ),
        sample_node("llm_1", "llm", 300, 450, model="gemini-2.5-flash", temperature=0.7),
        sample_node("upload_video", "video", 600, 50),
        sample_node("extract_frame", "extract", 600, 300, timestamp="50%"),
        sample_node(
            "text_system_2", "text", 500, 600,
            text="You are a social media manager. Create a tweet-length marketing post "
                 "based on the product image and video frame.",
        ),
        sample_node("llm_2", "llm", 500, 800, model="gemini-2.5-pro", temperature=0.8),
    ]
    edges = [
        sample_edge("upload_image", "crop_image", "image_url"),
        sample_edge("crop_image", "llm_1", "images"),
        sample_edge("text_system_1", "llm_1", "system_prompt"),
        sample_edge("text_product", "llm_1", "user_message"),
        sample_edge("upload_video", "extract_frame", "video_url"),
        sample_edge("text_system_2", "llm_2", "system_prompt"),
        sample_edge("llm_1", "llm_2", "user_message"),
        sample_edge("crop_image", "llm_2", "images"),
        sample_edge("extract_frame", "llm_2", "images"),
    ]
    return WorkflowGraph(nodes=nodes, edges=edges)


@router.get("", response_model=List[WorkflowResponse])
async def list_workflows(
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """List the current user's workflows, most recently updated first."""
    try:
        return [
            _to_response(workflow, manager.store.fetch_workflow_graph(workflow.id))
            for workflow in manager.store.list_workflows(user.sub)
        ]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list workflows: {str(e)}")


@router.post("", response_model=WorkflowResponse, status_code=201)
async def create_workflow(
    workflow: WorkflowCreate,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """Create a workflow owned by the current user. The definition may be empty."""
    try:
        record = WorkflowRecord(
            name=(workflow.name or "").strip() or "Untitled Workflow",
            description=workflow.description,
            user_id=user.sub,
        )
        graph = workflow.definition.to_graph() if workflow.definition else WorkflowGraph()
        created = manager.store.create_workflow(record, graph)
        return _to_response(created, graph)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create workflow: {str(e)}")


@router.post("/sample", response_model=WorkflowResponse, status_code=201)
async def create_sample_workflow(
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """Create the sample workflow for the current user."""
    try:
        record = WorkflowRecord(
            name=SAMPLE_WORKFLOW_NAME,
            description=SAMPLE_WORKFLOW_DESCRIPTION,
            user_id=user.sub,
        )
        graph = build_sample_graph()
        created = manager.store.create_workflow(record, graph)
        return _to_response(created, graph)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create sample workflow: {str(e)}")


@router.post("/{workflow_id}/save", response_model=WorkflowResponse)
async def save_workflow(
    workflow_id: str,
    workflow: WorkflowSave,
    user: User = Depends(get_current_user),
    manager: RunManager = Depends(get_run_manager),
):
    """
    Save a workflow's definition and/or name.
    Users can only save their own workflows. The stored graph is replaced
    wholesale when a definition is sent.
    """
    try:
        existing = manager.store.fetch_workflow(workflow_id)
        if existing is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        if existing.user_id != user.sub:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to update this workflow",
            )

        name = workflow.name.strip() if workflow.name is not None else None
        if name == "":
            raise HTTPException(status_code=400, detail="Workflow name cannot be empty")
        if name is None and workflow.definition is None:
            raise HTTPException(status_code=400, detail="No fields to update")

        graph = workflow.definition.to_graph() if workflow.definition is not None else None
        updated = manager.store.update_workflow(workflow_id, graph=graph, name=name)
        if graph is None:
            graph = manager.store.fetch_workflow_graph(workflow_id)
        return _to_response(updated, graph)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to save workflow: {str(e)}")
