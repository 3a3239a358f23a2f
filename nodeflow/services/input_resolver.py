"""
Input resolution: merges upstream output bags into the input bag of the
node about to run.

Routing depends on the edge's target handle. Images always end up on the
`images` list so that llm nodes see them whatever the handle is called.
"""

from __future__ import annotations

import logging
from typing import Any

from nodeflow.models.workflow import WorkflowEdge

logger = logging.getLogger(__name__)

# Producer statuses meaning "ran fine but has nothing to hand over".
NO_DATA_STATUSES = frozenset({"no_input", "not_extracted"})

# Priority order for the single value a producer contributes over an edge.
CANDIDATE_KEYS = ("image", "output", "text", "url")

# Image-like values longer than this are kept off named (text) handles.
MAX_INLINE_HANDLE_LENGTH = 1000

_IMAGE_PREFIXES = (
    "http://",
    "https://",
    "data:image/",
    "/9j/",   # JPEG base64
    "iVBOR",  # PNG base64
)


def is_valid_image(value: Any) -> bool:
    """True for URLs, image data URIs and raw JPEG/PNG base64 strings."""
    if not value or not isinstance(value, str):
        return False
    return value.startswith(_IMAGE_PREFIXES)


def _pick_candidate(producer_output: dict[str, Any]) -> Any:
    for key in CANDIDATE_KEYS:
        value = producer_output.get(key)
        if value:
            return value
    return None


def _push_image(resolved: dict[str, Any], value: Any) -> None:
    # Copy so lists owned by config, run inputs or producers stay untouched.
    current = resolved.get("images")
    images = list(current) if isinstance(current, (list, tuple)) else []
    images.append(value)
    resolved["images"] = images


def resolve_node_inputs(
    node_id: str,
    config: dict[str, Any],
    edges: list[WorkflowEdge],
    node_outputs: dict[str, dict[str, Any]],
    run_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Resolve the input bag for `node_id`.

    The bag starts as the run inputs overlaid with the node's own config,
    then every edge targeting the node is applied in edge order.
    """
    resolved: dict[str, Any] = {**(run_inputs or {}), **(config or {})}

    for edge in edges:
        if edge.target_id != node_id:
            continue

        upstream = node_outputs.get(edge.source_id)
        if upstream is None:
            logger.warning(
                "Node %s: no outputs recorded for upstream %s, skipping edge %s",
                node_id,
                edge.source_id,
                edge.id,
            )
            continue

        candidate = _pick_candidate(upstream)
        if not candidate or upstream.get("status") in NO_DATA_STATUSES:
            logger.debug("Node %s: edge %s carries no data", node_id, edge.id)
            continue

        handle = edge.target_handle
        if handle and handle.startswith("images"):
            values = candidate if isinstance(candidate, (list, tuple)) else [candidate]
            for value in values:
                if is_valid_image(value):
                    _push_image(resolved, value)

        elif handle in ("image", "image_url"):
            resolved["image"] = candidate
            resolved[handle] = candidate
            if is_valid_image(candidate):
                _push_image(resolved, candidate)

        elif handle:
            if is_valid_image(candidate):
                _push_image(resolved, candidate)
                if (
                    not candidate.startswith("data:")
                    and len(candidate) < MAX_INLINE_HANDLE_LENGTH
                ):
                    resolved[handle] = candidate
            else:
                resolved[handle] = candidate

        else:
            # Unnamed handle: take the whole bag, later edges win on collisions.
            resolved.update(upstream)
            image = upstream.get("image")
            if is_valid_image(image):
                _push_image(resolved, image)

    return resolved
