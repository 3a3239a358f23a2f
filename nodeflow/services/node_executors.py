"""
Per-kind node executors.

Each node kind maps to an async handler that turns (config, resolved inputs)
into an output bag. Only `llm` talks to an external service; the media kinds
just surface what the editor already stored in the node config.

Sentinel statuses (`no_input`, `not_extracted`, `unknown_type`) are normal
results, not errors: downstream input resolution simply ignores them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from nodeflow.config import get_default_model
from nodeflow.llm.gemini import GenerationService
from nodeflow.services.input_resolver import is_valid_image

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Collaborators handed to every executor."""
    generation: GenerationService | None = None
    default_model: str = field(default_factory=get_default_model)


NodeHandler = Callable[[dict, dict, ExecutionContext], Awaitable[dict[str, Any]]]

# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

# Maps node kinds to their async executor functions.
# Each executor receives (config, inputs, ctx) and returns the output bag.
_registry: dict[str, NodeHandler] = {}


def executor(kind: str):
    """
    Decorator that registers an async executor function for a node kind.

    Usage:
        @executor("my_kind")
        async def _exec_my_kind(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
            return {"output": ...}
    """
    def decorator(fn: NodeHandler) -> NodeHandler:
        _registry[kind] = fn
        return fn
    return decorator


def get_executor(kind: str) -> NodeHandler | None:
    return _registry.get(kind)


def registered_kinds() -> list[str]:
    return sorted(_registry)


# ---------------------------------------------------------------------------
# Node executors
# ---------------------------------------------------------------------------


@executor("text")
async def _exec_text(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    content = config.get("content") or config.get("text") or ""
    return {"output": content, "text": content}


@executor("image")
async def _exec_image(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    image_url = config.get("imageUrl") or config.get("url") or ""
    image_base64 = config.get("imageBase64") or ""
    image = image_base64 or image_url
    return {"output": image, "url": image_url, "imageBase64": image_base64, "image": image}


@executor("video")
async def _exec_video(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    video_url = config.get("videoUrl") or config.get("url") or ""
    return {"output": video_url, "url": video_url}


@executor("crop")
async def _exec_crop(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    """
    Surface the cropped image stored by the editor, or pass the upstream
    image through when no crop was saved yet.
    """
    cropped = config.get("croppedImageUrl")
    if is_valid_image(cropped):
        return {"output": cropped, "url": cropped, "image": cropped}

    images = inputs.get("images")
    first_image = images[0] if isinstance(images, list) and images else None
    for candidate in (inputs.get("image"), inputs.get("image_url"), first_image, inputs.get("url")):
        if is_valid_image(candidate):
            return {"output": candidate, "url": candidate, "image": candidate}

    logger.info("Crop node has no usable image input")
    return {"output": None, "status": "no_input"}


@executor("extract")
async def _exec_extract(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    frame = config.get("extractedFrameUrl")
    if is_valid_image(frame):
        return {"output": frame, "url": frame, "image": frame}
    return {
        "output": None,
        "status": "not_extracted",
        "message": "frame must be extracted before running",
    }


def build_llm_prompt(system: str | None, user: str | None) -> str:
    parts: list[str] = []
    if system:
        parts.append(f"System: {system}")
    if user:
        parts.append(f"User: {user}")
    return "\n\n".join(parts) or "Hello"


def _first_text(*values: Any) -> str | None:
    for value in values:
        if value:
            return value if isinstance(value, str) else str(value)
    return None


@executor("llm")
async def _exec_llm(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    """
    Generate text from the resolved prompts.

    Inputs win over config for both prompts. Any valid image on the `images`
    list switches the call to the vision path.
    """
    if ctx.generation is None:
        raise RuntimeError("No generation service configured for llm nodes")

    system = _first_text(
        inputs.get("system_prompt"),
        inputs.get("systemPrompt"),
        inputs.get("system"),
        config.get("systemPrompt"),
    )
    user = _first_text(
        inputs.get("user_message"),
        inputs.get("userPrompt"),
        inputs.get("user"),
        inputs.get("prompt"),
        config.get("userPrompt"),
        config.get("prompt"),
    )
    prompt = build_llm_prompt(system, user)
    model = config.get("model") or ctx.default_model

    raw_images = inputs.get("images") or []
    images = [img for img in raw_images if is_valid_image(img)]

    if images:
        logger.info("llm node: vision call with %d images (model=%s)", len(images), model)
        result = await ctx.generation.generate_vision(prompt, images, model)
    else:
        logger.info("llm node: text call (model=%s)", model)
        result = await ctx.generation.generate_text(prompt, model)

    return {"output": result, "text": result}


async def _exec_unknown(config: dict, inputs: dict, ctx: ExecutionContext) -> dict[str, Any]:
    return {"output": None, "status": "unknown_type"}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class NodeTimeoutError(Exception):
    """The engine's per-node budget ran out (not a timeout raised by the handler)."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"node execution exceeded {timeout:g}s")


async def _call_with_budget(
    handler: NodeHandler,
    config: dict,
    inputs: dict,
    ctx: ExecutionContext,
    timeout: float,
) -> dict[str, Any]:
    # asyncio.wait never raises on expiry, so a TimeoutError coming out of
    # task.result() is always the handler's own.
    task = asyncio.ensure_future(handler(config, inputs, ctx))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not done:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise NodeTimeoutError(timeout)
    return task.result()


def failed_output(error: str) -> dict[str, Any]:
    """Output map entry for a failed node; carries no routable field."""
    return {"error": error, "status": "failed"}


async def execute_node(
    kind: str,
    inputs: dict[str, Any],
    config: dict[str, Any],
    ctx: ExecutionContext,
    timeout: float | None = None,
) -> tuple[dict[str, Any], str | None]:
    """
    Run the handler for `kind` and contain any failure at the node boundary.

    Returns (outputs, error). On failure `outputs` is the failed marker and
    `error` the message to record.
    """
    handler = _registry.get(kind)
    if handler is None:
        logger.warning("No executor for node kind '%s'", kind)
        handler = _exec_unknown

    try:
        if timeout:
            outputs = await _call_with_budget(handler, config, inputs, ctx, timeout)
        else:
            outputs = await handler(config, inputs, ctx)
    except NodeTimeoutError as e:
        error_msg = f"TimeoutError: {e}"
        logger.error("Node of kind %s timed out after %ss", kind, timeout)
        return failed_output(error_msg), error_msg
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.exception("Node of kind %s failed: %s", kind, error_msg)
        return failed_output(error_msg), error_msg

    return outputs, None
