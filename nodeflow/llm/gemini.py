"""
Text and vision generation backed by the Gemini API.

The engine only depends on the two-method contract in `GenerationService`;
`GeminiGenerationService` is the production implementation.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from typing import Protocol

import httpx
from dotenv import load_dotenv
from google import genai
from google.genai import types

load_dotenv()

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """Raised when a generation provider fails or returns nothing usable."""


class GenerationService(Protocol):
    async def generate_text(self, prompt: str, model: str) -> str: ...

    async def generate_vision(self, prompt: str, images: list[str], model: str) -> str: ...


def _guess_base64_mime(encoded: str) -> str:
    if encoded.startswith("iVBOR"):
        return "image/png"
    return "image/jpeg"


async def _load_image_part(image_ref: str, client: httpx.AsyncClient) -> types.Part:
    """Turn a URL, data URI or raw base64 string into an inline image part."""
    if image_ref.startswith("data:"):
        header, encoded = image_ref.split(",", 1)
        mime_type = header[len("data:"):].split(";")[0] or "image/jpeg"
        return types.Part.from_bytes(data=base64.b64decode(encoded), mime_type=mime_type)

    if image_ref.startswith("http://") or image_ref.startswith("https://"):
        resp = await client.get(image_ref)
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "").split(";")[0].strip()
        return types.Part.from_bytes(data=resp.content, mime_type=content_type or "image/jpeg")

    return types.Part.from_bytes(
        data=base64.b64decode(image_ref),
        mime_type=_guess_base64_mime(image_ref),
    )


class GeminiGenerationService:
    """Gemini-backed implementation of the generation contract."""

    def __init__(self, api_key: str | None = None, download_timeout: float = 60.0):
        api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")
        self._client = genai.Client(api_key=api_key)
        self._download_timeout = download_timeout

    def _generate(self, model: str, contents) -> str:
        response = self._client.models.generate_content(model=model, contents=contents)
        text = response.text
        if not text:
            raise GenerationError(f"Model {model} returned an empty response")
        return text

    async def generate_text(self, prompt: str, model: str) -> str:
        logger.info("Gemini text generation (model=%s, prompt=%d chars)", model, len(prompt))
        return await asyncio.to_thread(self._generate, model, prompt)

    async def generate_vision(self, prompt: str, images: list[str], model: str) -> str:
        logger.info(
            "Gemini vision generation (model=%s, prompt=%d chars, images=%d)",
            model,
            len(prompt),
            len(images),
        )
        async with httpx.AsyncClient(timeout=self._download_timeout) as client:
            parts = [await _load_image_part(image, client) for image in images]
        return await asyncio.to_thread(self._generate, model, [prompt, *parts])


_service: GenerationService | None = None


def get_generation_service() -> GenerationService:
    """Lazily build the process-wide Gemini service."""
    global _service
    if _service is None:
        _service = GeminiGenerationService()
    return _service
