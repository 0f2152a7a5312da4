"""Helpers shared by the HTTP streaming backends."""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from agent_relay.domain import ChatRequest, ProviderError

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"}


def extract_error_message(response: httpx.Response) -> str:
    """Extract a human-readable error string from a non-2xx response.

    The body must already have been read (``await response.aread()`` for
    streamed responses).
    """
    try:
        body = response.json()
        if isinstance(body, dict):
            err = body.get("error") or {}
            if isinstance(err, dict):
                return err.get("message") or ""
            if isinstance(err, str):
                return err
            return str(body.get("message") or "")
    except (json.JSONDecodeError, ValueError):
        pass
    return response.text[:200]


async def raise_for_provider_status(response: httpx.Response, label: str) -> None:
    """Raise ``ProviderError`` carrying the upstream status for any non-2xx response."""
    if response.is_success:
        return
    await response.aread()
    detail = extract_error_message(response)
    message = detail or f"{label} API error ({response.status_code})"
    logger.warning("%s error %s: %s", label, response.status_code, message[:200])
    raise ProviderError(message, status=response.status_code)


async def iter_lines(response: httpx.Response, request: ChatRequest) -> AsyncIterator[str]:
    """Yield non-empty lines, checking the abort signal before each one."""
    async for line in response.aiter_lines():
        if request.signal is not None:
            request.signal.raise_if_aborted()
        line = line.strip()
        if line:
            yield line


async def iter_sse_data(response: httpx.Response, request: ChatRequest) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded JSON payloads of ``data:`` lines until ``[DONE]``."""
    async for line in iter_lines(response, request):
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE payload: %s", data[:120])


def read_image(path: Optional[str]) -> Optional[Dict[str, str]]:
    """Return ``{"media_type", "data"}`` (base64) for an image attachment, else None."""
    if not path:
        return None
    p = Path(path)
    if p.suffix.lower() not in IMAGE_SUFFIXES or not p.is_file():
        return None
    media_type = mimetypes.guess_type(p.name)[0] or "image/png"
    return {"media_type": media_type, "data": base64.b64encode(p.read_bytes()).decode()}


def attachment_note(path: Optional[str]) -> str:
    return f"[Attached file: {Path(path).name}]\n\n" if path and read_image(path) is None else ""


def build_openai_messages(request: ChatRequest) -> List[Dict[str, Any]]:
    """System prompt, history and the current message in chat-completions format."""
    messages: List[Dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    for m in request.history:
        messages.append({"role": m.role, "content": m.text})
    image = read_image(request.image_path)
    text = attachment_note(request.image_path) + request.message
    if image is not None:
        messages.append({
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": f"data:{image['media_type']};base64,{image['data']}"}},
                {"type": "text", "text": text},
            ],
        })
    else:
        messages.append({"role": "user", "content": text})
    return messages
