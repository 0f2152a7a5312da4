"""Anthropic Messages API streaming backend."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S
from agent_relay.domain import ChatRequest, EventCallback, ProviderError, ProviderInfo, delta_event

from ._http import attachment_note, iter_sse_data, raise_for_provider_status, read_image

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5"
ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS = 8192


def _build_messages(request: ChatRequest) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": m.role, "content": m.text} for m in request.history]
    text = attachment_note(request.image_path) + request.message
    image = read_image(request.image_path)
    if image is not None:
        content: Any = [
            {"type": "image", "source": {"type": "base64", **image}},
            {"type": "text", "text": text},
        ]
    else:
        content = text
    messages.append({"role": "user", "content": content})
    return messages


class AnthropicStreamer:
    def __init__(
        self,
        info: ProviderInfo,
        timeout_s: float = PROVIDER_DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._info = info
        self._timeout = timeout_s
        self._transport = transport

    async def stream_chat(self, request: ChatRequest, on_event: EventCallback) -> str:
        base = (request.session.api_endpoint or self._info.default_endpoint or "https://api.anthropic.com").rstrip("/")
        url = f"{base}/v1/messages"
        headers = {
            "x-api-key": request.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        body: Dict[str, Any] = {
            "model": request.session.model or DEFAULT_MODEL,
            "max_tokens": MAX_TOKENS,
            "messages": _build_messages(request),
            "stream": True,
        }
        if request.system_prompt:
            body["system"] = request.system_prompt

        full = ""
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
            async with client.stream("POST", url, headers=headers, json=body) as response:
                await raise_for_provider_status(response, self._info.name)
                async for event in iter_sse_data(response, request):
                    kind = event.get("type")
                    if kind == "content_block_delta":
                        text = (event.get("delta") or {}).get("text")
                        if text:
                            full += text
                            on_event(delta_event(text))
                    elif kind == "error":
                        err = event.get("error") or {}
                        # Overloaded/rate-limit errors arrive mid-stream with HTTP 200.
                        status = 429 if err.get("type") == "rate_limit_error" else (
                            529 if err.get("type") == "overloaded_error" else None
                        )
                        raise ProviderError(err.get("message") or "Anthropic stream error", status=status)
        return full
