"""OpenAI-compatible streaming backend.

Covers every provider exposing ``POST {base}/chat/completions`` with
``stream: true`` server-sent events: OpenAI itself, Google's and xAI's
compatibility endpoints, DeepSeek, Groq, Together, Mistral, Fireworks and the
local OpenClaw gateway.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S
from agent_relay.domain import ChatRequest, EventCallback, ProviderInfo, delta_event

from ._http import build_openai_messages, iter_sse_data, raise_for_provider_status

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"


class OpenAICompatStreamer:
    def __init__(
        self,
        info: ProviderInfo,
        timeout_s: float = PROVIDER_DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._info = info
        self._timeout = timeout_s
        self._transport = transport

    def _base_url(self, request: ChatRequest) -> str:
        return (request.session.api_endpoint or self._info.default_endpoint or "https://api.openai.com/v1").rstrip("/")

    async def stream_chat(self, request: ChatRequest, on_event: EventCallback) -> str:
        url = f"{self._base_url(request)}/chat/completions"
        headers: Dict[str, str] = {}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        payload: Dict[str, Any] = {
            "model": request.session.model or DEFAULT_MODEL,
            "messages": build_openai_messages(request),
            "stream": True,
        }
        logger.debug("POST %s provider=%s model=%s", url, self._info.id, payload["model"])

        full = ""
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                await raise_for_provider_status(response, self._info.name)
                async for chunk in iter_sse_data(response, request):
                    choices = chunk.get("choices") or [{}]
                    text = (choices[0].get("delta") or {}).get("content")
                    if text:
                        full += text
                        on_event(delta_event(text))
        return full
