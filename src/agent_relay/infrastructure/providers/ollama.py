"""Ollama native ``/api/chat`` streaming backend (newline-delimited JSON).

Without an endpoint, a configured API key selects Ollama's hosted service and
no key selects the local daemon.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S
from agent_relay.domain import ChatRequest, EventCallback, ProviderError, ProviderInfo, delta_event

from ._http import attachment_note, iter_lines, raise_for_provider_status, read_image

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama3"
LOCAL_ENDPOINT = "http://localhost:11434"
CLOUD_ENDPOINT = "https://ollama.com"


def _build_messages(request: ChatRequest) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.extend({"role": m.role, "content": m.text} for m in request.history)
    current: Dict[str, Any] = {"role": "user", "content": attachment_note(request.image_path) + request.message}
    image = read_image(request.image_path)
    if image is not None:
        current["images"] = [image["data"]]
    messages.append(current)
    return messages


class OllamaStreamer:
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
        endpoint = request.session.api_endpoint or (CLOUD_ENDPOINT if request.api_key else LOCAL_ENDPOINT)
        # Sessions may store the OpenAI-compatible /v1 URL; the native API lives at the root.
        endpoint = endpoint.rstrip("/")
        if endpoint.endswith("/v1"):
            endpoint = endpoint[: -len("/v1")]
        url = f"{endpoint}/api/chat"
        headers: Dict[str, str] = {}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"
        payload = {
            "model": request.session.model or DEFAULT_MODEL,
            "messages": _build_messages(request),
            "stream": True,
        }

        full = ""
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                await raise_for_provider_status(response, "Ollama")
                async for line in iter_lines(response, request):
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Skipping non-JSON Ollama line: %s", line[:120])
                        continue
                    if chunk.get("error"):
                        raise ProviderError(f"Ollama error: {chunk['error']}")
                    text = (chunk.get("message") or {}).get("content")
                    if text:
                        full += text
                        on_event(delta_event(text))
                    if chunk.get("done"):
                        break
        return full
