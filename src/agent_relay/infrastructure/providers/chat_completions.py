"""Non-streaming OpenAI-compatible chat client with native function calling.

Used by the tool-augmented path, where each round trip must return complete
tool calls.  Every provider with an ``openai_base_url`` in the provider table
(including Anthropic's and Ollama's compatibility endpoints) works here.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S
from agent_relay.domain import LLMResponse, ProviderError, ToolCallRequest

from ._http import extract_error_message

logger = logging.getLogger(__name__)


def parse_chat_response(data: Dict[str, Any]) -> LLMResponse:
    """Parse an OpenAI-format chat completions response dict into ``LLMResponse``."""
    message = data["choices"][0]["message"]
    content: Optional[str] = message.get("content")

    tool_calls: List[ToolCallRequest] = []
    for i, tc in enumerate(message.get("tool_calls") or []):
        call_id: str = tc.get("id") or f"call_{i}"
        fn = tc.get("function") or {}
        name: str = fn.get("name") or ""
        raw_args = fn.get("arguments") or "{}"
        if isinstance(raw_args, dict):
            arguments: Dict[str, Any] = raw_args
        else:
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError:
                arguments = {"_raw": raw_args}
        tool_calls.append(ToolCallRequest(call_id=call_id, tool_name=name, arguments=arguments))

    return LLMResponse(content=content, tool_calls=tool_calls)


class ChatCompletionsClient:
    """Bare ``POST {base_url}/chat/completions`` client.

    Non-2xx responses raise ``ProviderError`` with the upstream status so the
    executor reports them like any other backend failure.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = PROVIDER_DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> LLMResponse:
        url = f"{self._base_url}/chat/completions"
        headers: Dict[str, str] = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if tools:
            payload["tools"] = tools

        logger.debug("POST %s model=%s messages=%d tools=%d", url, model, len(messages), len(tools or []))
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
            r = await client.post(url, headers=headers, json=payload)
            if not r.is_success:
                raise ProviderError(
                    extract_error_message(r) or f"Chat completions error ({r.status_code})",
                    status=r.status_code,
                )
            return parse_chat_response(r.json())
