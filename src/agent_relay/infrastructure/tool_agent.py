"""Tool-augmented turn execution.

The model is called with the session's enabled tools.  Each response either
requests tool calls (executed in order, results appended as ``tool``
messages, then the model is called again) or is plain text, which ends the
loop.  The turn's reply is the text of the *last* model response; text the
model produced between tool calls is streamed but not repeated in the reply.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S, TOOL_MAX_STEPS
from agent_relay.domain import (
    ChatRequest,
    EventCallback,
    ProviderError,
    ProviderInfo,
    delta_event,
    tool_call_event,
    tool_result_event,
)
from agent_relay.application.ports import ProviderCatalog, ToolSet
from agent_relay.infrastructure.providers._http import build_openai_messages
from agent_relay.infrastructure.providers.chat_completions import ChatCompletionsClient
from agent_relay.infrastructure.telemetry import get_tracer

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, Optional[str]], Any]


def tool_base_url(info: ProviderInfo, api_endpoint: Optional[str]) -> Optional[str]:
    """Chat-completions base URL for *info*, honouring a session endpoint override."""
    base = api_endpoint or info.openai_base_url
    if not base:
        return None
    base = base.rstrip("/")
    if info.kind in ("ollama", "anthropic") and not base.endswith("/v1"):
        base += "/v1"
    return base


class ToolLoopAgent:
    """Args:
        catalog: Provider lookup.
        max_steps: Model round trips before giving up on further tool calls.
        client_factory: ``(base_url, api_key) -> client`` with an async ``chat``;
            defaults to ``ChatCompletionsClient``.
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        *,
        max_steps: int = TOOL_MAX_STEPS,
        timeout_s: float = PROVIDER_DEFAULT_TIMEOUT_S,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._catalog = catalog
        self._max_steps = max_steps
        self._client_factory = client_factory or (
            lambda base_url, api_key: ChatCompletionsClient(base_url, api_key, timeout_s=timeout_s)
        )

    async def run(self, request: ChatRequest, tools: ToolSet, on_event: EventCallback) -> str:
        info = self._catalog.get(request.session.provider)
        base_url = tool_base_url(info, request.session.api_endpoint)
        if base_url is None:
            raise ProviderError(f"{info.name} does not support tool calling", retryable=False)

        client = self._client_factory(base_url, request.api_key)
        messages: List[Dict[str, Any]] = build_openai_messages(request)
        definitions = tools.definitions
        model = request.session.model
        last_text = ""

        with get_tracer().start_as_current_span("relay.tool_loop") as span:
            span.set_attribute("provider", info.id)
            span.set_attribute("tools", ",".join(tools.names))
            for step in range(1, self._max_steps + 1):
                if request.signal is not None:
                    request.signal.raise_if_aborted()
                response = await client.chat(messages, model, tools=definitions)
                if response.content:
                    last_text = response.content
                    on_event(delta_event(response.content))
                if not response.has_tool_calls:
                    span.set_attribute("steps", step)
                    return last_text

                messages.append({
                    "role": "assistant",
                    "content": response.content or "",
                    "tool_calls": [
                        {
                            "id": tc.call_id,
                            "type": "function",
                            "function": {"name": tc.tool_name, "arguments": json.dumps(tc.arguments)},
                        }
                        for tc in response.tool_calls
                    ],
                })
                for tc in response.tool_calls:
                    if request.signal is not None:
                        request.signal.raise_if_aborted()
                    on_event(tool_call_event(tc.tool_name, json.dumps(tc.arguments, ensure_ascii=False)))
                    output = await tools.invoke(tc.tool_name, tc.arguments)
                    on_event(tool_result_event(tc.tool_name, output))
                    messages.append({"role": "tool", "tool_call_id": tc.call_id, "content": output})
                last_text = ""

            logger.warning(
                "Tool loop hit max_steps=%d for session=%s; returning last text",
                self._max_steps, request.session.id,
            )
        return last_text
