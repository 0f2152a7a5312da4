"""Tool box: OpenAI tool definitions plus async executors, one per enabled tool."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

ToolExecutor = Callable[..., Awaitable[str]]


def make_tool_def(
    name: str,
    description: str,
    parameters: Dict[str, Any],
) -> Dict[str, Any]:
    """Build an OpenAI function tool definition dict."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": parameters,
        },
    }


class ToolBox:
    """Concrete ``ToolSet``.

    ``tools`` maps tool name to ``(openai_tool_def, executor)``.  Executors are
    coroutine functions taking the model's arguments as keywords and returning
    the text handed back to the model.  Failures are returned as
    ``"Error: ..."`` text rather than raised: the model decides what to do next.
    """

    def __init__(self, tools: Dict[str, Tuple[Dict[str, Any], ToolExecutor]]):
        self._tools: Dict[str, Tuple[Dict[str, Any], ToolExecutor]] = dict(tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools.keys())

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return [defn for defn, _ in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def invoke(self, name: str, arguments: Dict[str, Any]) -> str:
        if name not in self._tools:
            return f"Error: Unknown tool: {name!r}. Available: {self.names}"
        _, fn = self._tools[name]
        try:
            return await fn(**arguments)
        except TypeError as exc:
            return f"Error: invalid arguments for {name}: {exc}"
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return f"Error: {exc}"
