"""Forced-tool safety net.

When the inbound message explicitly asks for a tool (`use connector_message_tool
to send "on my way" to +44...`) and the model answers without calling it, the
tool is invoked directly with arguments pattern-matched from the message, and
its output replaces the reply.  Tools that still could not run are listed in a
visible notice appended to the reply.

This is a best-effort heuristic: argument extraction is lossy and only the
rules below are understood.  It can be switched off with
``forced_tools.enabled = false``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Set, Tuple

from agent_relay.domain import EventCallback, tool_call_event, tool_result_event

from .ports import ToolSet

logger = logging.getLogger(__name__)

NOT_EXECUTED_NOTICE = "[Requested tool(s) not executed: {tools}]"

_QUOTED = re.compile(r"\"([^\"]+)\"|“([^”]+)”")
_PLATFORMS = ("whatsapp", "telegram", "slack")
_TARGET = re.compile(r"\bto\s+(\+?\d[\d\s\-()]{5,}\d|[\w.\-]+@[\w.\-]+|[#@][\w.\-]+)", re.IGNORECASE)
_SAYING = re.compile(r"\b(?:saying|message|text)\s*[:\-]\s*(.+)$", re.IGNORECASE | re.DOTALL)


def quoted_values(message: str) -> List[str]:
    return [next(g for g in m.groups() if g) for m in _QUOTED.finditer(message)]


@dataclass(frozen=True)
class ExtractContext:
    agent_names: Sequence[str] = ()


Extractor = Callable[[str, ExtractContext], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class ForcedToolRule:
    """Trigger patterns for one tool and how to build its arguments."""
    tool: str
    triggers: Tuple[Pattern[str], ...]
    extract: Extractor

    def matches(self, message: str) -> bool:
        return any(p.search(message) for p in self.triggers)


def extract_connector_message_args(message: str, ctx: ExtractContext) -> Optional[Dict[str, Any]]:
    quoted = quoted_values(message)
    text = quoted[0] if quoted else None
    if text is None:
        saying = _SAYING.search(message)
        text = saying.group(1).strip() if saying else None
    if not text:
        return None
    args: Dict[str, Any] = {"action": "send", "message": text}
    lowered = message.lower()
    for platform in _PLATFORMS:
        if platform in lowered:
            args["platform"] = platform
            break
    target = _TARGET.search(message)
    if target:
        to = target.group(1)
        if to[0] == "+" or to[0].isdigit():
            to = re.sub(r"[\s\-()]", "", to)
        args["to"] = to
    return args


def extract_delegate_args(message: str, ctx: ExtractContext) -> Optional[Dict[str, Any]]:
    lowered = message.lower()
    for name in sorted(ctx.agent_names, key=len, reverse=True):
        if name and re.search(rf"\b{re.escape(name.lower())}\b", lowered):
            quoted = quoted_values(message)
            return {"agent_name": name, "task": quoted[0] if quoted else message}
    return None


def _pattern(text: str) -> Pattern[str]:
    return re.compile(text, re.IGNORECASE)


DEFAULT_RULES: Tuple[ForcedToolRule, ...] = (
    ForcedToolRule(
        tool="connector_message_tool",
        triggers=(
            _pattern(r"\bconnector[_ ]message[_ ]tool\b"),
            _pattern(r"\bsend (?:a |an )?(?:whatsapp|telegram|slack) message\b"),
        ),
        extract=extract_connector_message_args,
    ),
    ForcedToolRule(
        tool="delegate_to_agent",
        triggers=(
            _pattern(r"\bdelegate[_ ]to[_ ]agent\b"),
            _pattern(r"\bdelegate (?:this |it |the task )?to\b"),
        ),
        extract=extract_delegate_args,
    ),
)


class ForcedToolSafetyNet:
    """Args:
        rules: Tool rules to apply; only tools enabled for the turn are considered.
        agent_names: Returns current agent names for the delegation extractor.
    """

    def __init__(
        self,
        rules: Sequence[ForcedToolRule] = DEFAULT_RULES,
        agent_names: Optional[Callable[[], Sequence[str]]] = None,
    ) -> None:
        self._rules = {rule.tool: rule for rule in rules}
        self._agent_names = agent_names or (lambda: ())

    def referenced(self, message: str, enabled: Sequence[str]) -> List[str]:
        """Enabled tools the message explicitly asks for, in rule order."""
        return [tool for tool, rule in self._rules.items() if tool in enabled and rule.matches(message)]

    async def apply(
        self,
        message: str,
        reply: str,
        tools: ToolSet,
        invoked: Set[str],
        on_event: EventCallback,
    ) -> str:
        """Return the reply after forcing referenced-but-uninvoked tools.

        ``invoked`` is updated in place with every tool forced here.
        """
        pending = [t for t in self.referenced(message, tools.names) if t not in invoked]
        if not pending:
            return reply

        ctx = ExtractContext(agent_names=tuple(self._agent_names()))
        text = reply
        not_executed: List[str] = []
        for tool in pending:
            args = self._rules[tool].extract(message, ctx)
            if args is None:
                logger.info("Forced tool %s skipped: no arguments found in message", tool)
                not_executed.append(tool)
                continue
            logger.info("Forcing tool %s the model did not invoke", tool)
            on_event(tool_call_event(tool, json.dumps(args, ensure_ascii=False)))
            output = await tools.invoke(tool, args)
            on_event(tool_result_event(tool, output))
            invoked.add(tool)
            text = output

        if not_executed:
            notice = NOT_EXECUTED_NOTICE.format(tools=", ".join(not_executed))
            text = f"{text}\n\n{notice}" if text.strip() else notice
        return text
