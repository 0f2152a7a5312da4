"""Built-in session tools and the factory that assembles them per session."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from agent_relay.domain import Session, TurnRequest

from .base import ToolBox, ToolExecutor, make_tool_def
from .connector_message import CONNECTOR_MESSAGE_TOOL_DEF, make_connector_message_tool, normalize_whatsapp_target
from .connector_message import TOOL_NAME as CONNECTOR_MESSAGE_TOOL
from .delegate import DELEGATE_TOOL_DEF, delegation_session_id, make_delegate_tool
from .delegate import TOOL_NAME as DELEGATE_TOOL

logger = logging.getLogger(__name__)

# Older configurations enable tools by capability name.
TOOL_ALIASES = {
    "manage_connectors": CONNECTOR_MESSAGE_TOOL,
    "delegate": DELEGATE_TOOL,
}

BUILTIN_TOOLS = (CONNECTOR_MESSAGE_TOOL, DELEGATE_TOOL)


def enabled_tool_names(session: Session) -> Tuple[str, ...]:
    names = []
    for name in session.tools:
        canonical = TOOL_ALIASES.get(name, name)
        if canonical in BUILTIN_TOOLS and canonical not in names:
            names.append(canonical)
    return tuple(names)


class SessionToolFactory:
    """``ToolFactory``: builds the ``ToolBox`` for a session's enabled tools.

    Args:
        connectors: ``ConnectorManager`` backing ``connector_message_tool``.
        agents: Agent repository (delegation target lookup).
        sessions: Session repository (delegation sessions).
        run_queue: Set after construction via ``bind_run_queue``.
    """

    def __init__(self, connectors: Any, agents: Any, sessions: Any) -> None:
        self._connectors = connectors
        self._agents = agents
        self._sessions = sessions
        self._run_queue: Optional[Any] = None

    def bind_run_queue(self, run_queue: Any) -> None:
        self._run_queue = run_queue

    def _get_run_queue(self) -> Any:
        if self._run_queue is None:
            raise RuntimeError("Run queue not bound to the tool factory")
        return self._run_queue

    def __call__(self, session: Session, request: Optional[TurnRequest] = None) -> ToolBox:
        tools: Dict[str, Tuple[Dict[str, Any], ToolExecutor]] = {}
        for name in enabled_tool_names(session):
            if name == CONNECTOR_MESSAGE_TOOL:
                tools[name] = (CONNECTOR_MESSAGE_TOOL_DEF, make_connector_message_tool(self._connectors))
            elif name == DELEGATE_TOOL:
                tools[name] = (
                    DELEGATE_TOOL_DEF,
                    make_delegate_tool(
                        session,
                        self._agents,
                        self._sessions,
                        self._get_run_queue,
                        delegation_chain=request.delegation_chain if request is not None else (),
                    ),
                )
        unknown = [t for t in session.tools if TOOL_ALIASES.get(t, t) not in BUILTIN_TOOLS]
        if unknown:
            logger.debug("Session %s enables unavailable tools: %s", session.id, unknown)
        return ToolBox(tools)


__all__ = [
    "BUILTIN_TOOLS",
    "CONNECTOR_MESSAGE_TOOL",
    "DELEGATE_TOOL",
    "SessionToolFactory",
    "TOOL_ALIASES",
    "ToolBox",
    "delegation_session_id",
    "enabled_tool_names",
    "make_tool_def",
    "normalize_whatsapp_target",
]
