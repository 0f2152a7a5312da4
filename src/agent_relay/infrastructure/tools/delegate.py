"""``delegate_to_agent``: hand a task to another agent and wait for its answer.

The task runs as an ordinary queued turn on the target agent's delegation
session (``delegate:{agent_id}``), so it is serialised with everything else
that agent is doing.  Each delegated turn carries the execution keys of the
turns waiting on it; a target already in that chain is refused, since its key
is held by a turn that cannot finish until this one does.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence

from agent_relay.domain import Agent, RunCancelledError, Session, execution_key

from .base import ToolExecutor, make_tool_def

logger = logging.getLogger(__name__)

TOOL_NAME = "delegate_to_agent"

DELEGATE_TOOL_DEF = make_tool_def(
    TOOL_NAME,
    "Delegate a task to another agent by name and return that agent's reply.",
    {
        "type": "object",
        "properties": {
            "agent_name": {"type": "string", "description": "Name (or id) of the agent to delegate to."},
            "task": {"type": "string", "description": "What the agent should do."},
        },
        "required": ["agent_name", "task"],
    },
)


def delegation_session_id(agent_id: str) -> str:
    return f"delegate:{agent_id}"


def find_agent(agents: Any, name: str) -> Optional[Agent]:
    wanted = name.strip().lower()
    for agent in agents.values():
        if agent.id.lower() == wanted or agent.name.strip().lower() == wanted:
            return agent
    return None


def make_delegate_tool(
    session: Session,
    agents: Any,
    sessions: Any,
    get_run_queue: Callable[[], Any],
    delegation_chain: Sequence[str] = (),
) -> ToolExecutor:
    """Bind the tool to the calling *session*.

    ``get_run_queue`` is resolved at call time: the queue is built after the
    executor that owns this tool factory.

    ``delegation_chain`` holds the keys already waiting on the calling turn.
    """

    async def delegate_to_agent(agent_name: str, task: str) -> str:
        if not (task or "").strip():
            return "Error: task is required."
        target = find_agent(agents, agent_name or "")
        if target is None:
            return f"Error: agent not found: {agent_name}"
        if session.agent_id and target.id == session.agent_id:
            return "Error: an agent cannot delegate to itself."
        chain = tuple(delegation_chain) + (session.execution_key,)
        if execution_key(delegation_session_id(target.id), target.id) in chain:
            return f"Error: delegation cycle: {target.name} is already waiting on this task."

        session_id = delegation_session_id(target.id)
        if sessions.get(session_id) is None:
            sessions.put(target.new_session(session_id, f"Delegation: {target.name}"))

        logger.info("Delegating from session=%s to agent=%s", session.id, target.id)
        queued = get_run_queue().enqueue(session_id, task, source="delegation", delegation_chain=chain)
        try:
            result = await queued.future
        except RunCancelledError as exc:
            return f"Error: delegation cancelled: {exc.reason}"
        if result.error:
            return f"Error: {result.error}"
        return result.text or "(no response)"

    return delegate_to_agent
