"""Tests for the built-in session tools and the per-session tool factory."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_relay.application.run_queue import RunQueue
from agent_relay.domain import Agent, Connector, DeliveryReceipt, RunCancelledError, TurnRequest, TurnResult
from agent_relay.infrastructure.tools import (
    CONNECTOR_MESSAGE_TOOL,
    DELEGATE_TOOL,
    SessionToolFactory,
    ToolBox,
    enabled_tool_names,
    make_tool_def,
    normalize_whatsapp_target,
)
from agent_relay.infrastructure.tools.connector_message import make_connector_message_tool
from agent_relay.infrastructure.tools.delegate import delegation_session_id, make_delegate_tool
from tests.conftest import make_session


# ---------------------------------------------------------------------------
# ToolBox
# ---------------------------------------------------------------------------

def _echo_box() -> ToolBox:
    async def echo(text: str) -> str:
        return text

    async def explode() -> str:
        raise RuntimeError("kaboom")

    return ToolBox({
        "echo": (make_tool_def("echo", "Echo", {"type": "object"}), echo),
        "explode": (make_tool_def("explode", "Fail", {"type": "object"}), explode),
    })


@pytest.mark.asyncio
async def test_toolbox_invoke_and_errors():
    box = _echo_box()
    assert box.names == ["echo", "explode"]
    assert box.definitions[0]["function"]["name"] == "echo"
    assert "echo" in box
    assert await box.invoke("echo", {"text": "hi"}) == "hi"
    assert (await box.invoke("nope", {})).startswith("Error: Unknown tool")
    assert (await box.invoke("echo", {"wrong": 1})).startswith("Error: invalid arguments for echo")
    assert await box.invoke("explode", {}) == "Error: kaboom"


def test_enabled_tool_names_resolves_aliases_and_drops_unknown():
    session = make_session(tools=["manage_connectors", "connector_message_tool", "delegate", "browser"])
    assert enabled_tool_names(session) == (CONNECTOR_MESSAGE_TOOL, DELEGATE_TOOL)


def test_factory_builds_only_enabled_tools():
    factory = SessionToolFactory(MagicMock(), MagicMock(), MagicMock())
    box = factory(make_session(tools=["manage_connectors"]))
    assert box.names == [CONNECTOR_MESSAGE_TOOL]
    assert factory(make_session()).names == []


@pytest.mark.asyncio
async def test_factory_delegate_requires_bound_queue(stores):
    stores.agents.put(Agent(id="a2", name="Bob", provider="ollama"))
    factory = SessionToolFactory(MagicMock(), stores.agents, stores.sessions)
    box = factory(make_session(tools=["delegate"]))
    assert (await box.invoke(DELEGATE_TOOL, {"agent_name": "Bob", "task": "x"})).startswith("Error:")


# ---------------------------------------------------------------------------
# connector_message_tool
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("+44 7700 900123", "447700900123@s.whatsapp.net"),
        ("07700900123", "447700900123@s.whatsapp.net"),
        ("(555) 123-4567", "5551234567@s.whatsapp.net"),
        ("12345@g.us", "12345@g.us"),
        ("", ""),
    ],
)
def test_normalize_whatsapp_target(raw, expected):
    assert normalize_whatsapp_target(raw) == expected


def _connectors(platform="whatsapp", config=None, recent=None):
    connectors = MagicMock()
    connectors.list_running.return_value = [{"connector_id": "c1", "platform": platform}]
    connectors.get_connector.return_value = Connector(
        id="c1", name="Bot", platform=platform, agent_id="a1", config=config or {},
    )
    connectors.recent_channel.return_value = recent
    connectors.send_message = AsyncMock(side_effect=lambda text, connector_id, channel_id, image_url: DeliveryReceipt(
        connector_id=connector_id, platform=platform, channel_id=channel_id, message_id="m1",
    ))
    return connectors


@pytest.mark.asyncio
async def test_connector_tool_lists_running():
    connectors = _connectors()
    tool = make_connector_message_tool(connectors)
    assert json.loads(await tool(action="list_running", platform="whatsapp")) == [
        {"connector_id": "c1", "platform": "whatsapp"},
    ]
    connectors.list_running.assert_called_with("whatsapp")
    assert (await tool(action="dance")).startswith("Unknown action")


@pytest.mark.asyncio
async def test_connector_tool_send_normalises_whatsapp_target():
    connectors = _connectors()
    tool = make_connector_message_tool(connectors)
    result = json.loads(await tool(action="send", message=" on my way ", to="+44 7700 900123"))
    assert result == {
        "status": "sent", "connector_id": "c1", "platform": "whatsapp",
        "to": "447700900123@s.whatsapp.net", "message_id": "m1",
    }
    connectors.send_message.assert_awaited_once_with(
        "on my way", connector_id="c1", channel_id="447700900123@s.whatsapp.net", image_url=None,
    )


@pytest.mark.asyncio
async def test_connector_tool_target_fallbacks():
    outbound = _connectors("telegram", config={"outbound_jid": "chat-out", "allowed_jids": "chat-a"}, recent="chat-r")
    await make_connector_message_tool(outbound)(action="send", message="hi")
    assert outbound.send_message.call_args.kwargs["channel_id"] == "chat-out"

    recent = _connectors("telegram", config={"allowed_jids": "chat-a"}, recent="chat-r")
    await make_connector_message_tool(recent)(action="send", message="hi")
    assert recent.send_message.call_args.kwargs["channel_id"] == "chat-r"

    allowed = _connectors("telegram", config={"allowed_jids": " chat-a , chat-b"})
    await make_connector_message_tool(allowed)(action="send", message="hi")
    assert allowed.send_message.call_args.kwargs["channel_id"] == "chat-a"

    nothing = _connectors("telegram")
    assert "no target recipient" in await make_connector_message_tool(nothing)(action="send", message="hi")


@pytest.mark.asyncio
async def test_connector_tool_send_errors():
    connectors = _connectors()
    tool = make_connector_message_tool(connectors)
    assert "message or image_url is required" in await tool(action="send")
    assert "running connector not found" in await tool(action="send", message="x", connector_id="zz")
    connectors.list_running.return_value = []
    assert await tool(action="send", message="x", platform="slack") == 'Error: no running connectors for platform "slack".'


@pytest.mark.asyncio
async def test_connector_tool_reports_suppressed():
    connectors = _connectors()
    connectors.send_message = AsyncMock(return_value=None)
    result = json.loads(await make_connector_message_tool(connectors)(action="send", message="NO_MESSAGE", to="x@s"))
    assert result == {"status": "suppressed", "connector_id": "c1"}


# ---------------------------------------------------------------------------
# delegate_to_agent
# ---------------------------------------------------------------------------

def _queue(result=None, exc=None):
    queue = MagicMock()

    def enqueue(session_id, task, **kwargs):
        future = asyncio.get_running_loop().create_future()
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return SimpleNamespace(run_id="r1", position=0, future=future, deduped=False)

    queue.enqueue.side_effect = enqueue
    return queue


@pytest.mark.asyncio
async def test_delegate_runs_on_target_delegation_session(stores):
    stores.agents.put(Agent(id="a2", name="Researcher", provider="ollama", tools=["delegate"]))
    queue = _queue(TurnResult(text="Found it.", persisted=True))
    tool = make_delegate_tool(make_session(agent_id="a1"), stores.agents, stores.sessions, lambda: queue)

    assert await tool(agent_name=" researcher ", task="Find the train time") == "Found it."

    session_id = delegation_session_id("a2")
    assert session_id == "delegate:a2"
    created = stores.sessions.get(session_id)
    assert created.agent_id == "a2"
    assert created.name == "Delegation: Researcher"
    queue.enqueue.assert_called_once_with(
        session_id, "Find the train time", source="delegation", delegation_chain=("agent:a1",),
    )


@pytest.mark.asyncio
async def test_delegate_error_paths(stores):
    stores.agents.put(Agent(id="a1", name="Self", provider="ollama"))
    stores.agents.put(Agent(id="a2", name="Other", provider="ollama"))
    session = make_session(agent_id="a1")

    def tool(queue):
        return make_delegate_tool(session, stores.agents, stores.sessions, lambda: queue)

    assert await tool(_queue())(agent_name="Other", task=" ") == "Error: task is required."
    assert await tool(_queue())(agent_name="Ghost", task="x") == "Error: agent not found: Ghost"
    assert await tool(_queue())(agent_name="a1", task="x") == "Error: an agent cannot delegate to itself."
    failed = _queue(TurnResult(text="", persisted=True, error="provider down"))
    assert await tool(failed)(agent_name="Other", task="x") == "Error: provider down"
    cancelled = _queue(exc=RunCancelledError("Cancelled by steer mode"))
    assert await tool(cancelled)(agent_name="Other", task="x") == "Error: delegation cancelled: Cancelled by steer mode"
    empty = _queue(TurnResult(text="", persisted=True))
    assert await tool(empty)(agent_name="Other", task="x") == "(no response)"


@pytest.mark.asyncio
async def test_delegate_refuses_agent_already_waiting_in_chain(stores):
    stores.agents.put(Agent(id="a2", name="Other", provider="ollama"))
    queue = _queue()
    tool = make_delegate_tool(
        make_session(agent_id="a3"), stores.agents, stores.sessions, lambda: queue,
        delegation_chain=("session:s0", "agent:a2"),
    )
    assert await tool(agent_name="Other", task="x") == "Error: delegation cycle: Other is already waiting on this task."
    queue.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_delegating_back_to_the_caller_does_not_deadlock(stores):
    stores.agents.put(Agent(id="alice", name="Alice", provider="ollama", tools=["delegate"]))
    stores.agents.put(Agent(id="bob", name="Bob", provider="ollama", tools=["delegate"]))
    stores.sessions.put(make_session("s-a", agent_id="alice", tools=["delegate"]))
    factory = SessionToolFactory(MagicMock(), stores.agents, stores.sessions)
    ask = {"alice": "Bob", "bob": "Alice"}
    chains = []

    async def execute(request: TurnRequest, signal, on_event) -> TurnResult:
        chains.append(request.delegation_chain)
        session = stores.sessions.get(request.session_id)
        box = factory(session, request)
        text = await box.invoke(DELEGATE_TOOL, {"agent_name": ask[session.agent_id], "task": "ask the other one"})
        return TurnResult(text=text, persisted=True)

    queue = RunQueue(execute, stores.sessions)
    factory.bind_run_queue(queue)

    result = await asyncio.wait_for(queue.enqueue("s-a", "start").future, 2)

    assert result.text == "Error: delegation cycle: Alice is already waiting on this task."
    assert chains == [(), ("agent:alice",)]
    assert queue.get_run_state("s-a").running_run_id is None
