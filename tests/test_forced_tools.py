"""Tests for the forced-tool safety net: triggers, argument extraction and notices."""
from __future__ import annotations

import pytest

from agent_relay.application.forced_tools import (
    ExtractContext,
    ForcedToolSafetyNet,
    extract_connector_message_args,
    extract_delegate_args,
    quoted_values,
)
from agent_relay.infrastructure.tools import ToolBox, make_tool_def
from tests.conftest import collect_events


def test_quoted_values_handles_straight_and_curly_quotes():
    assert quoted_values('say "hi" then “bye”') == ["hi", "bye"]


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        (
            'Use connector_message_tool to send "on my way" to +44 7700 900123 on WhatsApp',
            {"action": "send", "message": "on my way", "platform": "whatsapp", "to": "+447700900123"},
        ),
        (
            "send a telegram message saying: dinner at 8",
            {"action": "send", "message": "dinner at 8", "platform": "telegram"},
        ),
        (
            'connector_message_tool "standup moved" to #general',
            {"action": "send", "message": "standup moved", "to": "#general"},
        ),
    ],
)
def test_extract_connector_message_args(message, expected):
    assert extract_connector_message_args(message, ExtractContext()) == expected


def test_extract_connector_message_args_needs_text():
    assert extract_connector_message_args("use the connector_message_tool please", ExtractContext()) is None


def test_extract_delegate_args_prefers_longest_name():
    ctx = ExtractContext(agent_names=("Ada", "Ada Research"))
    args = extract_delegate_args('delegate to Ada Research: "find flights"', ctx)
    assert args == {"agent_name": "Ada Research", "task": "find flights"}
    assert extract_delegate_args("delegate to nobody", ctx) is None


def test_referenced_only_considers_enabled_tools():
    net = ForcedToolSafetyNet()
    message = "use connector_message_tool and delegate_to_agent"
    assert net.referenced(message, ["connector_message_tool"]) == ["connector_message_tool"]
    assert net.referenced(message, []) == []


def _box(calls):
    async def send(**kwargs):
        calls.append(kwargs)
        return '{"status": "sent"}'

    return ToolBox({"connector_message_tool": (make_tool_def("connector_message_tool", "", {}), send)})


@pytest.mark.asyncio
async def test_apply_invokes_missing_tool_and_replaces_reply():
    calls = []
    events, on_event = collect_events()
    invoked = set()
    text = await ForcedToolSafetyNet().apply(
        'use connector_message_tool to send "hello"', "Sure!", _box(calls), invoked, on_event,
    )
    assert text == '{"status": "sent"}'
    assert calls == [{"action": "send", "message": "hello"}]
    assert invoked == {"connector_message_tool"}
    assert [e.kind for e in events] == ["tool_call", "tool_result"]


@pytest.mark.asyncio
async def test_apply_skips_already_invoked_tools():
    calls = []
    text = await ForcedToolSafetyNet().apply(
        'use connector_message_tool to send "hello"', "Done.", _box(calls), {"connector_message_tool"}, lambda e: None,
    )
    assert text == "Done."
    assert calls == []


@pytest.mark.asyncio
async def test_apply_notice_when_reply_empty():
    text = await ForcedToolSafetyNet().apply(
        "connector_message_tool", "  ", _box([]), set(), lambda e: None,
    )
    assert text == "[Requested tool(s) not executed: connector_message_tool]"
