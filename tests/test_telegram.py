"""Tests for the Telegram adapter against a fake Bot API (httpx.MockTransport)."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from agent_relay.domain import Connector, InboundMessage, ProviderError
from agent_relay.infrastructure.connectors.telegram import START_GREETING, TelegramAdapter


class FakeBotApi:
    """Answers Bot API methods; ``getUpdates`` hands out one batch then idles."""

    def __init__(self, updates=(), me_ok: bool = True) -> None:
        self.updates = list(updates)
        self.me_ok = me_ok
        self.calls: List[tuple] = []
        self.urls: List[str] = []
        self.next_message_id = 100

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        params: Dict[str, Any] = json.loads(request.content) if request.content else {}
        self.calls.append((method, params))
        self.urls.append(str(request.url))
        if method == "getMe":
            if not self.me_ok:
                return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})
            return httpx.Response(200, json={"ok": True, "result": {"username": "relay_bot"}})
        if method == "getUpdates":
            batch, self.updates = self.updates, []
            if not batch:
                await asyncio.sleep(0.01)
            return httpx.Response(200, json={"ok": True, "result": batch})
        if method in ("sendMessage", "sendPhoto"):
            self.next_message_id += 1
            return httpx.Response(200, json={"ok": True, "result": {"message_id": self.next_message_id}})
        return httpx.Response(200, json={"ok": True, "result": True})

    def sent(self, method: str = "sendMessage") -> List[Dict[str, Any]]:
        return [params for name, params in self.calls if name == method]


def _update(update_id: int, chat_id: int, text: str, **sender) -> Dict[str, Any]:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id * 10,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": 7, "first_name": "Sam", **sender},
            "text": text,
        },
    }


def _connector(**config) -> Connector:
    return Connector(id="tg1", name="Bot", platform="telegram", agent_id="a1", config=config)


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_start_polls_and_dispatches_allowed_chats():
    api = FakeBotApi([
        _update(1, 42, "/start"),
        _update(2, 99, "spam"),
        _update(3, 42, "hello", last_name="Lee"),
    ])
    received: List[InboundMessage] = []

    async def on_message(inbound):
        received.append(inbound)

    adapter = TelegramAdapter(transport=httpx.MockTransport(api))
    instance = await adapter.start(_connector(chat_ids="42"), "123:abc", on_message)
    await _until(lambda: received)
    await instance.stop()

    assert instance.authenticated is True
    assert api.urls[0] == "https://api.telegram.org/bot123:abc/getMe"
    [inbound] = received
    assert inbound.channel_id == "42"
    assert inbound.sender_name == "Sam Lee"
    assert inbound.channel_name == "DM:Sam"
    assert inbound.message_id == "30"
    assert api.sent()[0] == {"chat_id": "42", "text": START_GREETING}
    assert ("sendChatAction", {"chat_id": "42", "action": "typing"}) in api.calls
    offsets = [params["offset"] for name, params in api.calls if name == "getUpdates"]
    assert offsets[0] == 0
    assert offsets[1] == 4


@pytest.mark.asyncio
async def test_send_chunks_long_text_and_sends_photo_first():
    api = FakeBotApi()
    adapter = TelegramAdapter(transport=httpx.MockTransport(api))
    instance = await adapter.start(_connector(), "123:abc", lambda inbound: asyncio.sleep(0))

    message_id = await instance.send_message("42", "x" * 5000, image_url="https://x/cat.png")
    await instance.stop()

    assert api.sent("sendPhoto") == [{"chat_id": "42", "photo": "https://x/cat.png"}]
    assert [len(p["text"]) for p in api.sent()] == [4090, 910]
    assert message_id == "103"


@pytest.mark.asyncio
async def test_bad_token_fails_start():
    adapter = TelegramAdapter(transport=httpx.MockTransport(FakeBotApi(me_ok=False)))
    with pytest.raises(ProviderError, match="Unauthorized"):
        await adapter.start(_connector(), "bad", lambda inbound: asyncio.sleep(0))

