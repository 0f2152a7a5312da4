"""Tests for the Discord adapter's message handling against fake discord.py objects."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import List, Optional

import pytest

from agent_relay.domain import Connector, InboundMessage, ValidationError
from agent_relay.infrastructure.connectors import PLATFORM_ADAPTERS, discord as discord_adapter
from agent_relay.infrastructure.connectors.discord import DiscordAdapter, _DiscordBot


class FakeChannel:
    def __init__(self, channel_id: int = 42, name: Optional[str] = "general") -> None:
        self.id = channel_id
        if name is not None:
            self.name = name
        self.sent: List[str] = []
        self.typing_calls = 0

    async def typing(self) -> None:
        self.typing_calls += 1

    async def send(self, content=None, **kwargs):
        self.sent.append(content)
        return SimpleNamespace(id=900 + len(self.sent))


class FakeClient:
    def __init__(self, channels=()) -> None:
        self.handlers = {}
        self.channels = {c.id: c for c in channels}
        self.fetched: List[int] = []

    def event(self, coro):
        self.handlers[coro.__name__] = coro
        return coro

    def get_channel(self, channel_id: int):
        return None

    async def fetch_channel(self, channel_id: int):
        self.fetched.append(channel_id)
        return self.channels[channel_id]


def _message(content="hello", *, channel=None, bot=False, guild=True, attachments=()):
    return SimpleNamespace(
        id=7,
        content=content,
        author=SimpleNamespace(id=11, name="ada", display_name="Ada L", bot=bot),
        channel=channel or FakeChannel(),
        guild=SimpleNamespace(id=1) if guild else None,
        attachments=list(attachments),
    )


def _bot(config=None, client=None):
    received: List[InboundMessage] = []

    async def on_message(inbound: InboundMessage) -> None:
        received.append(inbound)

    connector = Connector(id="c1", name="Bot", platform="discord", agent_id="a1", config=config or {})
    return _DiscordBot(connector, client or FakeClient(), on_message), received


def test_adapter_is_registered():
    assert isinstance(PLATFORM_ADAPTERS["discord"](None), DiscordAdapter)


@pytest.mark.asyncio
async def test_start_without_library_raises(monkeypatch):
    monkeypatch.setattr(discord_adapter, "HAS_DISCORD", False)
    connector = Connector(id="c1", name="Bot", platform="discord", agent_id="a1")
    with pytest.raises(ImportError, match="agent-relay\\[discord\\]"):
        await DiscordAdapter().start(connector, "token", None)


def test_bot_registers_message_handler():
    client = FakeClient()
    bot, _ = _bot(client=client)
    assert client.handlers["on_message"] == bot.on_message


@pytest.mark.asyncio
async def test_guild_message_is_normalised():
    bot, received = _bot()
    channel = FakeChannel()

    await bot.on_message(_message("  what's up ", channel=channel))
    await asyncio.sleep(0)

    [inbound] = received
    assert inbound.platform == "discord"
    assert inbound.channel_id == "42"
    assert inbound.channel_name == "general"
    assert inbound.sender_id == "11"
    assert inbound.sender_name == "Ada L"
    assert inbound.text == "what's up"
    assert inbound.message_id == "7"
    assert channel.typing_calls == 1


@pytest.mark.asyncio
async def test_direct_message_and_attachment_only():
    bot, received = _bot()
    attachments = [
        SimpleNamespace(url="https://cdn/doc.pdf", content_type="application/pdf"),
        SimpleNamespace(url="https://cdn/cat.png", content_type="image/png"),
    ]

    await bot.on_message(_message("", channel=FakeChannel(name=None), guild=False, attachments=attachments))
    await asyncio.sleep(0)

    [inbound] = received
    assert inbound.channel_name == "DM"
    assert inbound.text == "(media message)"
    assert inbound.image_url == "https://cdn/cat.png"
    assert inbound.media == ["https://cdn/doc.pdf", "https://cdn/cat.png"]


@pytest.mark.asyncio
async def test_bots_empty_and_unlisted_channels_are_ignored():
    bot, received = _bot(config={"channel_ids": "42, 43"})

    await bot.on_message(_message(bot=True))
    await bot.on_message(_message("   "))
    await bot.on_message(_message(channel=FakeChannel(channel_id=99)))
    await asyncio.sleep(0)
    assert received == []

    await bot.on_message(_message(channel=FakeChannel(channel_id=43)))
    await asyncio.sleep(0)
    assert [m.channel_id for m in received] == ["43"]


@pytest.mark.asyncio
async def test_send_fetches_channel_and_chunks_long_replies():
    channel = FakeChannel()
    client = FakeClient(channels=[channel])
    bot, _ = _bot(client=client)

    message_id = await bot.send("42", "x" * 4500)

    assert client.fetched == [42]
    assert [len(c) for c in channel.sent] == [1990, 1990, 520]
    assert message_id == "903"


@pytest.mark.asyncio
async def test_send_short_reply_is_one_message():
    channel = FakeChannel()
    bot, _ = _bot(client=FakeClient(channels=[channel]))

    assert await bot.send("42", "y" * 2000) == "901"
    assert channel.sent == ["y" * 2000]


@pytest.mark.asyncio
async def test_send_to_channel_without_send_fails():
    client = FakeClient()
    client.channels[5] = SimpleNamespace(id=5)
    bot, _ = _bot(client=client)

    with pytest.raises(ValidationError, match="Cannot send to channel 5"):
        await bot.send("5", "hi")
