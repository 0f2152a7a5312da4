"""Discord adapter: a discord.py ``Client`` on the gateway.

Requires the ``discord`` extra and the Message Content intent enabled for the
bot in the developer portal.  The connector token is the bot token.
Optional ``config["channel_ids"]`` restricts which channels are answered.

Replies longer than 2000 characters are sent as consecutive 1990-character
messages.  discord.py reconnects the gateway by itself; the connector is only
reported as errored when the client gives up.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from agent_relay.domain import Connector, ConnectorInstance, ConnectorStatus, InboundMessage, ValidationError

from .base import InboundTasks, chunk_text, parse_id_list

try:
    import discord

    HAS_DISCORD = True
except ImportError:
    HAS_DISCORD = False

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
CHUNK_SIZE = 1990


def _require_discord():
    if not HAS_DISCORD:
        raise ImportError(
            "discord.py is required for Discord connectors. "
            "Install with: pip install 'agent-relay[discord]'"
        )


class DiscordAdapter:
    platform = "discord"
    requires_token = True

    def clear_pairing(self, connector: Connector) -> None:
        """Discord keeps no pairing state."""

    async def start(self, connector: Connector, token: Optional[str], on_message) -> ConnectorInstance:
        _require_discord()
        intents = discord.Intents.default()
        intents.message_content = True
        client = discord.Client(intents=intents)
        bot = _DiscordBot(connector, client, on_message)

        await client.login(token)
        runner = asyncio.ensure_future(client.connect())
        ready = asyncio.ensure_future(client.wait_until_ready())
        await asyncio.wait({runner, ready}, return_when=asyncio.FIRST_COMPLETED)
        if not ready.done():
            ready.cancel()
            await client.close()
            # connect() only returns early on a fatal gateway error.
            runner.result()
            raise ValidationError("Discord gateway closed before the bot was ready")
        logger.info("Discord bot %s connected for connector %s", client.user, connector.id)

        stopping = False

        async def stop() -> None:
            nonlocal stopping
            stopping = True
            await bot.inbound.cancel_all()
            await client.close()
            await asyncio.gather(runner, return_exceptions=True)
            logger.info("Discord bot stopped for connector %s", connector.id)

        instance = ConnectorInstance(
            connector_id=connector.id,
            platform=self.platform,
            stop=stop,
            send_message=bot.send,
            authenticated=True,
            has_credentials=True,
        )

        def on_runner_done(task: "asyncio.Future[Any]") -> None:
            if stopping or task.cancelled():
                return
            exc = task.exception()
            logger.warning("Discord gateway for connector %s ended: %s", connector.id, exc)
            reason = f"Discord gateway closed: {exc}" if exc else "Discord gateway closed"
            instance.report_status(ConnectorStatus.ERROR, reason)

        runner.add_done_callback(on_runner_done)
        return instance


class _DiscordBot:
    def __init__(self, connector: Connector, client: Any, on_message) -> None:
        self.client = client
        self.inbound = InboundTasks(f"discord:{connector.id}")
        self._connector = connector
        self._on_message = on_message
        self._allowed = parse_id_list(connector.config.get("channel_ids"))
        client.event(self.on_message)

    async def on_message(self, message: Any) -> None:
        author = message.author
        if author.bot:
            return
        channel_id = str(message.channel.id)
        if self._allowed is not None and channel_id not in self._allowed:
            return

        media: List[str] = [a.url for a in message.attachments if a.url]
        images = [a.url for a in message.attachments if a.url and (a.content_type or "").startswith("image/")]
        text = (message.content or "").strip() or ("(media message)" if media else "")
        if not text:
            return

        inbound = InboundMessage(
            platform="discord",
            channel_id=channel_id,
            channel_name="DM" if message.guild is None else getattr(message.channel, "name", channel_id),
            sender_id=str(author.id),
            sender_name=getattr(author, "display_name", None) or author.name,
            text=text,
            image_url=images[0] if images else None,
            media=media,
            message_id=str(message.id),
        )
        try:
            await message.channel.typing()
        except Exception as exc:
            logger.debug("Discord typing indicator failed: %s", exc)
        self.inbound.spawn(self._on_message(inbound))

    async def send(self, channel_id: str, text: str, *, image_url: Optional[str] = None) -> Optional[str]:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        if not hasattr(channel, "send"):
            raise ValidationError(f"Cannot send to channel {channel_id}")

        message_id: Optional[str] = None
        if image_url:
            embed = discord.Embed()
            embed.set_image(url=image_url)
            sent = await channel.send(embed=embed)
            message_id = str(sent.id)
        if text:
            for chunk in chunk_text(text, MESSAGE_LIMIT, CHUNK_SIZE):
                sent = await channel.send(chunk)
                message_id = str(sent.id)
        return message_id
