"""Slack adapter: bolt ``AsyncApp`` over Socket Mode (no public URL needed).

Requires the ``slack`` extra.  The connector token is the bot token
(``xoxb-``); Socket Mode also needs an app-level token in
``config["app_token"]`` (``xapp-``).  Optional ``config["channel_ids"]``
restricts which channels are answered.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from agent_relay.domain import Connector, ConnectorInstance, InboundMessage, ValidationError

from .base import InboundTasks, parse_id_list

try:
    from slack_bolt.async_app import AsyncApp
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler

    HAS_SLACK = True
except ImportError:
    HAS_SLACK = False

logger = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"<@[A-Z0-9]+>\s*")


def _require_slack():
    if not HAS_SLACK:
        raise ImportError(
            "slack-bolt and slack-sdk are required for Slack connectors. "
            "Install with: pip install 'agent-relay[slack]'"
        )


class SlackAdapter:
    platform = "slack"
    requires_token = True

    def clear_pairing(self, connector: Connector) -> None:
        """Slack keeps no pairing state."""

    async def start(self, connector: Connector, token: Optional[str], on_message) -> ConnectorInstance:
        _require_slack()
        app_token = (connector.config.get("app_token") or "").strip()
        if not app_token:
            raise ValidationError("Slack connector requires config app_token (xapp-...) for Socket Mode")

        bot = _SlackBot(connector, AsyncApp(token=token), on_message)
        auth = await bot.app.client.auth_test()
        bot.bot_user_id = auth.get("user_id")
        handler = AsyncSocketModeHandler(bot.app, app_token)
        await handler.connect_async()
        logger.info("Slack bot %s connected for connector %s", auth.get("user"), connector.id)

        async def stop() -> None:
            await bot.inbound.cancel_all()
            await handler.close_async()
            logger.info("Slack bot stopped for connector %s", connector.id)

        return ConnectorInstance(
            connector_id=connector.id,
            platform=self.platform,
            stop=stop,
            send_message=bot.send,
            authenticated=True,
            has_credentials=True,
        )


class _SlackBot:
    def __init__(self, connector: Connector, app: Any, on_message) -> None:
        self.app = app
        self.bot_user_id: Optional[str] = None
        self.inbound = InboundTasks(f"slack:{connector.id}")
        self._connector = connector
        self._on_message = on_message
        self._allowed = parse_id_list(connector.config.get("channel_ids"))
        self._names: Dict[str, str] = {}
        self._register_events()

    def _register_events(self):
        @self.app.event("message")
        async def handle_message(event):
            await self._dispatch(event)

    async def _user_name(self, user_id: str) -> str:
        if user_id in self._names:
            return self._names[user_id]
        name = user_id
        try:
            info = await self.app.client.users_info(user=user_id)
            profile = (info.get("user") or {}).get("profile") or {}
            name = profile.get("display_name") or profile.get("real_name") or user_id
        except Exception as exc:
            logger.debug("Slack users_info failed for %s: %s", user_id, exc)
        self._names[user_id] = name
        return name

    async def _dispatch(self, event: Dict[str, Any]) -> None:
        if event.get("bot_id") or event.get("subtype") or event.get("user") == self.bot_user_id:
            return
        channel = event.get("channel")
        text = _MENTION_RE.sub("", event.get("text") or "").strip()
        if not channel or not text:
            return
        if self._allowed is not None and channel not in self._allowed:
            return
        user_id = event.get("user") or ""
        inbound = InboundMessage(
            platform="slack",
            channel_id=channel,
            channel_name=f"DM:{user_id}" if event.get("channel_type") == "im" else channel,
            sender_id=user_id,
            sender_name=await self._user_name(user_id),
            text=text,
            message_id=event.get("ts"),
        )
        self.inbound.spawn(self._on_message(inbound))

    async def send(self, channel_id: str, text: str, *, image_url: Optional[str] = None) -> Optional[str]:
        kwargs: Dict[str, Any] = {"channel": channel_id, "text": text or image_url or ""}
        if image_url:
            kwargs["blocks"] = [
                {"type": "section", "text": {"type": "mrkdwn", "text": text or " "}},
                {"type": "image", "image_url": image_url, "alt_text": "image"},
            ]
        response = await self.app.client.chat_postMessage(**kwargs)
        return response.get("ts")
