"""Telegram Bot API adapter: ``getUpdates`` long polling over httpx.

Config keys:
    chat_ids: optional comma-separated allow-list of chat ids.

Replies longer than 4096 characters are sent as consecutive 4090-character
messages.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from agent_relay.domain import Connector, ConnectorInstance, InboundMessage, ProviderError

from .base import InboundTasks, chunk_text, parse_id_list

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"
MESSAGE_LIMIT = 4096
CHUNK_SIZE = 4090
POLL_TIMEOUT_S = 30
POLL_ERROR_BACKOFF_S = 3.0
START_GREETING = "Hello! I'm ready to chat. Send me a message."


class TelegramAdapter:
    platform = "telegram"
    requires_token = True

    def __init__(
        self,
        api_base: str = API_BASE,
        poll_timeout_s: int = POLL_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._poll_timeout_s = poll_timeout_s
        self._transport = transport

    def clear_pairing(self, connector: Connector) -> None:
        """Telegram keeps no pairing state."""

    async def start(self, connector: Connector, token: Optional[str], on_message) -> ConnectorInstance:
        client = httpx.AsyncClient(
            base_url=f"{self._api_base}/bot{token}",
            timeout=httpx.Timeout(self._poll_timeout_s + 10),
            transport=self._transport,
        )
        try:
            me = await _call(client, "getMe")
            try:
                await _call(client, "deleteWebhook")
            except ProviderError as exc:
                logger.warning("Telegram deleteWebhook failed: %s", exc)
        except BaseException:
            await client.aclose()
            raise

        bot = _TelegramBot(connector, client, on_message, self._poll_timeout_s)
        bot.start()
        logger.info("Telegram bot @%s polling for connector %s", me.get("username"), connector.id)
        return ConnectorInstance(
            connector_id=connector.id,
            platform=self.platform,
            stop=bot.stop,
            send_message=bot.send,
            authenticated=True,
            has_credentials=True,
        )


async def _call(client: httpx.AsyncClient, method: str, **params: Any) -> Any:
    r = await client.post(f"/{method}", json=params or None)
    try:
        body = r.json()
    except ValueError:
        body = {}
    if r.status_code != 200 or not body.get("ok"):
        raise ProviderError(
            f"Telegram {method} failed: {body.get('description') or r.status_code}",
            status=r.status_code,
            retryable=False,
        )
    return body.get("result")


class _TelegramBot:
    def __init__(self, connector: Connector, client: httpx.AsyncClient, on_message, poll_timeout_s: int) -> None:
        self._connector = connector
        self._client = client
        self._on_message = on_message
        self._poll_timeout_s = poll_timeout_s
        self._allowed = parse_id_list(connector.config.get("chat_ids"))
        self._offset = 0
        self._poller: Optional["asyncio.Task[None]"] = None
        self._inbound = InboundTasks(f"telegram:{connector.id}")

    def start(self) -> None:
        self._poller = asyncio.create_task(self._poll(), name=f"telegram-poll-{self._connector.id}")

    async def stop(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            await asyncio.gather(self._poller, return_exceptions=True)
        await self._inbound.cancel_all()
        await self._client.aclose()
        logger.info("Telegram bot stopped for connector %s", self._connector.id)

    async def _poll(self) -> None:
        while True:
            try:
                updates: List[Dict[str, Any]] = await _call(
                    self._client,
                    "getUpdates",
                    offset=self._offset,
                    timeout=self._poll_timeout_s,
                    allowed_updates=["message", "edited_message"],
                ) or []
            except (httpx.HTTPError, ProviderError) as exc:
                logger.warning("Telegram polling error: %s", exc)
                await asyncio.sleep(POLL_ERROR_BACKOFF_S)
                continue
            for update in updates:
                self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
                message = update.get("message") or update.get("edited_message")
                if message:
                    await self._dispatch(message)

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        text = message.get("text")
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        if not text or "id" not in chat:
            return
        chat_id = str(chat["id"])
        if text.strip().split("@")[0] == "/start":
            await self.send(chat_id, START_GREETING)
            return
        if self._allowed is not None and chat_id not in self._allowed:
            logger.info("Telegram chat %s not in allow-list; ignoring", chat_id)
            return

        first = sender.get("first_name") or ""
        sender_name = f"{first} {sender['last_name']}" if sender.get("last_name") else first
        inbound = InboundMessage(
            platform="telegram",
            channel_id=chat_id,
            channel_name=f"DM:{first}" if chat.get("type") == "private" else (chat.get("title") or chat_id),
            sender_id=str(sender.get("id", "")),
            sender_name=sender_name or chat_id,
            text=text,
            message_id=str(message.get("message_id", "")) or None,
        )
        try:
            await _call(self._client, "sendChatAction", chat_id=chat_id, action="typing")
        except (httpx.HTTPError, ProviderError) as exc:
            logger.debug("Telegram typing action failed: %s", exc)
        self._inbound.spawn(self._on_message(inbound))

    async def send(self, channel_id: str, text: str, *, image_url: Optional[str] = None) -> Optional[str]:
        message_id: Optional[str] = None
        if image_url:
            sent = await _call(self._client, "sendPhoto", chat_id=channel_id, photo=image_url)
            message_id = str(sent.get("message_id"))
        if text:
            for chunk in chunk_text(text, MESSAGE_LIMIT, CHUNK_SIZE):
                sent = await _call(self._client, "sendMessage", chat_id=channel_id, text=chunk)
                message_id = str(sent.get("message_id"))
        return message_id
