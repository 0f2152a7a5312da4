"""WhatsApp adapter over a duplex websocket bridge.

The bridge process owns the WhatsApp Web session; this adapter speaks JSON
frames with it:

    -> {"type": "hello", "connector_id": ..., "creds": {...} | null}
    <- {"type": "pairing_code", "code": "ABCD-EFGH"}
    <- {"type": "creds", "creds": {...}}          saved to creds.json
    <- {"type": "ready", "user": "447700900000@s.whatsapp.net"}
    <- {"type": "message", "id", "chat", "sender", "sender_name", "text", "from_me", "media"}
    -> {"type": "send", "ref", "to", "text", "image_url"}
    <- {"type": "sent", "ref", "id"}  |  {"type": "send_failed", "ref", "error"}
    <- {"type": "disconnected", "reason": "...", "status": 401}

Every connection gets a new generation number and frames from an older
generation are ignored.  When a connection ends, the disconnect is classified:

* ``logged out`` (or status 401): pairing credentials are wiped and a fresh
  pairing starts after ``relogin_delay_s``.
* ``conflict`` (or status 440): another client replaced this one; no
  reconnect, to avoid fighting it.
* anything else: reconnect after ``reconnect_delay_s`` unless stopped.

Reconnects are reported through the instance as ``starting`` and then
``running``; a conflict is reported as ``error``.

Config keys: ``bridge_url`` (default ``ws://localhost:3001``),
``allowed_jids`` (comma-separated phone numbers or JIDs).
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import shutil
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import websockets

from agent_relay.config.constants import BRIDGE_RECONNECT_DELAY_S, BRIDGE_RELOGIN_DELAY_S
from agent_relay.domain import Connector, ConnectorInstance, ConnectorStatus, InboundMessage, RelayError

from .base import InboundTasks, chunk_text, json_or_none, normalize_phone, parse_id_list

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_URL = "ws://localhost:3001"
MESSAGE_LIMIT = 4096
CHUNK_SIZE = 4000
SEND_TIMEOUT_S = 30.0
_SENT_ID_MEMORY = 500

RELOGIN = "relogin"
CONFLICT = "conflict"
RECONNECT = "reconnect"

Connect = Callable[[str], Awaitable[Any]]


def classify_disconnect(reason: Optional[str], status: Optional[int] = None) -> str:
    """Map a disconnect onto ``RELOGIN``, ``CONFLICT`` or ``RECONNECT``."""
    lowered = (reason or "").lower()
    if status == 401 or "logged out" in lowered or "loggedout" in lowered:
        return RELOGIN
    if status == 440 or "conflict" in lowered:
        return CONFLICT
    return RECONNECT


def auth_dir(data_dir: str, connector_id: str) -> Path:
    return Path(data_dir) / "whatsapp-auth" / connector_id


class WhatsAppBridgeAdapter:
    platform = "whatsapp"
    requires_token = False

    def __init__(
        self,
        data_dir: str,
        *,
        reconnect_delay_s: float = BRIDGE_RECONNECT_DELAY_S,
        relogin_delay_s: float = BRIDGE_RELOGIN_DELAY_S,
        connect: Optional[Connect] = None,
    ) -> None:
        self._data_dir = data_dir
        self._reconnect_delay_s = reconnect_delay_s
        self._relogin_delay_s = relogin_delay_s
        self._connect = connect or websockets.connect

    def creds_path(self, connector: Connector) -> Path:
        return auth_dir(self._data_dir, connector.id) / "creds.json"

    def clear_pairing(self, connector: Connector) -> None:
        clear_auth_dir(self._data_dir, connector.id)

    async def start(self, connector: Connector, token: Optional[str], on_message) -> ConnectorInstance:
        session = BridgeSession(
            connector,
            url=connector.config.get("bridge_url") or DEFAULT_BRIDGE_URL,
            creds_path=self.creds_path(connector),
            on_message=on_message,
            connect=self._connect,
            reconnect_delay_s=self._reconnect_delay_s,
            relogin_delay_s=self._relogin_delay_s,
        )
        session.instance = ConnectorInstance(
            connector_id=connector.id,
            platform=self.platform,
            stop=session.stop,
            send_message=session.send,
            has_credentials=session.creds_path.exists(),
        )
        await session.connect()
        return session.instance


def clear_auth_dir(data_dir: str, connector_id: str) -> None:
    path = auth_dir(data_dir, connector_id)
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
        logger.info("Cleared WhatsApp pairing state for connector %s", connector_id)


class BridgeSession:
    """One connector's supervised bridge connection."""

    def __init__(
        self,
        connector: Connector,
        *,
        url: str,
        creds_path: Path,
        on_message,
        connect: Connect,
        reconnect_delay_s: float = BRIDGE_RECONNECT_DELAY_S,
        relogin_delay_s: float = BRIDGE_RELOGIN_DELAY_S,
    ) -> None:
        self.connector = connector
        self.url = url
        self.creds_path = creds_path
        self.instance: Optional[ConnectorInstance] = None
        self._on_message = on_message
        self._connect = connect
        self._reconnect_delay_s = reconnect_delay_s
        self._relogin_delay_s = relogin_delay_s
        self._allowed = parse_id_list(connector.config.get("allowed_jids"))
        self._allowed_numbers = {normalize_phone(j) for j in self._allowed or ()} - {""}
        self._generation = 0
        self._ws: Any = None
        self._reader: Optional["asyncio.Task[None]"] = None
        self._reconnect_task: Optional["asyncio.Task[None]"] = None
        self._stopped = False
        self._sent_ids: Deque[str] = deque(maxlen=_SENT_ID_MEMORY)
        self._pending: Dict[str, "asyncio.Future[Optional[str]]"] = {}
        self._inbound = InboundTasks(f"whatsapp:{connector.id}")
        self._self_user: Optional[str] = None

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _load_creds(self) -> Optional[Dict[str, Any]]:
        if not self.creds_path.exists():
            return None
        try:
            return json.loads(self.creds_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable WhatsApp creds %s: %s", self.creds_path, exc)
            return None

    def _save_creds(self, creds: Dict[str, Any]) -> None:
        self.creds_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.creds_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(creds), encoding="utf-8")
        tmp.replace(self.creds_path)
        if self.instance is not None:
            self.instance.has_credentials = True

    def _clear_creds(self) -> None:
        shutil.rmtree(self.creds_path.parent, ignore_errors=True)
        if self.instance is not None:
            self.instance.has_credentials = False
            self.instance.authenticated = False
            self.instance.pairing_code = None

    async def connect(self) -> None:
        self._generation += 1
        gen = self._generation
        logger.info("Opening bridge socket gen=%d for connector %s", gen, self.connector.id)
        ws = await self._connect(self.url)
        self._ws = ws
        await ws.send(json.dumps({
            "type": "hello",
            "connector_id": self.connector.id,
            "creds": self._load_creds(),
        }))
        self._reader = asyncio.create_task(self._read_loop(ws, gen), name=f"bridge-{self.connector.id}-{gen}")

    async def _read_loop(self, ws: Any, gen: int) -> None:
        reason: Optional[str] = "connection closed"
        status: Optional[int] = None
        try:
            async for raw in ws:
                if gen != self._generation:
                    return
                frame = json_or_none(raw)
                if frame is None:
                    logger.debug("Ignoring non-JSON bridge frame")
                    continue
                if frame.get("type") == "disconnected":
                    reason, status = frame.get("reason"), frame.get("status")
                    break
                self._handle_frame(frame)
        except websockets.ConnectionClosed as exc:
            reason = (exc.rcvd.reason if exc.rcvd is not None else None) or str(exc)
        finally:
            if gen == self._generation:
                self._ws = None
                self._fail_pending(RelayError(f"Bridge disconnected: {reason}"))
            if ws is not self._ws:
                # Not handed over to stop(); the socket is ours to close.
                await _close_socket(ws)
        if gen == self._generation and not self._stopped:
            self.handle_disconnect(reason, status)

    def handle_disconnect(self, reason: Optional[str], status: Optional[int] = None) -> str:
        """Apply the reconnect policy for a disconnect; returns the classification."""
        action = classify_disconnect(reason, status)
        if self.instance is not None:
            self.instance.authenticated = False
            self.instance.pairing_code = None
        if action == RELOGIN:
            logger.info("WhatsApp logged out (%s); clearing pairing state", reason)
            self._clear_creds()
            delay = self._relogin_delay_s
        elif action == CONFLICT:
            logger.warning("WhatsApp session conflict (%s); not reconnecting", reason)
            self._report(ConnectorStatus.ERROR, f"Session replaced by another client: {reason}")
            return action
        else:
            delay = self._reconnect_delay_s
        if self._stopped:
            return action
        logger.info("Reconnecting connector %s in %.1fs (%s)", self.connector.id, delay, reason)
        self._report(ConnectorStatus.STARTING)
        self._reconnect_task = asyncio.create_task(self._reconnect(delay))
        return action

    async def _reconnect(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopped:
            return
        try:
            await self.connect()
        except (OSError, websockets.WebSocketException) as exc:
            logger.warning("Bridge reconnect failed for %s: %s", self.connector.id, exc)
            self.handle_disconnect(str(exc))
            return
        self._report(ConnectorStatus.RUNNING)

    def _report(self, status: ConnectorStatus, error: Optional[str] = None) -> None:
        if self.instance is not None:
            self.instance.report_status(status, error)

    async def stop(self) -> None:
        self._stopped = True
        self._generation += 1
        for task in (self._reconnect_task, self._reader):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._reconnect_task, self._reader) if t is not None),
            return_exceptions=True,
        )
        await self._inbound.cancel_all()
        self._fail_pending(RelayError("Connector stopped"))
        if self._ws is not None:
            await _close_socket(self._ws)
            self._ws = None
        logger.info("WhatsApp bridge stopped for connector %s", self.connector.id)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "pairing_code" and self.instance is not None:
            self.instance.pairing_code = frame.get("code")
            logger.info("Pairing code issued for connector %s", self.connector.id)
        elif kind == "creds" and isinstance(frame.get("creds"), dict):
            self._save_creds(frame["creds"])
        elif kind == "ready":
            self._self_user = frame.get("user")
            if self.instance is not None:
                self.instance.authenticated = True
                self.instance.has_credentials = True
                self.instance.pairing_code = None
            logger.info("WhatsApp connected as %s", self._self_user)
        elif kind in ("sent", "send_failed"):
            future = self._pending.pop(str(frame.get("ref")), None)
            if future is not None and not future.done():
                if kind == "sent":
                    future.set_result(frame.get("id"))
                else:
                    future.set_exception(RelayError(frame.get("error") or "Send failed"))
        elif kind == "message":
            self._handle_message(frame)

    def _is_self_chat(self, chat: str) -> bool:
        return bool(self._self_user) and normalize_phone(chat) == normalize_phone(self._self_user or "")

    def _allowed_chat(self, chat: str) -> bool:
        if not self._allowed_numbers:
            return True
        number = normalize_phone(chat)
        return any(n in number or number in n for n in self._allowed_numbers)

    def _handle_message(self, frame: Dict[str, Any]) -> None:
        message_id = frame.get("id")
        chat = frame.get("chat") or ""
        if not chat or chat == "status@broadcast":
            return
        if message_id and message_id in self._sent_ids:
            self._sent_ids.remove(message_id)
            return
        self_chat = self._is_self_chat(chat)
        if frame.get("from_me") and not self_chat:
            return
        if not self_chat and not self._allowed_chat(chat):
            logger.info("Skipping WhatsApp message from non-allowed chat %s", chat)
            return
        text = frame.get("text") or ""
        media = [str(m) for m in frame.get("media") or []]
        if not text and not media:
            return
        sender = frame.get("sender") or chat
        inbound = InboundMessage(
            platform="whatsapp",
            channel_id=chat,
            channel_name=frame.get("chat_name") or chat,
            sender_id=sender,
            sender_name=frame.get("sender_name") or sender.split("@")[0],
            text=text,
            media=media,
            message_id=message_id,
        )
        self._inbound.spawn(self._on_message(inbound))

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, channel_id: str, text: str, *, image_url: Optional[str] = None) -> Optional[str]:
        message_id: Optional[str] = None
        chunks = chunk_text(text, MESSAGE_LIMIT, CHUNK_SIZE) if text else [""]
        for index, chunk in enumerate(chunks):
            message_id = await self._send_frame(channel_id, chunk, image_url if index == 0 else None)
        return message_id

    async def _send_frame(self, channel_id: str, text: str, image_url: Optional[str]) -> Optional[str]:
        if self._ws is None:
            raise RelayError("WhatsApp bridge is not connected")
        ref = secrets.token_hex(6)
        future: "asyncio.Future[Optional[str]]" = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        frame: Dict[str, Any] = {"type": "send", "ref": ref, "to": channel_id, "text": text}
        if image_url:
            frame["image_url"] = image_url
        await self._ws.send(json.dumps(frame))
        try:
            message_id = await asyncio.wait_for(future, timeout=SEND_TIMEOUT_S)
        finally:
            self._pending.pop(ref, None)
        if message_id:
            self._sent_ids.append(message_id)
        return message_id


async def _close_socket(ws: Any) -> None:
    try:
        await ws.close()
    except (OSError, websockets.WebSocketException) as exc:
        logger.debug("Bridge close failed: %s", exc)
