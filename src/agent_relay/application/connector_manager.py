"""Connector lifecycle manager.

Owns one live ``ConnectorInstance`` per running connector.  Start, stop and
repair on the same connector are serialised by a ``KeyedLock``; a start that
hangs is abandoned after ``lock_wait_s`` by the next caller and fails on its
own after ``start_timeout_s``.

Persisted status follows ``stopped -> starting -> running | error``.  A start
failure is recorded on the connector (``status=error``, ``last_error``) and
re-raised to the caller; ``auto_start`` logs it and moves on.

Inbound messages are routed as ``collect``-mode runs on a per-channel session
(``connector:{connector_id}:{channel_id}``) and the reply is delivered back
through the same connector.  A ``NO_MESSAGE`` reply is never delivered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from agent_relay.config.constants import CONNECTOR_ERROR_REPLY, CONNECTOR_LOCK_WAIT_S, CONNECTOR_START_TIMEOUT_S
from agent_relay.domain import (
    Agent,
    Connector,
    ConnectorInstance,
    ConnectorStatus,
    DeliveryReceipt,
    InboundMessage,
    NotFoundError,
    OperationTimeoutError,
    Outcome,
    RelayError,
    Reply,
    RunCancelledError,
    RunMode,
    Session,
    Suppressed,
    ValidationError,
    classify_reply,
    is_no_message,
    now_ms,
)
from agent_relay.infrastructure.locks import KeyedLock
from agent_relay.infrastructure.telemetry import get_tracer

from .ports import CredentialResolver, PlatformAdapter, Repository

logger = logging.getLogger(__name__)

START_TIMEOUT_MESSAGE = "Connector start timed out"

_MEDIA_PREVIEW = 6

_CONNECTOR_CONTEXT = (
    "You are receiving messages via {platform}. The user \"{sender}\" is messaging from "
    "channel \"{channel}\". Respond naturally and conversationally.\n\n"
    "## Knowing When Not to Reply\n"
    "Real conversations have natural pauses and not every message needs a response. "
    "Reply with exactly \"NO_MESSAGE\" (nothing else) to stay silent when replying would "
    "feel unnatural or forced.\n"
    "Stay silent for simple acknowledgments (\"okay\", \"got it\", \"sounds good\"), "
    "conversation closers (\"thanks\", \"bye\"), reactions (emoji, \"haha\") and forwarded "
    "content with no question attached.\n"
    "Always reply when there's a question, task, instruction, emotional sharing, or something "
    "genuinely useful to add.\n"
    "The test: would a thoughtful friend feel compelled to type something back? If not, NO_MESSAGE."
)


def connector_session_id(connector_id: str, channel_id: str) -> str:
    return f"connector:{connector_id}:{channel_id}"


def format_inbound_text(inbound: InboundMessage) -> str:
    """``[sender] text``, followed by a short list of attached media."""
    base = (inbound.text or "").strip()
    lines = [f"[{inbound.sender_name}] {base}" if base else f"[{inbound.sender_name}]"]
    if inbound.media:
        lines += ["", "Media received:"]
        lines += [f"- {m}" for m in inbound.media[:_MEDIA_PREVIEW]]
        if len(inbound.media) > _MEDIA_PREVIEW:
            lines.append(f"- ...and {len(inbound.media) - _MEDIA_PREVIEW} more attachment(s)")
    return "\n".join(lines).strip()


def connector_addendum(inbound: InboundMessage) -> str:
    return _CONNECTOR_CONTEXT.format(
        platform=inbound.platform,
        sender=inbound.sender_name,
        channel=inbound.channel_name or inbound.channel_id,
    )


class ConnectorManager:
    """Args:
        connectors, agents, sessions: Repositories.
        credentials: Decrypts connector bot tokens.
        adapters: ``platform -> PlatformAdapter`` lookup table.
        lock_wait_s: Wait for a pending operation on the same connector before abandoning it.
        start_timeout_s: Overall budget for one start.

    The run queue is bound after construction (``bind_run_queue``): it is
    built from an executor whose tools already reference this manager.
    """

    def __init__(
        self,
        *,
        connectors: Repository[Connector],
        agents: Repository[Agent],
        sessions: Repository[Session],
        credentials: CredentialResolver,
        adapters: Mapping[str, PlatformAdapter],
        lock_wait_s: float = CONNECTOR_LOCK_WAIT_S,
        start_timeout_s: float = CONNECTOR_START_TIMEOUT_S,
    ) -> None:
        self._connectors = connectors
        self._agents = agents
        self._sessions = sessions
        self._credentials = credentials
        self._adapters = dict(adapters)
        self._start_timeout_s = start_timeout_s
        self._locks = KeyedLock(lock_wait_s)
        self._instances: Dict[str, ConnectorInstance] = {}
        self._recent_channels: Dict[str, str] = {}
        self._run_queue: Optional[Any] = None

    def bind_run_queue(self, run_queue: Any) -> None:
        self._run_queue = run_queue

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_connector(self, connector_id: str) -> ConnectorInstance:
        async with self._locks.hold(connector_id):
            return await self._start_locked(connector_id)

    async def _start_locked(self, connector_id: str) -> ConnectorInstance:
        """Start under an already held connector lock, within ``start_timeout_s``."""
        with get_tracer().start_as_current_span("relay.connector_start") as span:
            span.set_attribute("connector_id", connector_id)
            try:
                instance = await asyncio.wait_for(self._start(connector_id), timeout=self._start_timeout_s)
            except asyncio.TimeoutError as exc:
                self._record_failure(connector_id, START_TIMEOUT_MESSAGE)
                raise OperationTimeoutError(START_TIMEOUT_MESSAGE) from exc
            span.set_attribute("platform", instance.platform)
            return instance

    async def _start(self, connector_id: str) -> ConnectorInstance:
        await self._stop_instance(connector_id)
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise NotFoundError(f"Connector not found: {connector_id}")
        try:
            adapter = self._adapters.get(connector.platform)
            if adapter is None:
                raise ValidationError(f"Unsupported platform: {connector.platform}")
            token = self._resolve_token(connector)
            if adapter.requires_token and not token:
                raise ValidationError("No bot token configured")
            self._connectors.update(connector_id, _set_status(ConnectorStatus.STARTING))
            instance = await adapter.start(connector, token, self._inbound_handler(connector_id))
        except Exception as exc:
            self._record_failure(connector_id, str(exc) or exc.__class__.__name__)
            raise

        instance.status_listener = self._status_listener(connector_id, instance)
        self._instances[connector_id] = instance

        def mark_running(c: Connector) -> None:
            c.status = ConnectorStatus.RUNNING
            c.is_enabled = True
            c.last_error = None
            c.updated_at = now_ms()

        self._connectors.update(connector_id, mark_running)
        logger.info("Started %s connector %s (%s)", connector.platform, connector.name, connector_id)
        return instance

    def _status_listener(self, connector_id: str, instance: ConnectorInstance):
        """Persist status changes an adapter reports while it supervises itself."""

        def report(status: ConnectorStatus, error: Optional[str] = None) -> None:
            if self._instances.get(connector_id) is not instance:
                return

            def apply(c: Connector) -> None:
                c.status = status
                c.last_error = error
                c.updated_at = now_ms()

            self._connectors.update(connector_id, apply)
            logger.info("Connector %s is %s%s", connector_id, status.value, f" ({error})" if error else "")

        return report

    def _resolve_token(self, connector: Connector) -> Optional[str]:
        if connector.credential_id:
            try:
                return self._credentials.decrypt(connector.credential_id)
            except (NotFoundError, ValidationError) as exc:
                logger.warning("Connector %s credential unusable: %s", connector.id, exc)
        return (connector.config.get("bot_token") or "").strip() or None

    def _record_failure(self, connector_id: str, message: str) -> None:
        def mark_error(c: Connector) -> None:
            c.status = ConnectorStatus.ERROR
            c.last_error = message
            c.updated_at = now_ms()

        self._connectors.update(connector_id, mark_error)
        logger.warning("Connector %s failed to start: %s", connector_id, message)

    async def _stop_instance(self, connector_id: str) -> None:
        instance = self._instances.pop(connector_id, None)
        if instance is None:
            return
        try:
            await instance.stop()
        except Exception as exc:
            logger.warning("Error stopping connector %s: %s", connector_id, exc)

    async def stop_connector(self, connector_id: str, *, disable: bool = True) -> None:
        """Stop and deregister; persists ``stopped`` even when nothing was running.

        ``disable=False`` keeps ``is_enabled`` so the next ``auto_start``
        brings the connector back (used on shutdown).
        """
        async with self._locks.hold(connector_id):
            await self._stop_instance(connector_id)
            self._mark_stopped(connector_id, disable=disable)
        logger.info("Stopped connector %s", connector_id)

    def _mark_stopped(self, connector_id: str, *, disable: bool) -> None:
        def mark_stopped(c: Connector) -> None:
            c.status = ConnectorStatus.STOPPED
            c.last_error = None
            c.updated_at = now_ms()
            if disable:
                c.is_enabled = False

        self._connectors.update(connector_id, mark_stopped)

    async def repair_connector(self, connector_id: str) -> ConnectorInstance:
        """Stop, wipe saved pairing state, and start again for a fresh pairing.

        All three steps run under one hold of the connector lock.
        """
        async with self._locks.hold(connector_id):
            connector = self._connectors.get(connector_id)
            if connector is None:
                raise NotFoundError(f"Connector not found: {connector_id}")
            await self._stop_instance(connector_id)
            self._mark_stopped(connector_id, disable=False)
            adapter = self._adapters.get(connector.platform)
            if adapter is not None:
                adapter.clear_pairing(connector)
            return await self._start_locked(connector_id)

    async def auto_start(self) -> int:
        """Start every enabled connector that is not running; returns how many started."""
        started = 0
        for connector in self._connectors.values():
            if not connector.is_enabled or connector.id in self._instances:
                continue
            try:
                logger.info("Auto-starting %s connector %s", connector.platform, connector.name)
                await self.start_connector(connector.id)
                started += 1
            except Exception as exc:
                logger.error("Failed to auto-start connector %s: %s", connector.name, exc)
        return started

    async def stop_all(self) -> None:
        for connector_id in list(self._instances):
            await self.stop_connector(connector_id, disable=False)

    # ------------------------------------------------------------------
    # Inbound routing
    # ------------------------------------------------------------------

    def _inbound_handler(self, connector_id: str):
        async def on_message(inbound: InboundMessage) -> Outcome:
            return await self.handle_inbound(connector_id, inbound)
        return on_message

    async def route_message(self, connector_id: str, inbound: InboundMessage) -> Outcome:
        if self._run_queue is None:
            raise RelayError("Run queue not bound to the connector manager")
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise NotFoundError(f"Connector not found: {connector_id}")
        agent = self._agents.get(connector.agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {connector.agent_id}")

        session_id = connector_session_id(connector_id, inbound.channel_id)
        if self._sessions.get(session_id) is None:
            self._sessions.put(agent.new_session(session_id, session_id))
        self._recent_channels[connector_id] = inbound.channel_id

        logger.info(
            "Routing %s message from %s to agent %s (session=%s)",
            inbound.platform, inbound.sender_name, agent.name, session_id,
        )
        queued = self._run_queue.enqueue(
            session_id,
            format_inbound_text(inbound),
            source="connector",
            mode=RunMode.COLLECT,
            system_prompt_addendum=connector_addendum(inbound),
        )
        result = await queued.future
        if result.error and not result.text.strip():
            raise RelayError(result.error)
        return result.outcome if result.outcome is not None else classify_reply(result.text)

    async def handle_inbound(self, connector_id: str, inbound: InboundMessage) -> Outcome:
        """Route one inbound message and deliver the reply; never raises."""
        try:
            outcome = await self.route_message(connector_id, inbound)
        except RunCancelledError as exc:
            logger.info("Inbound run on %s cancelled: %s", connector_id, exc.reason)
            return Suppressed()
        except Exception as exc:
            logger.error("Failed to handle inbound message on %s: %s", connector_id, exc)
            await self._deliver(connector_id, inbound.channel_id, CONNECTOR_ERROR_REPLY)
            return Reply(CONNECTOR_ERROR_REPLY)

        if isinstance(outcome, Suppressed):
            logger.info("Agent suppressed outbound reply on %s", connector_id)
        elif isinstance(outcome, Reply) and outcome.text.strip():
            await self._deliver(connector_id, inbound.channel_id, outcome.text)
        return outcome

    async def _deliver(self, connector_id: str, channel_id: str, text: str) -> None:
        try:
            await self.send_message(text, connector_id=connector_id, channel_id=channel_id)
        except Exception as exc:
            logger.warning("Delivery via %s to %s failed: %s", connector_id, channel_id, exc)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        connector_id: Optional[str] = None,
        platform: Optional[str] = None,
        channel_id: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Optional[DeliveryReceipt]:
        """Send through a running connector; ``None`` when the text is the no-reply sentinel."""
        if is_no_message(text):
            logger.info("Suppressed outbound NO_MESSAGE")
            return None

        if connector_id:
            instance = self._instances.get(connector_id)
            if instance is None:
                raise NotFoundError(f"Connector is not running: {connector_id}")
        else:
            candidates = [i for i in self._instances.values() if platform is None or i.platform == platform]
            if not candidates:
                suffix = f' for platform "{platform}"' if platform else ""
                raise NotFoundError(f"No running connector found{suffix}.")
            instance = candidates[0]

        if instance.send_message is None:
            raise ValidationError(f"Connector {instance.connector_id} does not support outbound messages")
        channel = channel_id or self._recent_channels.get(instance.connector_id)
        if not channel:
            raise ValidationError("No target channel; provide channel_id or wait for an inbound message")

        message_id = await instance.send_message(channel, text, image_url=image_url)
        return DeliveryReceipt(
            connector_id=instance.connector_id,
            platform=instance.platform,
            channel_id=channel,
            message_id=message_id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_running(self, platform: Optional[str] = None) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for connector_id, instance in self._instances.items():
            if platform and instance.platform != platform:
                continue
            connector = self._connectors.get(connector_id)
            targets: List[str] = []
            if connector is not None:
                outbound = (connector.config.get("outbound_jid") or "").strip()
                if outbound:
                    targets.append(outbound)
                for jid in (connector.config.get("allowed_jids") or "").split(","):
                    if jid.strip() and jid.strip() not in targets:
                        targets.append(jid.strip())
            out.append({
                **instance.describe(),
                "name": connector.name if connector is not None else connector_id,
                "configured_targets": targets,
                "recent_channel_id": self._recent_channels.get(connector_id),
            })
        return out

    def get_instance(self, connector_id: str) -> Optional[ConnectorInstance]:
        return self._instances.get(connector_id)

    def get_connector(self, connector_id: str) -> Optional[Connector]:
        return self._connectors.get(connector_id)

    def recent_channel(self, connector_id: str) -> Optional[str]:
        return self._recent_channels.get(connector_id)


def _set_status(status: ConnectorStatus):
    def apply(c: Connector) -> None:
        c.status = status
        c.updated_at = now_ms()
    return apply
