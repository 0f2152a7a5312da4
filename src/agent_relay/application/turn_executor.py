"""Turn executor: runs exactly one conversational turn for a session.

Steps, in order:

1. Reconcile the owning agent's provider settings and tools into the session.
2. Load the session (``NotFoundError`` if absent).
3. Resolve the API key.  Providers that require one fail with
   ``ValidationError``; optional-key providers continue without.
4. Unless the turn is internal, append and persist the user message.
5. Build the system prompt: user preface, agent soul, agent instructions,
   one ``## Skill:`` block per agent skill, then the caller's addendum.
6. Call the model: the tool loop when the session has tools and a non-CLI
   provider, otherwise the gateway with credential failover.
7. Apply the forced-tool safety net.
8. Persist resume ids and the assistant reply.
9. Return a ``TurnResult``.

Provider failures in step 6 do not raise: they become an ``error`` event and
``TurnResult.error``.  An observed abort raises ``RunCancelledError``.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Set

from agent_relay.config.constants import HISTORY_LIMIT
from agent_relay.domain import (
    AbortSignal,
    Agent,
    ChatMessage,
    ChatRequest,
    EventCallback,
    HeartbeatOk,
    NotFoundError,
    ProviderInfo,
    RunCancelledError,
    Session,
    Skill,
    StreamEvent,
    ToolEvent,
    TurnRequest,
    TurnResult,
    ValidationError,
    classify_reply,
    error_event,
    now_ms,
)
from agent_relay.infrastructure.telemetry import get_tracer

from .forced_tools import ForcedToolSafetyNet
from .ports import ChatGateway, CredentialResolver, ProviderCatalog, Repository, ToolAgent, ToolFactory

logger = logging.getLogger(__name__)

_TOOL_ERROR_RE = re.compile(r"^error:", re.IGNORECASE)

# Agent fields copied onto its sessions before every turn.
_AGENT_SYNC_FIELDS = ("provider", "model", "credential_id", "fallback_credential_ids", "api_endpoint", "tools")


class _TurnEvents:
    """Event callback that forwards to the caller while recording what the turn did."""

    def __init__(self, downstream: EventCallback) -> None:
        self._downstream = downstream
        self.text = ""
        self.tool_events: List[ToolEvent] = []
        self.invoked: Set[str] = set()
        self.resume_ids: Dict[str, str] = {}

    def __call__(self, event: StreamEvent) -> None:
        kind, data = event.kind, event.data
        if kind == "delta":
            self.text += data.get("text", "")
        elif kind == "replace":
            self.text = data.get("text", "")
        elif kind == "tool_call":
            self.invoked.add(data.get("name", ""))
            self.tool_events.append(ToolEvent(name=data.get("name", ""), input=data.get("input", "")))
        elif kind == "tool_result":
            self._pair_result(data.get("name", ""), data.get("output", ""))
        elif kind == "meta" and isinstance(data.get("resume"), dict):
            self.resume_ids.update({k: str(v) for k, v in data["resume"].items() if v})
        self._downstream(event)

    def _pair_result(self, name: str, output: str) -> None:
        for tool_event in reversed(self.tool_events):
            if tool_event.name == name and tool_event.output is None:
                tool_event.output = output
                tool_event.error = bool(_TOOL_ERROR_RE.match((output or "").strip()))
                return
        logger.debug("Tool result for %s without a matching call", name)


class TurnExecutor:
    """Args:
        sessions, agents, skills: Repositories for the turn's entities.
        credentials: Decrypts the session credential.
        catalog: Provider table.
        gateway: Streaming model calls with failover.
        tool_agent: Tool-augmented path.
        tool_factory: Builds the tools enabled for a session.
        safety_net: Forced-tool fallback; ``None`` disables it.
        user_prompt: Platform-wide system prompt preface.
        history_limit: Prior messages sent to the model.
    """

    def __init__(
        self,
        *,
        sessions: Repository[Session],
        agents: Repository[Agent],
        skills: Repository[Skill],
        credentials: CredentialResolver,
        catalog: ProviderCatalog,
        gateway: ChatGateway,
        tool_agent: ToolAgent,
        tool_factory: ToolFactory,
        safety_net: Optional[ForcedToolSafetyNet] = None,
        user_prompt: str = "",
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self._sessions = sessions
        self._agents = agents
        self._skills = skills
        self._credentials = credentials
        self._catalog = catalog
        self._gateway = gateway
        self._tool_agent = tool_agent
        self._tool_factory = tool_factory
        self._safety_net = safety_net
        self._user_prompt = user_prompt
        self._history_limit = history_limit

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _load_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        if not session.agent_id:
            return session
        agent = self._agents.get(session.agent_id)
        if agent is None:
            return session
        changed = [f for f in _AGENT_SYNC_FIELDS if getattr(session, f) != getattr(agent, f)]
        if not changed:
            return session

        def sync(s: Session) -> None:
            for name in changed:
                value = getattr(agent, name)
                setattr(s, name, list(value) if isinstance(value, list) else value)

        logger.debug("Reconciling session %s with agent %s: %s", session_id, agent.id, changed)
        return self._sessions.update(session_id, sync) or session

    def _resolve_api_key(self, session: Session, info: ProviderInfo) -> Optional[str]:
        if not session.credential_id:
            if info.requires_api_key:
                raise ValidationError(f"No API key configured for {info.name}")
            return None
        try:
            return self._credentials.decrypt(session.credential_id)
        except (NotFoundError, ValidationError) as exc:
            if info.requires_api_key:
                raise ValidationError(f"{info.name} credential unavailable: {exc}") from exc
            logger.warning("Continuing without credential for session %s: %s", session.id, exc)
            return None

    def build_system_prompt(self, session: Session, addendum: Optional[str] = None) -> str:
        parts: List[str] = [self._user_prompt]
        agent = self._agents.get(session.agent_id) if session.agent_id else None
        if agent is not None:
            parts += [agent.soul, agent.system_prompt]
            for skill_id in agent.skill_ids:
                skill = self._skills.get(skill_id)
                if skill is None:
                    logger.warning("Agent %s references missing skill %s", agent.id, skill_id)
                    continue
                parts.append(f"## Skill: {skill.name}\n{skill.content}")
        parts.append(addendum or "")
        return "\n\n".join(p.strip() for p in parts if p and p.strip())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: TurnRequest, signal: AbortSignal, on_event: EventCallback) -> TurnResult:
        tracer = get_tracer()
        with tracer.start_as_current_span("relay.turn") as span:
            span.set_attribute("session_id", request.session_id)
            span.set_attribute("source", request.source)
            span.set_attribute("internal", request.internal)
            result = await self._execute(request, signal, on_event)
            span.set_attribute("persisted", result.persisted)
            span.set_attribute("tool_calls", len(result.tool_events))
            if result.error:
                span.set_attribute("error", result.error)
            return result

    async def _execute(self, request: TurnRequest, signal: AbortSignal, on_event: EventCallback) -> TurnResult:
        session = self._load_session(request.session_id)
        info = self._catalog.get(session.provider)
        api_key = self._resolve_api_key(session, info)
        history = session.messages[-self._history_limit:] if self._history_limit > 0 else []

        if not request.internal:
            user_message = ChatMessage(role="user", text=request.message, image_path=request.image_path)

            def append_user(s: Session) -> None:
                s.messages.append(user_message)
                s.last_active_at = now_ms()

            self._sessions.update(session.id, append_user)

        system_prompt = self.build_system_prompt(session, request.system_prompt_addendum)
        events = _TurnEvents(on_event)
        tools = None if info.is_cli or not session.tools else self._tool_factory(session, request)
        chat_request = ChatRequest(
            session=session,
            message=request.message,
            api_key=api_key,
            system_prompt=system_prompt,
            history=list(history),
            image_path=request.image_path,
            signal=signal,
        )

        text = ""
        error: Optional[str] = None
        try:
            if tools is not None and tools.names:
                text = await self._tool_agent.run(chat_request, tools, events)
            else:
                text = await self._gateway.stream_chat_with_failover(
                    chat_request, events, session.fallback_credential_ids,
                )
        except RunCancelledError:
            raise
        except Exception as exc:
            if signal.aborted:
                raise RunCancelledError(signal.reason or "Cancelled") from exc
            error = str(exc) or exc.__class__.__name__
            logger.warning("Turn failed for session=%s provider=%s: %s", session.id, info.id, error)
            events(error_event(error))

        if error is None and not text.strip() and events.text.strip():
            text = events.text
        if error is None and tools is not None and self._safety_net is not None:
            text = await self._safety_net.apply(request.message, text, tools, events.invoked, events)
        signal.raise_if_aborted()

        return self._persist(session, request, text, error, events)

    def _persist(
        self,
        session: Session,
        request: TurnRequest,
        text: str,
        error: Optional[str],
        events: _TurnEvents,
    ) -> TurnResult:
        outcome = classify_reply(text, internal=request.internal)
        reply = text
        if not reply.strip() and error and not request.internal:
            reply = f"Error: {error}"
        persisted = bool(reply.strip()) and not isinstance(outcome, HeartbeatOk)
        tool_events = list(events.tool_events)

        def apply(s: Session) -> None:
            s.resume_ids.update(events.resume_ids)
            if persisted:
                s.messages.append(ChatMessage(
                    role="assistant",
                    text=reply,
                    kind="heartbeat" if request.source == "heartbeat" else "chat",
                    tool_events=[t.to_dict() for t in tool_events],
                ))
            s.last_active_at = now_ms()

        if persisted or events.resume_ids:
            self._sessions.update(session.id, apply)

        logger.info(
            "Turn done session=%s run=%s persisted=%s tools=%d outcome=%s",
            session.id, request.run_id, persisted, len(tool_events), type(outcome).__name__,
        )
        return TurnResult(text=text, persisted=persisted, tool_events=tool_events, error=error, outcome=outcome)
