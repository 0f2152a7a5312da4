"""Pytest fixtures and helpers for agent-relay tests."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

import pytest

from agent_relay.domain import (
    Agent,
    ChatRequest,
    Connector,
    Credential,
    EventCallback,
    Session,
    Skill,
    Task,
    StreamEvent,
    delta_event,
)
from agent_relay.infrastructure.storage import CredentialVault, JsonCollection, load_or_create_key


@pytest.fixture(autouse=True)
def _reset_config_cache():
    """Clear the load_config LRU cache and reset _env before (and after) every test.

    Each test gets a fresh config load, so monkeypatching RELAY_CONFIG_PATH or
    RELAY_DATA_DIR works without tests bleeding into each other.
    """
    from agent_relay.config import loader as config_loader
    config_loader.load_config.cache_clear()
    config_loader._env = None
    yield
    config_loader.load_config.cache_clear()
    config_loader._env = None


@dataclass
class Stores:
    sessions: JsonCollection[Session]
    agents: JsonCollection[Agent]
    skills: JsonCollection[Skill]
    connectors: JsonCollection[Connector]
    tasks: JsonCollection[Task]
    vault: CredentialVault


@pytest.fixture
def stores(tmp_path) -> Stores:
    """JSON collections and a credential vault rooted in ``tmp_path``."""
    data_dir = str(tmp_path)
    return Stores(
        sessions=JsonCollection(data_dir, "sessions", Session),
        agents=JsonCollection(data_dir, "agents", Agent),
        skills=JsonCollection(data_dir, "skills", Skill),
        connectors=JsonCollection(data_dir, "connectors", Connector),
        tasks=JsonCollection(data_dir, "tasks", Task),
        vault=CredentialVault(JsonCollection(data_dir, "credentials", Credential), load_or_create_key(data_dir)),
    )


class ScriptedGateway:
    """Stand-in for ``ProviderGateway``: each call pops the next scripted reply.

    A reply is either a string (streamed as one delta), an exception (raised)
    or a coroutine function ``(request, on_event) -> str`` for custom behaviour.
    """

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.requests: List[ChatRequest] = []
        self.fallbacks: List[List[str]] = []

    async def stream_chat(self, request: ChatRequest, on_event: EventCallback) -> str:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return await reply(request, on_event)
        on_event(delta_event(reply))
        return reply

    async def stream_chat_with_failover(self, request, on_event, fallback_credential_ids=()) -> str:
        self.fallbacks.append(list(fallback_credential_ids))
        return await self.stream_chat(request, on_event)


def collect_events() -> "tuple[List[StreamEvent], Callable[[StreamEvent], None]]":
    events: List[StreamEvent] = []
    return events, events.append


def make_session(session_id: str = "s1", *, provider: str = "openai", agent_id: Optional[str] = None, **kwargs) -> Session:
    return Session(id=session_id, name=session_id, provider=provider, agent_id=agent_id, **kwargs)
