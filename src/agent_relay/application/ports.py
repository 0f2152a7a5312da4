"""Ports (abstract interfaces) used by the application layer.

Each port is a ``Protocol`` so the application depends only on the *shape* of the
collaborator, not on a concrete implementation.  Infrastructure adapters must satisfy
these shapes; the application never imports from infrastructure.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from agent_relay.domain import (
    ChatRequest,
    Connector,
    ConnectorInstance,
    EventCallback,
    InboundMessage,
    ProviderInfo,
    Session,
    TurnRequest,
)

T = TypeVar("T")


class Repository(Protocol[T]):
    """Load/save-by-id over one persisted collection (last write wins).

    ``update`` is the only sanctioned way to mutate an existing entity: it loads,
    applies ``mutate`` and saves without yielding to the event loop, and bumps
    the entity's ``version``.
    """

    def load(self) -> Dict[str, T]: ...

    def save(self, items: Dict[str, T]) -> None: ...

    def get(self, item_id: str) -> Optional[T]: ...

    def values(self) -> List[T]: ...

    def put(self, item: T) -> T: ...

    def update(self, item_id: str, mutate: Callable[[T], None]) -> Optional[T]: ...

    def delete(self, item_id: str) -> bool: ...


class CredentialResolver(Protocol):
    def decrypt(self, credential_id: str) -> str:
        """Return the plaintext key; raise NotFoundError / ValidationError."""
        ...


class ProviderCatalog(Protocol):
    def get(self, provider_id: str) -> ProviderInfo:
        """Raise NotFoundError for unknown providers."""
        ...


class ChatGateway(Protocol):
    """Uniform streaming call over every backend, with credential failover."""

    async def stream_chat(self, request: ChatRequest, on_event: EventCallback) -> str: ...

    async def stream_chat_with_failover(
        self,
        request: ChatRequest,
        on_event: EventCallback,
        fallback_credential_ids: Sequence[str] = (),
    ) -> str: ...


class ToolSet(Protocol):
    """Tools enabled for one turn."""

    @property
    def names(self) -> List[str]: ...

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        """OpenAI-format function tool definitions."""
        ...

    async def invoke(self, name: str, arguments: Dict[str, Any]) -> str: ...


# Called with the session and the turn being executed.
ToolFactory = Callable[[Session, TurnRequest], ToolSet]


class ToolAgent(Protocol):
    """Tool-augmented execution: the model may call tools in a loop."""

    async def run(self, request: ChatRequest, tools: ToolSet, on_event: EventCallback) -> str: ...


InboundHandler = Callable[[InboundMessage], Awaitable[Any]]


class PlatformAdapter(Protocol):
    """One external messaging platform.

    ``start`` returns once the listener is up (or pairing has begun); the
    returned instance's ``stop`` tears it down.  Adapters that keep pairing
    state on disk implement ``clear_pairing``.
    """

    platform: str
    requires_token: bool

    async def start(
        self,
        connector: Connector,
        token: Optional[str],
        on_message: InboundHandler,
    ) -> ConnectorInstance: ...

    def clear_pairing(self, connector: Connector) -> None: ...
