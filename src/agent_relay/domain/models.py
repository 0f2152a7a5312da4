"""Domain models: runs, sessions, agents, connectors, stream events. Pure data, no I/O."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple


def now_ms() -> int:
    return int(time.time() * 1000)


def _known_fields(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys the dataclass does not declare (older or newer files on disk)."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def execution_key(session_id: str, agent_id: Optional[str] = None) -> str:
    """Runs sharing a key are serialized: the owning agent, else the session."""
    if agent_id:
        return f"agent:{agent_id}"
    return f"session:{session_id}"


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

class RunMode(str, Enum):
    FOLLOWUP = "followup"
    STEER = "steer"
    COLLECT = "collect"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class RunRecord:
    """Externally observable lifecycle of one submitted turn."""
    id: str
    session_id: str
    source: str
    internal: bool
    mode: RunMode
    status: RunStatus
    message_preview: str
    queued_at: int
    dedupe_key: Optional[str] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    error: Optional[str] = None
    result_preview: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["status"] = self.status.value
        return data


# ---------------------------------------------------------------------------
# Sessions, agents, skills, credentials
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    role: str           # "user" | "assistant"
    text: str
    time: int = field(default_factory=now_ms)
    kind: str = "chat"  # "chat" | "heartbeat"
    image_path: Optional[str] = None
    tool_events: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(**_known_fields(cls, data))


@dataclass
class Session:
    """Conversational actor state. Mutated by the turn executor after every turn."""
    id: str
    name: str
    provider: str
    model: str = ""
    credential_id: Optional[str] = None
    fallback_credential_ids: List[str] = field(default_factory=list)
    api_endpoint: Optional[str] = None
    agent_id: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    messages: List[ChatMessage] = field(default_factory=list)
    resume_ids: Dict[str, str] = field(default_factory=dict)
    heartbeat_enabled: Optional[bool] = None
    heartbeat_interval_sec: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    last_active_at: int = field(default_factory=now_ms)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        values = _known_fields(cls, data)
        values["messages"] = [ChatMessage.from_dict(m) for m in data.get("messages") or []]
        return cls(**values)

    @property
    def execution_key(self) -> str:
        return execution_key(self.id, self.agent_id)


@dataclass
class Agent:
    id: str
    name: str
    provider: str
    model: str = ""
    credential_id: Optional[str] = None
    fallback_credential_ids: List[str] = field(default_factory=list)
    api_endpoint: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    soul: str = ""            # persona
    system_prompt: str = ""   # instructions
    skill_ids: List[str] = field(default_factory=list)
    heartbeat_enabled: Optional[bool] = None
    heartbeat_interval_sec: Optional[int] = None
    heartbeat_prompt: Optional[str] = None
    updated_at: int = field(default_factory=now_ms)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agent":
        return cls(**_known_fields(cls, data))

    def new_session(self, session_id: str, name: str) -> Session:
        """A fresh session that inherits this agent's provider settings and tools."""
        return Session(
            id=session_id,
            name=name,
            provider=self.provider,
            model=self.model,
            credential_id=self.credential_id,
            fallback_credential_ids=list(self.fallback_credential_ids),
            api_endpoint=self.api_endpoint,
            agent_id=self.id,
            tools=list(self.tools),
        )


@dataclass
class Skill:
    id: str
    name: str
    content: str = ""
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Skill":
        return cls(**_known_fields(cls, data))


@dataclass
class Credential:
    id: str
    provider: str
    name: str
    encrypted_key: str
    created_at: int = field(default_factory=now_ms)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(**_known_fields(cls, data))


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


@dataclass
class Task:
    """A work item on the board, run by its agent through the task queue."""
    id: str
    title: str
    agent_id: str
    description: str = ""
    status: TaskStatus = TaskStatus.BACKLOG
    session_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    comments: List[Dict[str, Any]] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    queued_at: Optional[int] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    archived_at: Optional[int] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        values = _known_fields(cls, data)
        values["status"] = TaskStatus(values.get("status") or TaskStatus.BACKLOG.value)
        return cls(**values)

    def add_comment(self, author: str, text: str) -> None:
        self.comments.append({"author": author, "text": text, "time": now_ms()})


# ---------------------------------------------------------------------------
# Connectors
# ---------------------------------------------------------------------------

class ConnectorStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass
class Connector:
    """Configuration for one platform bridge."""
    id: str
    name: str
    platform: str
    agent_id: str
    credential_id: Optional[str] = None
    config: Dict[str, str] = field(default_factory=dict)
    is_enabled: bool = False
    status: ConnectorStatus = ConnectorStatus.STOPPED
    last_error: Optional[str] = None
    updated_at: int = field(default_factory=now_ms)
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connector":
        values = _known_fields(cls, data)
        values["status"] = ConnectorStatus(values.get("status") or ConnectorStatus.STOPPED.value)
        return cls(**values)


@dataclass
class InboundMessage:
    """One message from an external platform, already normalised by its adapter."""
    platform: str
    channel_id: str
    sender_id: str
    sender_name: str
    text: str
    channel_name: Optional[str] = None
    image_url: Optional[str] = None
    media: List[str] = field(default_factory=list)
    message_id: Optional[str] = None


@dataclass
class ConnectorInstance:
    """Live handle for a started connector. Never persisted."""
    connector_id: str
    platform: str
    stop: Callable[[], Awaitable[None]]
    send_message: Optional[Callable[..., Awaitable[Optional[str]]]] = None
    pairing_code: Optional[str] = None
    authenticated: bool = False
    has_credentials: bool = False
    started_at: int = field(default_factory=now_ms)
    # Set by the connector manager; receives supervised status changes.
    status_listener: Optional[Callable[[ConnectorStatus, Optional[str]], None]] = None

    def report_status(self, status: ConnectorStatus, error: Optional[str] = None) -> None:
        if self.status_listener is not None:
            self.status_listener(status, error)

    def describe(self) -> Dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "platform": self.platform,
            "can_send": self.send_message is not None,
            "pairing_code": self.pairing_code,
            "authenticated": self.authenticated,
            "has_credentials": self.has_credentials,
            "started_at": self.started_at,
        }


@dataclass
class DeliveryReceipt:
    connector_id: str
    platform: str
    channel_id: str
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Streaming and turn results
# ---------------------------------------------------------------------------

EVENT_KINDS = ("delta", "replace", "tool_call", "tool_result", "error", "meta")


@dataclass
class StreamEvent:
    """One typed token on a turn's event stream.

    ``delta``/``replace``/``error`` carry ``data["text"]``; ``tool_call`` carries
    ``name`` and ``input``; ``tool_result`` carries ``name`` and ``output``;
    ``meta`` carries arbitrary sideband keys (``run``, ``failover``, ``resume``).
    """
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown stream event kind: {self.kind!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, **self.data}


EventCallback = Callable[[StreamEvent], None]


def delta_event(text: str) -> StreamEvent:
    return StreamEvent("delta", {"text": text})


def replace_event(text: str) -> StreamEvent:
    return StreamEvent("replace", {"text": text})


def error_event(text: str) -> StreamEvent:
    return StreamEvent("error", {"text": text})


def meta_event(**data: Any) -> StreamEvent:
    return StreamEvent("meta", dict(data))


def tool_call_event(name: str, tool_input: str) -> StreamEvent:
    return StreamEvent("tool_call", {"name": name, "input": tool_input})


def tool_result_event(name: str, output: str) -> StreamEvent:
    return StreamEvent("tool_result", {"name": name, "output": output})


@dataclass
class ToolEvent:
    name: str
    input: str
    output: Optional[str] = None
    error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TurnRequest:
    """Everything the executor needs for one turn."""
    session_id: str
    message: str
    source: str = "chat"
    internal: bool = False
    image_path: Optional[str] = None
    system_prompt_addendum: Optional[str] = None
    run_id: Optional[str] = None
    # Execution keys of the turns waiting on this one through delegation.
    delegation_chain: Tuple[str, ...] = ()


@dataclass
class TurnResult:
    text: str
    persisted: bool
    tool_events: List[ToolEvent] = field(default_factory=list)
    error: Optional[str] = None
    outcome: Any = None  # domain.outcome.Outcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "persisted": self.persisted,
            "tool_events": [t.to_dict() for t in self.tool_events],
            "error": self.error,
            "outcome": type(self.outcome).__name__ if self.outcome is not None else None,
        }


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderInfo:
    """One entry in the provider table.

    ``kind`` selects the backend implementation: ``openai`` (OpenAI-compatible
    SSE), ``anthropic``, ``ollama`` or ``cli``.  ``openai_base_url`` is the
    chat-completions endpoint used by the tool-augmented path; ``None`` means
    the provider cannot run tools.
    """
    id: str
    name: str
    kind: str
    requires_api_key: bool = False
    optional_api_key: bool = False
    default_endpoint: Optional[str] = None
    openai_base_url: Optional[str] = None

    @property
    def is_cli(self) -> bool:
        return self.kind == "cli"


@dataclass
class ChatRequest:
    """Inputs for one backend call. ``api_key`` is already decrypted."""
    session: Session
    message: str
    api_key: Optional[str] = None
    system_prompt: str = ""
    history: List[ChatMessage] = field(default_factory=list)
    image_path: Optional[str] = None
    signal: Any = None  # domain.abort.AbortSignal


@dataclass
class ToolCallRequest:
    """A single tool call requested by the model in a response."""
    call_id: str        # Opaque ID, used to correlate with tool results in the message history
    tool_name: str
    arguments: Dict[str, Any]


@dataclass
class LLMResponse:
    """Non-streaming chat-completions response used by the tool-augmented path.

    Either the model returns tool calls (``tool_calls`` non-empty, ``content``
    typically empty) or plain text.
    """
    content: Optional[str]
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
