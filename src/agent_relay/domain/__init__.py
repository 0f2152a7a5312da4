"""Domain layer: entities, value objects and errors. No I/O."""

from .abort import AbortSignal
from .errors import (
    NotFoundError,
    OperationTimeoutError,
    ProviderError,
    RelayError,
    RunCancelledError,
    ValidationError,
    classify_exception,
    is_retryable,
)
from .models import (
    Agent,
    ChatMessage,
    Connector,
    ConnectorInstance,
    ConnectorStatus,
    DeliveryReceipt,
    Credential,
    EventCallback,
    InboundMessage,
    RunMode,
    RunRecord,
    RunStatus,
    Session,
    Skill,
    Task,
    TaskStatus,
    StreamEvent,
    ToolEvent,
    TurnRequest,
    TurnResult,
    ChatRequest,
    ProviderInfo,
    LLMResponse,
    ToolCallRequest,
    delta_event,
    execution_key,
    error_event,
    meta_event,
    now_ms,
    replace_event,
    tool_call_event,
    tool_result_event,
)
from .outcome import HeartbeatOk, Outcome, Reply, Suppressed, classify_reply, is_no_message

__all__ = [
    "AbortSignal",
    "NotFoundError",
    "OperationTimeoutError",
    "ProviderError",
    "RelayError",
    "RunCancelledError",
    "ValidationError",
    "classify_exception",
    "is_retryable",
    "Agent",
    "ChatMessage",
    "Connector",
    "ConnectorInstance",
    "ConnectorStatus",
    "DeliveryReceipt",
    "Credential",
    "EventCallback",
    "InboundMessage",
    "RunMode",
    "RunRecord",
    "RunStatus",
    "Session",
    "Skill",
    "Task",
    "TaskStatus",
    "StreamEvent",
    "ToolEvent",
    "TurnRequest",
    "TurnResult",
    "ChatRequest",
    "ProviderInfo",
    "LLMResponse",
    "ToolCallRequest",
    "delta_event",
    "execution_key",
    "error_event",
    "meta_event",
    "now_ms",
    "replace_event",
    "tool_call_event",
    "tool_result_event",
    "HeartbeatOk",
    "Outcome",
    "Reply",
    "Suppressed",
    "classify_reply",
    "is_no_message",
]
