"""Tests for ProviderGateway: error normalisation and credential failover."""
from __future__ import annotations

from typing import List

import httpx
import pytest

from agent_relay.domain import (
    AbortSignal,
    ChatRequest,
    NotFoundError,
    ProviderError,
    RunCancelledError,
    delta_event,
)
from agent_relay.infrastructure.providers import ProviderRegistry
from agent_relay.infrastructure.providers.gateway import ProviderGateway
from tests.conftest import collect_events, make_session


class KeyedStreamer:
    """Fails or answers depending on which API key the request carries."""

    def __init__(self, outcomes) -> None:
        self.outcomes = outcomes
        self.keys: List[str] = []

    async def stream_chat(self, request: ChatRequest, on_event) -> str:
        self.keys.append(request.api_key)
        outcome = self.outcomes[request.api_key]
        if isinstance(outcome, BaseException):
            on_event(delta_event("partial from failed attempt"))
            raise outcome
        on_event(delta_event(outcome))
        return outcome


class FakeVault:
    def __init__(self, keys) -> None:
        self.keys = keys

    def decrypt(self, credential_id: str) -> str:
        if credential_id not in self.keys:
            raise NotFoundError(f"API key not found: {credential_id}")
        return self.keys[credential_id]


def _gateway(streamer, vault=None) -> ProviderGateway:
    return ProviderGateway(ProviderRegistry(), vault or FakeVault({}), streamer_factory=lambda info: streamer)


def _request(credential_id="a", api_key="key-a", **kwargs) -> ChatRequest:
    session = make_session(credential_id=credential_id)
    return ChatRequest(session=session, message="hello", api_key=api_key, **kwargs)


# ---------------------------------------------------------------------------
# stream_chat
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_chat_unknown_provider_raises_not_found():
    gateway = _gateway(KeyedStreamer({}))
    request = ChatRequest(session=make_session(provider="nope"), message="hi")
    with pytest.raises(NotFoundError):
        await gateway.stream_chat(request, lambda e: None)


@pytest.mark.asyncio
async def test_stream_chat_normalises_http_errors():
    class Broken:
        async def stream_chat(self, request, on_event):
            response = httpx.Response(503, request=httpx.Request("POST", "http://x"))
            raise httpx.HTTPStatusError("unavailable", request=response.request, response=response)

    with pytest.raises(ProviderError) as exc:
        await _gateway(Broken()).stream_chat(_request(), lambda e: None)
    assert exc.value.status == 503
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_stream_chat_reports_abort_as_cancelled():
    signal = AbortSignal()

    class Interrupted:
        async def stream_chat(self, request, on_event):
            signal.abort("user stop")
            raise OSError("connection reset")

    with pytest.raises(RunCancelledError) as exc:
        await _gateway(Interrupted()).stream_chat(_request(signal=signal), lambda e: None)
    assert exc.value.reason == "user stop"


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failover_on_rate_limit_uses_next_credential():
    streamer = KeyedStreamer({"key-a": ProviderError("rate limited", status=429), "key-b": "from b"})
    gateway = _gateway(streamer, FakeVault({"b": "key-b"}))
    events, on_event = collect_events()

    text = await gateway.stream_chat_with_failover(_request(), on_event, ["b"])

    assert text == "from b"
    assert streamer.keys == ["key-a", "key-b"]
    failover = [e for e in events if e.kind == "meta"]
    assert failover[0].data["failover"]["from"] == "a"
    assert failover[0].data["failover"]["to"] == "b"
    deltas = [e.data["text"] for e in events if e.kind == "delta"]
    assert deltas == ["from b"]


@pytest.mark.asyncio
async def test_non_retryable_error_does_not_touch_fallback():
    streamer = KeyedStreamer({"key-a": ProviderError("bad request", status=400), "key-b": "from b"})
    gateway = _gateway(streamer, FakeVault({"b": "key-b"}))
    events, on_event = collect_events()

    with pytest.raises(ProviderError) as exc:
        await gateway.stream_chat_with_failover(_request(), on_event, ["b"])
    assert exc.value.status == 400
    assert streamer.keys == ["key-a"]
    assert events == []


@pytest.mark.asyncio
async def test_last_credential_failure_propagates():
    streamer = KeyedStreamer({
        "key-a": ProviderError("server error", status=500),
        "key-b": ProviderError("unauthorized", status=401),
    })
    gateway = _gateway(streamer, FakeVault({"b": "key-b"}))
    with pytest.raises(ProviderError) as exc:
        await gateway.stream_chat_with_failover(_request(), lambda e: None, ["b"])
    assert exc.value.status == 401


@pytest.mark.asyncio
async def test_undecryptable_fallback_is_skipped():
    streamer = KeyedStreamer({
        "key-a": ProviderError("rate limit exceeded", status=429),
        "key-c": "from c",
    })
    gateway = _gateway(streamer, FakeVault({"c": "key-c"}))
    text = await gateway.stream_chat_with_failover(_request(), lambda e: None, ["missing", "c"])
    assert text == "from c"
    assert streamer.keys == ["key-a", "key-c"]


@pytest.mark.asyncio
async def test_single_credential_skips_buffering():
    streamer = KeyedStreamer({"key-a": "direct"})
    events, on_event = collect_events()
    text = await _gateway(streamer).stream_chat_with_failover(_request(), on_event, ["a"])
    assert text == "direct"
    assert [e.kind for e in events] == ["delta"]
