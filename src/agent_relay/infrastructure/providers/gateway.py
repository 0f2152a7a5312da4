"""Provider gateway: one streaming contract over every backend, with credential failover.

``ProviderGateway.stream_chat`` looks up the session's provider, calls its
backend and normalises every failure into ``ProviderError`` (status code
preserved) or ``RunCancelledError`` (abort observed).

``stream_chat_with_failover`` tries the session's primary credential and then
each fallback credential in order.  An attempt's events are buffered and only
re-emitted when the attempt succeeds, so the caller never sees half a reply
from a credential that was abandoned.  Retryable failures (see
``domain.errors.is_retryable``) emit a sideband ``meta`` event::

    {"kind": "meta", "failover": {"from": "<credential id>", "to": "<next id>", "reason": "..."}}

Non-retryable failures and the last credential's failure propagate.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S
from agent_relay.domain import (
    ChatRequest,
    EventCallback,
    NotFoundError,
    ProviderError,
    ProviderInfo,
    RunCancelledError,
    StreamEvent,
    ValidationError,
    classify_exception,
    meta_event,
)
from agent_relay.application.ports import CredentialResolver, ProviderCatalog
from agent_relay.infrastructure.telemetry import get_tracer

from . import build_streamer

logger = logging.getLogger(__name__)

StreamerFactory = Callable[[ProviderInfo], Any]


class ProviderGateway:
    """Args:
        catalog: Provider lookup (``ProviderRegistry``).
        credentials: Decrypts fallback credentials by id.
        streamer_factory: Builds a backend for a provider; defaults to ``build_streamer``.
        timeout_s: HTTP read timeout passed to the default factory.
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialResolver,
        streamer_factory: Optional[StreamerFactory] = None,
        timeout_s: float = PROVIDER_DEFAULT_TIMEOUT_S,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._factory = streamer_factory or (lambda info: build_streamer(info, timeout_s=timeout_s))
        self._streamers: Dict[str, Any] = {}

    def _streamer(self, info: ProviderInfo) -> Any:
        streamer = self._streamers.get(info.id)
        if streamer is None:
            streamer = self._factory(info)
            self._streamers[info.id] = streamer
        return streamer

    async def stream_chat(self, request: ChatRequest, on_event: EventCallback) -> str:
        info = self._catalog.get(request.session.provider)
        streamer = self._streamer(info)
        tracer = get_tracer()
        with tracer.start_as_current_span("relay.provider_call") as span:
            span.set_attribute("provider", info.id)
            span.set_attribute("model", request.session.model or "")
            span.set_attribute("session_id", request.session.id)
            if request.signal is not None:
                request.signal.raise_if_aborted()
            try:
                return await streamer.stream_chat(request, on_event)
            except (RunCancelledError, ProviderError):
                raise
            except Exception as exc:
                if request.signal is not None and request.signal.aborted:
                    raise RunCancelledError(request.signal.reason or "Cancelled") from exc
                raise classify_exception(exc) from exc

    async def stream_chat_with_failover(
        self,
        request: ChatRequest,
        on_event: EventCallback,
        fallback_credential_ids: Sequence[str] = (),
    ) -> str:
        primary = request.session.credential_id
        credential_ids: List[str] = []
        for credential_id in [primary, *fallback_credential_ids]:
            if credential_id and credential_id not in credential_ids:
                credential_ids.append(credential_id)

        if len(credential_ids) <= 1:
            return await self.stream_chat(request, on_event)

        last_error: Optional[ProviderError] = None
        for index, credential_id in enumerate(credential_ids):
            if credential_id == primary:
                api_key = request.api_key
            else:
                try:
                    api_key = self._credentials.decrypt(credential_id)
                except (NotFoundError, ValidationError) as exc:
                    logger.warning("Skipping fallback credential %s: %s", credential_id, exc)
                    continue

            buffered: List[StreamEvent] = []
            try:
                text = await self.stream_chat(dataclasses.replace(request, api_key=api_key), buffered.append)
            except ProviderError as exc:
                last_error = exc
                is_last = index == len(credential_ids) - 1
                if not exc.retryable or is_last:
                    raise
                next_id = credential_ids[index + 1]
                logger.info(
                    "Provider failover: provider=%s from=%s to=%s reason=%s",
                    request.session.provider, credential_id, next_id, exc,
                )
                on_event(meta_event(failover={"from": credential_id, "to": next_id, "reason": str(exc)}))
                continue

            for event in buffered:
                on_event(event)
            return text

        raise last_error or ProviderError("No usable credential for this session", retryable=False)
