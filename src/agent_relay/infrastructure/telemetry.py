"""OpenTelemetry tracing for agent-relay.

``get_tracer()`` always returns an OTEL tracer.  Until ``setup_telemetry`` has
installed an SDK tracer provider the API's default provider is in effect and
spans are no-ops, so application code never checks whether tracing is on.

Usage in application code::

    from agent_relay.infrastructure.telemetry import get_tracer

    with get_tracer().start_as_current_span("relay.my_operation") as span:
        span.set_attribute("key", "value")
        ...

Configuration (``RelayConfig.telemetry``)::

    telemetry:
        enabled: true
        exporter: console      # "none" | "console" | "otlp"
        service_name: my-app   # shown in traces
        otlp_endpoint: ""      # required when exporter="otlp"
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

if TYPE_CHECKING:
    from agent_relay.config import RelayConfig

logger = logging.getLogger(__name__)

_TRACER_NAME = "agent_relay"

_provider: Any = None  # our TracerProvider once initialised


def setup_telemetry(config: "RelayConfig") -> None:
    """Install a tracer provider from ``config.telemetry``.

    Safe to call multiple times; later calls are no-ops once a provider is
    installed.  Disabled telemetry leaves the default no-op provider.
    """
    global _provider  # noqa: PLW0603

    if _provider is not None:
        return

    tel_cfg = config.telemetry
    if not tel_cfg.enabled:
        logger.debug("Telemetry disabled; spans are no-ops")
        return

    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: tel_cfg.service_name}))

    if tel_cfg.exporter == "console":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("Telemetry: console exporter configured (service=%s)", tel_cfg.service_name)
    elif tel_cfg.exporter == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(
                "OTLP exporter requested but 'opentelemetry-exporter-otlp-proto-grpc' is not installed. "
                "Install with: pip install 'agent-relay[otlp]'"
            )
        else:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=tel_cfg.otlp_endpoint)))
            logger.info(
                "Telemetry: OTLP exporter configured (endpoint=%s service=%s)",
                tel_cfg.otlp_endpoint, tel_cfg.service_name,
            )
    elif tel_cfg.exporter != "none":
        logger.warning("Unknown telemetry exporter %r; no spans will be exported", tel_cfg.exporter)

    trace.set_tracer_provider(provider)
    _provider = provider


def get_tracer() -> Any:
    if _provider is not None:
        return _provider.get_tracer(_TRACER_NAME)
    return trace.get_tracer(_TRACER_NAME)


def shutdown_telemetry() -> None:
    """Flush pending spans. Called from the HTTP API lifespan."""
    if _provider is not None:
        _provider.shutdown()


def reset_for_testing() -> None:
    """Forget the installed provider. Not for production use."""
    global _provider  # noqa: PLW0603
    _provider = None
