"""Tests for infrastructure/telemetry.py.

Real spans are captured with InMemorySpanExporter so no OTLP endpoint is
needed.  The module's provider global is reset around every test.
"""
from __future__ import annotations

import pytest
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from agent_relay.config import RelayConfig
from agent_relay.infrastructure import telemetry
from agent_relay.infrastructure.telemetry import get_tracer, reset_for_testing, setup_telemetry, shutdown_telemetry


@pytest.fixture(autouse=True)
def _fresh_provider():
    reset_for_testing()
    yield
    reset_for_testing()


def test_disabled_telemetry_installs_nothing():
    setup_telemetry(RelayConfig())
    assert telemetry._provider is None
    with get_tracer().start_as_current_span("relay.noop") as span:
        span.set_attribute("key", "value")
    shutdown_telemetry()


def test_enabled_telemetry_records_spans():
    setup_telemetry(RelayConfig.model_validate({"telemetry": {"enabled": True, "exporter": "none"}}))
    exporter = InMemorySpanExporter()
    telemetry._provider.add_span_processor(SimpleSpanProcessor(exporter))

    with get_tracer().start_as_current_span("relay.turn") as span:
        span.set_attribute("relay.session_id", "s1")

    [finished] = exporter.get_finished_spans()
    assert finished.name == "relay.turn"
    assert finished.attributes["relay.session_id"] == "s1"
    assert finished.resource.attributes["service.name"] == "agent-relay"


def test_setup_is_idempotent():
    config = RelayConfig.model_validate({"telemetry": {"enabled": True, "exporter": "none"}})
    setup_telemetry(config)
    first = telemetry._provider
    setup_telemetry(config)
    assert telemetry._provider is first
