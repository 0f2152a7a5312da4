"""Configuration schema. Every section has defaults; an empty JSON file is a valid config."""

from __future__ import annotations

import re
from typing import Optional

from platformdirs import user_data_dir
from pydantic import BaseModel, Field, model_validator

from .constants import (
    BRIDGE_RECONNECT_DELAY_S,
    BRIDGE_RELOGIN_DELAY_S,
    CONNECTOR_LOCK_WAIT_S,
    CONNECTOR_START_TIMEOUT_S,
    HEARTBEAT_DEFAULT_INTERVAL_S,
    HEARTBEAT_DEFAULT_PROMPT,
    HEARTBEAT_MAX_INTERVAL_S,
    HEARTBEAT_TICK_S,
    HISTORY_LIMIT,
    MAX_RECENT_RUNS,
    PROVIDER_DEFAULT_TIMEOUT_S,
    TOOL_MAX_STEPS,
)

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class RunQueueConfig(BaseModel):
    """Run queue limits."""
    max_recent_runs: int = Field(MAX_RECENT_RUNS, ge=1, description="Run records kept in the history ring.")
    default_max_runtime_s: Optional[float] = Field(
        None,
        gt=0,
        description=(
            "Abort any run still going after this many seconds. "
            "Callers can pass their own max_runtime_ms per run; None means no limit."
        ),
    )


class ConnectorsConfig(BaseModel):
    """Connector lifecycle timings."""
    auto_start: bool = Field(True, description="Start every enabled connector when the orchestrator starts.")
    lock_wait_s: float = Field(
        CONNECTOR_LOCK_WAIT_S,
        gt=0,
        description="Wait this long for a pending start/stop on the same connector, then abandon it.",
    )
    start_timeout_s: float = Field(CONNECTOR_START_TIMEOUT_S, gt=0, description="Overall budget for one start.")
    reconnect_delay_s: float = Field(BRIDGE_RECONNECT_DELAY_S, ge=0)
    relogin_delay_s: float = Field(BRIDGE_RELOGIN_DELAY_S, ge=0)


class ProvidersConfig(BaseModel):
    timeout_s: float = Field(
        PROVIDER_DEFAULT_TIMEOUT_S,
        gt=0,
        description="HTTP read timeout for one streaming call. Large local models may need 300s or more.",
    )
    tool_max_steps: int = Field(TOOL_MAX_STEPS, ge=1, description="Model/tool round trips per turn.")
    history_limit: int = Field(HISTORY_LIMIT, ge=0, description="Prior messages sent with each turn.")


class HeartbeatConfig(BaseModel):
    """Periodic internal check-ins for sessions with tools.

    ``active_start``/``active_end`` bound the daily window (``HH:MM``, in
    ``timezone``) during which heartbeats fire.  A window whose end is before
    its start wraps past midnight.
    """
    enabled: bool = Field(False, description="Master switch for the heartbeat loop.")
    tick_s: float = Field(HEARTBEAT_TICK_S, gt=0)
    interval_s: int = Field(
        HEARTBEAT_DEFAULT_INTERVAL_S,
        ge=0,
        le=HEARTBEAT_MAX_INTERVAL_S,
        description="Default seconds between heartbeats; 0 disables. Agents and sessions may override.",
    )
    prompt: str = Field(HEARTBEAT_DEFAULT_PROMPT)
    active_start: Optional[str] = Field(None, description="e.g. '08:00'")
    active_end: Optional[str] = Field(None, description="e.g. '22:00'")
    timezone: Optional[str] = Field(None, description="IANA zone name; local time when unset.")

    @model_validator(mode="after")
    def _check_window(self) -> "HeartbeatConfig":
        for name in ("active_start", "active_end"):
            value = getattr(self, name)
            if value is not None and not _HHMM_RE.match(value):
                raise ValueError(f"HeartbeatConfig.{name} must be HH:MM, got {value!r}")
        if (self.active_start is None) != (self.active_end is None):
            raise ValueError("HeartbeatConfig: set both active_start and active_end, or neither.")
        return self


class ForcedToolsConfig(BaseModel):
    enabled: bool = Field(
        True,
        description=(
            "After a turn, invoke tools the user explicitly named but the model never called. "
            "Arguments are extracted heuristically from the message text."
        ),
    )


class TelemetryConfig(BaseModel):
    """OpenTelemetry tracing."""
    enabled: bool = False
    service_name: str = "agent-relay"
    exporter: str = Field("none", description="'none' | 'console' | 'otlp'")
    otlp_endpoint: str = Field("", description="Required when exporter='otlp', e.g. http://localhost:4317")


class RelayConfig(BaseModel):
    """Root configuration."""
    data_dir: str = Field(
        default_factory=lambda: user_data_dir("agent-relay"),
        description="Where sessions, agents, connectors, credentials and pairing state are stored.",
    )
    user_prompt: str = Field("", description="Platform-wide preface prepended to every system prompt.")
    runs: RunQueueConfig = Field(default_factory=RunQueueConfig)
    connectors: ConnectorsConfig = Field(default_factory=ConnectorsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    forced_tools: ForcedToolsConfig = Field(default_factory=ForcedToolsConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @model_validator(mode="after")
    def _check_telemetry(self) -> "RelayConfig":
        if self.telemetry.enabled and self.telemetry.exporter == "otlp" and not self.telemetry.otlp_endpoint:
            raise ValueError("telemetry.exporter='otlp' requires telemetry.otlp_endpoint.")
        return self


DEFAULT_CONFIG = RelayConfig()
