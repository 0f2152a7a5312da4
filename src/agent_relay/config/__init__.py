"""Configuration: schema, loading from env/file, and shared constants."""

from .schema import (
    DEFAULT_CONFIG,
    ConnectorsConfig,
    ForcedToolsConfig,
    HeartbeatConfig,
    ProvidersConfig,
    RelayConfig,
    RunQueueConfig,
    TelemetryConfig,
)
from .loader import credential_secret, load_config

get_config = load_config  # alias

__all__ = [
    "DEFAULT_CONFIG", "RelayConfig", "RunQueueConfig", "ConnectorsConfig",
    "ProvidersConfig", "HeartbeatConfig", "ForcedToolsConfig", "TelemetryConfig",
    "load_config", "get_config", "credential_secret",
]
