"""Platform adapters, registered by platform name.

``PLATFORM_ADAPTERS`` maps a platform to a builder taking the config; the
connector manager only ever looks adapters up in the resulting table.
"""

from __future__ import annotations

from typing import Callable, Dict

from agent_relay.config import RelayConfig
from agent_relay.application.ports import PlatformAdapter

from .bridge import WhatsAppBridgeAdapter, classify_disconnect
from .discord import DiscordAdapter
from .slack import SlackAdapter
from .telegram import TelegramAdapter

PLATFORM_ADAPTERS: Dict[str, Callable[[RelayConfig], PlatformAdapter]] = {
    "telegram": lambda config: TelegramAdapter(),
    "slack": lambda config: SlackAdapter(),
    "discord": lambda config: DiscordAdapter(),
    "whatsapp": lambda config: WhatsAppBridgeAdapter(
        config.data_dir,
        reconnect_delay_s=config.connectors.reconnect_delay_s,
        relogin_delay_s=config.connectors.relogin_delay_s,
    ),
}


def build_platform_adapters(config: RelayConfig) -> Dict[str, PlatformAdapter]:
    return {platform: build(config) for platform, build in PLATFORM_ADAPTERS.items()}


__all__ = [
    "PLATFORM_ADAPTERS",
    "DiscordAdapter",
    "SlackAdapter",
    "TelegramAdapter",
    "WhatsAppBridgeAdapter",
    "build_platform_adapters",
    "classify_disconnect",
]
