"""Provider table and backend factory.

``PROVIDERS`` is the single registry of model backends: one ``ProviderInfo``
per provider id, and ``build_streamer`` maps its ``kind`` onto a concrete
``stream_chat`` implementation.
"""

from __future__ import annotations

from typing import Dict, List

from agent_relay.config.constants import PROVIDER_DEFAULT_TIMEOUT_S
from agent_relay.domain import NotFoundError, ProviderInfo


def _openai(id: str, name: str, endpoint: str, *, requires_key: bool = True) -> ProviderInfo:
    return ProviderInfo(
        id=id,
        name=name,
        kind="openai",
        requires_api_key=requires_key,
        optional_api_key=not requires_key,
        default_endpoint=endpoint,
        openai_base_url=endpoint,
    )


PROVIDERS: Dict[str, ProviderInfo] = {
    p.id: p
    for p in [
        ProviderInfo("claude-cli", "Claude Code CLI", "cli", optional_api_key=True),
        ProviderInfo("codex-cli", "OpenAI Codex CLI", "cli", optional_api_key=True),
        ProviderInfo("opencode-cli", "OpenCode CLI", "cli"),
        _openai("openai", "OpenAI", "https://api.openai.com/v1"),
        _openai("google", "Google Gemini", "https://generativelanguage.googleapis.com/v1beta/openai"),
        _openai("deepseek", "DeepSeek", "https://api.deepseek.com/v1"),
        _openai("groq", "Groq", "https://api.groq.com/openai/v1"),
        _openai("together", "Together AI", "https://api.together.xyz/v1"),
        _openai("mistral", "Mistral AI", "https://api.mistral.ai/v1"),
        _openai("xai", "xAI (Grok)", "https://api.x.ai/v1"),
        _openai("fireworks", "Fireworks AI", "https://api.fireworks.ai/inference/v1"),
        _openai("openclaw", "OpenClaw", "http://localhost:18789/v1", requires_key=False),
        ProviderInfo(
            "anthropic", "Anthropic", "anthropic",
            requires_api_key=True,
            default_endpoint="https://api.anthropic.com",
            openai_base_url="https://api.anthropic.com/v1",
        ),
        ProviderInfo(
            "ollama", "Ollama", "ollama",
            optional_api_key=True,
            default_endpoint="http://localhost:11434",
            openai_base_url="http://localhost:11434/v1",
        ),
    ]
}


class ProviderRegistry:
    """Lookup over ``PROVIDERS`` (or a custom table in tests)."""

    def __init__(self, providers: Dict[str, ProviderInfo] = PROVIDERS) -> None:
        self._providers = providers

    def get(self, provider_id: str) -> ProviderInfo:
        info = self._providers.get(provider_id)
        if info is None:
            raise NotFoundError(f"Unknown provider: {provider_id}")
        return info

    def all(self) -> List[ProviderInfo]:
        return list(self._providers.values())


def build_streamer(info: ProviderInfo, timeout_s: float = PROVIDER_DEFAULT_TIMEOUT_S):
    """Return the backend implementing ``stream_chat`` for *info*.

    Raises:
        ValueError: For unknown provider kinds.
    """
    if info.kind == "openai":
        from .openai_compat import OpenAICompatStreamer
        return OpenAICompatStreamer(info, timeout_s=timeout_s)
    if info.kind == "anthropic":
        from .anthropic import AnthropicStreamer
        return AnthropicStreamer(info, timeout_s=timeout_s)
    if info.kind == "ollama":
        from .ollama import OllamaStreamer
        return OllamaStreamer(info, timeout_s=timeout_s)
    if info.kind == "cli":
        from .cli import CliStreamer
        return CliStreamer(info)
    raise ValueError(
        f"Unknown provider kind {info.kind!r}. Supported kinds: 'openai', 'anthropic', 'ollama', 'cli'."
    )


__all__ = ["PROVIDERS", "ProviderRegistry", "build_streamer"]
