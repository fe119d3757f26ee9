from __future__ import annotations

from typing import Callable

import httpx

from omniproxy.adapters.base import ProviderAdapter
from omniproxy.adapters.claude import ClaudeAdapter
from omniproxy.adapters.codex import CodexAdapter
from omniproxy.adapters.gemini import GeminiAdapter
from omniproxy.providers import Provider
from omniproxy.settings import Settings

ADAPTER_CLASSES: dict[Provider, type[ProviderAdapter]] = {
    Provider.CODEX: CodexAdapter,
    Provider.CLAUDE: ClaudeAdapter,
    Provider.GEMINI: GeminiAdapter,
}


def base_url_for(provider: Provider, settings: Settings) -> str:
    return {
        Provider.CODEX: settings.codex_base_url,
        Provider.CLAUDE: settings.claude_base_url,
        Provider.GEMINI: settings.gemini_base_url,
    }[provider]


def build_adapters(
    settings: Settings,
    client_getter: Callable[[], httpx.AsyncClient],
) -> dict[Provider, ProviderAdapter]:
    return {
        provider: adapter_class(
            base_url=base_url_for(provider, settings),
            client_getter=client_getter,
        )
        for provider, adapter_class in ADAPTER_CLASSES.items()
    }
