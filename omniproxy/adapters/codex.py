from __future__ import annotations

from typing import Any

from omniproxy.adapters.base import ProviderAdapter
from omniproxy.providers import Provider


class CodexAdapter(ProviderAdapter):
    """OpenAI speaks the canonical format already; bodies pass through untouched."""

    provider = Provider.CODEX
    rewrites_body = False

    def chat_url(self, payload: dict[str, Any]) -> str:
        return f"{self.base_url}/chat/completions"

    def translate_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload

    def translate_response(
        self, native: dict[str, Any], request_payload: dict[str, Any]
    ) -> dict[str, Any]:
        return native
