from __future__ import annotations

from typing import Any

from omniproxy.accounts import Account
from omniproxy.adapters.base import ProviderAdapter, as_int, chat_completion, message_text
from omniproxy.providers import Provider

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class ClaudeAdapter(ProviderAdapter):
    provider = Provider.CLAUDE

    def auth_headers(self, account: Account) -> dict[str, str]:
        return {
            "x-api-key": account.credentials.access_token,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def chat_url(self, payload: dict[str, Any]) -> str:
        return f"{self.base_url}/messages"

    def translate_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        system_parts: list[str] = []
        messages: list[dict[str, Any]] = []
        for message in payload.get("messages") or []:
            if not isinstance(message, dict):
                continue
            role = message.get("role")
            content = message.get("content")
            if role == "system":
                system_parts.append(message_text(content))
                continue
            messages.append(
                {
                    "role": "assistant" if role == "assistant" else "user",
                    "content": content if content is not None else "",
                }
            )

        native: dict[str, Any] = {
            "model": payload.get("model"),
            "messages": messages,
            "max_tokens": (
                payload["max_tokens"]
                if payload.get("max_tokens") is not None
                else DEFAULT_MAX_TOKENS
            ),
        }
        if system_parts:
            native["system"] = "\n\n".join(system_parts)
        if payload.get("temperature") is not None:
            native["temperature"] = payload["temperature"]
        if payload.get("stream") is not None:
            native["stream"] = payload["stream"]
        return native

    def translate_response(
        self, native: dict[str, Any], request_payload: dict[str, Any]
    ) -> dict[str, Any]:
        content = ""
        blocks = native.get("content")
        if isinstance(blocks, list) and blocks:
            first = blocks[0]
            if isinstance(first, dict) and isinstance(first.get("text"), str):
                content = first["text"]

        usage = native.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        model = native.get("model")
        return chat_completion(
            completion_id=f"chatcmpl-{native.get('id') or ''}",
            model=model if isinstance(model, str) else "",
            content=content,
            prompt_tokens=as_int(usage.get("input_tokens")),
            completion_tokens=as_int(usage.get("output_tokens")),
        )
