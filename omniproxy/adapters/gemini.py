from __future__ import annotations

from typing import Any
from urllib.parse import quote

from omniproxy.adapters.base import (
    ProviderAdapter,
    as_int,
    chat_completion,
    message_text,
    new_completion_id,
)
from omniproxy.providers import Provider

DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"


def resolve_gemini_model(model: str) -> str:
    lowered = model.lower()
    if "gemini" in lowered:
        return model
    if "flash" in lowered:
        return "gemini-2.0-flash"
    if "pro" in lowered:
        return "gemini-1.5-pro"
    return DEFAULT_GEMINI_MODEL


class GeminiAdapter(ProviderAdapter):
    provider = Provider.GEMINI

    def chat_url(self, payload: dict[str, Any]) -> str:
        model = resolve_gemini_model(str(payload.get("model") or ""))
        return f"{self.base_url}/models/{quote(model, safe='-._')}:generateContent"

    def translate_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        system_parts: list[dict[str, str]] = []
        contents: list[dict[str, Any]] = []
        for message in payload.get("messages") or []:
            if not isinstance(message, dict):
                continue
            text = message_text(message.get("content"))
            role = message.get("role")
            if role == "system":
                system_parts.append({"text": text})
                continue
            contents.append(
                {
                    "role": "model" if role == "assistant" else "user",
                    "parts": [{"text": text}],
                }
            )

        native: dict[str, Any] = {"contents": contents}
        if system_parts:
            native["systemInstruction"] = {"parts": system_parts}

        generation_config: dict[str, Any] = {}
        if payload.get("max_tokens") is not None:
            generation_config["maxOutputTokens"] = payload["max_tokens"]
        if payload.get("temperature") is not None:
            generation_config["temperature"] = payload["temperature"]
        if generation_config:
            native["generationConfig"] = generation_config
        return native

    def translate_response(
        self, native: dict[str, Any], request_payload: dict[str, Any]
    ) -> dict[str, Any]:
        content = ""
        candidates = native.get("candidates")
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            body = candidates[0].get("content")
            parts = body.get("parts") if isinstance(body, dict) else None
            if isinstance(parts, list) and parts and isinstance(parts[0], dict):
                text = parts[0].get("text")
                content = text if isinstance(text, str) else ""

        usage = native.get("usageMetadata")
        if not isinstance(usage, dict):
            usage = {}
        model = request_payload.get("model")
        return chat_completion(
            completion_id=new_completion_id(),
            model=model if isinstance(model, str) else "",
            content=content,
            prompt_tokens=as_int(usage.get("promptTokenCount")),
            completion_tokens=as_int(usage.get("candidatesTokenCount")),
        )
