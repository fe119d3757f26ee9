from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

import httpx

from omniproxy.accounts import Account
from omniproxy.errors import UpstreamTransportError
from omniproxy.providers import Provider

CHAT_COMPLETIONS_PATHS = frozenset(
    {"/v1/chat/completions", "/chat/completions", "chat/completions"}
)
DROPPED_REQUEST_HEADERS = {
    "host",
    "authorization",
    "content-length",
    "connection",
    "transfer-encoding",
}
DROPPED_RESPONSE_HEADERS = {
    "transfer-encoding",
    "content-length",
    # httpx hands us the decoded body.
    "content-encoding",
}

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class InboundRequest:
    method: str
    path: str
    # Values are latin-1 decoded, the way the ASGI server hands them over.
    headers: list[tuple[str, str]]
    body: bytes


@dataclass(slots=True)
class UpstreamReply:
    status_code: int
    headers: list[tuple[str, str]]
    body: bytes


@dataclass(slots=True)
class UpstreamRequestSpec:
    url: str
    body: bytes
    translated: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


def is_chat_completions_path(path: str) -> bool:
    return path in CHAT_COMPLETIONS_PATHS


def strip_version_prefix(path: str) -> str:
    if path == "/v1" or path.startswith("/v1/"):
        return path[len("/v1") :] or "/"
    return path


def message_text(content: Any) -> str:
    """Flatten OpenAI message content (string or list of parts) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
        return "\n".join(chunks)
    return str(content)


def as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def chat_completion(
    *,
    completion_id: str,
    model: str,
    content: str,
    prompt_tokens: int,
    completion_tokens: int,
) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def new_completion_id() -> str:
    return f"chatcmpl-{uuid4()}"


def _filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (name.decode("latin-1"), value.decode("latin-1"))
        for name, value in headers.raw
        if name.decode("latin-1").lower() not in DROPPED_RESPONSE_HEADERS
    ]


def _request_error_message(exc: httpx.RequestError) -> str:
    message = str(exc).strip() or repr(exc)
    return f"{exc.__class__.__name__}: {message}"


class ProviderAdapter:
    """Forwards one gateway request to a provider on behalf of an account.

    Subclasses describe the provider's chat wire format and auth headers.
    Header copying and pass-through of other paths live here.
    """

    provider: Provider
    rewrites_body = True

    def __init__(
        self,
        *,
        base_url: str,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client_getter = client_getter

    def auth_headers(self, account: Account) -> dict[str, str]:
        return {"Authorization": f"Bearer {account.credentials.access_token}"}

    def chat_url(self, payload: dict[str, Any]) -> str:
        raise NotImplementedError

    def translate_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def translate_response(
        self, native: dict[str, Any], request_payload: dict[str, Any]
    ) -> dict[str, Any]:
        raise NotImplementedError

    def prepare(self, request: InboundRequest) -> UpstreamRequestSpec:
        if not is_chat_completions_path(request.path):
            return UpstreamRequestSpec(
                url=f"{self.base_url}{strip_version_prefix(request.path)}",
                body=request.body,
            )
        payload = json.loads(request.body)
        if not isinstance(payload, dict):
            raise ValueError("Expected a JSON object request body.")
        if not self.rewrites_body:
            return UpstreamRequestSpec(url=self.chat_url(payload), body=request.body)
        native = self.translate_request(payload)
        return UpstreamRequestSpec(
            url=self.chat_url(payload),
            body=json.dumps(native, ensure_ascii=False).encode("utf-8"),
            translated=True,
            payload=payload,
        )

    def build_headers(
        self, account: Account, request: InboundRequest
    ) -> list[tuple[str, bytes]]:
        auth = self.auth_headers(account)
        replaced = DROPPED_REQUEST_HEADERS | {"content-type"} | {name.lower() for name in auth}
        headers = [
            (name, value.encode("latin-1"))
            for name, value in request.headers
            if name.lower() not in replaced
        ]
        headers.append(("Content-Type", b"application/json"))
        headers.extend((name, value.encode("latin-1")) for name, value in auth.items())
        return headers

    async def forward(self, account: Account, request: InboundRequest) -> UpstreamReply:
        spec = self.prepare(request)
        headers = self.build_headers(account, request)
        started = time.perf_counter()
        try:
            upstream = await self._client_getter().request(
                request.method,
                spec.url,
                content=spec.body,
                headers=headers,
            )
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_request_error provider=%s account=%s url=%s error=%s",
                self.provider.value,
                account.name,
                spec.url,
                _request_error_message(exc),
            )
            raise UpstreamTransportError(_request_error_message(exc)) from exc

        logger.info(
            "upstream_response provider=%s account=%s status=%d latency_ms=%.2f translated=%s",
            self.provider.value,
            account.name,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
            spec.translated,
        )
        response_headers = _filter_response_headers(upstream.headers)
        body = upstream.content
        if not upstream.is_success or not spec.translated:
            return UpstreamReply(upstream.status_code, response_headers, body)

        converted = self._convert_body(body, spec.payload)
        if converted is None:
            return UpstreamReply(upstream.status_code, response_headers, body)
        response_headers = [
            (name, value) for name, value in response_headers if name.lower() != "content-type"
        ]
        response_headers.append(("content-type", "application/json"))
        return UpstreamReply(upstream.status_code, response_headers, converted)

    def _convert_body(self, body: bytes, payload: dict[str, Any]) -> bytes | None:
        try:
            native = json.loads(body)
        except ValueError:
            logger.info(
                "upstream_body_not_json provider=%s bytes=%d", self.provider.value, len(body)
            )
            return None
        if not isinstance(native, dict):
            return None
        canonical = self.translate_response(native, payload)
        return json.dumps(canonical, ensure_ascii=False).encode("utf-8")
