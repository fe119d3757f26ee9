from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from gateway_test_utils import make_account
from omniproxy.adapters.base import InboundRequest, message_text, strip_version_prefix
from omniproxy.adapters.claude import ClaudeAdapter
from omniproxy.adapters.codex import CodexAdapter
from omniproxy.adapters.gemini import GeminiAdapter, resolve_gemini_model
from omniproxy.errors import UpstreamTransportError
from omniproxy.providers import Provider


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _chat_request(payload: dict, headers: list[tuple[str, str]] | None = None) -> InboundRequest:
    return InboundRequest(
        method="POST",
        path="/v1/chat/completions",
        headers=headers or [("content-type", "application/json")],
        body=json.dumps(payload).encode("utf-8"),
    )


def _forward(adapter_cls, handler, account, request, base_url="https://upstream.test/v1"):
    client = _client(handler)
    adapter = adapter_cls(base_url=base_url, client_getter=lambda: client)

    async def _run():
        try:
            return await adapter.forward(account, request)
        finally:
            await client.aclose()

    return asyncio.run(_run())


def test_claude_request_translation_maps_roles_and_system():
    adapter = ClaudeAdapter(base_url="https://api.anthropic.com/v1", client_getter=lambda: None)
    native = adapter.translate_request(
        {
            "model": "claude-3-5-sonnet-20241022",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "system", "content": "Answer in English."},
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello"},
                {"role": "tool", "content": "result"},
            ],
            "temperature": 0.2,
        }
    )
    assert native["system"] == "Be brief.\n\nAnswer in English."
    assert [m["role"] for m in native["messages"]] == ["user", "assistant", "user"]
    assert native["messages"][0]["content"] == "Hi"
    assert native["max_tokens"] == 4096
    assert native["temperature"] == 0.2
    assert "stream" not in native


def test_gemini_request_translation_builds_contents_and_config():
    adapter = GeminiAdapter(base_url="https://g.test/v1beta", client_getter=lambda: None)
    native = adapter.translate_request(
        {
            "model": "gemini-1.5-pro",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": [{"type": "text", "text": "Hi"}]},
                {"role": "assistant", "content": "Hello"},
            ],
            "max_tokens": 128,
        }
    )
    assert native["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert native["contents"] == [
        {"role": "user", "parts": [{"text": "Hi"}]},
        {"role": "model", "parts": [{"text": "Hello"}]},
    ]
    assert native["generationConfig"] == {"maxOutputTokens": 128}


def test_gemini_request_without_limits_has_no_generation_config():
    adapter = GeminiAdapter(base_url="https://g.test/v1beta", client_getter=lambda: None)
    native = adapter.translate_request(
        {"model": "gemini-2.0-flash", "messages": [{"role": "user", "content": "Hi"}]}
    )
    assert "generationConfig" not in native
    assert "systemInstruction" not in native


@pytest.mark.parametrize(
    ("requested", "resolved"),
    [
        ("gemini-1.5-flash", "gemini-1.5-flash"),
        ("flash", "gemini-2.0-flash"),
        ("some-pro", "gemini-1.5-pro"),
        ("anything", "gemini-2.0-flash"),
    ],
)
def test_resolve_gemini_model(requested, resolved):
    assert resolve_gemini_model(requested) == resolved


def test_helpers_flatten_content_and_strip_version():
    assert message_text([{"type": "text", "text": "a"}, {"type": "image_url"}, "b"]) == "a\nb"
    assert message_text(None) == ""
    assert strip_version_prefix("/v1/embeddings") == "/embeddings"
    assert strip_version_prefix("/v1beta/x") == "/v1beta/x"


def test_codex_forward_relays_body_and_sets_bearer():
    seen: dict = {}
    body = {"model": "gpt-4o", "messages": [{"role": "user", "content": "Hi"}]}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(200, json={"id": "chatcmpl-1", "choices": []})

    request = _chat_request(
        body,
        headers=[
            ("content-type", "application/json"),
            ("authorization", "Bearer caller-secret"),
            ("host", "localhost:8000"),
            ("x-request-id", "req-1"),
        ],
    )
    reply = _forward(CodexAdapter, handler, make_account(Provider.CODEX, "a", token="tok-a"), request)

    assert seen["url"] == "https://upstream.test/v1/chat/completions"
    assert seen["headers"]["authorization"] == "Bearer tok-a"
    assert seen["headers"]["x-request-id"] == "req-1"
    assert seen["headers"]["host"] == "upstream.test"
    assert seen["body"] == request.body
    assert reply.status_code == 200
    assert json.loads(reply.body) == {"id": "chatcmpl-1", "choices": []}


def test_claude_forward_uses_api_key_headers_and_translates_reply():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "msg_1",
                "model": "claude-3-5-sonnet-20241022",
                "content": [{"type": "text", "text": "Hello there"}],
                "usage": {"input_tokens": 7, "output_tokens": 3},
            },
        )

    request = _chat_request(
        {
            "model": "claude-3-5-sonnet-20241022",
            "messages": [{"role": "user", "content": "Hi"}],
        },
        headers=[("content-type", "application/json"), ("x-api-key", "caller-key")],
    )
    reply = _forward(ClaudeAdapter, handler, make_account(Provider.CLAUDE, "c", token="tok-c"), request)

    assert seen["url"] == "https://upstream.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "tok-c"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert "authorization" not in seen["headers"]
    assert seen["body"]["max_tokens"] == 4096

    payload = json.loads(reply.body)
    assert payload["id"] == "chatcmpl-msg_1"
    assert payload["object"] == "chat.completion"
    assert payload["model"] == "claude-3-5-sonnet-20241022"
    assert payload["choices"][0]["message"] == {"role": "assistant", "content": "Hello there"}
    assert payload["choices"][0]["finish_reason"] == "stop"
    assert payload["usage"] == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}


def test_gemini_forward_targets_model_url_and_echoes_requested_model():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Hi!"}]}}],
                "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
            },
        )

    request = _chat_request(
        {"model": "gemini-1.5-pro", "messages": [{"role": "user", "content": "Hi"}]}
    )
    reply = _forward(
        GeminiAdapter,
        handler,
        make_account(Provider.GEMINI, "g", token="tok-g"),
        request,
        base_url="https://g.test/v1beta",
    )

    assert seen["url"] == "https://g.test/v1beta/models/gemini-1.5-pro:generateContent"
    assert seen["headers"]["authorization"] == "Bearer tok-g"
    payload = json.loads(reply.body)
    assert payload["id"].startswith("chatcmpl-")
    assert payload["model"] == "gemini-1.5-pro"
    assert payload["choices"][0]["message"]["content"] == "Hi!"
    assert payload["usage"]["total_tokens"] == 6


def test_gemini_reply_without_candidates_yields_empty_content():
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    request = _chat_request(
        {"model": "gemini-2.0-flash", "messages": [{"role": "user", "content": "Hi"}]}
    )
    reply = _forward(GeminiAdapter, handler, make_account(Provider.GEMINI, "g"), request)
    payload = json.loads(reply.body)
    assert payload["choices"][0]["message"]["content"] == ""
    assert payload["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def test_non_success_status_is_relayed_verbatim():
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            content=b'{"type":"error","error":{"type":"rate_limit_error"}}',
            headers={"content-type": "application/json", "retry-after": "30"},
        )

    request = _chat_request(
        {"model": "claude-3-opus-20240229", "messages": [{"role": "user", "content": "Hi"}]}
    )
    reply = _forward(ClaudeAdapter, handler, make_account(Provider.CLAUDE, "c"), request)
    assert reply.status_code == 429
    assert reply.body == b'{"type":"error","error":{"type":"rate_limit_error"}}'
    assert dict(reply.headers)["retry-after"] == "30"


def test_malformed_success_body_is_relayed_raw():
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"not json at all")

    request = _chat_request(
        {"model": "claude-3-opus-20240229", "messages": [{"role": "user", "content": "Hi"}]}
    )
    reply = _forward(ClaudeAdapter, handler, make_account(Provider.CLAUDE, "c"), request)
    assert reply.status_code == 200
    assert reply.body == b"not json at all"


def test_passthrough_path_forwards_raw_body_without_translation():
    seen: dict = {}
    raw = b'{"model": "claude-3-5-haiku-20241022", "prompt": "x"}'

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, content=b'{"native": true}')

    request = InboundRequest(
        method="POST",
        path="/v1/messages/count_tokens",
        headers=[("content-type", "application/json")],
        body=raw,
    )
    reply = _forward(ClaudeAdapter, handler, make_account(Provider.CLAUDE, "c"), request)
    assert seen["url"] == "https://upstream.test/v1/messages/count_tokens"
    assert seen["body"] == raw
    assert reply.body == b'{"native": true}'


def test_transport_failure_raises_upstream_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    request = _chat_request({"model": "gpt-4o", "messages": []})
    with pytest.raises(UpstreamTransportError, match="connection refused") as exc_info:
        _forward(CodexAdapter, handler, make_account(Provider.CODEX, "a"), request)
    assert exc_info.value.status_code == 502


def test_claude_request_keeps_zero_max_tokens_and_empty_null_content():
    adapter = ClaudeAdapter(base_url="https://api.anthropic.com/v1", client_getter=lambda: None)
    native = adapter.translate_request(
        {
            "model": "claude-3-5-sonnet-20241022",
            "messages": [{"role": "assistant", "content": None}],
            "max_tokens": 0,
        }
    )
    assert native["max_tokens"] == 0
    assert native["messages"] == [{"role": "assistant", "content": ""}]


def test_non_ascii_inbound_header_reaches_upstream_as_original_bytes():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["raw"] = dict(request.headers.raw)
        return httpx.Response(200, json={"ok": True})

    request = _chat_request(
        {"model": "gpt-4o", "messages": []},
        headers=[
            ("content-type", "application/json"),
            ("x-title", "café".encode("utf-8").decode("latin-1")),
        ],
    )
    reply = _forward(CodexAdapter, handler, make_account(Provider.CODEX, "a"), request)
    assert reply.status_code == 200
    assert seen["raw"][b"x-title"] == b"caf\xc3\xa9"


def test_repeated_response_headers_are_all_kept():
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers=[("set-cookie", "a=1"), ("set-cookie", "b=2")],
            json={"ok": True},
        )

    request = _chat_request({"model": "gpt-4o", "messages": []})
    reply = _forward(CodexAdapter, handler, make_account(Provider.CODEX, "a"), request)
    assert [value for name, value in reply.headers if name == "set-cookie"] == ["a=1", "b=2"]
