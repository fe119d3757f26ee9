from __future__ import annotations

import asyncio
import json

import httpx

from gateway_test_utils import make_account
from omniproxy.accounts import AccountRegistry
from omniproxy.adapters.base import InboundRequest
from omniproxy.dispatcher import Dispatcher
from omniproxy.providers import Provider
from omniproxy.settings import Settings


def _request(body: bytes, path: str = "/v1/chat/completions") -> InboundRequest:
    return InboundRequest(
        method="POST",
        path=path,
        headers=[("content-type", "application/json")],
        body=body,
    )


def _dispatch(registry: AccountRegistry, request: InboundRequest, handler=None):
    def _default_handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or _default_handler))
    dispatcher = Dispatcher(registry, Settings(), client=client)

    async def _run():
        try:
            return await dispatcher.handle(request)
        finally:
            await dispatcher.close()

    return asyncio.run(_run())


def test_invalid_json_body_is_rejected_with_400():
    response = _dispatch(AccountRegistry(), _request(b"{not json"))
    assert response.status_code == 400
    assert "Invalid JSON body" in json.loads(response.body)["error"]


def test_non_object_body_is_rejected_with_400():
    response = _dispatch(AccountRegistry(), _request(b"[1, 2]"))
    assert response.status_code == 400


def test_missing_or_empty_model_is_rejected_with_400():
    for body in (b"{}", b'{"model": ""}', b'{"model": 5}'):
        response = _dispatch(AccountRegistry(), _request(body))
        assert response.status_code == 400
        assert "model" in json.loads(response.body)["error"]


def test_unknown_model_is_rejected_with_400_naming_it():
    response = _dispatch(AccountRegistry(), _request(b'{"model": "unknown-model-xyz"}'))
    assert response.status_code == 400
    assert json.loads(response.body) == {"error": "Unknown model: unknown-model-xyz"}


def test_missing_accounts_yield_503_naming_provider():
    registry = AccountRegistry([make_account(Provider.CLAUDE, "c")])
    response = _dispatch(registry, _request(b'{"model": "gpt-4o", "messages": []}'))
    assert response.status_code == 503
    assert "codex" in json.loads(response.body)["error"]
    assert ("content-type", "application/json") in response.headers


def test_requests_rotate_across_accounts():
    registry = AccountRegistry(
        [
            make_account(Provider.CODEX, "a", token="tok-a"),
            make_account(Provider.CODEX, "b", token="tok-b"),
        ]
    )
    tokens: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        tokens.append(request.headers["authorization"])
        return httpx.Response(200, json={"ok": True})

    body = b'{"model": "gpt-4o", "messages": []}'
    for _ in range(4):
        assert _dispatch(registry, _request(body), handler).status_code == 200
    assert tokens == ["Bearer tok-a", "Bearer tok-b", "Bearer tok-a", "Bearer tok-b"]


def test_transport_failure_maps_to_502():
    registry = AccountRegistry([make_account(Provider.CODEX, "a")])

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    response = _dispatch(registry, _request(b'{"model": "gpt-4o"}'), handler)
    assert response.status_code == 502
    assert "timed out" in json.loads(response.body)["error"]


def test_upstream_error_status_is_relayed_not_retried():
    registry = AccountRegistry(
        [make_account(Provider.CODEX, "a"), make_account(Provider.CODEX, "b")]
    )
    calls = {"count": 0}

    def handler(_request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500, content=b"upstream exploded")

    response = _dispatch(registry, _request(b'{"model": "gpt-4o"}'), handler)
    assert response.status_code == 500
    assert response.body == b"upstream exploded"
    assert calls["count"] == 1


def test_unexpected_adapter_failure_maps_to_502_json():
    registry = AccountRegistry([make_account(Provider.CODEX, "a")])

    def handler(_request: httpx.Request) -> httpx.Response:
        raise RuntimeError("boom")

    response = _dispatch(registry, _request(b'{"model": "gpt-4o"}'), handler)
    assert response.status_code == 502
    assert ("content-type", "application/json") in response.headers
    assert "RuntimeError" in json.loads(response.body)["error"]
