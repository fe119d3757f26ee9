from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import httpx

from omniproxy.accounts import AccountRegistry
from omniproxy.adapters.base import InboundRequest, ProviderAdapter
from omniproxy.adapters.registry import build_adapters
from omniproxy.classifier import classify_model
from omniproxy.errors import (
    ClientRequestError,
    GatewayError,
    NoAccountAvailableError,
    UpstreamTransportError,
)
from omniproxy.providers import Provider
from omniproxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GatewayResponse:
    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    @classmethod
    def from_error(cls, exc: GatewayError) -> GatewayResponse:
        return cls(
            status_code=exc.status_code,
            headers=[("content-type", "application/json")],
            body=json.dumps(exc.payload()).encode("utf-8"),
        )


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
            read=max(0.1, settings.upstream_read_timeout_seconds),
            write=max(0.1, settings.upstream_write_timeout_seconds),
            pool=max(0.1, settings.upstream_pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
    )


def _extract_model(body: bytes) -> str:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise ClientRequestError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ClientRequestError("Request body must be a JSON object.")
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise ClientRequestError("Request body must include a non-empty 'model' string.")
    return model


class Dispatcher:
    """Routes each gateway request to one account of the model's provider.

    One upstream client is shared by every adapter and closed by ``close``.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.client = client if client is not None else build_http_client(settings)
        self.adapters: dict[Provider, ProviderAdapter] = build_adapters(
            settings, client_getter=lambda: self.client
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def handle(self, request: InboundRequest) -> GatewayResponse:
        try:
            return await self._dispatch(request)
        except GatewayError as exc:
            logger.info(
                "dispatch_rejected path=%s status=%d error=%s",
                request.path,
                exc.status_code,
                exc.message,
            )
            return GatewayResponse.from_error(exc)
        except Exception as exc:
            logger.exception(
                "dispatch_failed path=%s error=%s", request.path, exc.__class__.__name__
            )
            return GatewayResponse.from_error(
                UpstreamTransportError(f"Upstream request failed: {exc.__class__.__name__}")
            )

    async def _dispatch(self, request: InboundRequest) -> GatewayResponse:
        model = _extract_model(request.body)
        provider = classify_model(model)
        logger.info(
            "dispatch_start path=%s model=%s provider=%s",
            request.path,
            model,
            provider.value if provider is not None else "-",
        )
        if provider is None:
            raise ClientRequestError(f"Unknown model: {model}")

        account = self.registry.select(provider)
        if account is None:
            raise NoAccountAvailableError(
                f"No valid {provider.value} account available for model {model}"
            )
        logger.info(
            "dispatch_routed model=%s provider=%s account=%s",
            model,
            provider.value,
            account.name,
        )

        reply = await self.adapters[provider].forward(account, request)
        return GatewayResponse(
            status_code=reply.status_code,
            headers=reply.headers,
            body=reply.body,
        )
