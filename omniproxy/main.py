from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable

from fastapi import FastAPI, Request
from fastapi.responses import Response

from omniproxy.accounts import AccountRegistry
from omniproxy.adapters.base import InboundRequest
from omniproxy.catalog import ModelCatalog
from omniproxy.dispatcher import Dispatcher, GatewayResponse
from omniproxy.providers import Provider
from omniproxy.settings import get_settings
from omniproxy.store import AccountStore

DISCONNECT_POLL_SECONDS = 0.25
CLIENT_CLOSED_REQUEST = 499

app = FastAPI(
    title="OmniProxy",
    description="OpenAI-compatible gateway over Codex, Claude and Gemini subscription accounts.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


def _build_models_response(registry: AccountRegistry, catalog: ModelCatalog) -> dict[str, Any]:
    data: list[dict[str, Any]] = []
    for provider in Provider:
        if registry.count(provider) == 0:
            continue
        for model in catalog.models_for(provider):
            data.append({"id": model.name, "object": "model", "owned_by": "omniproxy"})
    return {"object": "list", "data": data}


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = AccountStore(settings.resolved_accounts_path).load_registry()
    catalog = ModelCatalog.load(settings.resolved_models_path)
    app.state.settings = settings
    app.state.registry = registry
    app.state.model_catalog = catalog
    app.state.dispatcher = Dispatcher(registry, settings)
    logger.info(
        "startup complete accounts=%d codex=%d claude=%d gemini=%d",
        len(registry.snapshot()),
        registry.count(Provider.CODEX),
        registry.count(Provider.CLAUDE),
        registry.count(Provider.GEMINI),
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher: Dispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()
    logger.info("shutdown complete")


async def _run_until_disconnect(
    request: Request, work: Awaitable[GatewayResponse]
) -> GatewayResponse | None:
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("client_disconnected path=%s", request.url.path)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                return None
    finally:
        if not task.done():
            task.cancel()


async def _dispatch_request(request: Request, path: str) -> Response:
    dispatcher: Dispatcher = app.state.dispatcher
    inbound = InboundRequest(
        method=request.method,
        path=path,
        headers=list(request.headers.items()),
        body=await request.body(),
    )
    result = await _run_until_disconnect(request, dispatcher.handle(inbound))
    if result is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    response = Response(content=result.body, status_code=result.status_code)
    for name, value in result.headers:
        response.headers.append(name, value)
    return response


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
@app.get("/models")
async def models() -> dict[str, Any]:
    return _build_models_response(app.state.registry, app.state.model_catalog)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _dispatch_request(request, "/v1/chat/completions")


@app.post("/chat/completions")
async def chat_completions_unversioned(request: Request) -> Response:
    return await _dispatch_request(request, "/chat/completions")


@app.post("/v1/{subpath:path}")
async def v1_passthrough(subpath: str, request: Request) -> Response:
    return await _dispatch_request(request, f"/v1/{subpath}")


def run(host: str | None = None, port: int | None = None) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "omniproxy.main:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level,
        reload=False,
    )


if __name__ == "__main__":
    run()
