from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from puter_gateway.auth import extract_request_credentials
from puter_gateway.errors import GatewayError
from puter_gateway.executor import ChatExecutor
from puter_gateway.images import ImageExecutor
from puter_gateway.key_pool import KeyPool
from puter_gateway.model_router import ModelRouter
from puter_gateway.settings import get_settings
from puter_gateway.stores import JsonlUsageLog, RedisPoolStore, build_stores
from puter_gateway.upstream import UpstreamClient

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-API-Key, X-Puter-Token"

app = FastAPI(
    title="Puter Gateway",
    description="OpenAI-compatible gateway over Puter driver calls with credential rotation.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


def _cors_headers() -> dict[str, str]:
    settings = getattr(app.state, "settings", None) or get_settings()
    return {
        "Access-Control-Allow-Origin": settings.cors_allow_origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }


@app.middleware("http")
async def cors_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=_cors_headers())
    response = await call_next(request)
    for name, value in _cors_headers().items():
        response.headers.setdefault(name, value)
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    stores = build_stores(settings, logger=logger)
    key_pool = KeyPool(
        pool_store=stores.pool,
        short_block_seconds=settings.short_block_seconds,
    )
    upstream = UpstreamClient.from_settings(settings)
    router = ModelRouter()
    app.state.settings = settings
    app.state.stores = stores
    app.state.key_pool = key_pool
    app.state.upstream = upstream
    app.state.model_router = router
    app.state.chat_executor = ChatExecutor(
        settings=settings,
        stores=stores,
        key_pool=key_pool,
        upstream=upstream,
        router=router,
    )
    app.state.image_executor = ImageExecutor(
        settings=settings,
        stores=stores,
        key_pool=key_pool,
        upstream=upstream,
        router=router,
    )
    logger.info(
        (
            "startup complete store_backend=%s store_path=%s pool_store=%s "
            "usage_log_enabled=%s fallback_credential=%s"
        ),
        settings.store_backend,
        settings.store_path,
        type(stores.pool).__name__,
        settings.usage_log_enabled,
        bool(settings.fallback_credentials),
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    chat_executor: ChatExecutor | None = getattr(app.state, "chat_executor", None)
    if chat_executor is not None:
        await chat_executor.drain()
    image_executor: ImageExecutor | None = getattr(app.state, "image_executor", None)
    if image_executor is not None:
        await image_executor.drain()
    upstream: UpstreamClient | None = getattr(app.state, "upstream", None)
    if upstream is not None:
        await upstream.close()
    stores = getattr(app.state, "stores", None)
    if stores is not None:
        if isinstance(stores.usage, JsonlUsageLog):
            stores.usage.close()
        if isinstance(stores.pool, RedisPoolStore):
            await stores.pool.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    key_pool: KeyPool | None = getattr(app.state, "key_pool", None)
    return {
        "status": "ok",
        "key_pool": key_pool.snapshot() if key_pool is not None else None,
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    router: ModelRouter = app.state.model_router
    return {"object": "list", "data": router.available_chat_models()}


@app.get("/v1/images/generations")
async def image_models() -> dict[str, Any]:
    router: ModelRouter = app.state.model_router
    aliases = router.available_image_models()
    return {
        "models": [alias["id"] for alias in aliases],
        "aliases": aliases,
        "total": len(aliases),
        "note": "Use any model ID directly, or use aliases like nano-banana, flux-schnell, etc.",
    }


async def _json_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
        raise HTTPException(
            status_code=400, detail=f"Expected JSON body: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400, detail="Expected a JSON object request body."
        )
    return payload


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    credentials = extract_request_credentials(request.headers)
    executor: ChatExecutor = app.state.chat_executor
    if not credentials.direct_token:
        executor.require_api_key(credentials.api_key)
    payload = await _json_payload(request)
    return await executor.execute(
        payload,
        api_key=credentials.api_key,
        direct_token=credentials.direct_token,
        request_id=_request_id(request),
    )


@app.post("/v1/images/generations")
async def image_generations(request: Request) -> Response:
    credentials = extract_request_credentials(request.headers)
    executor: ImageExecutor = app.state.image_executor
    executor.require_api_key(credentials.api_key)
    payload = await _json_payload(request)
    return await executor.execute(
        payload,
        api_key=credentials.api_key,
        request_id=_request_id(request),
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return exc.to_response()


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    error = GatewayError(exc.status_code, str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=error.to_payload(),
        headers=getattr(exc, "headers", None),
    )


def run() -> None:
    import uvicorn

    uvicorn.run("puter_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
