from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response

from target_proxy.config import TargetConfig
from target_proxy.config.settings import get_settings
from target_proxy.gateway.audit import JsonlAuditLogger
from target_proxy.gateway.errors import ProxyError, TargetNotFoundError
from target_proxy.gateway.proxy import TargetProxy
from target_proxy.registry import TargetRegistry

logger = logging.getLogger("uvicorn.error")

PROXY_PREFIX = "/proxy/"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@asynccontextmanager
async def lifespan(app_obj: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    registry = TargetRegistry.from_path(settings.resolved_targets_path)
    audit_logger = JsonlAuditLogger(
        path=settings.proxy_audit_log_path,
        enabled=settings.proxy_audit_log_enabled,
    )
    target_proxy = TargetProxy(
        registry.resolve,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
        token_timeout_seconds=settings.oauth_token_timeout_seconds,
        token_expiry_margin_seconds=settings.oauth_expiry_margin_seconds,
        token_single_flight=settings.oauth_single_flight,
        audit_hook=audit_logger.log if audit_logger.enabled else None,
    )
    registry.add_listener(target_proxy.token_cache.invalidate)

    app_obj.state.settings = settings
    app_obj.state.registry = registry
    app_obj.state.audit_logger = audit_logger
    app_obj.state.target_proxy = target_proxy
    logger.info(
        "startup complete targets_path=%s targets=%d audit_log_enabled=%s "
        "oauth_single_flight=%s",
        settings.resolved_targets_path,
        len(registry.list_targets()),
        audit_logger.enabled,
        settings.oauth_single_flight,
    )
    try:
        yield
    finally:
        await target_proxy.close()
        audit_logger.close()
        logger.info("shutdown complete")


app = FastAPI(
    title="Target Proxy",
    description="Local reverse proxy that injects per-target credentials.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ProxyError)
async def proxy_error_handler(_: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


def _raw_proxy_path(request: Request, decoded_path: str) -> str:
    raw_path = request.scope.get("raw_path")
    if isinstance(raw_path, bytes) and raw_path:
        text = raw_path.decode("latin-1").split("?", 1)[0]
        _, separator, suffix = text.partition(PROXY_PREFIX)
        if separator:
            return suffix
    return decoded_path


def _raw_query(request: Request) -> str | None:
    query_string = request.scope.get("query_string") or b""
    if not query_string:
        return None
    return query_string.decode("latin-1")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/targets")
async def list_targets() -> list[dict[str, Any]]:
    registry: TargetRegistry = app.state.registry
    return [target.to_public_record() for target in registry.list_targets()]


@app.get("/targets/{target_id}")
async def get_target(target_id: str) -> JSONResponse:
    registry: TargetRegistry = app.state.registry
    target = registry.resolve(target_id)
    if target is None:
        raise TargetNotFoundError(f"Unknown target '{target_id}'.")
    return JSONResponse(content=target.to_record())


@app.post("/targets", status_code=status.HTTP_201_CREATED)
async def add_target(target: TargetConfig) -> JSONResponse:
    registry: TargetRegistry = app.state.registry
    stored = registry.add(target)
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=stored.to_record())


@app.put("/targets")
async def update_target(target: TargetConfig) -> JSONResponse:
    registry: TargetRegistry = app.state.registry
    stored = registry.update(target)
    return JSONResponse(content=stored.to_record())


@app.delete("/targets/{target_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_target(target_id: str) -> Response:
    registry: TargetRegistry = app.state.registry
    registry.delete(target_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.api_route("/proxy/{path:path}", methods=PROXY_METHODS)
async def proxy(path: str, request: Request) -> Response:
    target_proxy: TargetProxy = app.state.target_proxy
    body = await request.body()
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    return await target_proxy.forward(
        method=request.method,
        path=_raw_proxy_path(request, path),
        raw_query=_raw_query(request),
        headers=request.headers,
        body=body,
        request_id=request_id,
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "target_proxy.main:app",
        host=settings.proxy_host,
        port=settings.proxy_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
