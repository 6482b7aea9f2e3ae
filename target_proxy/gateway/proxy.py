from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any, Callable
from uuid import uuid4

import httpx
from fastapi.responses import StreamingResponse
from starlette.datastructures import Headers

from target_proxy.config import TargetConfig
from target_proxy.gateway.auth import AuthInjector
from target_proxy.gateway.errors import (
    BadRequestError,
    ProxyError,
    TargetNotFoundError,
    UpstreamGatewayError,
)
from target_proxy.gateway.headers import (
    TARGET_ID_HEADER,
    filter_request_headers,
    filter_response_headers,
)
from target_proxy.gateway.token_cache import OAuthTokenCache
from target_proxy.gateway.urls import build_upstream_url

logger = logging.getLogger("uvicorn.error")

TargetResolver = Callable[[str], TargetConfig | None]
AuditHook = Callable[[dict[str, Any]], None]


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if request is not None:
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


class TargetProxy:
    """Forwards one inbound request to the target named by ``X-Target-Id``."""

    def __init__(
        self,
        resolve_target: TargetResolver,
        *,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 60.0,
        write_timeout_seconds: float = 60.0,
        pool_timeout_seconds: float = 5.0,
        token_timeout_seconds: float | None = 15.0,
        token_expiry_margin_seconds: float = 15.0,
        token_single_flight: bool = True,
        audit_hook: AuditHook | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolve_target = resolve_target
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=max(0.1, float(read_timeout_seconds)),
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            follow_redirects=False,
        )
        self.token_cache = OAuthTokenCache(
            client_getter=lambda: self.client,
            expiry_margin_seconds=token_expiry_margin_seconds,
            fetch_timeout_seconds=token_timeout_seconds,
            single_flight=token_single_flight,
            clock=clock,
        )
        self._auth_injector = AuthInjector(self.token_cache)
        self._audit_hook = audit_hook

    async def close(self) -> None:
        await self.client.aclose()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    def resolve_request_target(self, headers: Headers) -> TargetConfig:
        target_id = (headers.get(TARGET_ID_HEADER) or "").strip()
        if not target_id:
            raise BadRequestError("Missing required X-Target-Id header.")

        target = self._resolve_target(target_id)
        if target is None:
            raise TargetNotFoundError(f"Unknown target '{target_id}'.")
        if not target.host.strip():
            raise BadRequestError(f"Target '{target_id}' has no host configured.")
        return target

    async def forward(
        self,
        *,
        method: str,
        path: str,
        raw_query: str | None,
        headers: Headers,
        body: bytes,
        request_id: str | None = None,
    ) -> StreamingResponse:
        request_id = request_id or uuid4().hex[:12]
        started = time.perf_counter()
        try:
            return await self._forward(
                method=method,
                path=path,
                raw_query=raw_query,
                headers=headers,
                body=body,
                request_id=request_id,
                started=started,
            )
        except ProxyError as exc:
            logger.warning(
                "proxy_error request_id=%s method=%s path=%s status=%d error_type=%s",
                request_id,
                method,
                path,
                exc.status_code,
                exc.error_type,
            )
            self._audit(
                "proxy_error",
                request_id=request_id,
                method=method,
                path=path,
                status=exc.status_code,
                error_type=exc.error_type,
                latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
            )
            raise

    async def _forward(
        self,
        *,
        method: str,
        path: str,
        raw_query: str | None,
        headers: Headers,
        body: bytes,
        request_id: str,
        started: float,
    ) -> StreamingResponse:
        target = self.resolve_request_target(headers)
        url = build_upstream_url(
            target.protocol, target.host, target.port, path, raw_query
        )
        # The buffered body is re-framed by httpx.
        outbound_headers = [
            (name, value)
            for name, value in filter_request_headers(headers)
            if name.lower() != "transfer-encoding"
        ]
        authorization = await self._auth_injector.resolve_authorization(target)
        if authorization is not None:
            outbound_headers.append(("Authorization", authorization))

        logger.info(
            "proxy_forward request_id=%s target_id=%s method=%s url=%s auth=%s",
            request_id,
            target.id,
            method,
            url,
            target.scheme.value,
        )
        self._audit(
            "proxy_request",
            request_id=request_id,
            target_id=target.id,
            target=target.label,
            method=method,
            url=url,
            auth=target.scheme.value,
        )

        try:
            request = self.client.build_request(
                method=method,
                url=url,
                headers=outbound_headers,
                content=body or None,
            )
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s target_id=%s error_type=%s "
                "is_timeout=%s error=%s",
                request_id,
                target.id,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise UpstreamGatewayError(
                f"Could not reach target '{target.id}'."
            ) from exc
        except httpx.InvalidURL as exc:
            logger.warning(
                "proxy_request_error request_id=%s target_id=%s error_type=InvalidURL "
                "url=%s error=%s",
                request_id,
                target.id,
                url,
                exc,
            )
            raise UpstreamGatewayError(
                f"Could not reach target '{target.id}'."
            ) from exc

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_response request_id=%s target_id=%s status=%d latency_ms=%.2f",
            request_id,
            target.id,
            upstream.status_code,
            latency_ms,
        )
        self._audit(
            "proxy_response",
            request_id=request_id,
            target_id=target.id,
            status=upstream.status_code,
            latency_ms=round(latency_ms, 3),
        )
        return self._to_streaming_response(upstream, request_id=request_id)

    @staticmethod
    def _to_streaming_response(
        upstream: httpx.Response, *, request_id: str
    ) -> StreamingResponse:
        async def stream_body() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.RequestError as exc:
                logger.warning(
                    "proxy_upstream_stream_error request_id=%s url=%s error_type=%s",
                    request_id,
                    upstream.request.url,
                    exc.__class__.__name__,
                )
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            content=stream_body(),
            status_code=upstream.status_code,
        )
        response.raw_headers = filter_response_headers(upstream.headers)
        return response
