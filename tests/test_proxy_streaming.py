import asyncio
from collections.abc import AsyncIterator

import httpx
import pytest
from starlette.datastructures import Headers

from target_proxy.config import TargetConfig
from target_proxy.gateway.errors import UpstreamGatewayError
from target_proxy.gateway.proxy import TargetProxy


class _RecordingBody(httpx.AsyncByteStream):
    def __init__(
        self,
        chunks: list[bytes],
        events: list[str],
        error: Exception | None = None,
    ) -> None:
        self._chunks = chunks
        self._events = events
        self._error = error

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self._chunks):
            self._events.append(f"produced-{index}")
            yield chunk
        if self._error is not None:
            raise self._error
        self._events.append("producer-done")

    async def aclose(self) -> None:
        self._events.append("closed")


def _proxy(target: dict, handler) -> TargetProxy:
    config = TargetConfig.model_validate(target)
    proxy = TargetProxy(lambda target_id: config if target_id == config.id else None)
    proxy.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return proxy


async def _forward(proxy: TargetProxy, path: str = "blob"):
    return await proxy.forward(
        method="GET",
        path=path,
        raw_query=None,
        headers=Headers(headers={"x-target-id": "svc1"}),
        body=b"",
    )


def test_body_chunks_reach_the_caller_before_upstream_finishes():
    events: list[str] = []
    upstream_body = _RecordingBody([b"first", b"second", b"third"], events)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=upstream_body)

    async def scenario() -> None:
        proxy = _proxy({"id": "svc1", "host": "internal.example"}, handler)
        response = await _forward(proxy)
        async for chunk in response.body_iterator:
            events.append(f"received-{chunk.decode('ascii')}")
        await proxy.close()

    asyncio.run(scenario())

    assert events == [
        "produced-0",
        "received-first",
        "produced-1",
        "received-second",
        "produced-2",
        "received-third",
        "producer-done",
        "closed",
    ]


def test_mid_stream_upstream_failure_ends_body_and_closes_upstream():
    events: list[str] = []
    upstream_body = _RecordingBody(
        [b"first"], events, error=httpx.ReadError("connection reset")
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=upstream_body)

    async def scenario() -> list[bytes]:
        proxy = _proxy({"id": "svc1", "host": "internal.example"}, handler)
        response = await _forward(proxy)
        chunks = [chunk async for chunk in response.body_iterator]
        await proxy.close()
        return chunks

    chunks = asyncio.run(scenario())

    assert chunks == [b"first"]
    assert events == ["produced-0", "closed"]


def test_non_numeric_target_port_is_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    async def scenario() -> None:
        proxy = _proxy({"id": "svc1", "host": "internal.example", "port": "abc"}, handler)
        try:
            await _forward(proxy)
        finally:
            await proxy.close()

    with pytest.raises(UpstreamGatewayError):
        asyncio.run(scenario())
