from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from typing import Any, Callable

import httpx
import yaml
from fastapi.testclient import TestClient

from target_proxy.config.settings import get_settings
from target_proxy.main import app


class ChunkedBody(httpx.AsyncByteStream):
    """Async upstream body that yields ``chunks`` one by one and records close."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self.chunks = list(chunks)
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def write_targets_file(path: Path, targets: list[dict[str, Any]]) -> Path:
    path.write_text(yaml.safe_dump({"targets": targets}, sort_keys=False), encoding="utf-8")
    return path


def build_test_client(
    monkeypatch: Any,
    tmp_path: Path,
    targets: list[dict[str, Any]] | None = None,
    **env: Any,
) -> TestClient:
    targets_path = write_targets_file(tmp_path / "targets.yaml", targets or [])
    monkeypatch.setenv("TARGETS_PATH", str(targets_path))
    monkeypatch.setenv("PROXY_AUDIT_LOG_ENABLED", "false")
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


def install_upstream(
    handler: Callable[[httpx.Request], Any],
) -> None:
    """Route every outbound call of the running app through ``handler``.

    ``httpx.Response(content=...)`` is read eagerly, so its body is replayed
    through a ``ChunkedBody`` the proxy can stream with ``aiter_raw``.
    """

    async def replay(request: httpx.Request) -> httpx.Response:
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        if not response.is_stream_consumed:
            return response
        return httpx.Response(
            response.status_code,
            headers=response.headers.raw,
            stream=ChunkedBody([response.content]),
        )

    app.state.target_proxy.client = httpx.AsyncClient(
        transport=httpx.MockTransport(replay)
    )
