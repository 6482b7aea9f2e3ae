from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import httpx
from starlette.datastructures import Headers

TARGET_ID_HEADER = "x-target-id"
TARGET_URL_HEADER = "x-target-url"

RESERVED_REQUEST_HEADERS = {
    "host",
    TARGET_ID_HEADER,
    TARGET_URL_HEADER,
    "authorization",
}

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def _header_items(headers: Any) -> Iterable[tuple[str, str]]:
    if isinstance(headers, httpx.Headers):
        return headers.multi_items()
    if isinstance(headers, Headers):
        # Starlette keeps repeated headers as separate items.
        return headers.items()
    if isinstance(headers, Mapping):
        return headers.items()
    return headers


def filter_request_headers(headers: Any) -> list[tuple[str, str]]:
    """Drop proxy control headers and caller credentials, keep the rest in order."""
    return [
        (name, value)
        for name, value in _header_items(headers)
        if name.lower() not in RESERVED_REQUEST_HEADERS
    ]


def filter_response_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    filtered: list[tuple[bytes, bytes]] = []
    for name, value in headers.raw:
        if name.decode("latin-1").lower() in HOP_BY_HOP_RESPONSE_HEADERS:
            continue
        filtered.append((name.lower(), value))
    return filtered
