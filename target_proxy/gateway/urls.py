from __future__ import annotations


def build_upstream_url(
    protocol: str,
    host: str,
    port: str,
    path: str,
    raw_query: str | None,
) -> str:
    """Compose the upstream URL for a proxied request.

    ``path`` and ``raw_query`` are appended exactly as received. A query of
    ``""`` still produces a trailing ``?``; only ``None`` omits it.
    """
    base = f"{protocol}://{host}"
    if port:
        base = f"{base}:{port}"
    base = base.rstrip("/")
    url = f"{base}/{path}"
    if raw_query is not None:
        url = f"{url}?{raw_query}"
    return url
