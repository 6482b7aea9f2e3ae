from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from target_proxy.gateway.errors import TokenFetchError

logger = logging.getLogger("uvicorn.error")

DEFAULT_EXPIRY_MARGIN_SECONDS = 15.0


@dataclass(slots=True, frozen=True)
class CachedToken:
    authorization: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


def compute_expires_at(
    fetched_at: float,
    expires_in_seconds: int,
    margin_seconds: float = DEFAULT_EXPIRY_MARGIN_SECONDS,
) -> float:
    lifetime_ms = max(expires_in_seconds * 1000 - int(margin_seconds * 1000), 0)
    return fetched_at + lifetime_ms / 1000.0


def _parse_expires_in(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


class OAuthTokenCache:
    """Client-credentials tokens memoized per target id.

    The entry map is guarded by a lock held only to read or replace an entry,
    never across the network fetch. With ``single_flight`` enabled, concurrent
    misses for one target await the same in-flight fetch task and share its
    result or its ``TokenFetchError``; the task is forgotten once it finishes
    so the next miss starts fresh.

    ``invalidate`` bumps a per-target generation. A fetch that started before
    the bump still answers its own callers but never writes its token back.
    """

    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        expiry_margin_seconds: float = DEFAULT_EXPIRY_MARGIN_SECONDS,
        fetch_timeout_seconds: float | None = None,
        single_flight: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_getter = client_getter
        self._expiry_margin_seconds = max(0.0, float(expiry_margin_seconds))
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._single_flight = single_flight
        self._clock = clock
        self._entries: dict[str, CachedToken] = {}
        self._generations: dict[str, int] = {}
        self._entries_lock = threading.Lock()
        self._inflight: dict[str, asyncio.Task[str]] = {}

    def lookup(self, target_id: str) -> CachedToken | None:
        with self._entries_lock:
            return self._entries.get(target_id)

    def invalidate(self, target_id: str) -> None:
        with self._entries_lock:
            removed = self._entries.pop(target_id, None)
            self._generations[target_id] = self._generations.get(target_id, 0) + 1
        # Later misses must not join a fetch made with the old credentials.
        self._inflight.pop(target_id, None)
        if removed is not None:
            logger.info("oauth_token_invalidated target_id=%s", target_id)

    def snapshot(self) -> dict[str, float]:
        now = self._clock()
        with self._entries_lock:
            return {
                target_id: round(max(0.0, entry.expires_at - now), 3)
                for target_id, entry in self._entries.items()
            }

    def _valid_authorization(self, target_id: str) -> str | None:
        entry = self.lookup(target_id)
        if entry is not None and entry.is_valid(self._clock()):
            return entry.authorization
        return None

    async def get_authorization(
        self,
        target_id: str,
        client_id: str,
        client_secret: str,
        token_url: str,
    ) -> str:
        cached = self._valid_authorization(target_id)
        if cached is not None:
            return cached

        with self._entries_lock:
            generation = self._generations.get(target_id, 0)
        if not self._single_flight:
            return await self._fetch_and_store(
                target_id, client_id, client_secret, token_url, generation
            )

        task = self._inflight.get(target_id)
        if task is None or task.done():
            task = asyncio.create_task(
                self._fetch_and_store(
                    target_id, client_id, client_secret, token_url, generation
                ),
                name=f"oauth-token-fetch-{target_id}",
            )
            self._inflight[target_id] = task
            task.add_done_callback(
                lambda finished, key=target_id: self._forget_inflight(key, finished)
            )
        # One cancelled caller must not cancel the fetch for the others.
        return await asyncio.shield(task)

    def _forget_inflight(self, target_id: str, task: asyncio.Task[str]) -> None:
        if self._inflight.get(target_id) is task:
            del self._inflight[target_id]

    async def _fetch_and_store(
        self,
        target_id: str,
        client_id: str,
        client_secret: str,
        token_url: str,
        generation: int,
    ) -> str:
        logger.info(
            "oauth_token_fetch_start target_id=%s client_id=%s token_url=%s",
            target_id,
            client_id,
            token_url,
        )
        payload = {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "client_credentials",
        }
        request_kwargs: dict[str, Any] = {}
        if self._fetch_timeout_seconds is not None:
            request_kwargs["timeout"] = self._fetch_timeout_seconds
        try:
            response = await self._client_getter().post(
                token_url,
                data=payload,
                headers={"Accept": "application/json"},
                **request_kwargs,
            )
        except httpx.RequestError as exc:
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=request_error "
                "error_type=%s is_timeout=%s",
                target_id,
                exc.__class__.__name__,
                isinstance(exc, httpx.TimeoutException),
            )
            raise TokenFetchError("Could not obtain an OAuth token.") from exc
        except httpx.InvalidURL as exc:
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=invalid_token_url error=%s",
                target_id,
                exc,
            )
            raise TokenFetchError("Could not obtain an OAuth token.") from exc

        if not response.is_success:
            logger.warning(
                "oauth_token_fetch_error target_id=%s status=%d",
                target_id,
                response.status_code,
            )
            raise TokenFetchError(
                f"Token endpoint responded with status {response.status_code}."
            )

        try:
            body = response.json()
        except ValueError as exc:
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=invalid_json", target_id
            )
            raise TokenFetchError("Token endpoint returned invalid JSON.") from exc

        if not isinstance(body, dict):
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=invalid_body", target_id
            )
            raise TokenFetchError("Token endpoint returned an unexpected body.")

        access_token = body.get("access_token")
        token_type = body.get("token_type")
        expires_in = _parse_expires_in(body.get("expires_in"))
        if not isinstance(access_token, str) or not access_token:
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=missing_access_token",
                target_id,
            )
            raise TokenFetchError("Token response is missing access_token.")
        if not isinstance(token_type, str) or not token_type:
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=missing_token_type",
                target_id,
            )
            raise TokenFetchError("Token response is missing token_type.")
        if expires_in is None:
            logger.warning(
                "oauth_token_fetch_error target_id=%s reason=invalid_expires_in",
                target_id,
            )
            raise TokenFetchError("Token response is missing expires_in.")

        entry = CachedToken(
            authorization=f"{token_type} {access_token}",
            expires_at=compute_expires_at(
                self._clock(), expires_in, self._expiry_margin_seconds
            ),
        )
        with self._entries_lock:
            stored = self._generations.get(target_id, 0) == generation
            if stored:
                self._entries[target_id] = entry
        if not stored:
            logger.info(
                "oauth_token_discarded target_id=%s reason=invalidated_during_fetch",
                target_id,
            )
            return entry.authorization
        logger.info(
            "oauth_token_fetch_success target_id=%s expires_in=%d",
            target_id,
            expires_in,
        )
        return entry.authorization
