from __future__ import annotations

import base64
import logging

from target_proxy.config import AuthType, TargetConfig
from target_proxy.gateway.token_cache import OAuthTokenCache

logger = logging.getLogger("uvicorn.error")


def basic_authorization(username: str, password: str) -> str | None:
    if not username and not password:
        return None
    credentials = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


def bearer_authorization(token: str) -> str | None:
    if not token:
        return None
    return f"Bearer {token}"


class AuthInjector:
    def __init__(self, token_cache: OAuthTokenCache) -> None:
        self._token_cache = token_cache

    async def resolve_authorization(self, target: TargetConfig) -> str | None:
        """Return the outbound ``Authorization`` value for ``target``, if any.

        Raises ``TokenFetchError`` when an OAuth target's token cannot be
        obtained.
        """
        scheme = target.scheme
        if scheme is AuthType.BASIC:
            return basic_authorization(target.username, target.password)
        if scheme is AuthType.BEARER:
            return bearer_authorization(target.token)
        if scheme is AuthType.OAUTH:
            if not (target.client_id and target.client_secret and target.token_url):
                logger.info(
                    "auth_oauth_incomplete target_id=%s reason=missing_client_credentials",
                    target.id,
                )
                return None
            return await self._token_cache.get_authorization(
                target.id or "",
                target.client_id,
                target.client_secret,
                target.token_url,
            )
        return None
