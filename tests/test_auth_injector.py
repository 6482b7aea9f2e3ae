import asyncio
import base64

import httpx
import pytest

from target_proxy.config import AuthType, TargetConfig
from target_proxy.gateway.auth import AuthInjector
from target_proxy.gateway.errors import TokenFetchError
from target_proxy.gateway.token_cache import OAuthTokenCache


def _injector(handler=None) -> tuple[AuthInjector, httpx.AsyncClient]:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected network call to {request.url}")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or refuse))
    cache = OAuthTokenCache(client_getter=lambda: client)
    return AuthInjector(cache), client


def _resolve(target: TargetConfig, handler=None) -> str | None:
    async def scenario() -> str | None:
        injector, client = _injector(handler)
        async with client:
            return await injector.resolve_authorization(target)

    return asyncio.run(scenario())


def test_auth_type_parse_is_case_insensitive_with_none_fallthrough():
    assert AuthType.parse("basic") is AuthType.BASIC
    assert AuthType.parse("BASIC") is AuthType.BASIC
    assert AuthType.parse("Bearer") is AuthType.BEARER
    assert AuthType.parse("oauth") is AuthType.OAUTH
    assert AuthType.parse("OAuth2") is AuthType.OAUTH
    assert AuthType.parse("none") is AuthType.NONE
    assert AuthType.parse("") is AuthType.NONE
    assert AuthType.parse(None) is AuthType.NONE
    assert AuthType.parse("digest") is AuthType.NONE


def test_basic_auth_uses_standard_padded_base64():
    target = TargetConfig.model_validate(
        {"id": "b", "host": "h", "authType": "basic", "username": "alice", "password": "wonderland"}
    )

    value = _resolve(target)

    assert value == "Basic " + base64.b64encode(b"alice:wonderland").decode("ascii")
    assert value == "Basic YWxpY2U6d29uZGVybGFuZA=="


def test_basic_auth_with_only_username_still_sends_header():
    target = TargetConfig.model_validate(
        {"id": "b", "host": "h", "authType": "Basic", "username": "bob"}
    )

    assert _resolve(target) == "Basic " + base64.b64encode(b"bob:").decode("ascii")


def test_basic_auth_without_credentials_sends_nothing():
    target = TargetConfig.model_validate({"id": "b", "host": "h", "authType": "basic"})

    assert _resolve(target) is None


def test_bearer_auth():
    with_token = TargetConfig.model_validate(
        {"id": "t", "host": "h", "authType": "BEARER", "token": "t1"}
    )
    without_token = TargetConfig.model_validate(
        {"id": "t", "host": "h", "authType": "bearer", "token": ""}
    )

    assert _resolve(with_token) == "Bearer t1"
    assert _resolve(without_token) is None


def test_unrecognized_or_missing_auth_type_sends_nothing():
    unknown = TargetConfig.model_validate(
        {"id": "u", "host": "h", "authType": "kerberos", "token": "t1", "username": "x"}
    )
    missing = TargetConfig.model_validate({"id": "u", "host": "h", "token": "t1"})

    assert _resolve(unknown) is None
    assert _resolve(missing) is None


def test_oauth_with_incomplete_credentials_sends_nothing():
    target = TargetConfig.model_validate(
        {
            "id": "o",
            "host": "h",
            "authType": "oauth2",
            "clientId": "cid",
            "clientSecret": "",
            "tokenUrl": "https://auth.example/token",
        }
    )

    assert _resolve(target) is None


def test_oauth_delegates_to_token_cache():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://auth.example/token"
        return httpx.Response(
            200,
            json={"access_token": "abc", "token_type": "Bearer", "expires_in": 600},
        )

    target = TargetConfig.model_validate(
        {
            "id": "o",
            "host": "h",
            "authType": "oauth",
            "clientId": "cid",
            "clientSecret": "secret",
            "tokenUrl": "https://auth.example/token",
        }
    )

    assert _resolve(target, handler) == "Bearer abc"


def test_oauth_fetch_failure_propagates():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    target = TargetConfig.model_validate(
        {
            "id": "o",
            "host": "h",
            "authType": "oauth",
            "clientId": "cid",
            "clientSecret": "secret",
            "tokenUrl": "https://auth.example/token",
        }
    )

    with pytest.raises(TokenFetchError):
        _resolve(target, handler)
