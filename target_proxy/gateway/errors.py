from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    """Terminal failure of a proxied request, rendered as a JSON error body."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "proxy_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_content(self) -> dict[str, dict[str, str]]:
        return {"error": {"type": self.error_type, "message": self.message}}


class BadRequestError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "bad_request"


class TargetNotFoundError(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "target_not_found"


class UpstreamGatewayError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_gateway_error"


class TokenFetchError(UpstreamGatewayError):
    """Raised when the OAuth token endpoint cannot produce a usable token."""
