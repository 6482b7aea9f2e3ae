from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SECRET_FIELDS = ("password", "token", "clientSecret")


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    OAUTH = "oauth"

    @classmethod
    def parse(cls, value: str | None) -> AuthType:
        normalized = (value or "").strip().lower()
        if normalized == "basic":
            return cls.BASIC
        if normalized == "bearer":
            return cls.BEARER
        if normalized in {"oauth", "oauth2"}:
            return cls.OAUTH
        # Empty and unrecognized schemes send no credentials.
        return cls.NONE


class TargetConfig(BaseModel):
    """A registered backend the proxy can forward to.

    Field names follow the registry's camelCase storage format through
    aliases; unknown keys are kept so the registry can round-trip extra
    metadata it does not interpret.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    name: str | None = None
    protocol: str = "http"
    host: str = ""
    port: str = ""
    auth_type: str = Field(default="", alias="authType")
    username: str = ""
    password: str = ""
    token: str = ""
    client_id: str = Field(default="", alias="clientId")
    client_secret: str = Field(default="", alias="clientSecret")
    token_url: str = Field(default="", alias="tokenUrl")

    @field_validator("protocol", mode="before")
    @classmethod
    def _default_protocol(cls, value: Any) -> str:
        if value is None:
            return "http"
        text = str(value).strip()
        return text or "http"

    @field_validator("port", mode="before")
    @classmethod
    def _coerce_port(cls, value: Any) -> str:
        if value is None or isinstance(value, bool):
            return ""
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return ""

    @field_validator(
        "host",
        "auth_type",
        "username",
        "password",
        "token",
        "client_id",
        "client_secret",
        "token_url",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def scheme(self) -> AuthType:
        return AuthType.parse(self.auth_type)

    @property
    def label(self) -> str:
        return self.name or self.id or self.host or "<unnamed>"

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_public_record(self) -> dict[str, Any]:
        record = self.to_record()
        for key in SECRET_FIELDS:
            record.pop(key, None)
        return record
