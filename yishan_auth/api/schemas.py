from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from yishan_auth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "account_disabled",
    "account_locked",
    "token_invalid",
    "token_expired",
    "token_revoked",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Transport envelope shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    message: Optional[str] = None
    request_id: str = Field(default_factory=_request_id)


def ok(data: Any = None, message: Optional[str] = None) -> Envelope:
    """Wrap a handler result in a success envelope.

    Pydantic payload models are dumped by alias so the wire format is camelCase.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(by_alias=True, mode="json") if isinstance(item, BaseModel) else item
            for item in data
        ]
    return Envelope(status="ok", data=data, message=message)


class CamelModel(BaseModel):
    """Accepts camelCase or snake_case input, serializes camelCase by alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    username: Optional[str] = Field(default=None, max_length=254)
    email: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(..., min_length=6, max_length=128)
    remember_me: bool = False

    @field_validator("username", "email")
    @classmethod
    def _strip_identifier(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _require_identifier(self):
        if not self.username and not self.email:
            raise ValueError("username or email is required")
        return self

    @property
    def identifier(self) -> str:
        # ``username`` may itself hold an email address
        return self.username or self.email or ""


class TokenRefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str
    access_token_expires_in: int
    refresh_token_expires_in: int
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"


class UserProfileResponse(CamelModel):
    id: int
    username: str
    email: Optional[str] = None
    real_name: Optional[str] = None
    status: int
    last_login_time: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    login_count: int = 0
    role_ids: List[int] = Field(default_factory=list)
    created_at: datetime


class LogoutResponse(CamelModel):
    logged_out: bool = True


class CleanupResponse(CamelModel):
    deleted_count: int
    execution_time_ms: int
    timestamp: datetime


class CleanupStatusResponse(CamelModel):
    service_type: str
    environment: str
    total_tokens: int
    expired_tokens: int
    revoked_tokens: int
    last_cleanup_time: Optional[datetime] = None
