from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized / invalid_credentials / token_* (401)
    - forbidden / account_disabled / account_locked (403)
    - not_found (404)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialFailure(str, Enum):
    USER_NOT_FOUND = "user_not_found"
    INVALID_PASSWORD = "invalid_password"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_LOCKED = "account_locked"


class CredentialError(AuthenticationError):
    """Login or status check rejected the principal.

    Unknown users and wrong passwords share one message and status so the
    response does not reveal which usernames exist. The reason is kept on
    the exception for logging and tests.
    """

    _PUBLIC = {
        CredentialFailure.USER_NOT_FOUND: (401, "invalid_credentials", "invalid username or password"),
        CredentialFailure.INVALID_PASSWORD: (401, "invalid_credentials", "invalid username or password"),
        CredentialFailure.ACCOUNT_DISABLED: (403, "account_disabled", "account is disabled"),
        CredentialFailure.ACCOUNT_LOCKED: (403, "account_locked", "account is locked"),
    }

    def __init__(self, reason: CredentialFailure, *, message: Optional[str] = None) -> None:
        status_code, error_code, public_message = self._PUBLIC[reason]
        detail = None
        if status_code == 403:
            detail = {"reason": reason.value}
        super().__init__(
            message or public_message,
            status_code=status_code,
            error_code=error_code,
            detail=detail,
        )
        self.reason = reason


class TokenFailure(str, Enum):
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    WRONG_TOKEN_TYPE = "wrong_token_type"


class TokenError(AuthenticationError):
    """Bearer token rejected (401); clients respond by refreshing once."""

    _CODES = {
        TokenFailure.EXPIRED: "token_expired",
        TokenFailure.REVOKED: "token_revoked",
    }

    def __init__(self, reason: TokenFailure, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"token {reason.value.replace('_', ' ')}",
            error_code=self._CODES.get(reason, "token_invalid"),
            detail={"reason": reason.value},
        )
        self.reason = reason


class AuthorizationError(ServiceError):
    """Principal is authenticated but lacks access (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class StoreError(ServiceError):
    """Persistence layer failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "CredentialFailure",
    "CredentialError",
    "TokenFailure",
    "TokenError",
    "AuthorizationError",
    "NotFoundError",
    "StoreError",
]
