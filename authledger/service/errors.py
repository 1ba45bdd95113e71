from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    """Expected, user-caused outcomes of sign-up and login.

    These are returned on ``AuthResult`` rather than raised: they are routine
    branches, and the caller decides how to surface them.
    """

    USER_ALREADY_EXISTS = "user_already_exists"
    USER_NOT_FOUND = "user_not_found"
    WRONG_PASSWORD = "wrong_password"


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` so an outer request layer can
    map it without inspecting messages.
    """

    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Caller passed unusable input."""
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed."""
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A presented token cannot be trusted."""
    error_code = "invalid_token"


class InvalidSignatureError(TokenError):
    """Signature mismatch, unknown signing key or unexpected algorithm."""
    error_code = "invalid_signature"


class MalformedTokenError(TokenError):
    """Token structure or claims cannot be decoded."""
    error_code = "malformed_token"


class ServerError(ServiceError):
    """Internal invariant or configuration failure; never a user error."""
    error_code = "server_error"


class DuplicateTokenError(ServerError):
    """An issued token collided with an already recorded session."""
    error_code = "duplicate_token"


class MalformedHashError(ServerError):
    """A stored password hash cannot be parsed."""
    error_code = "malformed_password_hash"


__all__ = [
    "AuthFailure",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "ServerError",
    "DuplicateTokenError",
    "MalformedHashError",
]
