from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable failure codes surfaced to the boundary layer."""

    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    INVALID_TOKEN = "invalid_token"
    NOT_FOUND = "not_found"
    INVALID_CONFIG = "invalid_config"
    INTERNAL = "internal"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries both an HTTP ``status_code`` and a stable
    ``error_code`` so a boundary can translate it without inspecting messages.
    """

    status_code: int = 400
    error_code: str = ErrorCode.INVALID_INPUT.value

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
    """Request input is missing a required field combination (400)."""
    status_code = 400
    error_code = ErrorCode.INVALID_INPUT.value


class InvalidStateError(ServiceError):
    """Operation not allowed in the account's current state (400)."""
    status_code = 400
    error_code = ErrorCode.INVALID_STATE.value


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorCode.INVALID_CREDENTIALS.value


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = ErrorCode.NOT_FOUND.value


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate username or email (409)."""
    status_code = 409
    error_code = ErrorCode.CONFLICT.value


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = ErrorCode.INTERNAL.value


class InvalidConfigError(ServerError):
    """Fatal configuration problem detected at startup (500)."""
    error_code = ErrorCode.INVALID_CONFIG.value


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.INVALID_REFRESH_TOKEN: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_CONFIG: 500,
    ErrorCode.INTERNAL: 500,
}

_EXCEPTION_BY_CODE: dict[ErrorCode, type[ServiceError]] = {
    ErrorCode.INVALID_INPUT: ValidationError,
    ErrorCode.INVALID_STATE: InvalidStateError,
    ErrorCode.CONFLICT: ConflictError,
    ErrorCode.INVALID_CREDENTIALS: AuthenticationError,
    ErrorCode.INVALID_REFRESH_TOKEN: AuthenticationError,
    ErrorCode.INVALID_TOKEN: AuthenticationError,
    ErrorCode.NOT_FOUND: NotFoundError,
    ErrorCode.INVALID_CONFIG: InvalidConfigError,
    ErrorCode.INTERNAL: ServerError,
}


@dataclass(frozen=True)
class Failure:
    """Typed failure returned by session operations instead of raising.

    The message is safe to show to clients; internal causes are only logged.
    """

    code: ErrorCode
    message: str
    detail: dict = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return _STATUS_BY_CODE[self.code]

    def to_exception(self) -> ServiceError:
        """Convert to the matching ``ServiceError`` for boundaries that raise."""
        exc_cls = _EXCEPTION_BY_CODE[self.code]
        return exc_cls(
            self.message,
            status_code=self.status_code,
            error_code=self.code.value,
            detail=dict(self.detail),
        )

    @classmethod
    def internal(cls) -> "Failure":
        return cls(ErrorCode.INTERNAL, "Internal server error")


__all__ = [
    "ErrorCode",
    "Failure",
    "ServiceError",
    "ValidationError",
    "InvalidStateError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidConfigError",
]
