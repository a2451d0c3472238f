from __future__ import annotations

from typing import Optional

# Expired and unknown refresh tokens read the same to clients
SESSION_ENDED_MESSAGE = "session is no longer valid; sign in again"


class ServiceError(Exception):
    """Failure raised by the token services and rendered into the error envelope.

    ``status_code`` and ``error_code`` are class defaults that a raise site may
    override. ``public_message``, when set, replaces ``message`` in responses
    so internal wording never reaches the client.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False
    public_message: Optional[str] = None

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
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    @property
    def client_message(self) -> str:
        return self.public_message or self.message


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """401. Every rotation failure derives from this: the client must sign in again."""

    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"
    public_message = SESSION_ENDED_MESSAGE


class TokenNotFoundError(AuthenticationError):
    """Unknown, revoked, or lost to a concurrent rotation."""

    error_code = "token_not_found"
    public_message = SESSION_ENDED_MESSAGE


class ReuseDetectedError(AuthenticationError):
    """A consumed refresh token came back; its whole family is now revoked."""

    error_code = "reuse_detected"
    public_message = "session was revoked; sign in again"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    public_message = "internal server error"


class StoreUnavailableError(ServerError):
    """The token store could not be reached; retrying later is safe."""

    status_code = 503
    error_code = "store_unavailable"
    retryable = True
    public_message = "token store unavailable"
