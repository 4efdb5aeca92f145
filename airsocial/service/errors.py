from __future__ import annotations

from typing import Optional

from airsocial.storage.errors import ConstraintViolation, StorageError


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error / invalid_data / bad_request (400)
    - unauthorized / invalid_credentials / token_expired / token_revoked (401)
    - forbidden (403)
    - not_found (404)
    - conflict / already_exists (409)
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


class BadRequestError(ValidationError):
    """Request is malformed or refers to an unusable token (400)."""
    error_code = "bad_request"


class InvalidDataError(ValidationError):
    """Stored data would violate a check, foreign key or not-null rule (400)."""
    error_code = "invalid_data"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email or password did not match (401)."""
    error_code = "invalid_credentials"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    error_code = "session_expired"


class TokenError(AuthenticationError):
    """An access or refresh token could not be accepted (401)."""
    pass


class MalformedTokenError(TokenError):
    pass


class TokenSignatureError(TokenError):
    pass


class AudienceMismatchError(TokenError):
    pass


class IssuerMismatchError(TokenError):
    pass


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class TokenRevokedError(TokenError):
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Concurrent modification or serialization failure (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    """Resource with the same unique key already exists (409)."""
    error_code = "already_exists"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class PublishError(ServerError):
    """An event could not be handed to the broker."""
    pass


class PublishRejectedError(PublishError):
    """Broker negatively acknowledged the message."""
    pass


class NoRouteError(PublishError):
    """Message was returned because no queue is bound for its routing key."""
    pass


class PublishCancelledError(PublishError):
    """Deadline elapsed before the broker confirmed the message."""
    pass


_CONSTRAINT_KIND_TO_ERROR = {
    "unique": AlreadyExistsError,
    "foreign_key": InvalidDataError,
    "check": InvalidDataError,
    "not_null": InvalidDataError,
    "serialization": ConflictError,
}


def map_storage_error(exc: Exception) -> ServiceError:
    """Translate a storage-layer exception into the matching service error."""
    if isinstance(exc, ServiceError):
        return exc
    if isinstance(exc, ConstraintViolation):
        error_cls = _CONSTRAINT_KIND_TO_ERROR.get(exc.kind, ServerError)
        return error_cls(exc.message, detail=exc.detail)
    if isinstance(exc, StorageError):
        return ServerError("storage failure", detail=exc.detail)
    return ServerError("internal error")


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidDataError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "TokenError",
    "MalformedTokenError",
    "TokenSignatureError",
    "AudienceMismatchError",
    "IssuerMismatchError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "ServerError",
    "PublishError",
    "PublishRejectedError",
    "NoRouteError",
    "PublishCancelledError",
    "map_storage_error",
]
