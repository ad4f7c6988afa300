from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable machine-readable error codes exposed in the error envelope."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """Base class for domain errors translated into error envelopes.

    Each subclass is tagged with an ``ErrorKind``; the HTTP status and the
    envelope code are derived from the kind by the transport layer, so
    services never deal in status codes directly.
    """

    kind: ErrorKind = ErrorKind.BAD_REQUEST

    def __init__(self, message: str, *, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class BadRequestError(ServiceError):
    """Request is malformed or invalid (400)."""
    kind = ErrorKind.BAD_REQUEST


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    kind = ErrorKind.FORBIDDEN


class NotFoundError(ServiceError):
    """Requested resource not found or not owned by the caller (404)."""
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    kind = ErrorKind.CONFLICT


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    kind = ErrorKind.INTERNAL_ERROR


__all__ = [
    "ErrorKind",
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
