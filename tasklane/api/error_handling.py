from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tasklane.api.responses import error_response
from tasklane.logging import get_logger
from tasklane.service.errors import ErrorKind, RateLimitedError, ServiceError
from tasklane.storage.errors import ConstraintViolation

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"

# The single translation table from domain error kinds to transport responses
KIND_TO_HTTP: Dict[ErrorKind, Tuple[int, str]] = {
    ErrorKind.BAD_REQUEST: (400, "BAD_REQUEST"),
    ErrorKind.UNAUTHORIZED: (401, "UNAUTHORIZED"),
    ErrorKind.FORBIDDEN: (403, "FORBIDDEN"),
    ErrorKind.NOT_FOUND: (404, "NOT_FOUND"),
    ErrorKind.CONFLICT: (409, "CONFLICT"),
    ErrorKind.RATE_LIMITED: (429, "RATE_LIMITED"),
    ErrorKind.INTERNAL_ERROR: (500, "INTERNAL_ERROR"),
}

_STATUS_TO_KIND: Dict[int, ErrorKind] = {
    status: kind for kind, (status, _code) in KIND_TO_HTTP.items()
}
_STATUS_TO_KIND[405] = ErrorKind.NOT_FOUND
_STATUS_TO_KIND[422] = ErrorKind.BAD_REQUEST


@dataclass(frozen=True)
class ClassifiedError:
    status_code: int
    code: str
    message: str
    log_level: str
    event: str = "service_error"
    headers: Dict[str, str] = field(default_factory=dict)


def _from_kind(
    kind: ErrorKind,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    *,
    event: str = "service_error",
) -> ClassifiedError:
    status_code, code = KIND_TO_HTTP[kind]
    if kind is ErrorKind.INTERNAL_ERROR:
        return ClassifiedError(
            status_code, code, INTERNAL_ERROR_MESSAGE, "error", "unhandled_exception", headers or {}
        )
    return ClassifiedError(status_code, code, message, "warning", event, headers or {})


def _legacy_status_message(exc: BaseException) -> Optional[Tuple[int, str]]:
    status = getattr(exc, "status", None)
    message = getattr(exc, "message", None)
    if isinstance(status, int) and not isinstance(status, bool) and isinstance(message, str):
        return status, message
    return None


def classify(exc: BaseException, request: Optional[Request] = None) -> ClassifiedError:
    """Map any exception onto an error envelope.

    Domain errors map through ``KIND_TO_HTTP``. Objects exposing an integer
    ``status`` and a string ``message`` (and Starlette HTTP exceptions) map
    by status. Everything else becomes a generic 500.
    """
    if isinstance(exc, ServiceError):
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
        return _from_kind(exc.kind, exc.message, headers)

    if isinstance(exc, ConstraintViolation):
        return _from_kind(ErrorKind.CONFLICT, exc.message, event="constraint_violation")

    if isinstance(exc, RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _from_kind(ErrorKind.BAD_REQUEST, str(message))

    if isinstance(exc, StarletteHTTPException):
        if exc.status_code in (404, 405) and request is not None:
            return _from_kind(
                ErrorKind.NOT_FOUND, f"Route not found: {request.method} {request.url.path}"
            )
        kind = _STATUS_TO_KIND.get(exc.status_code, ErrorKind.INTERNAL_ERROR)
        return _from_kind(kind, str(exc.detail))

    legacy = _legacy_status_message(exc)
    if legacy is not None:
        status, message = legacy
        return _from_kind(
            _STATUS_TO_KIND.get(status, ErrorKind.INTERNAL_ERROR), message, event="legacy_error"
        )

    return _from_kind(ErrorKind.INTERNAL_ERROR, INTERNAL_ERROR_MESSAGE)


def envelope_for(exc: BaseException, request: Optional[Request] = None) -> JSONResponse:
    """Build the error envelope response for ``exc`` without logging."""
    classified = classify(exc, request)
    return error_response(
        classified.status_code,
        classified.code,
        classified.message,
        headers=classified.headers,
    )


def render_exception(request: Request, exc: BaseException) -> JSONResponse:
    """Classify, log at the matching level, and build the envelope response."""
    classified = classify(exc, request)
    log_fields = {
        "path": request.url.path,
        "method": request.method,
        "status_code": classified.status_code,
        "error_code": classified.code,
        "error_type": type(exc).__name__,
    }
    if classified.log_level == "error":
        logger.exception(classified.event, exc_info=exc, error=str(exc), **log_fields)
    else:
        logger.warning(classified.event, message=classified.message, **log_fields)
    return error_response(
        classified.status_code,
        classified.code,
        classified.message,
        headers=classified.headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Route-level translation; the error-boundary middleware covers the rest."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return render_exception(request, exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        return render_exception(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return render_exception(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return render_exception(request, exc)
