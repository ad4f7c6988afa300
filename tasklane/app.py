from __future__ import annotations

import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tasklane.api.error_handling import envelope_for, register_exception_handlers, render_exception
from tasklane.api.responses import ok, preflight_response
from tasklane.api.routes import router
from tasklane.api.schemas import HealthResponse
from tasklane.api.security import apply_security_headers, client_ip, detect_threat, request_target
from tasklane.logging import get_logger, log_request, set_correlation_id
from tasklane.service.errors import ForbiddenError, RateLimitedError
from tasklane.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "1.0.0"

RATE_LIMITED_MESSAGE = "Too many requests. Please slow down."
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store on startup; drain background work and close on shutdown."""
    runtime = get_runtime()
    await runtime.startup()

    yield

    try:
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tasklane API", version=__version__, lifespan=lifespan)


# Pipeline stages. Each @app.middleware registration wraps the ones above
# it, so the effective order from the outside in is: error boundary,
# security headers, threat filter, CORS preflight, rate limiter, request
# logger, router.


def bind_request_id(request: Request) -> str:
    """Resolve the request ID once per request and bind it to the log context.

    The ID comes from X-Request-ID when it is well-formed, otherwise a new
    UUID. It is kept on ``request.state`` so every stage sees the same value.
    """
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        supplied = request.headers.get("X-Request-ID")
        request_id = supplied if supplied and _REQUEST_ID_PATTERN.match(supplied) else None
    request_id = set_correlation_id(request_id)
    request.state.request_id = request_id
    return request_id


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Time the rest of the chain and emit one access log line per request."""
    request_id = bind_request_id(request)
    settings = get_runtime().settings
    started = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
    finally:
        log_request(
            method=request.method,
            path=request.url.path,
            status=status,
            duration_ms=(time.perf_counter() - started) * 1000,
            ip=client_ip(request, settings.client_ip_header),
            user_agent=request.headers.get("User-Agent"),
            request_id=request_id,
        )
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def limit_rate(request: Request, call_next):
    runtime = get_runtime()
    ip = client_ip(request, runtime.settings.client_ip_header)
    decision = await runtime.rate_limiter.check(ip)
    if not decision.allowed:
        return envelope_for(
            RateLimitedError(RATE_LIMITED_MESSAGE, retry_after=decision.retry_after)
        )
    return await call_next(request)


@app.middleware("http")
async def answer_preflight(request: Request, call_next):
    # Preflights resolve before rate limiting so they never consume quota
    if request.method == "OPTIONS":
        return preflight_response()
    return await call_next(request)


@app.middleware("http")
async def filter_threats(request: Request, call_next):
    path, query = request_target(request)
    category = detect_threat(path, query)
    if category is not None:
        settings = get_runtime().settings
        logger.warning(
            "waf_blocked",
            category=category,
            ip=client_ip(request, settings.client_ip_header),
            method=request.method,
            path=request.url.path,
        )
        return envelope_for(ForbiddenError("Forbidden"))
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    return apply_security_headers(response)


@app.middleware("http")
async def error_boundary(request: Request, call_next):
    """Last line of defense: any failure in any stage becomes an envelope."""
    request_id = bind_request_id(request)
    try:
        return await call_next(request)
    except Exception as exc:
        response = apply_security_headers(render_exception(request, exc))
        response.headers["X-Request-ID"] = request_id
        return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health", tags=["health"])
async def health() -> JSONResponse:
    """Liveness plus store and cache probes; always 200, ``degraded`` on failures."""
    runtime = get_runtime()
    checks = await runtime.health(timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    body = HealthResponse(
        status="ok" if all(value == "ok" for value in checks.values()) else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=runtime.settings.app_version,
        checks=checks,
    )
    return ok(body)
