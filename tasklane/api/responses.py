from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

from tasklane.api.schemas import Envelope, ErrorBody, PageMeta

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}


def _json(envelope: Envelope, status_code: int, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=envelope.to_body(),
        headers={**CORS_HEADERS, **(headers or {})},
    )


def ok(data: Any, *, meta: Optional[PageMeta] = None, status_code: int = 200) -> JSONResponse:
    fields: Dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if meta is not None:
        fields["meta"] = meta
    return _json(Envelope(**fields), status_code)


def created(data: Any) -> JSONResponse:
    return ok(data, status_code=201)


def error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    envelope = Envelope(success=False, error=ErrorBody(code=code, message=message))
    return _json(envelope, status_code, headers)


def preflight_response() -> Response:
    return Response(status_code=204, headers=dict(CORS_HEADERS))
