"""Tests for the error envelope format and error classification.

Every failure renders as:
{
    "success": false,
    "error": {"code": "<STABLE_CODE>", "message": "<human readable>"}
}
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tasklane import app as app_module
from tasklane.api.error_handling import KIND_TO_HTTP, classify
from tasklane.api.schemas import Envelope, ErrorBody, PageMeta
from tasklane.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from tasklane.storage.errors import ConstraintViolation


class _LegacyError(Exception):
    def __init__(self, status, message):
        super().__init__(message)
        self.status = status
        self.message = message


@pytest.fixture
def client():
    with TestClient(app_module.app, raise_server_exceptions=False) as test_client:
        yield test_client


class TestEnvelopeModel:
    def test_success_body_omits_error(self):
        body = Envelope(success=True, data={"id": 1}).to_body()
        assert body == {"success": True, "data": {"id": 1}}

    def test_error_body_omits_data(self):
        body = Envelope(success=False, error=ErrorBody(code="NOT_FOUND", message="x")).to_body()
        assert body == {"success": False, "error": {"code": "NOT_FOUND", "message": "x"}}

    def test_meta_uses_camel_case_has_more(self):
        body = Envelope(
            success=True, data=[], meta=PageMeta(page=1, limit=20, total=0, has_more=False)
        ).to_body()
        assert body["meta"] == {"page": 1, "limit": 20, "total": 0, "hasMore": False}

    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestClassification:
    def test_single_table_covers_every_kind(self):
        assert set(KIND_TO_HTTP) == set(ErrorKind)

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (BadRequestError("bad"), 400, "BAD_REQUEST"),
            (AuthenticationError("who"), 401, "UNAUTHORIZED"),
            (ForbiddenError("no"), 403, "FORBIDDEN"),
            (NotFoundError("gone"), 404, "NOT_FOUND"),
            (ConflictError("dup"), 409, "CONFLICT"),
            (RateLimitedError("slow", retry_after=60), 429, "RATE_LIMITED"),
        ],
    )
    def test_domain_errors(self, exc, status, code):
        classified = classify(exc)
        assert (classified.status_code, classified.code) == (status, code)
        assert classified.message == exc.message

    def test_rate_limited_sets_retry_after(self):
        assert classify(RateLimitedError("slow", retry_after=42)).headers == {"Retry-After": "42"}

    def test_server_error_message_is_generic(self):
        classified = classify(ServerError("db password is hunter2"))
        assert classified.status_code == 500
        assert classified.message == "Internal server error"

    def test_legacy_status_message_objects(self):
        classified = classify(_LegacyError(409, "already there"))
        assert (classified.status_code, classified.code, classified.message) == (
            409,
            "CONFLICT",
            "already there",
        )

    def test_legacy_unknown_status_becomes_internal(self):
        classified = classify(_LegacyError(418, "teapot"))
        assert classified.status_code == 500
        assert classified.message == "Internal server error"

    def test_constraint_violation_is_conflict(self):
        classified = classify(ConstraintViolation("duplicate key"))
        assert classified.status_code == 409

    def test_http_exception_maps_by_status(self):
        classified = classify(StarletteHTTPException(status_code=403, detail="nope"))
        assert (classified.code, classified.message) == ("FORBIDDEN", "nope")

    def test_unexpected_exception_is_opaque(self):
        classified = classify(KeyError("secret_column"))
        assert classified.status_code == 500
        assert "secret_column" not in classified.message
        assert classified.log_level == "error"


class TestEnvelopeOverHttp:
    def test_unknown_route(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": {"code": "NOT_FOUND", "message": "Route not found: GET /nope"},
        }

    def test_wrong_method_is_route_not_found(self, client):
        response = client.put("/tasks")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Route not found: PUT /tasks"

    def test_unhandled_exception_becomes_500_envelope(self, client):
        with patch(
            "tasklane.service.auth.AuthService.login", side_effect=RuntimeError("boom: dsn=secret")
        ):
            response = client.post(
                "/auth/login", json={"email": "a@x.com", "password": "password123"}
            )
        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
        }

    def test_unhandled_exception_keeps_request_id(self, client):
        with patch("tasklane.service.auth.AuthService.login", side_effect=RuntimeError("boom")):
            supplied = client.post(
                "/auth/login",
                json={"email": "a@x.com", "password": "password123"},
                headers={"X-Request-ID": "req-500"},
            )
            generated = client.post(
                "/auth/login", json={"email": "a@x.com", "password": "password123"}
            )
        assert supplied.status_code == 500
        assert supplied.headers["X-Request-ID"] == "req-500"
        assert supplied.headers["X-Content-Type-Options"] == "nosniff"
        assert len(generated.headers["X-Request-ID"]) == 36
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    def test_invalid_json_body(self, client):
        response = client.post(
            "/auth/login", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Request body must be valid JSON"

    def test_non_object_json_body(self, client):
        response = client.post("/auth/login", json=[1, 2, 3])
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Request body must be a JSON object"
