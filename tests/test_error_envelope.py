"""Tests for the error envelope format and error handling.

These tests verify that error responses conform to the stable API envelope format:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authkeep.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authkeep.api.schemas import Envelope, ErrorBody
from authkeep.service.errors import ConflictError, InvalidTokenError, RateLimitedError
from authkeep.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_rejects_unknown_code(self):
        """Only the stable code set is accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="forbidden", message="Access denied")

    @pytest.mark.parametrize("code", ["invalid_credentials", "invalid_token", "conflict"])
    def test_auth_specific_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="unauthorized", message="x"))

        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_only_uses_valid_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["error"]["details"] is None
        assert "request_id" in data

    def test_error_response_custom_code(self):
        response = _error_response(401, "bad token", code="invalid_token")

        assert json.loads(response.body.decode())["error"]["code"] == "invalid_token"


@pytest.fixture
def handler_client():
    """Minimal app wired with the exception handlers only."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already registered", detail={"field": "email"})

    @app.get("/token")
    async def token():
        raise InvalidTokenError("invalid or expired reset token", status_code=400)

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("too many requests")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/unavailable")
    async def unavailable():
        raise StoreUnavailable("redis", "get failed")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "path,status,code",
        [
            ("/conflict", 409, "conflict"),
            ("/token", 400, "invalid_token"),
            ("/limited", 429, "rate_limited"),
            ("/constraint", 409, "conflict"),
            ("/unavailable", 500, "server_error"),
            ("/boom", 500, "server_error"),
        ],
    )
    def test_errors_map_to_envelope(self, handler_client, path, status, code):
        response = handler_client.get(path)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_internal_details_are_not_leaked(self, handler_client):
        body = handler_client.get("/boom").json()

        assert "secret internals" not in json.dumps(body)
        assert body["error"]["message"] == "internal server error"

    def test_not_found_route_uses_envelope(self, handler_client):
        response = handler_client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
