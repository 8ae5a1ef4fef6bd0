"""Tests for the error envelope format.

Every failure renders as:
{
    "success": false,
    "message": "<human readable>",
    "error": {"code": "<STABLE_CODE>", "details": <object|array>},
    "timestamp": "<iso8601>",
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from olakz_auth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from olakz_auth.api.schemas import Envelope, ErrorBody, ok
from olakz_auth.service import errors
from olakz_auth.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_known_code_is_accepted(self):
        body = ErrorBody(code="TOKEN_EXPIRED", details={"field": "token"})
        assert body.code == "TOKEN_EXPIRED"
        assert body.details == {"field": "token"}

    def test_unknown_code_is_rejected(self):
        """Codes outside the stable set fail validation."""
        with pytest.raises(ValidationError):
            ErrorBody(code="token_expired")

    def test_every_service_error_code_is_valid(self):
        """Each service exception maps to a code the envelope accepts."""
        for name in errors.__all__:
            exc_cls = getattr(errors, name)
            ErrorBody(code=exc_cls.error_code)

    def test_status_mapping_falls_back_to_500(self):
        assert _error_code_for_status(404) == "NOT_FOUND"
        assert _error_code_for_status(418) == "INTERNAL_SERVER_ERROR"
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code)


class TestEnvelope:
    """Tests for the success and error envelopes."""

    def test_ok_envelope(self):
        envelope = ok("Login successful", {"access_token": "abc"})
        dumped = envelope.model_dump(mode="json")
        assert dumped["success"] is True
        assert dumped["message"] == "Login successful"
        assert dumped["data"] == {"access_token": "abc"}
        assert dumped["error"] is None
        assert dumped["request_id"]
        assert dumped["timestamp"]

    def test_error_response_shape(self):
        response = _error_response(403, "Access denied", {"required_role": "admin"})
        assert response.status_code == 403
        assert response.body
        envelope = Envelope.model_validate_json(response.body)
        assert envelope.success is False
        assert envelope.error.code == "FORBIDDEN"
        assert envelope.error.details == {"required_role": "admin"}
        assert envelope.data is None


class Payload(BaseModel):
    email: str
    age: int


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/payload")
    async def payload(body: Payload):
        return ok("fine", body.model_dump())

    return app


class TestExceptionHandlers:
    """Service, storage, validation and framework errors render the envelope."""

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (errors.ExpiredToken("Token has expired"), 401, "TOKEN_EXPIRED"),
            (errors.InvalidSignature("Invalid token"), 401, "INVALID_TOKEN"),
            (errors.InvalidRefreshToken("Invalid refresh token"), 401, "INVALID_REFRESH_TOKEN"),
            (errors.CodeExpired("OTP has expired"), 400, "OTP_EXPIRED"),
            (errors.CodeInvalid("Invalid OTP"), 400, "OTP_INVALID"),
            (errors.RoleNotAssigned("Role not assigned"), 403, "ROLE_NOT_ASSIGNED"),
            (errors.Conflict("Email already registered"), 409, "CONFLICT"),
            (errors.RateLimited("Too many requests"), 429, "RATE_LIMIT_EXCEEDED"),
            (errors.ServiceUnavailable("Provider keys unavailable"), 503, "SERVICE_UNAVAILABLE"),
            (errors.ServerError("Failed to send email"), 500, "INTERNAL_SERVER_ERROR"),
        ],
    )
    def test_service_errors(self, exc, status, code):
        client = TestClient(_app_raising(exc))

        response = client.get("/boom")

        assert response.status_code == status
        body = response.json()
        assert body["success"] is False
        assert body["message"] == exc.message
        assert body["error"]["code"] == code

    def test_unauthorized_sets_bearer_challenge(self):
        client = TestClient(_app_raising(errors.Unauthorized("No token provided")))

        response = client.get("/boom")

        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_detail_is_carried(self):
        exc = errors.RateLimited("Too many requests", detail={"retry_after_seconds": 30})
        client = TestClient(_app_raising(exc))

        body = client.get("/boom").json()

        assert body["error"]["details"] == {"retry_after_seconds": 30}

    def test_constraint_violation_is_conflict(self):
        exc = ConstraintViolation("identity already linked", {"field": "identity"})
        client = TestClient(_app_raising(exc))

        response = client.get("/boom")

        assert response.status_code == 409
        assert response.json()["error"] == {"code": "CONFLICT", "details": {"field": "identity"}}

    def test_request_validation_lists_fields(self):
        """Body validation failures are 400 with one entry per field."""
        client = TestClient(_app_raising(errors.ServerError("unused")))

        response = client.post("/payload", json={"email": "a@b.co", "age": "old"})

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Validation failed"
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert [item["field"] for item in body["error"]["details"]] == ["age"]

    def test_unknown_route_is_not_found(self):
        client = TestClient(_app_raising(errors.ServerError("unused")))

        response = client.get("/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_uncaught_exception_is_generic(self):
        """Unexpected errors never leak their message."""
        client = TestClient(_app_raising(KeyError("secret")), raise_server_exceptions=False)

        response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "Internal server error"
        assert "secret" not in response.text
