"""Tests for the error envelope format and error handling.

Every error response has the shape:
{
    "status": "error",
    "data": null,
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
from pydantic import ValidationError

from warden.api.error_handling import _error_code_for_status, _error_response
from warden.api.schemas import Envelope, ErrorBody
from warden.service.errors import (
    AuthenticationError,
    ConflictError,
    DeliveryError,
    NotVerifiedError,
    SelfActionError,
    TokenInvalidOrExpiredError,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Incorrect email or password")
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Name is required",
            details=[{"field": "name", "message": "Name is required"}],
        )
        assert len(error.details) == 1

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (405, "validation_error"),
            (503, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_shape(self):
        response = _error_response(409, "taken", {"field": "email"}, code="conflict")
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {"code": "conflict", "message": "taken", "details": {"field": "email"}}
        assert body["request_id"]


class TestServiceErrorCodes:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (AuthenticationError("x"), 401, "unauthorized"),
            (NotVerifiedError("x"), 403, "not_verified"),
            (SelfActionError("x"), 400, "self_action"),
            (TokenInvalidOrExpiredError(), 400, "token_invalid"),
            (ConflictError("x"), 409, "conflict"),
            (DeliveryError("x"), 500, "delivery_failed"),
        ],
    )
    def test_error_classes_pin_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code
        ErrorBody(code=exc.error_code, message=exc.message)


class TestHandlers:
    def test_unknown_route_is_enveloped_404(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_json_is_400(self, client):
        response = client.post(
            "/auth/login", content="{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["status"] == "error"

    def test_unhandled_exception_is_generic_500(self, client, monkeypatch):
        from warden.service.runtime import get_runtime

        def explode(*args, **kwargs):
            raise KeyError("boom")

        monkeypatch.setattr(get_runtime().store, "get_account_by_email", explode)
        from fastapi.testclient import TestClient
        from warden import app as app_module

        safe_client = TestClient(app_module.app, raise_server_exceptions=False)
        response = safe_client.post(
            "/auth/forgot-password", json={"email": "someone@example.com"}
        )
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "boom" not in response.text
