"""Tests for api/base.py - Unified API response format."""

from datetime import timezone

from api.base import (
    success_response,
    error_response,
    ErrorCodes,
)


class TestSuccessResponse:
    """Tests for success_response()."""

    def test_structure(self):
        resp = success_response({"requires_2fa": True})
        assert resp.success is True
        assert resp.data == {"requires_2fa": True}
        assert resp.error is None

    def test_request_id_generated(self):
        resp = success_response({})
        assert resp.meta.request_id

    def test_request_id_passed_through(self):
        assert success_response({}, "req-1").meta.request_id == "req-1"

    def test_timestamp_is_utc(self):
        resp = success_response({})
        assert resp.meta.timestamp.tzinfo == timezone.utc


class TestErrorResponse:
    """Tests for error_response()."""

    def test_structure(self):
        resp = error_response(ErrorCodes.INVALID_CREDENTIALS, "Invalid email or password")
        assert resp.success is False
        assert resp.data is None
        assert resp.error.code == "INVALID_CREDENTIALS"
        assert resp.error.message == "Invalid email or password"

    def test_serializes_to_json(self):
        body = error_response("ERR", "msg", "req-2").model_dump(mode="json")
        assert body["meta"]["request_id"] == "req-2"
        assert isinstance(body["meta"]["timestamp"], str)


class TestErrorCodes:
    """Codes clients switch on."""

    def test_auth_codes(self):
        assert ErrorCodes.INVALID_2FA_CODE == "INVALID_2FA_CODE"
        assert ErrorCodes.ACCOUNT_NOT_VERIFIED == "ACCOUNT_NOT_VERIFIED"
        assert ErrorCodes.SESSION_EXPIRED == "SESSION_EXPIRED"
        assert ErrorCodes.RATE_LIMITED == "RATE_LIMITED"

    def test_infrastructure_codes(self):
        assert ErrorCodes.VALIDATION_ERROR == "VALIDATION_ERROR"
        assert ErrorCodes.INTERNAL_ERROR == "INTERNAL_ERROR"
