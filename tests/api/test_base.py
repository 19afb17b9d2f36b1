"""Tests for api/base.py - Unified API response format."""

from datetime import timezone

import pytest

from api.base import (
    success_response,
    error_response,
    status_for,
    ErrorCodes,
    HTTP_STATUS,
)
from ledger.exceptions import (
    AlreadyConvertedError, AuthorizationError, InvalidStateError, LedgerError,
    NotAuthenticatedError, NotFoundError, OverAllocationError, PersistenceError, ValidationError,
)


class TestSuccessResponse:
    """Tests for success_response()."""

    def test_structure(self):
        resp = success_response({"foo": "bar"})
        assert resp.success is True
        assert resp.data == {"foo": "bar"}
        assert resp.error is None

    def test_request_id_generated(self):
        resp = success_response({})
        assert resp.meta.request_id is not None
        assert len(resp.meta.request_id) > 0

    def test_request_id_echoed(self):
        resp = success_response({}, request_id="req-123")
        assert resp.meta.request_id == "req-123"

    def test_timestamp_is_utc(self):
        resp = success_response({})
        assert resp.meta.timestamp.tzinfo == timezone.utc


class TestErrorResponse:
    """Tests for error_response()."""

    def test_structure(self):
        resp = error_response("TEST_ERROR", "Something went wrong")
        assert resp.success is False
        assert resp.data is None
        assert resp.error.code == "TEST_ERROR"
        assert resp.error.message == "Something went wrong"

    def test_request_id_generated(self):
        resp = error_response("ERR", "msg")
        assert resp.meta.request_id is not None
        assert len(resp.meta.request_id) > 0

    def test_timestamp_is_utc(self):
        resp = error_response("ERR", "msg")
        assert resp.meta.timestamp.tzinfo == timezone.utc


class TestStatusFor:
    """Tests for status_for()."""

    def test_success_is_200(self):
        assert status_for(success_response(None)) == 200

    @pytest.mark.parametrize("code, status", [
        (ErrorCodes.NOT_AUTHENTICATED, 401),
        (ErrorCodes.AUTHORIZATION_DENIED, 403),
        (ErrorCodes.NOT_FOUND, 404),
        (ErrorCodes.ALREADY_CONVERTED, 409),
        (ErrorCodes.OVER_ALLOCATION, 409),
        (ErrorCodes.INVALID_STATE, 409),
        (ErrorCodes.VALIDATION_ERROR, 422),
        (ErrorCodes.INTERNAL_ERROR, 500),
    ])
    def test_error_codes(self, code, status):
        assert status_for(error_response(code, "x")) == status

    def test_unlisted_code_is_400(self):
        assert status_for(error_response(ErrorCodes.INVALID_REQUEST, "x")) == 400


class TestErrorCodes:
    """Every ledger error code has a matching API code and status."""

    @pytest.mark.parametrize("exc", [
        LedgerError("x"),
        ValidationError("x"),
        NotFoundError("x"),
        AuthorizationError("x"),
        NotAuthenticatedError("x"),
        InvalidStateError("x"),
        AlreadyConvertedError("x"),
        OverAllocationError("x"),
        PersistenceError("x"),
    ])
    def test_exception_code_is_mapped(self, exc):
        assert exc.code in HTTP_STATUS
