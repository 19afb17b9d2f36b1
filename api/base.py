"""Unified API response format and error handling."""

from typing import Any
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from utils.timezone import now_utc


class APIError(BaseModel):
    """Error details in API response."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")


class APIMeta(BaseModel):
    """Metadata included in every API response."""

    timestamp: datetime = Field(..., description="Response timestamp (UTC)")
    request_id: str = Field(..., description="Unique request identifier for tracing")


class APIResponse(BaseModel):
    """
    Unified response format for all API endpoints.

    Every endpoint returns this structure, making client parsing predictable.
    """

    success: bool
    data: Any | None = None
    error: APIError | None = None
    meta: APIMeta


def success_response(data: Any, request_id: str | None = None) -> APIResponse:
    """Create a success response."""
    return APIResponse(
        success=True,
        data=data,
        error=None,
        meta=APIMeta(
            timestamp=now_utc(),
            request_id=request_id or str(uuid4()),
        ),
    )


def error_response(code: str, message: str, request_id: str | None = None) -> APIResponse:
    """Create an error response."""
    return APIResponse(
        success=False,
        data=None,
        error=APIError(code=code, message=message),
        meta=APIMeta(
            timestamp=now_utc(),
            request_id=request_id or str(uuid4()),
        ),
    )


class ErrorCodes:
    """
    Standard error codes for consistent error handling.

    Codes raised by the ledger match the `code` attribute of the
    corresponding ledger.exceptions class.
    """

    # Authentication & Authorization
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"

    # Resource Errors
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"

    # Validation Errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Document Lifecycle
    INVALID_STATE = "INVALID_STATE"
    ALREADY_CONVERTED = "ALREADY_CONVERTED"

    # Payments
    OVER_ALLOCATION = "OVER_ALLOCATION"

    # Infrastructure
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


# HTTP status for each error code; anything unlisted is a 400
HTTP_STATUS = {
    ErrorCodes.NOT_AUTHENTICATED: 401,
    ErrorCodes.AUTHORIZATION_DENIED: 403,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.ALREADY_EXISTS: 409,
    ErrorCodes.VALIDATION_ERROR: 422,
    ErrorCodes.INVALID_STATE: 409,
    ErrorCodes.ALREADY_CONVERTED: 409,
    ErrorCodes.OVER_ALLOCATION: 409,
    ErrorCodes.PERSISTENCE_ERROR: 500,
    ErrorCodes.INTERNAL_ERROR: 500,
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
}


def status_for(response: APIResponse) -> int:
    """HTTP status code for a response."""
    if response.success:
        return 200
    return HTTP_STATUS.get(response.error.code, 400)
