"""Structured error response schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    This provides consistent error responses across the API with:
    - Machine-readable error codes
    - Human-readable messages
    - Remediation hints
    - Request tracing information
    """

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'Unauthorized')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(
        default=None, description="Detailed error information (for validation errors)"
    )
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "ValidationError",
                "message": "Request validation failed",
                "details": [
                    {
                        "code": "invalid_units",
                        "message": "Input should be greater than 0",
                        "field": "body.units",
                        "value": -1,
                    }
                ],
                "remediation": "Send units as a positive number",
                "request_id": "req_1234567890",
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }
    }


# Error codes enum for consistency
class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (422)
    VALIDATION_ERROR = "validation_error"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    INVALID_UNITS = "invalid_units"
    INVALID_TIMESTAMP = "invalid_timestamp"
    INVALID_EMAIL = "invalid_email"
    INVALID_BILLING_WINDOW = "invalid_billing_window"

    # Authentication errors (401)
    UNAUTHORIZED = "unauthorized"
    INVALID_SIGNATURE = "invalid_signature"

    # Conflict (409)
    BILLING_RUN_IN_PROGRESS = "billing_run_in_progress"

    # External service errors (503)
    DATABASE_ERROR = "database_error"

    # Internal errors (500)
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.INVALID_UNITS: "Send units as a positive number",
    ErrorCode.INVALID_TIMESTAMP: "Send occurred_at as an ISO 8601 timestamp",
    ErrorCode.INVALID_EMAIL: "Provide a valid email address in the format: user@example.com",
    ErrorCode.MISSING_REQUIRED_FIELD: "Include every required field in the request body",
    ErrorCode.INVALID_BILLING_WINDOW: "Pass a start that is strictly earlier than end",
    ErrorCode.UNAUTHORIZED: "Send the configured bearer token in the Authorization header",
    ErrorCode.BILLING_RUN_IN_PROGRESS: "Wait for the running billing job to finish and try again",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}

# Maps pydantic v2 error types (and the field they occurred on) to error codes
PYDANTIC_ERROR_CODES = {
    "missing": ErrorCode.MISSING_REQUIRED_FIELD,
    "greater_than": ErrorCode.INVALID_UNITS,
    "decimal_parsing": ErrorCode.INVALID_UNITS,
    "decimal_type": ErrorCode.INVALID_UNITS,
    "finite_number": ErrorCode.INVALID_UNITS,
    "datetime_parsing": ErrorCode.INVALID_TIMESTAMP,
    "datetime_from_date_parsing": ErrorCode.INVALID_TIMESTAMP,
    "datetime_type": ErrorCode.INVALID_TIMESTAMP,
    "value_error": ErrorCode.VALIDATION_ERROR,
}
