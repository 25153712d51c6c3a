"""Structured error response schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response body for every non-2xx API response."""

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'NotFoundError')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Detailed error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "InsufficientContextError",
                "message": "Sandbox session 3f0c... was never started",
                "details": [{"code": "insufficient_context", "message": "Sandbox session 3f0c... was never started"}],
                "remediation": None,
                "request_id": "req_1234567890",
                "timestamp": "2025-01-15T10:30:00Z",
            }
        }
    )


class ErrorCode:
    """Error codes not tied to a BillingError subclass."""

    VALIDATION_ERROR = "validation_error"
    DATABASE_ERROR = "database_error"
    INTERNAL_ERROR = "internal_error"


REMEDIATION_HINTS = {
    ErrorCode.VALIDATION_ERROR: "Check the API documentation for correct request format at /docs",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
    ErrorCode.INTERNAL_ERROR: "Please contact support with the request ID",
}
