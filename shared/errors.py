"""
Shared error handling for the Segmentator services.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SegmentatorException(Exception):
    """Base exception for Segmentator services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class InvalidArgumentError(SegmentatorException):
    """Malformed input detected before storage is touched."""

    status_code = 400

    def __init__(self, message: str = "Invalid argument", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_ARGUMENT", message, details)


class NotFoundError(SegmentatorException):
    """A referenced segment does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class StorageError(SegmentatorException):
    """Transaction begin/exec/commit failure.

    When the rollback attempted after a failure fails as well, both errors are
    kept: ``cause`` is the original failure and ``rollback_error`` the rollback
    failure.
    """

    status_code = 503

    def __init__(
        self,
        message: str = "Storage error",
        cause: Optional[BaseException] = None,
        rollback_error: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if cause is not None:
            details["cause"] = str(cause)
        if rollback_error is not None:
            details["rollback_error"] = str(rollback_error)
            message = f"{message}: transaction error: {cause}, rollback error: {rollback_error}"
        elif cause is not None:
            message = f"{message}: {cause}"
        self.cause = cause
        self.rollback_error = rollback_error
        super().__init__("STORAGE_ERROR", message, details)


class ReportIOError(SegmentatorException):
    """Report file could not be created or written."""

    status_code = 500

    def __init__(self, message: str = "Report file error", details: Optional[Dict[str, Any]] = None):
        super().__init__("REPORT_IO_ERROR", message, details)
