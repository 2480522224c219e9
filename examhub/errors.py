"""
examhub/errors.py
Centralized Error Handling

CORE PRINCIPLES:
- APIs are contracts. Contracts must never break.
- No 500 errors caused by user input
- All errors follow consistent structure
- Errors are user-safe (no stack traces)
- Errors are machine-readable

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 200/201: Successful, valid request (including idempotent replays)
- 202: Payment confirmation accepted but held for manual review
- 400: Invalid input / malformed request
- 401: Authentication missing or expired
- 403: Access forbidden (ownership / scope)
- 404: Resource does not exist
- 409: State conflict / no seats left
- 422: Validation error (Pydantic) or deadline passed
- 429: Rate limit exceeded
- 503: Datastore unavailable
- 500: NEVER caused by user input (internal only)
"""

import logging
import uuid
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse

from examhub.services.outcomes import Outcome, OperationResult

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"

    FORBIDDEN = "FORBIDDEN"
    OWNERSHIP_VIOLATION = "OWNERSHIP_VIOLATION"

    NOT_FOUND = "NOT_FOUND"

    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    INSUFFICIENT_SEATS = "INSUFFICIENT_SEATS"
    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    ALREADY_STARTED = "ALREADY_STARTED"
    ENROLLMENT_NOT_PENDING = "ENROLLMENT_NOT_PENDING"
    EXAM_NOT_PUBLISHED = "EXAM_NOT_PUBLISHED"
    DEADLINE_PASSED = "DEADLINE_PASSED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"

    RATE_LIMITED = "RATE_LIMITED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class BadRequestError(APIError):
    """400 Bad Request - Invalid input"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Bad Request",
            message=message,
            code=code,
            details=details
        )


class UnauthorizedError(APIError):
    """401 Unauthorized - Authentication required"""
    def __init__(self, message: str = "Authentication required", code: str = ErrorCode.AUTH_REQUIRED):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=message,
            code=code
        )


class ServiceUnavailableError(APIError):
    """503 Service Unavailable - datastore unreachable"""
    def __init__(self, message: str = "The service is temporarily unavailable", log_id: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error="Service Unavailable",
            message=message,
            code=ErrorCode.SERVICE_UNAVAILABLE,
            details={"log_id": log_id} if log_id else None
        )


# Outcome -> (HTTP status, error label, error code)
OUTCOME_HTTP_STATUS: Dict[Outcome, tuple] = {
    Outcome.OK: (status.HTTP_200_OK, None, None),
    Outcome.CREDITED: (status.HTTP_200_OK, None, None),
    Outcome.ALREADY_SUBMITTED: (status.HTTP_200_OK, None, None),
    Outcome.DUPLICATE: (status.HTTP_200_OK, None, None),
    Outcome.ALREADY_CREDITED: (status.HTTP_200_OK, None, None),
    Outcome.REJECTED: (status.HTTP_202_ACCEPTED, "Payment Rejected", ErrorCode.PAYMENT_REJECTED),
    Outcome.INSUFFICIENT_SEATS: (status.HTTP_409_CONFLICT, "Insufficient Seats", ErrorCode.INSUFFICIENT_SEATS),
    Outcome.ALREADY_ENROLLED: (status.HTTP_409_CONFLICT, "Conflict", ErrorCode.ALREADY_ENROLLED),
    Outcome.ALREADY_STARTED: (status.HTTP_409_CONFLICT, "Conflict", ErrorCode.ALREADY_STARTED),
    Outcome.ENROLLMENT_NOT_PENDING: (status.HTTP_409_CONFLICT, "Conflict", ErrorCode.ENROLLMENT_NOT_PENDING),
    Outcome.EXAM_NOT_PUBLISHED: (status.HTTP_409_CONFLICT, "Conflict", ErrorCode.EXAM_NOT_PUBLISHED),
    Outcome.DEADLINE_PASSED: (status.HTTP_422_UNPROCESSABLE_ENTITY, "Deadline Passed", ErrorCode.DEADLINE_PASSED),
    Outcome.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Not Found", ErrorCode.NOT_FOUND),
}

_missing = set(Outcome) - set(OUTCOME_HTTP_STATUS)
if _missing:
    raise RuntimeError(f"Outcomes without an HTTP mapping: {sorted(o.value for o in _missing)}")


def outcome_to_error(result: OperationResult, details: Optional[Dict[str, Any]] = None) -> APIError:
    """Build the structured APIError for a failed operation."""
    status_code, error, code = OUTCOME_HTTP_STATUS[result.outcome]
    return APIError(
        status_code=status_code,
        error=error or "Error",
        message=result.message or result.outcome.value,
        code=code or result.outcome.value,
        details={"outcome": result.outcome.value, **(details or {})}
    )


def raise_for_outcome(result: OperationResult, details: Optional[Dict[str, Any]] = None) -> None:
    """Raise the mapped APIError unless the outcome is success-class."""
    if not result.ok:
        raise outcome_to_error(result, details)


def outcome_status_code(outcome: Outcome) -> int:
    return OUTCOME_HTTP_STATUS[outcome][0]


def new_log_id() -> str:
    return str(uuid.uuid4())[:8]


def get_error_summary() -> Dict[str, Any]:
    """Return summary of error handling system for documentation"""
    return {
        "service": "examhub-error-handler",
        "principle": "APIs are contracts. Contracts must never break.",
        "response_structure": {
            "success": "boolean (always false for errors)",
            "error": "string (error type)",
            "message": "string (human-readable)",
            "code": "string (machine-readable)",
            "details": "object (optional)"
        },
        "outcomes": {
            outcome.value: mapping[0] for outcome, mapping in OUTCOME_HTTP_STATUS.items()
        },
        "error_codes": [
            attr for attr in dir(ErrorCode)
            if not attr.startswith('_')
        ]
    }
