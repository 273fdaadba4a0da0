"""
Engine exceptions rendered as RFC 7807 problem details.

Every error the segmentation and campaign services raise derives from
``CRMException``. A hosting HTTP layer only needs ``status_code`` and
``to_problem_detail()`` to answer with a problem+json body.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from pydantic import BaseModel, Field
import uuid
from datetime import datetime, timezone


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # Rules
    VALIDATION_ERROR = "VAL_001"
    UNSUPPORTED_OPERATOR = "VAL_005"

    # Resources
    NOT_FOUND = "RES_001"
    CONFLICT = "RES_003"

    # Business logic
    BUSINESS_RULE_VIOLATION = "BIZ_001"
    QUOTA_EXCEEDED = "BIZ_002"

    # Customer store
    SERVICE_UNAVAILABLE = "SRV_002"


class ProblemDetail(BaseModel):
    """RFC 7807 problem body, plus ``code``, ``trace_id`` and per-field ``errors``."""

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str = Field(description="Correlates the response with log lines")
    errors: Optional[List[Dict[str, Any]]] = Field(default=None, description="Rule validation errors by field")


_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    409: "Conflict",
    413: "Payload Too Large",
    422: "Validation Error",
    503: "Service Unavailable",
}


class CRMException(Exception):
    """
    Base class for engine errors.

    Usage:
        raise CRMException(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail="Segment not found",
        )
    """

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        detail: str,
        title: Optional[str] = None,
        instance: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.detail = detail
        self.title = title or _TITLES.get(status_code, "Error")
        self.instance = instance
        self.errors = errors
        self.trace_id = uuid.uuid4().hex[:12]
        self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        super().__init__(detail)

    def to_problem_detail(self) -> ProblemDetail:
        return ProblemDetail(
            type=f"https://crm.local/problems/{self.code.value.lower()}",
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=self.instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
        )


# Segmentation errors

class InvalidRuleError(CRMException):
    """Malformed or ill-typed rule tree (422). Rejected at construction."""

    def __init__(self, detail: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            status_code=422,
            code=ErrorCode.VALIDATION_ERROR,
            detail=detail,
            errors=errors,
        )


class UnsupportedOperatorError(CRMException):
    """Rule references an operation the evaluator does not implement (422)."""

    def __init__(self, operation: Any, field: Optional[str] = None):
        self.operation = operation
        self.field = field
        where = f" on field '{field}'" if field else ""
        super().__init__(
            status_code=422,
            code=ErrorCode.UNSUPPORTED_OPERATOR,
            detail=f"Unsupported operation '{operation}'{where}",
        )


class ResolutionTooLargeError(CRMException):
    """In-memory fallback would materialize more rows than allowed (413)."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            status_code=413,
            code=ErrorCode.QUOTA_EXCEEDED,
            detail=f"Audience resolution exceeded the in-memory limit of {limit} rows",
        )


class StoreUnavailableError(CRMException):
    """Customer store failed or timed out (503)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=503,
            code=ErrorCode.SERVICE_UNAVAILABLE,
            detail=f"Customer store unavailable: {detail}",
        )


# Convenience exception classes

class NotFoundError(CRMException):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str, instance: Optional[str] = None):
        super().__init__(
            status_code=404,
            code=ErrorCode.NOT_FOUND,
            detail=f"{resource} with ID {resource_id} was not found",
            instance=instance,
        )


class ConflictError(CRMException):
    """Resource conflict (409)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=409,
            code=ErrorCode.CONFLICT,
            detail=detail,
        )


class BusinessRuleError(CRMException):
    """Business rule violation (400)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=400,
            code=ErrorCode.BUSINESS_RULE_VIOLATION,
            detail=detail,
        )
