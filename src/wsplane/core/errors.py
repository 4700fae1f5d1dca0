"""Error taxonomy shared by the control plane and the HTTP surface.

Every failure a caller can see is a WsPlaneError subclass; the API renders
them as::

    {"error": {"code": "CONFLICT", "message": "Workspace is already running"}}

NotFound also covers records that exist but are hidden from the caller, so
existence never leaks across groups.
"""

from enum import StrEnum
from typing import ClassVar

from pydantic import BaseModel


class ErrorCode(StrEnum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INFRASTRUCTURE_ERROR = "INFRASTRUCTURE_ERROR"


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


class WsPlaneError(Exception):
    """Base class; subclasses pin code, HTTP status and a default message."""

    code: ClassVar[ErrorCode]
    status_code: ClassVar[int]
    default_message: ClassVar[str] = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=ErrorDetail(code=self.code.value, message=self.message))


class UnauthorizedError(WsPlaneError):
    """No caller identity on the request."""

    code = ErrorCode.UNAUTHORIZED
    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(WsPlaneError):
    """Caller is known but lacks owner, group admin or platform admin standing."""

    code = ErrorCode.FORBIDDEN
    status_code = 403
    default_message = "Permission denied"


class NotFoundError(WsPlaneError):
    code = ErrorCode.NOT_FOUND
    status_code = 404
    default_message = "Resource not found"


class ConflictError(WsPlaneError):
    """Illegal state transition, duplicate name, or a group that still has workspaces."""

    code = ErrorCode.CONFLICT
    status_code = 409
    default_message = "Conflict"


class RecordExistsError(ConflictError):
    """Conditional insert hit an existing unique key."""

    default_message = "Record already exists"


class StaleRecordError(ConflictError):
    """Version-checked update lost to a concurrent writer."""

    default_message = "Record was modified concurrently"


class ValidationError(WsPlaneError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 422
    default_message = "Invalid request"


class InfrastructureError(WsPlaneError):
    """A cluster or record store call failed.

    Attributes:
        cause: The client library exception, when there is one.
    """

    code = ErrorCode.INFRASTRUCTURE_ERROR
    status_code = 502
    default_message = "Infrastructure call failed"

    def __init__(self, message: str | None = None, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class VersionConflictError(InfrastructureError):
    """Replace of a cluster object carried a stale resourceVersion."""

    default_message = "Cluster object version conflict"
