"""Tests for error handling classes."""

import pytest

from wsplane.core.errors import (
    ConflictError,
    ErrorCode,
    ForbiddenError,
    InfrastructureError,
    NotFoundError,
    RecordExistsError,
    StaleRecordError,
    UnauthorizedError,
    ValidationError,
    VersionConflictError,
    WsPlaneError,
)


@pytest.mark.parametrize(
    ("exc_cls", "code", "status"),
    [
        (UnauthorizedError, ErrorCode.UNAUTHORIZED, 401),
        (ForbiddenError, ErrorCode.FORBIDDEN, 403),
        (NotFoundError, ErrorCode.NOT_FOUND, 404),
        (ConflictError, ErrorCode.CONFLICT, 409),
        (ValidationError, ErrorCode.VALIDATION_ERROR, 422),
        (InfrastructureError, ErrorCode.INFRASTRUCTURE_ERROR, 502),
    ],
)
def test_code_and_status(exc_cls: type[WsPlaneError], code: ErrorCode, status: int) -> None:
    exc = exc_cls()
    assert isinstance(exc, WsPlaneError)
    assert exc.code == code
    assert exc.status_code == status


class TestStoreConflicts:
    """RecordExistsError / StaleRecordError surface as Conflict."""

    def test_record_exists_is_conflict(self) -> None:
        exc = RecordExistsError()
        assert isinstance(exc, ConflictError)
        assert exc.status_code == 409

    def test_stale_record_is_conflict(self) -> None:
        exc = StaleRecordError("Workspace ws_1 was modified concurrently")
        assert isinstance(exc, ConflictError)
        assert exc.message == "Workspace ws_1 was modified concurrently"


class TestInfrastructureError:
    def test_keeps_cause(self) -> None:
        cause = RuntimeError("boom")
        exc = InfrastructureError("Failed to create secret", cause=cause)
        assert exc.cause is cause

    def test_version_conflict_is_infrastructure(self) -> None:
        exc = VersionConflictError()
        assert isinstance(exc, InfrastructureError)
        assert exc.cause is None


def test_to_response() -> None:
    """to_response() renders {"error": {"code", "message"}}."""
    resp = ConflictError("Workspace is already running").to_response()
    assert resp.model_dump() == {
        "error": {"code": "CONFLICT", "message": "Workspace is already running"}
    }
