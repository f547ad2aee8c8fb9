"""Unit tests for merge errors and ServiceResult."""

from sqlalchemy.exc import IntegrityError

from mpi.services.merge.errors import (
    ErrorCode,
    LedgerWriteError,
    MergeStepError,
    MergeValidationError,
    PatientNotFoundError,
    ServiceResult,
)


class TestMergeErrors:
    """Tests for error codes carried by the exception hierarchy."""

    def test_default_codes(self):
        assert PatientNotFoundError("x").code == ErrorCode.NOT_FOUND
        assert MergeValidationError("x").code == ErrorCode.OPERATION_FAILED
        assert LedgerWriteError("x").code == ErrorCode.DATABASE_ERROR

    def test_code_override(self):
        error = MergeStepError("x", state="migrating", code=ErrorCode.DATABASE_ERROR)

        assert error.code == ErrorCode.DATABASE_ERROR
        assert error.state == "migrating"
        assert error.message == "x"


class TestServiceResult:
    """Tests for ServiceResult construction."""

    def test_ok(self):
        result = ServiceResult.ok({"id": 1})

        assert result.success
        assert result.data == {"id": 1}
        assert result.error is None

    def test_fail(self):
        result = ServiceResult.fail(ErrorCode.NOT_FOUND, "missing", {"id": 1})

        assert not result.success
        assert result.data is None
        assert result.error.code == ErrorCode.NOT_FOUND
        assert result.error.details == {"id": 1}

    def test_from_merge_error(self):
        result = ServiceResult.from_exception(PatientNotFoundError("Patient gone"), "Failed")

        assert result.error.code == ErrorCode.NOT_FOUND
        assert result.error.message == "Patient gone"

    def test_from_database_error(self):
        exc = IntegrityError("INSERT", {}, Exception("duplicate key"))

        result = ServiceResult.from_exception(exc, "Failed to get merge history")

        assert result.error.code == ErrorCode.DATABASE_ERROR
        assert result.error.message.startswith("Failed to get merge history: ")

    def test_from_unexpected_error(self):
        result = ServiceResult.from_exception(KeyError("x"), "Failed")

        assert result.error.code == ErrorCode.UNKNOWN_ERROR
