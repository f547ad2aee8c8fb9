"""
Errors and tagged results for the merge engine.

Internal steps raise MergeError subclasses. Public orchestrator operations
catch everything at their boundary and return a ServiceResult instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Failure taxonomy surfaced to callers."""

    NOT_FOUND = "NOT_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"
    OPERATION_FAILED = "OPERATION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class MergeError(Exception):
    """Error during a patient merge operation."""

    code: ErrorCode = ErrorCode.OPERATION_FAILED

    def __init__(self, message: str, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class PatientNotFoundError(MergeError):
    """Referenced patient or ledger entry does not exist."""

    code = ErrorCode.NOT_FOUND


class LedgerEntryNotFoundError(MergeError):
    """Referenced merge history entry does not exist."""

    code = ErrorCode.NOT_FOUND


class MergeValidationError(MergeError):
    """Precondition preventing a merge."""

    pass


class MergeStepError(MergeError):
    """A merge step failed; carries the state it failed in."""

    def __init__(self, message: str, state: Any, code: ErrorCode | None = None):
        super().__init__(message, code)
        self.state = state


class MergeUndoError(MergeError):
    """Error when attempting to reverse a merge."""

    pass


class LedgerWriteError(MergeError):
    """The ledger entry could not be written."""

    code = ErrorCode.DATABASE_ERROR


class LedgerImmutableError(MergeError):
    """Attempt to change a frozen ledger column."""

    pass


class ServiceError:
    """Error payload of a failed ServiceResult."""

    def __init__(self, code: ErrorCode, message: str, details: dict[str, Any] | None = None):
        self.code = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"<ServiceError {self.code.value}: {self.message}>"


class ServiceResult(Generic[T]):
    """
    Tagged success/failure result.

    Attributes:
        success: Whether the operation succeeded
        data: Payload on success
        error: ServiceError on failure
    """

    def __init__(self, success: bool, data: T | None = None, error: ServiceError | None = None):
        self.success = success
        self.data = data
        self.error = error

    @classmethod
    def ok(cls, data: T) -> "ServiceResult[T]":
        return cls(True, data=data)

    @classmethod
    def fail(
        cls,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "ServiceResult[T]":
        return cls(False, error=ServiceError(code, message, details))

    @classmethod
    def from_exception(cls, exc: BaseException, default_message: str) -> "ServiceResult[T]":
        """Convert an exception caught at an operation boundary."""
        if isinstance(exc, MergeError):
            return cls.fail(exc.code, exc.message)
        if isinstance(exc, SQLAlchemyError):
            return cls.fail(ErrorCode.DATABASE_ERROR, f"{default_message}: {exc}")
        return cls.fail(ErrorCode.UNKNOWN_ERROR, f"{default_message}: {exc}")

    def __repr__(self) -> str:
        if self.success:
            return f"<ServiceResult ok {self.data!r}>"
        return f"<ServiceResult failed {self.error!r}>"
