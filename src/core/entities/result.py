from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from src.core.entities.base import CamelModel

T = TypeVar("T")


class ErrorCode(str, Enum):
    AUTH_REQUIRED = "AUTH_REQUIRED"
    DB_NOT_FOUND = "DB_NOT_FOUND"
    DB_QUERY_FAILED = "DB_QUERY_FAILED"
    DB_CONFLICT = "DB_CONFLICT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNEXPECTED = "UNEXPECTED"


class AppError(Exception):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNEXPECTED, status: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    def __repr__(self) -> str:
        return f"AppError({self.code.value}: {self.message})"


@dataclass
class Result(Generic[T]):
    """
    Data-access outcome. Repositories return one of these instead of raising:
    exactly one of data/error is meaningful.
    """
    data: Optional[T] = None
    error: Optional[AppError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: T) -> "Result[T]":
        return cls(data=data)

    @classmethod
    def failure(cls, message: str, code: ErrorCode = ErrorCode.DB_QUERY_FAILED, status: int = 500) -> "Result[T]":
        return cls(error=AppError(message, code, status))


class ActionResult(CamelModel):
    """Uniform return shape of every write operation."""
    success: bool
    error: Optional[str] = None
    code: Optional[ErrorCode] = None
    data: Optional[Any] = None

    @classmethod
    def ok(cls, data: Optional[Any] = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: ErrorCode = ErrorCode.UNEXPECTED) -> "ActionResult":
        return cls(success=False, error=error, code=code)

    @classmethod
    def from_error(cls, err: AppError) -> "ActionResult":
        return cls(success=False, error=err.message, code=err.code)


NOT_AUTHENTICATED = "Not authenticated"
UNEXPECTED_ERROR = "Unexpected error occurred"


def not_authenticated() -> ActionResult:
    return ActionResult.fail(NOT_AUTHENTICATED, ErrorCode.AUTH_REQUIRED)
