import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as DBAPITimeoutError

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    CONFLICT = "conflict"
    INTERNAL = "internal"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown", kind: ErrorKind = ErrorKind.INTERNAL) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, kind=kind)

    @property
    def retryable(self) -> bool:
        """Only transient failures are worth another attempt."""
        return not self.ok and self.kind == ErrorKind.TRANSIENT

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default


def kind_for_exception(exc: BaseException) -> ErrorKind:
    """Map an unexpected exception onto the retry taxonomy."""
    if isinstance(exc, IntegrityError):
        return ErrorKind.CONFLICT
    if isinstance(exc, (OperationalError, DBAPITimeoutError, TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.INTERNAL
