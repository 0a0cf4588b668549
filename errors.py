"""Error kinds and the Result type returned by circulation operations.

Expected business refusals (a book already on loan, a full quota, ...) are
returned as ``Result`` values carrying a ``LoanError``. Store failures are
real exceptions (``StoreError`` subclasses) raised by the store layer and
turned into results at the transaction boundary.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    NOT_FOUND = "NotFound"
    ALREADY_LOANED = "AlreadyLoaned"
    NOT_ON_LOAN = "NotOnLoan"
    QUOTA_EXCEEDED = "QuotaExceeded"
    NOT_BORROWER = "NotBorrower"
    UNAUTHORIZED = "Unauthorized"
    CONFLICT = "Conflict"
    STORE_UNAVAILABLE = "StoreUnavailable"
    INVALID = "Invalid"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.CONFLICT, ErrorKind.STORE_UNAVAILABLE)


@dataclass(frozen=True)
class LoanError:
    kind: ErrorKind
    message: str
    entity: Optional[str] = None

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "entity": self.entity}

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[LoanError] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, entity: Optional[str] = None) -> "Result":
        return cls(error=LoanError(kind, message, entity))

    @classmethod
    def not_found(cls, entity: str, entity_id: Any) -> "Result":
        return cls.failure(ErrorKind.NOT_FOUND, f"{entity} {entity_id} not found.", entity)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the value or raise ``LibraryError`` for a failed result."""
        if self.error is not None:
            raise LibraryError(self.error)
        return self.value  # type: ignore[return-value]


class LibraryError(Exception):
    """Raised by ``Result.unwrap`` so callers that prefer exceptions can have them."""

    def __init__(self, error: LoanError) -> None:
        super().__init__(error.message)
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


class StoreError(Exception):
    kind = ErrorKind.STORE_UNAVAILABLE


class StoreUnavailable(StoreError):
    """The backing store timed out, was locked or failed at I/O level."""


class Conflict(StoreError):
    """A concurrent writer changed the record between read and save."""

    kind = ErrorKind.CONFLICT
