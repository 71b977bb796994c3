"""
Shared domain errors and the result type returned by registry, queue and
session transitions.

Domain failures (duplicate attempt, wrong state, out-of-order answer) are
returned as ``OperationResult`` values. Infrastructure failures still raise.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class DomainError(Exception):
    message: str = "Domain error"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class PreconditionFailedError(DomainError):
    pass


class AlreadyExistsError(PreconditionFailedError):
    pass


class NotFoundError(DomainError):
    pass


class InvalidStateError(DomainError):
    pass


class OutOfOrderError(DomainError):
    pass


class ValidationError(DomainError):
    pass


class TransientError(DomainError):
    """Upstream failure worth retrying (timeouts, 5xx, rate limits)."""


class FatalError(DomainError):
    """Upstream failure that will not succeed on retry."""


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of an operation that may fail for domain reasons."""

    value: Optional[T] = None
    error: Optional[DomainError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: DomainError) -> "OperationResult[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
