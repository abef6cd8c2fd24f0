"""
Result values for operations that must not raise into callers.

Remote fetches and policy checks in the data layer report their outcome as a
``Success`` or ``Failure`` instead of an exception, so UI-facing code decides
what to do with a miss, a denial or a network failure explicitly.

Example:
    result = await facade.get("clients")
    match result:
        case Success(clients):
            render(clients)
        case Failure(AccessDenied() as denied):
            hide_panel(denied.resource)
        case Failure(error):
            show_error(str(error))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar, Union, cast

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Operation completed with ``value``."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, _default: T) -> T:
        return self.value

    def map(self, func: Callable[[T], U]) -> Result[U, E]:
        """Apply ``func`` to the value; an exception becomes a Failure."""
        try:
            return Success(func(self.value))
        except Exception as e:
            return Failure(cast(E, e))

    def flat_map(self, func: Callable[[T], Result[U, E]]) -> Result[U, E]:
        try:
            return func(self.value)
        except Exception as e:
            return Failure(cast(E, e))


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """Operation failed with ``error``."""

    error: E

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise: the error itself when it is an exception, RuntimeError otherwise."""
        if isinstance(self.error, Exception):
            raise self.error
        raise RuntimeError(f"Operation failed: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, _func: Callable[[T], U]) -> Result[U, E]:
        return cast(Result[U, E], self)

    def flat_map(self, _func: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return cast(Result[U, E], self)


Result = Union[Success[T], Failure[E]]


def success(value: T) -> Success[T]:
    return Success(value)


def failure(error: E) -> Failure[E]:
    return Failure(error)


@dataclass(frozen=True, slots=True)
class AccessDenied:
    """The principal's role does not grant ``action`` on ``resource``."""

    role: str
    resource: str
    action: str

    def __str__(self) -> str:
        return f"Role '{self.role}' may not {self.action} '{self.resource}'"


@dataclass(frozen=True, slots=True)
class RemoteError:
    """A remote read or write failed."""

    resource: str
    operation: str
    message: str
    status: Optional[int] = None

    @property
    def retryable(self) -> bool:
        # Transport failures and 5xx/429 are worth retrying, other 4xx are not.
        if self.status is None:
            return True
        return self.status >= 500 or self.status == 429

    def __str__(self) -> str:
        suffix = f" (HTTP {self.status})" if self.status is not None else ""
        return f"Remote {self.operation} of '{self.resource}' failed: {self.message}{suffix}"


@dataclass(frozen=True, slots=True)
class ValidationError:
    """Caller-supplied input was rejected before any remote call."""

    field: str
    message: str
    value: Optional[str] = None

    def __str__(self) -> str:
        if self.value:
            return f"{self.field}: {self.message} (got: {self.value})"
        return f"{self.field}: {self.message}"


__all__ = [
    "AccessDenied",
    "Failure",
    "RemoteError",
    "Result",
    "Success",
    "ValidationError",
    "failure",
    "success",
]
