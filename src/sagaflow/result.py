"""Tagged success/failure values.

:class:`Ok` and :class:`Err` are the return shape of step actions, of
:func:`sagaflow.retry.execute` and of every ``Pipeline.run*`` method.
Both are frozen dataclasses, so they compare by value and support
structural ``match`` statements::

    match pipeline.run():
        case Ok(context):
            ...
        case Err(StepFailed(step, reason)):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

from sagaflow.errors import UnwrapError

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result wrapping *value*."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply *fn* to the wrapped value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[Any], Any]) -> Ok[T]:
        return self

    def and_then(self, fn: Callable[[T], Result]) -> Result:
        """Chain another fallible computation on the wrapped value."""
        return fn(self.value)

    def or_else(self, fn: Callable[[Any], Result]) -> Ok[T]:
        return self

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: Any) -> T:
        return self.value

    def unwrap_err(self) -> Any:
        raise UnwrapError(f"Called unwrap_err on Ok: {self.value!r}")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result wrapping an opaque *error* value."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def map(self, fn: Callable[[Any], Any]) -> Err[E]:
        return self

    def map_err(self, fn: Callable[[E], U]) -> Err[U]:
        """Apply *fn* to the wrapped error."""
        return Err(fn(self.error))

    def and_then(self, fn: Callable[[Any], Result]) -> Err[E]:
        return self

    def or_else(self, fn: Callable[[E], Result]) -> Result:
        """Attempt recovery by passing the error to *fn*."""
        return fn(self.error)

    def unwrap(self) -> Any:
        raise UnwrapError(f"Called unwrap on Err: {self.error!r}")

    def unwrap_or(self, default: U) -> U:
        return default

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[Any], Err[Any]]


def is_result(value: Any) -> bool:
    """Return ``True`` if *value* is an :class:`Ok` or :class:`Err`."""
    return isinstance(value, (Ok, Err))
