"""Pipeline data models.

Defines the immutable context mapping, step definitions, the execution
trace and the step outcome normalisation used by the execution loop.
"""

from __future__ import annotations

import copy
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from sagaflow.errors import InvalidOutcome
from sagaflow.result import Err, Ok, Result

if TYPE_CHECKING:
    from sagaflow.retry.engine import RetryConfig


class Context(Mapping[str, Any]):
    """Immutable, ordered key-value state threaded through a pipeline.

    Steps receive a :class:`Context` as a read-only view.  Every change
    produces a new instance (:meth:`merge`, :meth:`drop`).  Checkpoints and
    completed-step records hold deep copies, so later steps that mutate
    nested values in place cannot alter them.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Context({self._data!r})"

    def has(self, key: str) -> bool:
        """Return ``True`` if *key* exists in the context."""
        return key in self._data

    def merge(self, updates: Mapping[str, Any]) -> Context:
        """Return a new context with *updates* merged in (right-biased)."""
        if not updates:
            return self
        merged = dict(self._data)
        merged.update(updates)
        return Context(merged)

    def drop(self, keys: Iterable[str]) -> Context:
        """Return a new context without *keys*; missing keys are ignored."""
        removed = set(keys)
        return Context({k: v for k, v in self._data.items() if k not in removed})

    def to_dict(self) -> dict[str, Any]:
        """Return a shallow copy of all context data."""
        return dict(self._data)

    def snapshot(self) -> dict[str, Any]:
        """Return a deep copy of all context data.

        Use when values are mutable objects that callers intend to
        change after the snapshot is taken.
        """
        return copy.deepcopy(self._data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Context:
        if isinstance(data, Context):
            return data
        return cls(data)


Action = Callable[[Context], Any]
RollbackAction = Callable[[Context], Any]
CleanupAction = Callable[[Context, Result], Any]


class Ack:
    """Success without any context contribution."""

    _instance: Ack | None = None

    def __new__(cls) -> Ack:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ACK"


ACK = Ack()

StepOutcome = Ok | Err | Ack


def normalize_outcome(value: Any) -> StepOutcome:
    """Coerce whatever a step action returned into a :data:`StepOutcome`.

    * ``Err(reason)`` stays a failure.
    * ``ACK``, ``None``, ``Ok(None)`` and ``Ok(ACK)`` become :data:`ACK`.
    * ``Ok(mapping)`` or a bare mapping becomes ``Ok(dict)``.
    * Anything else is ``Err(InvalidOutcome(value))``.
    """
    if isinstance(value, Err):
        return value
    if value is None or value is ACK:
        return ACK
    if isinstance(value, Ok):
        inner = value.value
        if inner is None or inner is ACK:
            return ACK
        if isinstance(inner, Mapping):
            return Ok(dict(inner))
        return Err(InvalidOutcome(value))
    if isinstance(value, Mapping):
        return Ok(dict(value))
    return Err(InvalidOutcome(value))


@dataclass(frozen=True)
class Step:
    """A named unit of work.

    Attributes:
        name: Identifier used for diagnostics and error envelopes.
        action: ``Context -> StepOutcome`` callable.
        rollback: Optional compensating action, called with the context
            as it stood right after this step completed.
        retry: Retry configuration applied around *action*.
        condition: Optional predicate; when it returns falsy the step is
            skipped without being recorded as completed.
    """

    name: str
    action: Action
    rollback: RollbackAction | None = None
    retry: RetryConfig | None = None
    condition: Callable[[Context], bool] | None = None


@dataclass(frozen=True)
class StepInfo:
    """Read-only description of a step for introspection."""

    name: str
    has_rollback: bool
    has_retry: bool


@dataclass(frozen=True)
class CompletedStep:
    """Execution trace entry: a step and the context right after it ran."""

    step: Step
    context: Context

    @property
    def name(self) -> str:
        return self.step.name


@dataclass(frozen=True)
class Checkpoint:
    """Named, immutable snapshot of a pipeline context.

    Attributes:
        name: Identifier passed to ``Pipeline.checkpoint``.
        context: The context at checkpoint time.
        timestamp: UNIX epoch when the checkpoint was taken.
    """

    name: str
    context: Context
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Cleanup:
    """A callback registered through ``Pipeline.ensure``."""

    name: str
    fn: CleanupAction
