"""Error hierarchy for sagaflow.

Two families live here:

* Exceptions (:class:`SagaflowError` and subclasses) raised at the
  outermost boundary, e.g. by ``Pipeline.run_or_raise``.
* Orchestrator error values (:class:`PipelineErrorReason` subclasses)
  carried inside ``Err`` results.  They originate from the pipeline's
  own bookkeeping and always name the offending identifier.  Step
  specific reasons are opaque and supplied by application code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class SagaflowError(Exception):
    """Base exception for all sagaflow errors."""


class UnwrapError(SagaflowError):
    """Raised when unwrapping the wrong side of a result."""


class ExecutionCancelled(SagaflowError):
    """Raised inside a worker when its cancellation token fires."""


class ConfigError(SagaflowError):
    """Invalid configuration value (environment or dictionary)."""


class PipelineFailedError(SagaflowError):
    """Raised by ``Pipeline.run_or_raise`` when the pipeline halts.

    Attributes:
        error: The error envelope the pipeline halted with.
    """

    def __init__(self, error: Any) -> None:
        super().__init__(f"Pipeline failed: {error!r}")
        self.error = error


# ---------------------------------------------------------------------------
# Orchestrator error values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineErrorReason:
    """Base class for error values produced by the orchestrator itself."""


@dataclass(frozen=True)
class RollbackError(PipelineErrorReason):
    """A compensating action that raised or returned ``Err``."""

    step: str
    reason: Any


@dataclass(frozen=True)
class StepFailed(PipelineErrorReason):
    """The envelope a pipeline halts with when a step fails.

    Attributes:
        step: Name of the step whose action failed.
        reason: The opaque failure reason produced by the step.
        rollback_errors: Compensating actions that broke while unwinding
            (only populated by ``run_with_rollback``).
    """

    step: str
    reason: Any
    rollback_errors: tuple[RollbackError, ...] = ()


@dataclass(frozen=True)
class MaxRetries(PipelineErrorReason):
    """Retry gave up, either exhausted or on a non-recoverable reason."""

    reason: Any
    attempts: int = field(default=0, compare=False)


@dataclass(frozen=True)
class CheckpointNotFound(PipelineErrorReason):
    name: str


@dataclass(frozen=True)
class NoBranchFor(PipelineErrorReason):
    key: str
    value: Any


@dataclass(frozen=True)
class MissingKey(PipelineErrorReason):
    key: str


@dataclass(frozen=True)
class Timeout(PipelineErrorReason):
    """The pipeline did not finish within its deadline.

    ``rollback_errors`` lists compensations that failed while unwinding
    after the deadline; it is not part of equality.
    """

    rollback_errors: tuple[RollbackError, ...] = field(default=(), compare=False)


@dataclass(frozen=True)
class InvalidOutcome(PipelineErrorReason):
    """A step action returned something that is not a step outcome."""

    value: Any
