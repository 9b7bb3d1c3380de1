"""Saga-style pipeline orchestration.

Build a :class:`Pipeline` from named steps, then run it with
:meth:`Pipeline.run`, :meth:`Pipeline.run_with_rollback`,
:meth:`Pipeline.run_with_ensure` or :meth:`Pipeline.run_with_timeout`.
"""

from sagaflow.pipeline.builder import Pipeline
from sagaflow.pipeline.events import (
    PipelineEvent,
    PipelineEventEmitter,
    PipelineEventType,
)
from sagaflow.pipeline.models import (
    ACK,
    Ack,
    Checkpoint,
    Cleanup,
    CompletedStep,
    Context,
    Step,
    StepInfo,
    StepOutcome,
    normalize_outcome,
)
from sagaflow.pipeline.validator import (
    LintRule,
    ValidationException,
    ValidationFinding,
    ValidationLevel,
    has_errors,
    register_lint_rule,
    validate_or_raise,
    validate_pipeline,
)

__all__ = [
    "ACK",
    "Ack",
    "Checkpoint",
    "Cleanup",
    "CompletedStep",
    "Context",
    "LintRule",
    "Pipeline",
    "PipelineEvent",
    "PipelineEventEmitter",
    "PipelineEventType",
    "Step",
    "StepInfo",
    "StepOutcome",
    "ValidationException",
    "ValidationFinding",
    "ValidationLevel",
    "has_errors",
    "normalize_outcome",
    "register_lint_rule",
    "validate_or_raise",
    "validate_pipeline",
]
