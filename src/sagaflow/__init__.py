"""sagaflow: saga-style step pipelines with rollback, checkpoints and retry."""

from sagaflow.errors import (
    CheckpointNotFound,
    ExecutionCancelled,
    InvalidOutcome,
    MaxRetries,
    MissingKey,
    NoBranchFor,
    PipelineFailedError,
    RollbackError,
    SagaflowError,
    StepFailed,
    Timeout,
)
from sagaflow.pipeline import ACK, Context, Pipeline
from sagaflow.result import Err, Ok, Result

__all__ = [
    "ACK",
    "CheckpointNotFound",
    "Context",
    "Err",
    "ExecutionCancelled",
    "InvalidOutcome",
    "MaxRetries",
    "MissingKey",
    "NoBranchFor",
    "Ok",
    "Pipeline",
    "PipelineFailedError",
    "Result",
    "RollbackError",
    "SagaflowError",
    "StepFailed",
    "Timeout",
]
