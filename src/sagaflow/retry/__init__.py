"""Retry and backoff.

:mod:`sagaflow.retry.backoff` computes delays; :mod:`sagaflow.retry.engine`
drives repeated invocation of a fallible operation.
"""

from sagaflow.retry.backoff import (
    BackoffSpec,
    BackoffStrategy,
    apply_jitter,
    constant,
    custom,
    decorrelated,
    delay,
    equal_jitter,
    exponential,
    full_jitter,
    linear,
    parse_delay,
)
from sagaflow.retry.engine import (
    Recoverable,
    RetryConfig,
    build_backoff,
    calculate_delay,
    execute,
    is_recoverable,
    with_backoff,
)

__all__ = [
    "BackoffSpec",
    "BackoffStrategy",
    "Recoverable",
    "RetryConfig",
    "apply_jitter",
    "build_backoff",
    "calculate_delay",
    "constant",
    "custom",
    "decorrelated",
    "delay",
    "equal_jitter",
    "execute",
    "exponential",
    "full_jitter",
    "is_recoverable",
    "linear",
    "parse_delay",
    "with_backoff",
]
