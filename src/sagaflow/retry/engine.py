"""Retry driver.

Repeatedly invokes a zero-argument fallible operation, sleeping between
attempts according to a :class:`~sagaflow.retry.backoff.BackoffSpec`.

Outcome conventions for the operation:

* ``Ok(value)`` or any plain return value is a success;
* ``Err(reason)`` is a failure with *reason*;
* a raised exception is a failure whose reason is the exception.

Failures are checked against the ``recoverable`` predicate.  A
non-recoverable reason stops immediately; a recoverable one is retried
until ``max_attempts`` is reached.  Both end in ``Err(MaxRetries(...))``.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Protocol, runtime_checkable

from sagaflow.cancellation import cancellable_sleep
from sagaflow.errors import ExecutionCancelled, MaxRetries
from sagaflow.result import Err, Ok, Result
from sagaflow.retry import backoff as backoff_mod
from sagaflow.retry.backoff import BackoffSpec, BackoffStrategy

logger = logging.getLogger(__name__)

OnRetry = Callable[[Any, int, int], Any]


@runtime_checkable
class Recoverable(Protocol):
    """Failure reasons that know whether they are worth retrying."""

    @property
    def is_retryable(self) -> bool: ...


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for :func:`execute`.

    Attributes:
        max_attempts: Total number of invocations, including the first.
        backoff: Delay policy between attempts.
        recoverable: Predicate deciding whether a failure reason is
            retried.  ``None`` defers to :func:`is_recoverable`.
        on_retry: Callback ``(reason, attempt, delay_ms)`` fired before
            each sleep.

    Raises:
        ValueError: If *max_attempts* is lower than 1.
    """

    max_attempts: int = 3
    backoff: BackoffSpec = field(default_factory=backoff_mod.exponential)
    recoverable: Callable[[Any], bool] | None = None
    on_retry: OnRetry | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


def is_recoverable(reason: Any, config: RetryConfig | None = None) -> bool:
    """Decide whether *reason* should be retried.

    A configured ``recoverable`` predicate wins.  Otherwise reasons that
    implement :class:`Recoverable` are asked directly and everything
    else counts as recoverable.
    """
    if config is not None and config.recoverable is not None:
        return bool(config.recoverable(reason))
    if isinstance(reason, Recoverable):
        return bool(reason.is_retryable)
    return True


def _invoke(operation: Callable[[], Any]) -> Result:
    try:
        value = operation()
    except ExecutionCancelled:
        raise
    except Exception as exc:
        return Err(exc)
    if isinstance(value, (Ok, Err)):
        return value
    return Ok(value)


def execute(
    operation: Callable[[], Any],
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], None] | None = None,
    rng: random.Random | None = None,
    **overrides: Any,
) -> Result:
    """Run *operation* until it succeeds or retrying stops.

    Args:
        operation: Zero-argument callable.
        config: Retry configuration; defaults to :class:`RetryConfig`.
        sleep: Sleep function taking seconds.  Defaults to a sleep that
            wakes up early when the current execution is cancelled.
        rng: Random generator forwarded to the backoff computation.
        **overrides: Field overrides applied on top of *config*
            (``max_attempts``, ``backoff``, ``recoverable``, ``on_retry``).

    Returns:
        ``Ok(value)`` on success, ``Err(MaxRetries(reason))`` when the
        last failure was non-recoverable or attempts ran out.
    """
    config = config or RetryConfig()
    if overrides:
        config = replace(config, **overrides)
    sleep = sleep or cancellable_sleep

    previous_delay: int | None = None
    attempt = 1
    while True:
        outcome = _invoke(operation)
        if isinstance(outcome, Ok):
            if attempt > 1:
                logger.debug("Operation succeeded on attempt %d", attempt)
            return outcome

        reason = outcome.error
        if not is_recoverable(reason, config):
            logger.info("Not retrying non-recoverable failure: %r", reason)
            return Err(MaxRetries(reason, attempts=attempt))
        if attempt >= config.max_attempts:
            logger.warning(
                "Giving up after %d attempts: %r", attempt, reason
            )
            return Err(MaxRetries(reason, attempts=attempt))

        wait_ms = backoff_mod.delay(
            config.backoff, attempt, previous_delay, rng=rng
        )
        previous_delay = wait_ms
        if config.on_retry is not None:
            config.on_retry(reason, attempt, wait_ms)
        logger.info(
            "Attempt %d/%d failed (%r), retrying in %dms",
            attempt,
            config.max_attempts,
            reason,
            wait_ms,
        )
        sleep(wait_ms / 1000)
        attempt += 1


def with_backoff(
    operation: Callable[[], Any],
    strategy: BackoffStrategy | str,
    *,
    max_attempts: int = 3,
    initial: int = 100,
    max_delay: int = 30_000,
    jitter: float = 0.25,
    **kwargs: Any,
) -> Result:
    """Shorthand for :func:`execute` with a named backoff strategy."""
    spec = build_backoff(strategy, initial=initial, max_delay=max_delay, jitter=jitter)
    return execute(operation, RetryConfig(max_attempts=max_attempts, backoff=spec), **kwargs)


def build_backoff(
    strategy: BackoffStrategy | str | Callable[[int, dict[str, Any]], float],
    *,
    initial: int = 100,
    max_delay: int = 30_000,
    jitter: float = 0.25,
) -> BackoffSpec:
    """Build a :class:`BackoffSpec` from a strategy name and common options."""
    if callable(strategy) and not isinstance(strategy, str):
        return backoff_mod.custom(strategy, initial=initial, max_delay=max_delay)
    strategy = BackoffStrategy(strategy)
    if strategy is BackoffStrategy.EXPONENTIAL:
        return backoff_mod.exponential(initial, max_delay, jitter)
    if strategy is BackoffStrategy.LINEAR:
        return backoff_mod.linear(initial, max_delay)
    if strategy is BackoffStrategy.CONSTANT:
        return backoff_mod.constant(initial)
    if strategy is BackoffStrategy.DECORRELATED:
        return backoff_mod.decorrelated(initial, max_delay)
    if strategy is BackoffStrategy.FULL_JITTER:
        return backoff_mod.full_jitter(initial, max_delay)
    return backoff_mod.equal_jitter(initial, max_delay)


def calculate_delay(
    attempt: int,
    strategy: BackoffStrategy | str = BackoffStrategy.EXPONENTIAL,
    *,
    previous_delay: int | None = None,
    rng: random.Random | None = None,
    **opts: Any,
) -> int:
    """Compute a single delay for *attempt* using a named strategy."""
    spec = build_backoff(strategy, **opts)
    return backoff_mod.delay(spec, attempt, previous_delay, rng=rng)
