"""Environment-driven defaults.

Only retry defaults are configurable this way; everything else is set
explicitly when building a pipeline.

Environment variables:
    SAGAFLOW_RETRY_MAX_ATTEMPTS: Total attempts per retried step.
    SAGAFLOW_RETRY_STRATEGY: Backoff strategy name.
    SAGAFLOW_RETRY_INITIAL_DELAY: Initial delay (``"100ms"``, ``"2s"``, ...).
    SAGAFLOW_RETRY_MAX_DELAY: Delay cap, same formats.
    SAGAFLOW_RETRY_JITTER: Jitter factor between 0 and 1.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from sagaflow.errors import ConfigError
from sagaflow.retry.backoff import BackoffSpec, BackoffStrategy, parse_delay
from sagaflow.retry.engine import RetryConfig, build_backoff

ENV_PREFIX = "SAGAFLOW_RETRY_"


@dataclass(frozen=True)
class RetrySettings:
    """Default retry behaviour for ``Pipeline.step_with_retry``."""

    max_attempts: int = 3
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay_ms: int = 100
    max_delay_ms: int = 30_000
    jitter: float = 0.25

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RetrySettings:
        """Read settings from *environ* (defaults to ``os.environ``).

        Unset variables keep their defaults.

        Raises:
            ConfigError: If a variable is set to an invalid value.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        max_attempts = defaults.max_attempts
        raw = _get("MAX_ATTEMPTS")
        if raw is not None:
            try:
                max_attempts = int(raw)
            except ValueError as exc:
                raise ConfigError(f"{ENV_PREFIX}MAX_ATTEMPTS must be an integer, got {raw!r}") from exc
            if max_attempts < 1:
                raise ConfigError(f"{ENV_PREFIX}MAX_ATTEMPTS must be >= 1, got {max_attempts}")

        strategy = defaults.strategy
        raw = _get("STRATEGY")
        if raw is not None:
            try:
                strategy = BackoffStrategy(raw.lower())
            except ValueError as exc:
                choices = ", ".join(s.value for s in BackoffStrategy)
                raise ConfigError(
                    f"{ENV_PREFIX}STRATEGY must be one of {choices}, got {raw!r}"
                ) from exc

        initial = _delay_setting("INITIAL_DELAY", _get("INITIAL_DELAY"), defaults.initial_delay_ms)
        maximum = _delay_setting("MAX_DELAY", _get("MAX_DELAY"), defaults.max_delay_ms)

        jitter = defaults.jitter
        raw = _get("JITTER")
        if raw is not None:
            try:
                jitter = float(raw)
            except ValueError as exc:
                raise ConfigError(f"{ENV_PREFIX}JITTER must be a number, got {raw!r}") from exc
            if not 0.0 <= jitter <= 1.0:
                raise ConfigError(f"{ENV_PREFIX}JITTER must be within [0, 1], got {jitter}")

        return cls(
            max_attempts=max_attempts,
            strategy=strategy,
            initial_delay_ms=initial,
            max_delay_ms=maximum,
            jitter=jitter,
        )

    def backoff(self) -> BackoffSpec:
        try:
            return build_backoff(
                self.strategy,
                initial=self.initial_delay_ms,
                max_delay=self.max_delay_ms,
                jitter=self.jitter,
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(max_attempts=self.max_attempts, backoff=self.backoff())


def _delay_setting(name: str, raw: str | None, default: int) -> int:
    if raw is None:
        return default
    # Bare numbers are milliseconds here, unlike parse_delay's seconds.
    if raw.isdigit():
        return int(raw)
    parsed = parse_delay(raw)
    if parsed is None:
        raise ConfigError(f"{ENV_PREFIX}{name} is not a valid delay: {raw!r}")
    return parsed
