"""Backoff delay computation.

Pure functions that turn an attempt number and a :class:`BackoffSpec`
into a delay in whole milliseconds.  The only source of state is the
random generator used by the jittered strategies, which callers may
inject for reproducible results.

Strategies (``attempt`` is 1-indexed):

=================  ===================================================
exponential        ``initial * multiplier^(attempt-1)`` (+ jitter)
linear             ``initial * attempt``
constant           ``initial``
decorrelated       ``uniform(initial, previous * 3)``
full_jitter        ``uniform(0, initial * 2^attempt)``
equal_jitter       ``half/2 + uniform(0, half/2)``, ``half = initial * 2^(attempt-1)``
=================  ===================================================

Every built-in strategy is capped at ``max_delay_ms``.  Custom strategy
functions are not capped; keeping them in range is up to the caller.
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from typing import Any, Callable, Union

CustomStrategy = Callable[[int, dict[str, Any]], float]


class BackoffStrategy(str, enum.Enum):
    """Built-in delay strategies."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"
    DECORRELATED = "decorrelated"
    FULL_JITTER = "full_jitter"
    EQUAL_JITTER = "equal_jitter"


@dataclass(frozen=True)
class BackoffSpec:
    """Delay policy between retry attempts.

    Attributes:
        strategy: A :class:`BackoffStrategy` (or its string value) or a
            custom ``(attempt, opts) -> milliseconds`` function.
        initial_delay_ms: Base delay for the first attempt.
        max_delay_ms: Upper bound for every built-in strategy.
        jitter_factor: Relative jitter applied by ``exponential``;
            ``0.0`` gives deterministic delays.
        multiplier: Growth factor for ``exponential``.

    Raises:
        ValueError: If any constraint is violated (negative delays,
            ``max_delay_ms < initial_delay_ms``, jitter outside
            ``[0, 1]`` or a multiplier below 1).
    """

    strategy: Union[BackoffStrategy, CustomStrategy] = BackoffStrategy.EXPONENTIAL
    initial_delay_ms: int = 100
    max_delay_ms: int = 30_000
    jitter_factor: float = 0.25
    multiplier: float = 2

    def __post_init__(self) -> None:
        if isinstance(self.strategy, str):
            object.__setattr__(self, "strategy", BackoffStrategy(self.strategy))
        elif not callable(self.strategy):
            raise ValueError(f"strategy must be a name or a callable, got {self.strategy!r}")
        if self.initial_delay_ms < 0:
            raise ValueError(f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}")
        if self.max_delay_ms < 0:
            raise ValueError(f"max_delay_ms must be >= 0, got {self.max_delay_ms}")
        if not self.is_custom and self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be "
                f">= initial_delay_ms ({self.initial_delay_ms})"
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be within [0, 1], got {self.jitter_factor}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")

    @property
    def is_custom(self) -> bool:
        return not isinstance(self.strategy, BackoffStrategy)

    @property
    def strategy_name(self) -> str:
        if isinstance(self.strategy, BackoffStrategy):
            return self.strategy.value
        return getattr(self.strategy, "__name__", "custom")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackoffSpec:
        """Build a spec from a plain mapping.

        Delay values may use any format accepted by :func:`parse_delay`
        when given as strings; integers are taken as milliseconds.

        Args:
            data: Mapping with optional ``strategy``, ``initial_delay``,
                ``max_delay``, ``jitter`` and ``multiplier`` keys.

        Returns:
            A validated :class:`BackoffSpec`.
        """
        strategy = BackoffStrategy(data.get("strategy", BackoffStrategy.EXPONENTIAL))
        initial = _coerce_ms(data.get("initial_delay", 100), "initial_delay")
        if strategy is BackoffStrategy.CONSTANT:
            return constant(initial)
        default_jitter = 0.25 if strategy is BackoffStrategy.EXPONENTIAL else 0.0
        return cls(
            strategy=strategy,
            initial_delay_ms=initial,
            max_delay_ms=_coerce_ms(data.get("max_delay", 30_000), "max_delay"),
            jitter_factor=float(data.get("jitter", default_jitter)),
            multiplier=data.get("multiplier", 2),
        )


def _coerce_ms(value: Any, label: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    parsed = parse_delay(value)
    if parsed is None:
        raise ValueError(f"Invalid {label}: {value!r}")
    return parsed


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def exponential(
    initial: int = 100,
    max_delay: int = 30_000,
    jitter: float = 0.25,
    multiplier: float = 2,
) -> BackoffSpec:
    """Exponential growth, ``initial * multiplier^(attempt-1)``."""
    return BackoffSpec(BackoffStrategy.EXPONENTIAL, initial, max_delay, jitter, multiplier)


def linear(initial: int = 100, max_delay: int = 30_000) -> BackoffSpec:
    """Linear growth, ``initial * attempt``."""
    return BackoffSpec(BackoffStrategy.LINEAR, initial, max_delay, 0.0)


def constant(delay: int) -> BackoffSpec:
    """The same *delay* for every attempt."""
    return BackoffSpec(BackoffStrategy.CONSTANT, delay, delay, 0.0)


def decorrelated(base: int = 100, max_delay: int = 30_000) -> BackoffSpec:
    """Decorrelated jitter; thread ``previous_delay`` between attempts."""
    return BackoffSpec(BackoffStrategy.DECORRELATED, base, max_delay, 1.0)


def full_jitter(base: int = 100, max_delay: int = 30_000) -> BackoffSpec:
    return BackoffSpec(BackoffStrategy.FULL_JITTER, base, max_delay, 1.0)


def equal_jitter(base: int = 100, max_delay: int = 30_000) -> BackoffSpec:
    return BackoffSpec(BackoffStrategy.EQUAL_JITTER, base, max_delay, 0.5)


def custom(fn: CustomStrategy, initial: int = 100, max_delay: int = 30_000) -> BackoffSpec:
    """Wrap a ``(attempt, opts) -> milliseconds`` function.

    ``opts`` carries ``spec`` and ``previous_delay``.  The result is not
    capped at *max_delay*.
    """
    return BackoffSpec(fn, initial, max_delay, 0.0)


# ---------------------------------------------------------------------------
# Delay computation
# ---------------------------------------------------------------------------


def _grow(base: float, factor: float, exponent: int) -> float:
    try:
        return base * (factor**exponent)
    except OverflowError:
        return float("inf")


def delay(
    spec: BackoffSpec,
    attempt: int,
    previous_delay: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """Compute the delay before retrying after *attempt*.

    Args:
        spec: The backoff policy.
        attempt: 1-indexed attempt number that just failed.
        previous_delay: Delay used before this attempt; only the
            ``decorrelated`` strategy reads it.
        rng: Random generator for the jittered strategies.  Defaults
            to the module-level :mod:`random` state.

    Returns:
        A non-negative delay in milliseconds.

    Raises:
        ValueError: If *attempt* is lower than 1.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    rand = rng if rng is not None else random
    initial = spec.initial_delay_ms
    cap = spec.max_delay_ms
    strategy = spec.strategy

    if not isinstance(strategy, BackoffStrategy):
        value = strategy(attempt, {"spec": spec, "previous_delay": previous_delay})
        return max(0, round(value))

    if strategy is BackoffStrategy.EXPONENTIAL:
        raw = min(_grow(initial, spec.multiplier, attempt - 1), cap)
        value = apply_jitter(raw, spec.jitter_factor, rng=rand)
    elif strategy is BackoffStrategy.LINEAR:
        value = initial * attempt
    elif strategy is BackoffStrategy.CONSTANT:
        value = initial
    elif strategy is BackoffStrategy.DECORRELATED:
        previous = initial if previous_delay is None else previous_delay
        upper = previous * 3
        value = rand.uniform(initial, upper) if upper > initial else initial
        value = max(initial, value)
    elif strategy is BackoffStrategy.FULL_JITTER:
        upper = min(cap, _grow(initial, 2, attempt))
        value = rand.uniform(0, upper)
    else:
        half = min(cap, _grow(initial, 2, attempt - 1))
        value = half / 2 + rand.uniform(0, half / 2)

    return max(0, min(cap, round(value)))


def apply_jitter(
    value: float, factor: float, *, rng: random.Random | None = None
) -> float:
    """Return *value* perturbed uniformly within ``±factor``.

    The result lies in ``[value*(1-factor), value*(1+factor)]`` and is
    never negative.  A factor of ``0`` returns *value* untouched without
    drawing from the generator.

    Raises:
        ValueError: If *factor* is outside ``[0, 1]``.
    """
    if factor == 0:
        return value
    if not 0.0 < factor <= 1.0:
        raise ValueError(f"jitter factor must be within [0, 1], got {factor}")
    rand = rng if rng is not None else random
    return max(0.0, rand.uniform(value * (1 - factor), value * (1 + factor)))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_UNIT_MS = {
    "ms": 1,
    "milliseconds": 1,
    "s": 1000,
    "seconds": 1000,
    "m": 60_000,
    "minutes": 60_000,
    "h": 3_600_000,
    "hours": 3_600_000,
}


def parse_delay(value: Any) -> int | None:
    """Convert a human delay into milliseconds.

    Accepted forms: integer seconds (``5``), digit strings (``"5"``),
    duration strings (``"250ms"``, ``"5s"``, ``"2m"``, ``"1h"``) and
    ``(amount, unit)`` tuples (``(500, "milliseconds")``).

    Returns:
        The delay in milliseconds, or ``None`` when *value* is not a
        recognised non-negative delay.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value * 1000 if value >= 0 else None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text) * 1000
        for suffix in sorted(_UNIT_MS, key=len, reverse=True):
            if text.endswith(suffix):
                number = text[: -len(suffix)].strip()
                try:
                    amount = float(number)
                except ValueError:
                    continue
                if amount < 0:
                    return None
                return round(amount * _UNIT_MS[suffix])
        return None
    if isinstance(value, tuple) and len(value) == 2:
        amount, unit = value
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            return None
        multiplier = _UNIT_MS.get(str(unit))
        return amount * multiplier if multiplier is not None else None
    return None
