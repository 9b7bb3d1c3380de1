"""Immutable pipeline builder.

A :class:`Pipeline` is a frozen value.  Every builder method returns a
new pipeline, so partially built pipelines can be shared, composed and
restored from checkpoints without aliasing surprises::

    result = (
        Pipeline.new({"x": 5})
        .step("add_ten", lambda ctx: Ok({"x": ctx["x"] + 10}))
        .step("double", lambda ctx: Ok({"x": ctx["x"] * 2}))
        .run()
    )
    assert result == Ok({"x": 30})
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from sagaflow.config import RetrySettings
from sagaflow.errors import (
    CheckpointNotFound,
    InvalidOutcome,
    MissingKey,
    NoBranchFor,
    StepFailed,
)
from sagaflow.pipeline import engine
from sagaflow.pipeline.events import PipelineEventEmitter
from sagaflow.pipeline.models import (
    ACK,
    Action,
    Checkpoint,
    Cleanup,
    CleanupAction,
    CompletedStep,
    Context,
    RollbackAction,
    Step,
    StepInfo,
)
from sagaflow.result import Err, Ok, Result
from sagaflow.retry import backoff as backoff_mod
from sagaflow.retry.backoff import BackoffSpec
from sagaflow.retry.engine import OnRetry, RetryConfig

logger = logging.getLogger(__name__)

BuilderFn = Callable[["Pipeline"], "Pipeline"]


def _require_callable(value: Any, what: str) -> None:
    if not callable(value):
        raise TypeError(f"{what} must be callable, got {type(value).__name__}")


@dataclass(frozen=True)
class Pipeline:
    """A synchronous, context-threading saga of named steps.

    Attributes:
        context: Current accumulated context.
        steps: Steps not yet executed, in append order.
        completed: Execution trace, one entry per completed step with
            the context right after that step.
        halted: ``True`` once a step failed (or a checkpoint was missing).
        error: The error the pipeline halted with.
        checkpoint_list: Named context snapshots, in creation order.
        cleanups: Callbacks registered with :meth:`ensure`.
        telemetry_prefix: Opaque prefix passed to emitted events.
        metadata: Opaque metadata passed to emitted events.
        emitter: Optional event emitter notified during execution.
    """

    context: Context = field(default_factory=Context)
    steps: tuple[Step, ...] = ()
    completed: tuple[CompletedStep, ...] = ()
    halted: bool = False
    error: Any = None
    checkpoint_list: tuple[Checkpoint, ...] = ()
    cleanups: tuple[Cleanup, ...] = ()
    telemetry_prefix: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    emitter: PipelineEventEmitter | None = field(
        default=None, compare=False, repr=False
    )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        initial: Mapping[str, Any] | None = None,
        *,
        telemetry_prefix: Sequence[str] = (),
        metadata: Mapping[str, Any] | None = None,
        emitter: PipelineEventEmitter | None = None,
    ) -> Pipeline:
        """Create a pipeline with *initial* context and no steps."""
        if initial is not None and not isinstance(initial, Mapping):
            raise TypeError(
                f"initial context must be a mapping, got {type(initial).__name__}"
            )
        return cls(
            context=Context.from_dict(initial or {}),
            telemetry_prefix=tuple(telemetry_prefix),
            metadata=dict(metadata or {}),
            emitter=emitter,
        )

    @classmethod
    def from_result(cls, result: Result, key: str, **kwargs: Any) -> Pipeline:
        """Start a pipeline from an existing result.

        ``Ok(value)`` becomes the context ``{key: value}``.  ``Err(reason)``
        produces a halted pipeline whose error is
        ``StepFailed(key, reason)``; steps appended to it never run.
        """
        if isinstance(result, Ok):
            return cls.new({key: result.value}, **kwargs)
        if isinstance(result, Err):
            return replace(
                cls.new(**kwargs),
                halted=True,
                error=StepFailed(key, result.error),
            )
        raise TypeError(f"expected Ok or Err, got {type(result).__name__}")

    @classmethod
    def segment(cls, steps: Iterable[tuple[str, Action]]) -> Pipeline:
        """Build a context-less, reusable list of ``(name, action)`` steps."""
        pipeline = cls()
        for name, action in steps:
            pipeline = pipeline.step(name, action)
        return pipeline

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def step(
        self,
        name: str,
        action: Action,
        *,
        rollback: RollbackAction | None = None,
        retry: RetryConfig | None = None,
        condition: Callable[[Context], bool] | None = None,
    ) -> Pipeline:
        """Append a step.

        Args:
            name: Step identifier used in error envelopes and introspection.
            action: ``Context -> StepOutcome`` callable.
            rollback: Compensating action for :meth:`run_with_rollback`.
            retry: Retry configuration wrapped around *action*.
            condition: Predicate; the step is skipped entirely (not
                recorded as completed) when it returns falsy.

        Raises:
            TypeError: If *name* is not a string or a callable is not callable.
        """
        if not isinstance(name, str):
            raise TypeError(f"step name must be a string, got {type(name).__name__}")
        _require_callable(action, "action")
        if rollback is not None:
            _require_callable(rollback, "rollback")
        if condition is not None:
            _require_callable(condition, "condition")
        if retry is not None and not isinstance(retry, RetryConfig):
            raise TypeError(f"retry must be a RetryConfig, got {type(retry).__name__}")

        if name in self._all_step_names():
            logger.warning(
                "Duplicate step name '%s'; completed_steps will be ambiguous", name
            )
        new_step = Step(name, action, rollback=rollback, retry=retry, condition=condition)
        return replace(self, steps=(*self.steps, new_step))

    def step_with_retry(
        self,
        name: str,
        action: Action,
        *,
        max_attempts: int | None = None,
        delay: int | None = None,
        backoff: BackoffSpec | None = None,
        recoverable: Callable[[Any], bool] | None = None,
        on_retry: OnRetry | None = None,
        rollback: RollbackAction | None = None,
    ) -> Pipeline:
        """Append a step that is retried on failure.

        Without explicit options the retry defaults come from the
        environment (see :class:`sagaflow.config.RetrySettings`).
        A step that still fails halts with
        ``StepFailed(name, MaxRetries(reason))``.

        Args:
            max_attempts: Total attempts including the first.
            delay: Constant delay between attempts in milliseconds.
                Ignored when *backoff* is given.
            backoff: Explicit backoff policy.
            recoverable: Predicate deciding whether a reason is retried.
            on_retry: Callback ``(reason, attempt, delay_ms)``.
            rollback: Compensating action.
        """
        if backoff is None and delay is not None:
            backoff = backoff_mod.constant(delay)
        if max_attempts is None or backoff is None:
            # environment is only consulted for missing options
            base = RetrySettings.from_env().to_retry_config()
            max_attempts = max_attempts if max_attempts is not None else base.max_attempts
            backoff = backoff if backoff is not None else base.backoff
        config = RetryConfig(
            max_attempts=max_attempts,
            backoff=backoff,
            recoverable=recoverable,
            on_retry=on_retry,
        )
        return self.step(name, action, rollback=rollback, retry=config)

    def validate(self, name: str, validator: Callable[[Context], Any]) -> Pipeline:
        """Append a check that contributes no data.

        The validator returns ``None``, ``True``, ``ACK`` or ``Ok(...)``
        to pass and ``Err(reason)`` to halt.
        """
        _require_callable(validator, "validator")

        def action(ctx: Context) -> Any:
            outcome = validator(ctx)
            if isinstance(outcome, Err):
                return outcome
            if outcome is None or outcome is True or outcome is ACK or isinstance(outcome, Ok):
                return ACK
            return Err(InvalidOutcome(outcome))

        return self.step(name, action)

    def guard(
        self,
        name: str,
        predicate: Callable[[Context], bool],
        error: Any,
    ) -> Pipeline:
        """Append a boolean check.

        When *predicate* is falsy the pipeline halts with *error*, or with
        ``error(context)`` if *error* is callable.  An ``Err`` produced
        either way is unwrapped so the envelope carries the bare reason.
        """
        _require_callable(predicate, "predicate")

        def action(ctx: Context) -> Any:
            if predicate(ctx):
                return ACK
            reason = error(ctx) if callable(error) else error
            if isinstance(reason, Err):
                reason = reason.error
            return Err(reason)

        return self.step(name, action)

    def transform(
        self,
        name: str,
        source: str,
        target: str,
        fn: Callable[[Any], Any],
    ) -> Pipeline:
        """Append a step writing ``fn(context[source])`` to *target*.

        A missing *source* fails with ``MissingKey(source)`` without
        calling *fn*.  *fn* may return a plain value, ``Ok(value)`` or
        ``Err(reason)``.
        """
        _require_callable(fn, "fn")

        def action(ctx: Context) -> Any:
            if source not in ctx:
                return Err(MissingKey(source))
            value = fn(ctx[source])
            if isinstance(value, Err):
                return value
            if isinstance(value, Ok):
                value = value.value
            return Ok({target: value})

        return self.step(name, action)

    def assign(self, name: str, key: str, value: Any) -> Pipeline:
        """Append a step setting *key* to *value* (or ``value(context)``)."""

        def action(ctx: Context) -> Any:
            return Ok({key: value(ctx) if callable(value) else value})

        return self.step(name, action)

    def tap(self, name: str, fn: Callable[[Context], Any]) -> Pipeline:
        """Append a side-effect step that halts only if *fn* returns ``Err``."""
        _require_callable(fn, "fn")

        def action(ctx: Context) -> Any:
            outcome = fn(ctx)
            return outcome if isinstance(outcome, Err) else ACK

        return self.step(name, action)

    def tap_always(self, name: str, fn: Callable[[Context], Any]) -> Pipeline:
        """Append a side-effect step that never halts.

        Return values are ignored and exceptions are logged.
        """
        _require_callable(fn, "fn")

        def action(ctx: Context) -> Any:
            try:
                fn(ctx)
            except Exception as exc:
                logger.warning("Ignoring error in tap '%s': %s", name, exc)
            return ACK

        return self.step(name, action)

    def step_if(
        self,
        name: str,
        predicate: Callable[[Context], bool],
        action: Action,
        **opts: Any,
    ) -> Pipeline:
        """Append a step whose *action* only runs when *predicate* holds.

        When it does not, the step still completes as a no-op success.
        """
        _require_callable(predicate, "predicate")
        _require_callable(action, "action")

        def wrapped(ctx: Context) -> Any:
            return action(ctx) if predicate(ctx) else ACK

        return self.step(name, wrapped, **opts)

    def branch(
        self,
        key: str,
        branches: Mapping[Any, BuilderFn],
        default: BuilderFn | None = None,
    ) -> Pipeline:
        """Append a step named ``branch_<key>`` that picks a sub-pipeline.

        At run time ``context[key]`` selects a builder from *branches*
        (falling back to *default*).  The builder is applied to a fresh
        pipeline holding the current context and the result is run; its
        final context becomes this pipeline's context.  With no match
        and no default the step fails with ``NoBranchFor(key, value)``.
        A failing branch fails the step with the branch's own envelope.
        """
        for builder in (*branches.values(), *([default] if default else [])):
            _require_callable(builder, "branch builder")
        branch_map = dict(branches)
        prefix, metadata, emitter = self.telemetry_prefix, self.metadata, self.emitter

        def action(ctx: Context) -> Any:
            value = ctx.get(key)
            try:
                builder = branch_map.get(value, default)
            except TypeError:
                # unhashable value
                builder = default
            if builder is None:
                return Err(NoBranchFor(key, value))
            logger.debug("Branch '%s' selected for value %r", key, value)
            sub = builder(
                Pipeline.new(
                    ctx, telemetry_prefix=prefix, metadata=metadata, emitter=emitter
                )
            )
            return engine.run(sub)

        return self.step(f"branch_{key}", action)

    def when_true(
        self,
        condition: bool | Callable[[Context], bool],
        builder: BuilderFn,
    ) -> Pipeline:
        """Apply *builder* to this pipeline only if *condition* holds.

        A callable condition is evaluated now against the current context.
        """
        _require_callable(builder, "builder")
        holds = condition(self.context) if callable(condition) else condition
        return builder(self) if holds else self

    # ------------------------------------------------------------------
    # Context edits (applied immediately)
    # ------------------------------------------------------------------

    def map_context(self, fn: Callable[[Context], Mapping[str, Any]]) -> Pipeline:
        """Replace the context with ``fn(context)``."""
        _require_callable(fn, "fn")
        return replace(self, context=Context.from_dict(fn(self.context)))

    def merge_context(self, updates: Mapping[str, Any]) -> Pipeline:
        return replace(self, context=self.context.merge(updates))

    def drop_context(self, keys: Iterable[str]) -> Pipeline:
        """Remove *keys* from the context; this is the only key removal."""
        if isinstance(keys, str):
            keys = [keys]
        return replace(self, context=self.context.drop(keys))

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint(self, name: str) -> Pipeline:
        """Snapshot the current context under *name*.

        Re-using a name replaces the earlier snapshot in place.
        """
        snapshot = Checkpoint(name, Context(self.context.snapshot()))
        names = self.checkpoints()
        if name in names:
            index = names.index(name)
            updated = (
                *self.checkpoint_list[:index],
                snapshot,
                *self.checkpoint_list[index + 1 :],
            )
        else:
            updated = (*self.checkpoint_list, snapshot)
        return replace(self, checkpoint_list=updated)

    def checkpoints(self) -> list[str]:
        return [cp.name for cp in self.checkpoint_list]

    def rollback_to(self, name: str) -> Pipeline:
        """Restore the context saved by :meth:`checkpoint`.

        No step action is re-invoked.  ``halted`` and ``error`` are
        cleared.  An unknown name returns a pipeline halted with
        ``CheckpointNotFound(name)``.
        """
        for cp in self.checkpoint_list:
            if cp.name == name:
                return replace(
                    self, context=Context(cp.context.snapshot()), halted=False, error=None
                )
        logger.warning("Checkpoint '%s' not found", name)
        return replace(self, halted=True, error=CheckpointNotFound(name))

    # ------------------------------------------------------------------
    # Cleanup and composition
    # ------------------------------------------------------------------

    def ensure(self, name: str, fn: CleanupAction) -> Pipeline:
        """Register a cleanup called with ``(context, result)`` after a run.

        Only :meth:`run_with_ensure` and :meth:`run_with_timeout` invoke
        cleanups.
        """
        _require_callable(fn, "cleanup")
        return replace(self, cleanups=(*self.cleanups, Cleanup(name, fn)))

    def compose(self, other: Pipeline) -> Pipeline:
        """Append *other*'s pending steps, keeping this pipeline's context."""
        for added in other.steps:
            if added.name in self._all_step_names():
                logger.warning("Duplicate step name '%s' after compose", added.name)
        return replace(self, steps=(*self.steps, *other.steps))

    def include(self, segment: Pipeline) -> Pipeline:
        return self.compose(segment)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self) -> Pipeline:
        """Run pending steps and return the executed pipeline value."""
        return engine.execute(self)

    def run(self) -> Result:
        """Run pending steps; return ``Ok(context)`` or ``Err(envelope)``."""
        return engine.run(self)

    def run_or_raise(self) -> dict[str, Any]:
        return engine.run_or_raise(self)

    def run_with_rollback(self) -> Result:
        return engine.run_with_rollback(self)

    def run_with_ensure(self, *, rollback: bool = False) -> Result:
        return engine.run_with_ensure(self, rollback=rollback)

    def run_with_timeout(self, timeout_ms: int, *, rollback: bool = False) -> Result:
        return engine.run_with_timeout(self, timeout_ms, rollback=rollback)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def dry_run(self) -> list[str]:
        """Names of the steps that would run, without running them."""
        return [s.name for s in self.steps]

    def inspect_steps(self) -> list[StepInfo]:
        return [
            StepInfo(s.name, has_rollback=s.rollback is not None, has_retry=s.retry is not None)
            for s in self.steps
        ]

    def completed_steps(self) -> list[str]:
        return [c.name for c in self.completed]

    def pending_steps(self) -> list[str]:
        return self.dry_run()

    def _all_step_names(self) -> list[str]:
        return [*self.completed_steps(), *self.dry_run()]

    def to_string(self) -> str:
        total = len(self.steps) + len(self.completed)
        lines = [f"Pipeline [{total} steps]"]
        for done in self.completed:
            lines.append(f"  [done] {done.name}")
        for pending in self.steps:
            lines.append(f"  [pending] {pending.name}")
        if self.halted:
            lines.append(f"  halted: {self.error!r}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.to_string()
