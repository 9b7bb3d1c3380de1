"""Pipeline execution engine.

Runs the pending steps of a :class:`~sagaflow.pipeline.builder.Pipeline`
strictly in append order, threading the context from one step to the
next and halting on the first failure.  Every function here takes a
pipeline value and returns a new one (or a result); nothing is mutated
in place, so a cancelled run simply discards its in-progress value.
"""

from __future__ import annotations

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable

from sagaflow.cancellation import CancellationToken, current_token
from sagaflow.errors import (
    ExecutionCancelled,
    PipelineFailedError,
    RollbackError,
    StepFailed,
    Timeout,
)
from sagaflow.pipeline.events import PipelineEvent, PipelineEventType
from sagaflow.pipeline.models import (
    ACK,
    CompletedStep,
    Context,
    Step,
    StepOutcome,
    normalize_outcome,
)
from sagaflow.result import Err, Ok, Result
from sagaflow.retry import engine as retry_engine

if TYPE_CHECKING:
    from sagaflow.pipeline.builder import Pipeline

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["Pipeline"], None]


def _label(pipeline: Pipeline) -> str:
    return ".".join(pipeline.telemetry_prefix) or "pipeline"


def _emit(
    pipeline: Pipeline,
    event_type: PipelineEventType,
    step_name: str = "",
    **data: Any,
) -> None:
    if pipeline.emitter is None:
        return
    pipeline.emitter.emit(
        PipelineEvent(
            type=event_type,
            step_name=step_name,
            telemetry_prefix=pipeline.telemetry_prefix,
            metadata=dict(pipeline.metadata),
            data=data,
        )
    )


def _with_retry_events(pipeline: Pipeline, step: Step) -> retry_engine.RetryConfig:
    config = step.retry
    assert config is not None
    if pipeline.emitter is None:
        return config
    user_callback = config.on_retry

    def on_retry(reason: Any, attempt: int, delay_ms: int) -> None:
        if user_callback is not None:
            user_callback(reason, attempt, delay_ms)
        _emit(
            pipeline,
            PipelineEventType.STEP_RETRY,
            step.name,
            reason=reason,
            attempt=attempt,
            delay_ms=delay_ms,
        )

    return replace(config, on_retry=on_retry)


def _perform(pipeline: Pipeline, step: Step) -> StepOutcome:
    ctx = pipeline.context
    if step.retry is None:
        return normalize_outcome(step.action(ctx))

    result = retry_engine.execute(
        lambda: normalize_outcome(step.action(ctx)),
        _with_retry_events(pipeline, step),
    )
    if isinstance(result, Err):
        return result
    return normalize_outcome(result.value)


def _run_step(pipeline: Pipeline, step: Step) -> Pipeline:
    """Run the first pending step and return the updated pipeline."""
    remaining = pipeline.steps[1:]
    ctx = pipeline.context
    start = time.monotonic()

    try:
        if step.condition is not None and not step.condition(ctx):
            logger.debug("Skipping step '%s': condition not met", step.name)
            return replace(pipeline, steps=remaining)
        _emit(pipeline, PipelineEventType.STEP_START, step.name)
        outcome = _perform(pipeline, step)
    except ExecutionCancelled:
        raise
    except Exception as exc:
        logger.error("Step '%s' raised %s: %s", step.name, type(exc).__name__, exc)
        outcome = Err(exc)

    duration = time.monotonic() - start

    if isinstance(outcome, Err):
        logger.error("Step '%s' failed: %r", step.name, outcome.error)
        halted = replace(
            pipeline,
            halted=True,
            error=StepFailed(step.name, outcome.error),
        )
        _emit(
            halted,
            PipelineEventType.STEP_FAIL,
            step.name,
            reason=outcome.error,
            duration=duration,
        )
        return halted

    new_ctx = ctx if outcome is ACK else ctx.merge(outcome.value)
    logger.debug("Step '%s' completed in %.3fs", step.name, duration)
    advanced = replace(
        pipeline,
        context=new_ctx,
        steps=remaining,
        completed=(
            *pipeline.completed,
            CompletedStep(step, Context(new_ctx.snapshot())),
        ),
    )
    _emit(advanced, PipelineEventType.STEP_COMPLETE, step.name, duration=duration)
    return advanced


def execute(
    pipeline: Pipeline,
    token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> Pipeline:
    """Run every pending step and return the executed pipeline.

    A pipeline that is already halted is returned unchanged.  The
    result is a regular pipeline value, so :meth:`completed_steps`,
    :meth:`pending_steps` and :attr:`error` can be inspected afterwards.

    Args:
        pipeline: The pipeline to execute.
        token: Cancellation token checked between steps.
        on_progress: Called with the pipeline after each step.

    Raises:
        ExecutionCancelled: If *token* is cancelled mid-run.
    """
    if pipeline.halted:
        logger.debug("Pipeline %s is halted, not running", _label(pipeline))
        return pipeline

    logger.info(
        "Starting pipeline %s with %d steps", _label(pipeline), len(pipeline.steps)
    )
    _emit(pipeline, PipelineEventType.PIPELINE_START, steps=len(pipeline.steps))
    start = time.monotonic()

    current = pipeline
    while current.steps and not current.halted:
        if token is not None:
            token.raise_if_cancelled()
        current = _run_step(current, current.steps[0])
        if on_progress is not None:
            on_progress(current)

    duration = time.monotonic() - start
    if current.halted:
        logger.info("Pipeline %s halted after %.3fs", _label(current), duration)
        _emit(
            current,
            PipelineEventType.PIPELINE_FAILED,
            error=current.error,
            duration=duration,
        )
    else:
        logger.info("Pipeline %s completed in %.3fs", _label(current), duration)
        _emit(current, PipelineEventType.PIPELINE_COMPLETE, duration=duration)
    return current


def to_result(pipeline: Pipeline) -> Result:
    """Return ``Ok(context_dict)`` or ``Err(error)`` for *pipeline*."""
    if pipeline.halted:
        return Err(pipeline.error)
    return Ok(pipeline.context.to_dict())


def run(pipeline: Pipeline) -> Result:
    return to_result(execute(pipeline))


def run_or_raise(pipeline: Pipeline) -> dict[str, Any]:
    """Run *pipeline* and return the final context.

    Raises:
        PipelineFailedError: If the pipeline halts.
    """
    result = run(pipeline)
    if isinstance(result, Err):
        raise PipelineFailedError(result.error)
    return result.value


def rollback(pipeline: Pipeline) -> tuple[RollbackError, ...]:
    """Invoke compensating actions of completed steps in reverse order.

    Each rollback receives the context as it stood right after its own
    step completed.  A rollback that raises or returns ``Err`` does not
    stop the unwind; it is logged and collected.

    Returns:
        The rollback failures, in the order they happened.
    """
    failures: list[RollbackError] = []
    _emit(pipeline, PipelineEventType.ROLLBACK_START, steps=len(pipeline.completed))

    for done in reversed(pipeline.completed):
        compensate = done.step.rollback
        if compensate is None:
            continue
        logger.debug("Rolling back step '%s'", done.name)
        try:
            outcome = compensate(done.context)
        except Exception as exc:
            logger.exception("Rollback of step '%s' raised", done.name)
            failures.append(RollbackError(done.name, exc))
            _emit(pipeline, PipelineEventType.ROLLBACK_FAIL, done.name, reason=exc)
            continue
        if isinstance(outcome, Err):
            logger.error("Rollback of step '%s' failed: %r", done.name, outcome.error)
            failures.append(RollbackError(done.name, outcome.error))
            _emit(
                pipeline,
                PipelineEventType.ROLLBACK_FAIL,
                done.name,
                reason=outcome.error,
            )

    _emit(pipeline, PipelineEventType.ROLLBACK_COMPLETE, failures=len(failures))
    return tuple(failures)


def _finish_with_rollback(executed: Pipeline) -> Result:
    if not executed.halted:
        return to_result(executed)
    failures = rollback(executed)
    error = executed.error
    if failures and isinstance(error, StepFailed):
        error = replace(error, rollback_errors=failures)
    return Err(error)


def _unwind_after_timeout(progress: Pipeline) -> tuple[RollbackError, ...]:
    logger.info(
        "Rolling back %d completed step(s) after timeout", len(progress.completed)
    )
    return rollback(progress)


def run_with_rollback(pipeline: Pipeline) -> Result:
    """Run *pipeline*, unwinding completed steps if a step fails.

    The returned error is the original failure envelope, with any
    broken compensations listed in ``StepFailed.rollback_errors``.  A
    pipeline that was halted before the run performs no rollback.
    """
    if pipeline.halted:
        return to_result(pipeline)
    return _finish_with_rollback(execute(pipeline))


def run_cleanups(pipeline: Pipeline, result: Result) -> None:
    """Invoke every ensure callback once, most recently registered first.

    Cleanup failures are logged and emitted, never raised.
    """
    for cleanup in reversed(pipeline.cleanups):
        try:
            cleanup.fn(pipeline.context, result)
        except Exception as exc:
            logger.exception("Cleanup '%s' raised", cleanup.name)
            _emit(pipeline, PipelineEventType.CLEANUP_FAIL, cleanup.name, reason=exc)


def run_with_ensure(pipeline: Pipeline, *, rollback: bool = False) -> Result:
    """Run *pipeline*, then its cleanups, regardless of the outcome."""
    if pipeline.halted:
        result = to_result(pipeline)
        run_cleanups(pipeline, result)
        return result

    executed = execute(pipeline)
    result = _finish_with_rollback(executed) if rollback else to_result(executed)
    run_cleanups(executed, result)
    return result


def run_with_timeout(
    pipeline: Pipeline,
    timeout_ms: int,
    *,
    rollback: bool = False,
) -> Result:
    """Run *pipeline* on a worker thread with a deadline.

    When the deadline passes the caller gets ``Err(Timeout())`` and the
    worker is cancelled cooperatively: it stops before the next step or
    during a retry sleep.  A step that is already running finishes in
    the background and its effects are not undone.  With *rollback*
    the steps completed before the deadline are compensated and any
    broken compensations are listed in ``Timeout.rollback_errors``; the
    step still running at that moment is not compensated.  Registered
    cleanups run on both paths, with the context of the last completed
    step.

    Args:
        pipeline: The pipeline to run.
        timeout_ms: Deadline in milliseconds.
        rollback: Unwind completed steps when a step fails or the
            deadline passes.

    Raises:
        ValueError: If *timeout_ms* is negative.
    """
    if timeout_ms < 0:
        raise ValueError(f"timeout_ms must be >= 0, got {timeout_ms}")

    token = CancellationToken()
    latest: list[Pipeline] = [pipeline]

    def track(progress: Pipeline) -> None:
        latest[0] = progress

    def work() -> Result:
        current_token.set(token)
        if pipeline.halted:
            return to_result(pipeline)
        executed = execute(pipeline, token=token, on_progress=track)
        # past the deadline the caller has already unwound
        if rollback and not token.cancelled:
            return _finish_with_rollback(executed)
        return to_result(executed)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sagaflow")
    try:
        future = executor.submit(contextvars.copy_context().run, work)
        try:
            result = future.result(timeout=timeout_ms / 1000)
        except FutureTimeoutError:
            token.cancel()
            logger.warning(
                "Pipeline %s timed out after %dms", _label(pipeline), timeout_ms
            )
            _emit(pipeline, PipelineEventType.PIPELINE_TIMEOUT, timeout_ms=timeout_ms)
            failures = _unwind_after_timeout(latest[0]) if rollback else ()
            result = Err(Timeout(rollback_errors=failures))
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    run_cleanups(latest[0], result)
    return result
