"""Tests for pipeline execution."""

from __future__ import annotations

import pytest

from sagaflow.errors import (
    ConfigError,
    InvalidOutcome,
    MaxRetries,
    NoBranchFor,
    PipelineFailedError,
    StepFailed,
)
from sagaflow.pipeline import ACK, Context, Pipeline
from sagaflow.result import Err, Ok
from sagaflow.retry import backoff


class SpyStep:
    """Step action that records every invocation."""

    def __init__(self, outcome: object = ACK) -> None:
        self.outcome = outcome
        self.calls: list[dict] = []

    def __call__(self, ctx: Context) -> object:
        self.calls.append(ctx.to_dict())
        return self.outcome


class CountingFailure:
    """Fails until it has been called *failures* times."""

    def __init__(self, failures: int, success: object) -> None:
        self._failures = failures
        self._success = success
        self.calls = 0

    def __call__(self, ctx: Context) -> object:
        self.calls += 1
        if self.calls <= self._failures:
            return Err("unavailable")
        return self._success


def _add_ten(ctx: Context) -> Ok:
    return Ok({"x": ctx["x"] + 10})


def _double(ctx: Context) -> Ok:
    return Ok({"x": ctx["x"] * 2})


class TestRun:
    def test_threads_context_between_steps(self) -> None:
        result = Pipeline.new({"x": 5}).step("add_ten", _add_ten).step("double", _double).run()
        assert result == Ok({"x": 30})

    def test_failure_halts_and_skips_later_steps(self) -> None:
        spy = SpyStep()
        result = (
            Pipeline.new({"x": 5})
            .step("add_ten", lambda ctx: Err("boom"))
            .step("double", spy)
            .run()
        )
        assert result == Err(StepFailed("add_ten", "boom"))
        assert spy.calls == []

    def test_merge_is_right_biased(self) -> None:
        result = (
            Pipeline.new({"a": 1, "b": 1})
            .step("override", lambda ctx: Ok({"b": 2, "c": 3}))
            .run()
        )
        assert result == Ok({"a": 1, "b": 2, "c": 3})

    @pytest.mark.parametrize("outcome", [ACK, None, Ok(None)])
    def test_ack_leaves_context_unchanged(self, outcome: object) -> None:
        executed = Pipeline.new({"a": 1}).step("noop", lambda ctx: outcome).execute()
        assert executed.context == {"a": 1}
        assert executed.completed_steps() == ["noop"]

    def test_bare_mapping_is_success(self) -> None:
        assert Pipeline.new().step("s", lambda ctx: {"k": "v"}).run() == Ok({"k": "v"})

    def test_invalid_outcome_fails_step(self) -> None:
        result = Pipeline.new().step("weird", lambda ctx: 42).run()
        assert result == Err(StepFailed("weird", InvalidOutcome(42)))

    def test_exception_becomes_failure(self) -> None:
        def explode(ctx: Context) -> None:
            raise RuntimeError("kaboom")

        executed = Pipeline.new().step("explode", explode).execute()
        assert executed.halted
        assert executed.error.step == "explode"
        assert isinstance(executed.error.reason, RuntimeError)

    def test_steps_receive_read_only_context(self) -> None:
        def mutate(ctx: Context) -> None:
            ctx["x"] = 1  # type: ignore[index]

        executed = Pipeline.new().step("mutate", mutate).execute()
        assert isinstance(executed.error.reason, TypeError)

    def test_empty_pipeline_returns_initial_context(self) -> None:
        assert Pipeline.new({"a": 1}).run() == Ok({"a": 1})

    def test_input_pipeline_is_not_modified(self) -> None:
        pipeline = Pipeline.new({"x": 5}).step("add_ten", _add_ten)
        pipeline.run()
        assert pipeline.context == {"x": 5}
        assert pipeline.pending_steps() == ["add_ten"]

    def test_condition_skips_without_recording(self) -> None:
        spy = SpyStep()
        executed = (
            Pipeline.new({"enabled": False})
            .step("maybe", spy, condition=lambda ctx: ctx["enabled"])
            .step("after", lambda ctx: Ok({"after": True}))
            .execute()
        )
        assert spy.calls == []
        assert executed.completed_steps() == ["after"]
        assert executed.pending_steps() == []


class TestOrdering:
    @pytest.mark.parametrize("fail_at", [1, 2, 3, 4, 5])
    def test_completed_and_pending_split_at_failure(self, fail_at: int) -> None:
        pipeline = Pipeline.new()
        names = [f"s{i}" for i in range(1, 6)]
        for index, name in enumerate(names, start=1):
            outcome = Err("no") if index == fail_at else ACK
            pipeline = pipeline.step(name, SpyStep(outcome))

        executed = pipeline.execute()
        assert executed.completed_steps() == names[: fail_at - 1]
        assert executed.pending_steps() == names[fail_at - 1 :]
        assert executed.dry_run() == names[fail_at - 1 :]

    def test_halted_pipeline_does_not_run_again(self) -> None:
        executed = Pipeline.new().step("fail", lambda ctx: Err("x")).execute()
        spy = SpyStep()
        again = executed.step("later", spy)
        assert again.run() == Err(StepFailed("fail", "x"))
        assert spy.calls == []


class TestRunOrRaise:
    def test_returns_context(self) -> None:
        assert Pipeline.new({"x": 5}).step("add_ten", _add_ten).run_or_raise() == {"x": 15}

    def test_raises_with_envelope(self) -> None:
        with pytest.raises(PipelineFailedError) as exc_info:
            Pipeline.new().step("bad", lambda ctx: Err("nope")).run_or_raise()
        assert exc_info.value.error == StepFailed("bad", "nope")


class TestStepWithRetry:
    def test_eventually_succeeds(self) -> None:
        action = CountingFailure(2, Ok({"response": 200}))
        result = (
            Pipeline.new()
            .step_with_retry("call_api", action, max_attempts=5, delay=1)
            .run()
        )
        assert result == Ok({"response": 200})
        assert action.calls == 3

    def test_exhaustion_wraps_reason(self) -> None:
        action = CountingFailure(100, ACK)
        result = Pipeline.new().step_with_retry("fetch", action, max_attempts=3, delay=0).run()
        assert result == Err(StepFailed("fetch", MaxRetries("unavailable")))
        assert action.calls == 3

    def test_non_recoverable_is_not_retried(self) -> None:
        action = CountingFailure(100, ACK)
        result = (
            Pipeline.new()
            .step_with_retry(
                "fetch",
                action,
                max_attempts=5,
                backoff=backoff.constant(0),
                recoverable=lambda reason: False,
            )
            .run()
        )
        assert isinstance(result.error.reason, MaxRetries)
        assert action.calls == 1

    def test_on_retry_callback(self) -> None:
        seen: list[int] = []
        Pipeline.new().step_with_retry(
            "fetch",
            CountingFailure(2, ACK),
            max_attempts=3,
            delay=0,
            on_retry=lambda reason, attempt, delay_ms: seen.append(attempt),
        ).run()
        assert seen == [1, 2]

    def test_defaults_come_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAGAFLOW_RETRY_MAX_ATTEMPTS", "2")
        monkeypatch.setenv("SAGAFLOW_RETRY_STRATEGY", "constant")
        monkeypatch.setenv("SAGAFLOW_RETRY_INITIAL_DELAY", "0")
        action = CountingFailure(100, ACK)
        pipeline = Pipeline.new().step_with_retry("fetch", action)
        assert pipeline.inspect_steps()[0].has_retry
        pipeline.run()
        assert action.calls == 2

    def test_explicit_options_ignore_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SAGAFLOW_RETRY_MAX_ATTEMPTS", "not-a-number")
        action = CountingFailure(1, ACK)
        pipeline = Pipeline.new().step_with_retry("fetch", action, max_attempts=3, delay=0)
        assert pipeline.run() == Ok({})
        assert action.calls == 2

    def test_malformed_environment_fails_when_defaults_needed(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SAGAFLOW_RETRY_MAX_ATTEMPTS", "not-a-number")
        with pytest.raises(ConfigError):
            Pipeline.new().step_with_retry("fetch", lambda ctx: ACK)


class TestBranch:
    @staticmethod
    def _pricing(account_type: str) -> Pipeline:
        def premium(p: Pipeline) -> Pipeline:
            return p.step("discount", lambda ctx: Ok({"final_price": ctx["price"] * 0.8}))

        def standard(p: Pipeline) -> Pipeline:
            return p.step("no_discount", lambda ctx: Ok({"final_price": ctx["price"]}))

        return Pipeline.new({"type": account_type, "price": 100}).branch(
            "type", {"premium": premium, "standard": standard}
        )

    def test_premium(self) -> None:
        result = self._pricing("premium").run()
        assert result.unwrap()["final_price"] == 80

    def test_standard(self) -> None:
        assert self._pricing("standard").run().unwrap()["final_price"] == 100

    def test_unknown_without_default(self) -> None:
        result = self._pricing("unknown").run()
        assert result == Err(StepFailed("branch_type", NoBranchFor("type", "unknown")))

    def test_default_branch(self) -> None:
        pipeline = Pipeline.new({"type": "trial"}).branch(
            "type",
            {"premium": lambda p: p.assign("vip", "vip", True)},
            default=lambda p: p.assign("basic", "vip", False),
        )
        assert pipeline.run() == Ok({"type": "trial", "vip": False})

    def test_failing_branch_carries_inner_envelope(self) -> None:
        pipeline = Pipeline.new({"type": "a"}).branch(
            "type", {"a": lambda p: p.step("inner", lambda ctx: Err("bad"))}
        )
        assert pipeline.run() == Err(StepFailed("branch_type", StepFailed("inner", "bad")))

    def test_branch_is_a_single_named_step(self) -> None:
        assert self._pricing("premium").dry_run() == ["branch_type"]

    def test_unhashable_value_without_default(self) -> None:
        pipeline = Pipeline.new({"type": ["a"]}).branch("type", {"a": lambda p: p})
        assert pipeline.run() == Err(StepFailed("branch_type", NoBranchFor("type", ["a"])))

    def test_unhashable_value_uses_default(self) -> None:
        pipeline = Pipeline.new({"type": {"k": 1}}).branch(
            "type",
            {"a": lambda p: p},
            default=lambda p: p.assign("fallback", "used_default", True),
        )
        assert pipeline.run().unwrap()["used_default"] is True
