"""Tests for deadlines and guaranteed cleanups."""

from __future__ import annotations

import threading
import time

import pytest

from sagaflow.errors import RollbackError, StepFailed, Timeout
from sagaflow.pipeline import ACK, Context, Pipeline
from sagaflow.result import Err, Ok, Result


class CleanupRecorder:
    """Collects ``(name, context, result)`` for every cleanup call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict, Result]] = []

    def named(self, name: str):
        def cleanup(ctx: Context, result: Result) -> None:
            self.calls.append((name, ctx.to_dict(), result))

        return cleanup


class TestRunWithEnsure:
    def test_cleanups_run_once_on_success_in_reverse_order(self) -> None:
        recorder = CleanupRecorder()
        result = (
            Pipeline.new({"conn": "db"})
            .ensure("close_db", recorder.named("close_db"))
            .ensure("release_lock", recorder.named("release_lock"))
            .step("work", lambda ctx: Ok({"done": True}))
            .run_with_ensure()
        )
        assert result == Ok({"conn": "db", "done": True})
        assert [c[0] for c in recorder.calls] == ["release_lock", "close_db"]
        assert recorder.calls[0][1] == {"conn": "db", "done": True}
        assert recorder.calls[0][2] == result

    def test_cleanups_run_on_failure(self) -> None:
        recorder = CleanupRecorder()
        result = (
            Pipeline.new()
            .ensure("cleanup", recorder.named("cleanup"))
            .step("fail", lambda ctx: Err("boom"))
            .run_with_ensure()
        )
        assert result == Err(StepFailed("fail", "boom"))
        assert recorder.calls == [("cleanup", {}, result)]

    def test_cleanup_exception_does_not_mask_result(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        recorder = CleanupRecorder()

        def broken(ctx: Context, result: Result) -> None:
            raise OSError("socket already closed")

        result = (
            Pipeline.new({"a": 1})
            .ensure("after", recorder.named("after"))
            .ensure("broken", broken)
            .run_with_ensure()
        )
        assert result == Ok({"a": 1})
        assert [c[0] for c in recorder.calls] == ["after"]
        assert any("Cleanup 'broken' raised" in r.getMessage() for r in caplog.records)

    def test_ensure_with_rollback(self) -> None:
        undone: list[str] = []
        result = (
            Pipeline.new()
            .step("a", lambda ctx: ACK, rollback=lambda ctx: undone.append("a"))
            .step("b", lambda ctx: Err("x"))
            .run_with_ensure(rollback=True)
        )
        assert result == Err(StepFailed("b", "x"))
        assert undone == ["a"]

    def test_plain_run_does_not_call_cleanups(self) -> None:
        recorder = CleanupRecorder()
        Pipeline.new().ensure("c", recorder.named("c")).run()
        assert recorder.calls == []


class TestRunWithTimeout:
    def test_completes_within_deadline(self) -> None:
        result = Pipeline.new({"x": 1}).step("inc", lambda ctx: Ok({"x": 2})).run_with_timeout(2_000)
        assert result == Ok({"x": 2})

    def test_failure_within_deadline_is_returned(self) -> None:
        result = Pipeline.new().step("bad", lambda ctx: Err("no")).run_with_timeout(2_000)
        assert result == Err(StepFailed("bad", "no"))

    def test_slow_step_times_out(self) -> None:
        release = threading.Event()
        later_calls: list[int] = []

        def slow(ctx: Context) -> object:
            release.wait(5)
            return ACK

        start = time.monotonic()
        result = (
            Pipeline.new()
            .step("slow", slow)
            .step("later", lambda ctx: later_calls.append(1))
            .run_with_timeout(50)
        )
        elapsed = time.monotonic() - start
        release.set()

        assert result == Err(Timeout())
        assert elapsed < 2
        time.sleep(0.1)
        assert later_calls == []

    def test_timeout_cancels_retry_sleep(self) -> None:
        attempts: list[int] = []

        def always_fails(ctx: Context) -> Err:
            attempts.append(1)
            return Err("unavailable")

        start = time.monotonic()
        result = (
            Pipeline.new()
            .step_with_retry("fetch", always_fails, max_attempts=10, delay=10_000)
            .run_with_timeout(100)
        )
        assert result == Err(Timeout())
        assert time.monotonic() - start < 5
        time.sleep(0.1)
        assert len(attempts) == 1

    def test_cleanups_see_last_completed_context(self) -> None:
        recorder = CleanupRecorder()
        release = threading.Event()

        def slow(ctx: Context) -> object:
            release.wait(5)
            return ACK

        result = (
            Pipeline.new()
            .ensure("cleanup", recorder.named("cleanup"))
            .step("first", lambda ctx: Ok({"a": 1}))
            .step("slow", slow)
            .run_with_timeout(100)
        )
        release.set()
        assert result == Err(Timeout())
        assert recorder.calls == [("cleanup", {"a": 1}, Err(Timeout()))]

    def test_negative_timeout_rejected(self) -> None:
        with pytest.raises(ValueError):
            Pipeline.new().run_with_timeout(-1)

    def test_timeout_with_rollback_on_step_failure(self) -> None:
        undone: list[str] = []
        result = (
            Pipeline.new()
            .step("a", lambda ctx: ACK, rollback=lambda ctx: undone.append("a"))
            .step("b", lambda ctx: Err("x"))
            .run_with_timeout(2_000, rollback=True)
        )
        assert result == Err(StepFailed("b", "x"))
        assert undone == ["a"]

    def test_timeout_with_rollback_compensates_completed_steps(self) -> None:
        undone: list[str] = []
        release = threading.Event()

        def slow(ctx: Context) -> object:
            release.wait(5)
            return ACK

        result = (
            Pipeline.new()
            .step(
                "reserve",
                lambda ctx: Ok({"reserved": True}),
                rollback=lambda ctx: undone.append("reserve"),
            )
            .step("slow", slow, rollback=lambda ctx: undone.append("slow"))
            .run_with_timeout(50, rollback=True)
        )
        release.set()
        assert result == Err(Timeout())
        assert undone == ["reserve"]

    def test_timeout_rollback_failures_are_reported(self) -> None:
        release = threading.Event()

        def slow(ctx: Context) -> object:
            release.wait(5)
            return ACK

        result = (
            Pipeline.new()
            .step("reserve", lambda ctx: ACK, rollback=lambda ctx: Err("stuck"))
            .step("slow", slow)
            .run_with_timeout(50, rollback=True)
        )
        release.set()
        assert result == Err(Timeout())
        assert result.error.rollback_errors == (RollbackError("reserve", "stuck"),)

    def test_timeout_without_rollback_leaves_steps(self) -> None:
        undone: list[str] = []
        release = threading.Event()

        def slow(ctx: Context) -> object:
            release.wait(5)
            return ACK

        result = (
            Pipeline.new()
            .step("reserve", lambda ctx: ACK, rollback=lambda ctx: undone.append("reserve"))
            .step("slow", slow)
            .run_with_timeout(50)
        )
        release.set()
        assert result == Err(Timeout())
        assert undone == []

    def test_step_failing_after_deadline_is_not_unwound_twice(self) -> None:
        undone: list[str] = []
        release = threading.Event()

        def slow_failure(ctx: Context) -> Err:
            release.wait(5)
            return Err("late")

        result = (
            Pipeline.new()
            .step("reserve", lambda ctx: ACK, rollback=lambda ctx: undone.append("reserve"))
            .step("slow", slow_failure)
            .run_with_timeout(50, rollback=True)
        )
        release.set()
        time.sleep(0.2)
        assert result == Err(Timeout())
        assert undone == ["reserve"]
