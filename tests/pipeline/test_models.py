"""Tests for context and step outcome models."""

from __future__ import annotations

import pytest

from sagaflow.errors import InvalidOutcome
from sagaflow.pipeline.models import ACK, Ack, Context, normalize_outcome
from sagaflow.result import Err, Ok


class TestContext:
    def test_mapping_protocol(self) -> None:
        ctx = Context({"a": 1, "b": 2})
        assert ctx["a"] == 1
        assert list(ctx) == ["a", "b"]
        assert len(ctx) == 2
        assert ctx.has("b") and not ctx.has("c")
        assert ctx.get("c", 0) == 0
        assert ctx == {"a": 1, "b": 2}

    def test_merge_returns_new_context(self) -> None:
        ctx = Context({"a": 1})
        merged = ctx.merge({"a": 2, "b": 3})
        assert ctx == {"a": 1}
        assert merged == {"a": 2, "b": 3}
        assert ctx.merge({}) is ctx

    def test_drop_ignores_missing(self) -> None:
        assert Context({"a": 1, "b": 2}).drop(["a", "zzz"]) == {"b": 2}

    def test_to_dict_is_a_copy(self) -> None:
        ctx = Context({"a": 1})
        data = ctx.to_dict()
        data["a"] = 99
        assert ctx["a"] == 1

    def test_snapshot_is_deep(self) -> None:
        ctx = Context({"items": [1]})
        snap = ctx.snapshot()
        snap["items"].append(2)
        assert ctx["items"] == [1]

    def test_immutable(self) -> None:
        with pytest.raises(TypeError):
            Context({"a": 1})["a"] = 2  # type: ignore[index]

    def test_from_dict_reuses_context(self) -> None:
        ctx = Context({"a": 1})
        assert Context.from_dict(ctx) is ctx


class TestNormalizeOutcome:
    @pytest.mark.parametrize("value", [None, ACK, Ok(None), Ok(ACK)])
    def test_ack_forms(self, value: object) -> None:
        assert normalize_outcome(value) is ACK

    def test_success_forms(self) -> None:
        assert normalize_outcome(Ok({"a": 1})) == Ok({"a": 1})
        assert normalize_outcome({"a": 1}) == Ok({"a": 1})
        assert normalize_outcome(Context({"a": 1})) == Ok({"a": 1})

    def test_failure_passes_through(self) -> None:
        assert normalize_outcome(Err("x")) == Err("x")

    @pytest.mark.parametrize("value", [1, "ok", [("a", 1)], Ok(5)])
    def test_invalid(self, value: object) -> None:
        assert normalize_outcome(value) == Err(InvalidOutcome(value))

    def test_ack_is_singleton(self) -> None:
        assert Ack() is ACK
        assert repr(ACK) == "ACK"
