"""Pipeline event system for observability.

Provides typed events emitted during pipeline execution so that
surrounding tooling (metrics, tracing, audit logs) can observe each step
without the orchestrator knowing about it.  Every event carries the
pipeline's ``telemetry_prefix`` and ``metadata`` untouched.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


class PipelineEventType(str, enum.Enum):
    """Typed event categories emitted during pipeline execution."""

    PIPELINE_START = "pipeline_start"
    PIPELINE_COMPLETE = "pipeline_complete"
    PIPELINE_FAILED = "pipeline_failed"
    PIPELINE_TIMEOUT = "pipeline_timeout"
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    STEP_RETRY = "step_retry"
    STEP_FAIL = "step_fail"
    ROLLBACK_START = "rollback_start"
    ROLLBACK_COMPLETE = "rollback_complete"
    ROLLBACK_FAIL = "rollback_fail"
    CLEANUP_FAIL = "cleanup_fail"


@dataclass
class PipelineEvent:
    """A single pipeline lifecycle event.

    Attributes:
        type: The event category.
        step_name: Name of the relevant step (empty for pipeline-level events).
        telemetry_prefix: The pipeline's telemetry prefix, passed through.
        metadata: The pipeline's metadata, passed through.
        timestamp: UNIX epoch when the event occurred.
        data: Arbitrary event-specific payload.
    """

    type: PipelineEventType
    step_name: str = ""
    telemetry_prefix: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        """Dotted event name, e.g. ``shop.checkout.step_start``."""
        return ".".join((*self.telemetry_prefix, self.type.value))


EventCallback = Callable[[PipelineEvent], Any]


class PipelineEventEmitter:
    """Observer-pattern event emitter for pipeline lifecycle events.

    Register callbacks with :meth:`on` (or :meth:`on_any`) and fire
    events with :meth:`emit`.
    """

    def __init__(self) -> None:
        self._listeners: dict[PipelineEventType, list[EventCallback]] = defaultdict(
            list
        )
        self._catch_all: list[EventCallback] = []

    @property
    def listeners(self) -> dict[PipelineEventType, list[EventCallback]]:
        """Return the mapping of event types to registered callbacks."""
        return dict(self._listeners)

    def on(self, event_type: PipelineEventType, callback: EventCallback) -> None:
        """Register a callback for a specific event type.

        Args:
            event_type: The event category to listen for.
            callback: Callable invoked when the event fires.
        """
        self._listeners[event_type].append(callback)

    def on_any(self, callback: EventCallback) -> None:
        """Register a callback for every event type."""
        self._catch_all.append(callback)

    def emit(self, event: PipelineEvent) -> None:
        """Fire an event, invoking all registered callbacks.

        Exceptions in callbacks are logged but do not prevent
        other callbacks from running.

        Args:
            event: The event to emit.
        """
        for callback in [*self._listeners.get(event.type, []), *self._catch_all]:
            try:
                callback(event)
            except Exception as exc:
                logger.error(
                    "Event callback error for %s: %s",
                    event.type.value,
                    exc,
                )
