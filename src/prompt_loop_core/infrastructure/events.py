"""
Post-commit events

Side effects of a successful write (dashboard cache invalidation, verdict
summaries) are published here and executed when the caller drains the
queue. Handler failures are collected and returned to the caller instead of
disappearing in a background task.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordEvaluated:
    """A record received its verdict"""
    record_id: int
    endpoint_id: int
    evaluator_id: int | None = None
    needs_summary: bool = False


@dataclass(frozen=True)
class PromptReleased:
    """A prompt version became active"""
    endpoint_id: int
    version: str


@dataclass(frozen=True)
class InsightsCreated:
    endpoint_id: int
    count: int


@dataclass
class SideEffectFailure:
    """One handler that raised while processing an event"""
    event: Any
    handler: str
    error: str


Handler = Callable[[Any], None]


@dataclass
class EventQueue:
    """In-process FIFO of post-commit events"""
    _handlers: dict[type, list[Handler]] = field(default_factory=lambda: defaultdict(list))
    _pending: list[Any] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: Any) -> None:
        with self._lock:
            self._pending.append(event)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self) -> list[SideEffectFailure]:
        """
        Run the handlers of every pending event, in publish order

        Returns:
            The failures of this drain (empty when every handler succeeded)
        """
        with self._lock:
            events, self._pending = self._pending, []

        failures: list[SideEffectFailure] = []
        for event in events:
            for handler in self._handlers.get(type(event), []):
                name = getattr(handler, "__qualname__", repr(handler))
                try:
                    handler(event)
                except Exception as e:
                    logger.exception("Side effect %s failed for %r", name, event)
                    failures.append(SideEffectFailure(event=event, handler=name, error=str(e)))
        return failures


def invalidate_metrics_handler(cache) -> Handler:
    """Handler dropping the dashboard aggregates of the event's endpoint"""

    def _invalidate(event: Any) -> None:
        removed = cache.invalidate(event.endpoint_id)
        logger.debug("Invalidated %d cached aggregates for endpoint %s", removed, event.endpoint_id)

    return _invalidate


def build_event_queue(cache=None) -> EventQueue:
    """Queue wired with cache invalidation for every event that changes dashboard data"""
    queue = EventQueue()
    if cache is not None:
        handler = invalidate_metrics_handler(cache)
        for event_type in (RecordEvaluated, PromptReleased, InsightsCreated):
            queue.subscribe(event_type, handler)
    return queue
