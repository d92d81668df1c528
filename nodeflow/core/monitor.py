"""Execution monitor: live fan-out of run events to subscribers.

Publish/subscribe per run id. Each subscriber owns a bounded asyncio queue
bound to the event loop it subscribed from; ``publish`` may be called from
any thread. Delivery is at-most-once with no replay: events published while
nobody is subscribed are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from nodeflow.core.context import utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Live event names as they appear on the wire."""

    CONNECTED = "connected"
    PING = "ping"
    WORKFLOW_START = "workflow:start"
    NODE_START = "node:start"
    NODE_SUCCESS = "node:success"
    NODE_ERROR = "node:error"
    WORKFLOW_COMPLETE = "workflow:complete"
    WORKFLOW_ERROR = "workflow:error"
    WORKFLOW_CANCELLED = "workflow:cancelled"
    RUN_COMPLETE = "run:complete"


@dataclass
class MonitorEvent:
    type: str
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_sse(self) -> str:
        payload = json.dumps({"runId": self.run_id, "data": self.data}, default=str)
        return f"event: {self.type}\ndata: {payload}\n\n"


@dataclass(eq=False)
class _Subscriber:
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue


_CLOSE = None


class ExecutionMonitor:
    """Fan out run events to any number of live subscribers."""

    def __init__(self, heartbeat_interval: float = 15.0, max_queue_size: int = 1000):
        self.heartbeat_interval = heartbeat_interval
        self.max_queue_size = max_queue_size
        self.active_subscribers: dict[str, list[_Subscriber]] = {}
        self._lock = threading.Lock()

    # ========== Subscription ==========

    def _connect(self, run_id: str, subscriber: _Subscriber) -> None:
        with self._lock:
            self.active_subscribers.setdefault(run_id, []).append(subscriber)

    def _disconnect(self, run_id: str, subscriber: _Subscriber) -> None:
        with self._lock:
            subscribers = self.active_subscribers.get(run_id)
            if not subscribers:
                return
            try:
                subscribers.remove(subscriber)
            except ValueError:
                pass
            if not subscribers:
                del self.active_subscribers[run_id]

    async def subscribe(self, run_id: str) -> AsyncIterator[MonitorEvent]:
        """Yield ``connected``, then events for ``run_id`` as they happen.

        A ``ping`` is yielded after ``heartbeat_interval`` seconds without
        traffic. The stream ends after ``run:complete`` or when ``close()``
        is called; closing the iterator early unsubscribes.
        """
        subscriber = _Subscriber(asyncio.get_running_loop(), asyncio.Queue(self.max_queue_size))
        self._connect(run_id, subscriber)
        try:
            yield MonitorEvent(EventType.CONNECTED.value, run_id)
            while True:
                try:
                    event = await asyncio.wait_for(
                        subscriber.queue.get(), timeout=self.heartbeat_interval
                    )
                except TimeoutError:
                    yield MonitorEvent(EventType.PING.value, run_id)
                    continue
                if event is _CLOSE:
                    break
                yield event
                if event.type == EventType.RUN_COMPLETE.value:
                    break
        finally:
            self._disconnect(run_id, subscriber)

    # ========== Publishing ==========

    def publish(self, run_id: str, event_type: str | EventType, data: dict[str, Any] | None = None) -> int:
        """Deliver an event to current subscribers. Returns how many were offered it."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        event = MonitorEvent(event_type, run_id, dict(data or {}))
        with self._lock:
            subscribers = list(self.active_subscribers.get(run_id, []))
            for subscriber in subscribers:
                self._offer(subscriber, event)
        return len(subscribers)

    def close(self, run_id: str | None = None) -> None:
        """End the streams of one run's subscribers, or of all of them."""
        with self._lock:
            if run_id is None:
                targets = [s for subs in self.active_subscribers.values() for s in subs]
            else:
                targets = list(self.active_subscribers.get(run_id, []))
            for subscriber in targets:
                self._offer(subscriber, _CLOSE)

    def _offer(self, subscriber: _Subscriber, item: MonitorEvent | None) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is subscriber.loop:
            self._put(subscriber, item)
        elif not subscriber.loop.is_closed():
            subscriber.loop.call_soon_threadsafe(self._put, subscriber, item)

    @staticmethod
    def _put(subscriber: _Subscriber, item: MonitorEvent | None) -> None:
        try:
            subscriber.queue.put_nowait(item)
        except asyncio.QueueFull:
            kind = "close" if item is None else item.type
            logger.warning(f"Subscriber queue full; dropping '{kind}' event")

    # ========== Introspection ==========

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self.active_subscribers.get(run_id, []))

    def active_runs(self) -> list[str]:
        """Run ids that currently have at least one subscriber."""
        with self._lock:
            return list(self.active_subscribers)
