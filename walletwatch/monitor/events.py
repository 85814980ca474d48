"""
Monitor Events
==============

Progress event stream. The monitor publishes what it is doing; presentation
layers subscribe and render it however they like.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    "registered",
    "deregistered",
    "check_started",
    "check_skipped",
    "fetch_failed",
    "transactions_detected",
    "alert_fired",
    "check_completed",
    "check_failed",
    "check_discarded",
}


@dataclass(frozen=True)
class MonitorEvent:
    kind: str
    address: str
    detail: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventStream:
    """
    Fan-out of MonitorEvents to any number of subscriber queues.

    Queues are bounded; when a consumer falls behind its oldest event is
    dropped so publishing never blocks the monitor.
    """

    def __init__(self, max_queue_size: int = 256):
        self.max_queue_size = max_queue_size
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, kind: str, address: str, **detail):
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        event = MonitorEvent(kind=kind, address=address, detail=detail)
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)
