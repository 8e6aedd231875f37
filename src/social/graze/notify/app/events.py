"""
Fan-out of UI events.

The diff engine and the account lifecycle publish events here; every connected UI
subscriber (see the `/internal/api/events` stream) receives its own copy. Subscribers
that fall behind lose their oldest events rather than holding up publishers.
"""

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

COUNTS_UPDATED = "counts_updated"
NEW_ITEMS = "new_items"
ACCOUNT_ADDED = "account_added"
ACCOUNT_REMOVED = "account_removed"
REAUTHENTICATION_REQUIRED = "reauthentication_required"


@dataclass(frozen=True)
class Event:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)


class EventHub:
    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: Set["asyncio.Queue[Optional[Event]]"] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> "asyncio.Queue[Optional[Event]]":
        queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Optional[Event]]") -> None:
        self._subscribers.discard(queue)

    def _offer(self, queue: "asyncio.Queue[Optional[Event]]", event: Optional[Event]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(event)

    def publish(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        event = Event(name=name, data=data or {})
        for queue in list(self._subscribers):
            self._offer(queue, event)

    def close(self) -> None:
        """Wake every subscriber with an end-of-stream marker."""
        for queue in list(self._subscribers):
            self._offer(queue, None)
        self._subscribers.clear()
