"""
Diff and Aggregation Engine

Compares each successful fetch against the task's last known unread count, emits the
newly arrived items, and keeps the cross-account `AggregateCounts` consumed by the UI.

Item identity is best effort: when the unread count grows by N, the N newest unread
items of the fresh listing are treated as new. Count correctness is the guarantee.
All state changes happen under one lock so concurrent ticks from different accounts
cannot lose updates to the aggregate.
"""

import asyncio
from collections import deque
import copy
import logging
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from social.graze.notify.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.notify.model.feed import (
    FeedItem,
    FeedKind,
    FeedResult,
    NotificationItem,
    NotificationReason,
)
from social.graze.notify.model.poll import AccountCounts, AggregateCounts, PollTask

logger = logging.getLogger(__name__)

CountsSink = Callable[[AggregateCounts], Awaitable[None]]
ItemsSink = Callable[[str, FeedKind, List[Dict[str, Any]]], Awaitable[None]]

NOTIFICATION_MESSAGES = {
    NotificationReason.like: "@{actor} liked your post",
    NotificationReason.repost: "@{actor} reposted your post",
    NotificationReason.follow: "@{actor} followed you",
    NotificationReason.mention: "@{actor} mentioned you",
    NotificationReason.reply: "@{actor} replied to your post",
    NotificationReason.quote: "@{actor} quoted your post",
}


def render_item(item: FeedItem, account_handle: str) -> Dict[str, Any]:
    """Title, message and icon for a desktop notification about `item`."""
    if isinstance(item, NotificationItem):
        try:
            template = NOTIFICATION_MESSAGES[NotificationReason(item.reason)]
            message = template.format(actor=item.actor_handle)
        except ValueError:
            message = "New notification from Bluesky"
        return {
            "id": item.id,
            "title": f"@{account_handle} - New {item.reason}",
            "message": message,
            "icon_url": item.actor_avatar_url,
        }

    unread = item.unread_count
    members = ", ".join(f"@{handle}" for handle in item.member_handles if handle)
    return {
        "id": item.id,
        "title": f"@{account_handle} - New message",
        "message": (
            f"{unread} unread from {members}" if members else f"{unread} unread messages"
        ),
        "icon_url": None,
    }


async def _discard_counts(counts: AggregateCounts) -> None:
    pass


async def _discard_items(
    account_id: str, kind: FeedKind, items: List[Dict[str, Any]]
) -> None:
    pass


class DiffEngine:
    def __init__(
        self,
        counts_sink: Optional[CountsSink] = None,
        items_sink: Optional[ItemsSink] = None,
        capacity: int = 50,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.counts_sink = counts_sink or _discard_counts
        self.items_sink = items_sink or _discard_items
        self.capacity = capacity
        self.metrics_client = metrics_client or NoOpMetricsClient()

        self._lock = asyncio.Lock()
        self._counts = AggregateCounts()
        self._recent: Dict[str, Deque[NotificationItem]] = {}

    def _set_count(self, account_id: str, kind: FeedKind, value: int) -> bool:
        counts = self._counts.per_account.setdefault(account_id, AccountCounts())
        if getattr(counts, kind.value) == value:
            return False
        setattr(counts, kind.value, value)
        return True

    def _remember(self, account_id: str, items: List[FeedItem]) -> None:
        recent = self._recent.setdefault(account_id, deque(maxlen=self.capacity))
        known = {item.id for item in recent}
        fresh = [
            item
            for item in items
            if isinstance(item, NotificationItem) and item.id not in known
        ]
        for item in reversed(fresh):
            recent.appendleft(item)

    async def _emit_counts(self) -> None:
        snapshot = copy.deepcopy(self._counts)
        self.metrics_client.gauge("notify.counts.total", snapshot.total)
        await self.counts_sink(snapshot)

    async def apply(
        self,
        task: PollTask,
        result: FeedResult,
        account_handle: str = "",
        is_current: Callable[[], bool] = lambda: True,
    ) -> List[FeedItem]:
        """
        Fold one fetch result into the task and the aggregate.

        `is_current` is checked under the lock; a task that was stopped while its fetch
        was in flight has its result discarded. Returns the items emitted as new.
        """
        async with self._lock:
            if not is_current():
                logger.debug(
                    "Discarding result for stopped task %s/%s",
                    task.account_id,
                    task.feed_kind.value,
                )
                return []

            server_unread = result.current_unread
            if server_unread < task.seen_unread_count:
                # Read elsewhere.
                task.seen_unread_count = server_unread
            current_unread = server_unread - task.seen_unread_count

            new_items: List[FeedItem] = []
            if current_unread > task.last_unread_count:
                delta = current_unread - task.last_unread_count
                new_items = result.unread_items[:delta]

            task.last_unread_count = current_unread
            newest = result.newest_timestamp
            if newest is not None:
                task.cursor_or_timestamp = newest

            changed = self._set_count(task.account_id, task.feed_kind, current_unread)
            self._remember(task.account_id, result.items)

            if new_items:
                await self.items_sink(
                    task.account_id,
                    task.feed_kind,
                    [render_item(item, account_handle) for item in new_items],
                )
            if changed:
                await self._emit_counts()

            return new_items

    async def reset(
        self, account_id: str, kind: FeedKind, task: Optional[PollTask] = None
    ) -> None:
        """
        Set one feed's count for an account to zero.

        The unread items the task last saw are recorded as seen, so a later fetch that
        still reports them does not emit them again.
        """
        async with self._lock:
            if task is not None:
                task.seen_unread_count += task.last_unread_count
                task.last_unread_count = 0
            if self._set_count(account_id, kind, 0):
                await self._emit_counts()

    async def forget(self, account_id: str) -> None:
        """Drop every count and recent item for an account."""
        async with self._lock:
            self._recent.pop(account_id, None)
            if self._counts.per_account.pop(account_id, None) is not None:
                await self._emit_counts()

    async def snapshot(self) -> AggregateCounts:
        async with self._lock:
            return copy.deepcopy(self._counts)

    def recent(self, account_id: str) -> List[NotificationItem]:
        return list(self._recent.get(account_id, ()))
