"""Feed item models for notification and conversation listings.

Items are parsed from the XRPC responses of `app.bsky.notification.listNotifications` and
`chat.bsky.convo.listConvos`. Listings are ordered newest first.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict


class FeedKind(str, Enum):
    """The two polled resource types."""

    notifications = "notifications"
    messages = "messages"


class NotificationReason(str, Enum):
    like = "like"
    repost = "repost"
    follow = "follow"
    mention = "mention"
    reply = "reply"
    quote = "quote"


class NotificationItem(BaseModel):
    """One entry of the notification listing.

    `reason` is kept as the raw string because servers add reasons over time; the known
    ones are enumerated by `NotificationReason`.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    reason: str
    actor_handle: str
    actor_avatar_url: Optional[str] = None
    is_read: bool
    created_at: str

    @staticmethod
    def from_xrpc(value: Dict[str, Any]) -> "NotificationItem":
        author = value.get("author")
        if not isinstance(author, dict):
            author = {}
        return NotificationItem(
            id=value.get("uri") or value.get("cid") or "",
            reason=value.get("reason", ""),
            actor_handle=author.get("handle", ""),
            actor_avatar_url=author.get("avatar"),
            is_read=bool(value.get("isRead", False)),
            created_at=value.get("indexedAt") or value.get("createdAt") or "",
        )


class ConversationItem(BaseModel):
    """One direct message conversation and its unread counter."""

    model_config = ConfigDict(frozen=True)

    id: str
    unread_count: int
    member_handles: List[str] = []

    @staticmethod
    def from_xrpc(value: Dict[str, Any]) -> "ConversationItem":
        unread_count = value.get("unreadCount", 0)
        if not isinstance(unread_count, int) or unread_count < 0:
            unread_count = 0
        return ConversationItem(
            id=value.get("id", ""),
            unread_count=unread_count,
            member_handles=[
                member.get("handle", "")
                for member in value.get("members", [])
                if isinstance(member, dict)
            ],
        )


FeedItem = Union[NotificationItem, ConversationItem]


class FeedResult(BaseModel):
    """The outcome of one successful fetch."""

    kind: FeedKind
    items: List[FeedItem]

    @property
    def unread_items(self) -> List[FeedItem]:
        """Unread entries, newest first."""
        if self.kind == FeedKind.notifications:
            return [
                item
                for item in self.items
                if isinstance(item, NotificationItem) and not item.is_read
            ]
        return [
            item
            for item in self.items
            if isinstance(item, ConversationItem) and item.unread_count > 0
        ]

    @property
    def current_unread(self) -> int:
        """Unread notifications, or the sum of per-conversation unread counters."""
        if self.kind == FeedKind.notifications:
            return len(self.unread_items)
        return sum(
            item.unread_count
            for item in self.items
            if isinstance(item, ConversationItem)
        )

    @property
    def newest_timestamp(self) -> Optional[str]:
        for item in self.items:
            if isinstance(item, NotificationItem) and item.created_at:
                return item.created_at
        return None
