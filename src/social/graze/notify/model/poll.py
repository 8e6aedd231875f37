"""Polling task state and the derived aggregate counts."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from social.graze.notify.model.feed import FeedKind


class PollState(str, Enum):
    stopped = "stopped"
    running = "running"
    unsupported = "unsupported"
    """Permanently stopped because the account's server does not implement the feed."""


@dataclass
class PollTask:
    """Per (account, feed kind) polling state, owned by the orchestrator.

    `last_unread_count` survives restarts of the task so that a restart does not replay
    every unread item as new. `seen_unread_count` is the part of the server reported
    unread count the user already viewed here; the server is never told, so it keeps
    reporting those items as unread.
    """

    account_id: str
    feed_kind: FeedKind
    interval: float
    cursor_or_timestamp: Optional[str] = None
    last_unread_count: int = 0
    seen_unread_count: int = 0
    state: PollState = PollState.stopped

    @property
    def key(self) -> Tuple[str, FeedKind]:
        return (self.account_id, self.feed_kind)


@dataclass
class AccountCounts:
    notifications: int = 0
    messages: int = 0

    @property
    def total(self) -> int:
        return self.notifications + self.messages

    def as_dict(self) -> Dict[str, int]:
        return {
            "notifications": self.notifications,
            "messages": self.messages,
            "total": self.total,
        }


@dataclass
class AggregateCounts:
    """Cross account unread totals. `total` always equals the sum of `per_account`."""

    per_account: Dict[str, AccountCounts] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(counts.total for counts in self.per_account.values())

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "per_account": {
                account_id: counts.as_dict()
                for account_id, counts in self.per_account.items()
            },
        }
