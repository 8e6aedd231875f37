"""
Feed fetching for the two polled resource types.

Notifications come from `app.bsky.notification.listNotifications` on the account's PDS.
Conversations come from `chat.bsky.convo.listConvos`, proxied by the PDS to the chat
service named in the `atproto-proxy` header.
"""

import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from social.graze.notify.atproto.chain import ChainResponse, is_nonce_challenge
from social.graze.notify.atproto.errors import (
    FeedNotImplementedError,
    ProtocolError,
    TransientError,
)
from social.graze.notify.atproto.oauth import TokenManager
from social.graze.notify.model.account import Account
from social.graze.notify.model.feed import (
    ConversationItem,
    FeedItem,
    FeedKind,
    FeedResult,
    NotificationItem,
)

logger = logging.getLogger(__name__)

XRPC_METHODS = {
    FeedKind.notifications: "app.bsky.notification.listNotifications",
    FeedKind.messages: "chat.bsky.convo.listConvos",
}

RESPONSE_KEYS = {
    FeedKind.notifications: "notifications",
    FeedKind.messages: "convos",
}


def is_not_implemented(response: ChainResponse) -> bool:
    return response.status == 501 or response.error_code() == "MethodNotImplemented"


class FeedClient:
    def __init__(
        self,
        tokens: TokenManager,
        page_size: int = 50,
        chat_service_proxy: str = "did:web:api.bsky.chat#bsky_chat",
    ) -> None:
        self.tokens = tokens
        self.page_size = page_size
        self.chat_service_proxy = chat_service_proxy

    def feed_url(self, account: Account, kind: FeedKind) -> str:
        return f"{account.api_base_url.rstrip('/')}/xrpc/{XRPC_METHODS[kind]}"

    async def _get(self, account: Account, kind: FeedKind) -> ChainResponse:
        headers = {"Authorization": f"DPoP {account.access_token}"}
        params: Dict[str, Any] = {"limit": self.page_size}
        if kind == FeedKind.messages:
            headers["atproto-proxy"] = self.chat_service_proxy

        chain_client = self.tokens.resource_client(account, f"feed_{kind.value}")
        return await chain_client.get(
            self.feed_url(account, kind), headers=headers, params=params
        )

    async def fetch(self, account: Account, kind: FeedKind) -> FeedResult:
        """
        Fetch the newest page of a feed for an account.

        The access token is refreshed first when it is near expiry. A 401 that is not a
        DPoP nonce challenge forces one refresh and a single retry.

        Raises:
            FeedNotImplementedError: The server does not implement the feed (501)
            TransientError: Network failure, timeout or 5xx
            ProtocolError: Any other failure or an unreadable body
            RevokedError: Refreshing the tokens found them revoked
        """
        account = await self.tokens.ensure_fresh(account)
        response = await self._get(account, kind)

        if response.status == 401 and not is_nonce_challenge(response):
            logger.debug("Access token for %s rejected, refreshing", account.id)
            account = await self.tokens.ensure_fresh(account, force=True)
            response = await self._get(account, kind)

        return self.parse(kind, response)

    def parse(self, kind: FeedKind, response: ChainResponse) -> FeedResult:
        if is_not_implemented(response):
            raise FeedNotImplementedError(f"{XRPC_METHODS[kind]} is not implemented")

        if response.status >= 500 or response.status == 429:
            raise TransientError(f"{XRPC_METHODS[kind]} returned {response.status}")

        if not response.ok:
            raise ProtocolError(
                f"{XRPC_METHODS[kind]} returned {response.status} {response.error_code() or ''}".strip()
            )

        body = response.json_body()
        if body is None:
            raise ProtocolError(f"{XRPC_METHODS[kind]} returned a non JSON body")

        values = body.get(RESPONSE_KEYS[kind])
        if not isinstance(values, list):
            raise ProtocolError(
                f"{XRPC_METHODS[kind]} response lacks {RESPONSE_KEYS[kind]}"
            )

        items: List[FeedItem] = []
        for value in values:
            if not isinstance(value, dict):
                continue
            try:
                if kind == FeedKind.notifications:
                    items.append(NotificationItem.from_xrpc(value))
                else:
                    items.append(ConversationItem.from_xrpc(value))
            except ValidationError:
                logger.debug("Skipping unreadable %s item", kind.value)

        return FeedResult(kind=kind, items=items)
