"""
Account Registry

Durable mapping of account id to `Account`, persisted through `SecureStorage`. The
registry validates accounts before writing them and notifies listeners after every
mutation; it holds no polling logic of its own.
"""

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError
import sentry_sdk

from social.graze.notify.model.account import Account
from social.graze.notify.store.secure import SecureStorage

logger = logging.getLogger(__name__)

ACCOUNTS_NAMESPACE = "accounts"


@dataclass(frozen=True)
class RegistryEvent:
    action: str
    """Either "saved" or "removed"."""

    account_id: str

    created: bool = False
    """For saves, whether the account did not exist before."""

    reason: Optional[str] = None
    """For removals, why the account went away (e.g. "user" or "revoked")."""


RegistryListener = Callable[[RegistryEvent], Awaitable[None]]


class AccountRegistry:
    def __init__(self, storage: SecureStorage) -> None:
        self.storage = storage
        self._lock = asyncio.Lock()
        self._listeners: List[RegistryListener] = []

    def add_listener(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    async def _notify(self, event: RegistryEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Registry listener failed for %s", event)

    async def save(self, account: Account) -> bool:
        """
        Persist an account, replacing any stored record with the same id.

        Accounts with empty required fields are rejected: nothing is written and False is
        returned.
        """
        missing = account.missing_fields()
        if missing:
            logger.warning(
                "Refusing to save account %s with missing fields: %s",
                account.id or "<no id>",
                ", ".join(missing),
            )
            return False

        async with self._lock:
            created = await self.storage.get(ACCOUNTS_NAMESPACE, account.id) is None
            await self.storage.set(
                ACCOUNTS_NAMESPACE, account.id, account.model_dump_json()
            )

        await self._notify(
            RegistryEvent(action="saved", account_id=account.id, created=created)
        )
        return True

    async def update(self, account: Account) -> bool:
        """
        Persist an account only if it is still registered.

        Used for token rotation so that a refresh finishing after the account was removed
        cannot bring it back.
        """
        if account.missing_fields():
            logger.warning("Refusing to update account %s with missing fields", account.id)
            return False

        async with self._lock:
            if await self.storage.get(ACCOUNTS_NAMESPACE, account.id) is None:
                return False
            await self.storage.set(
                ACCOUNTS_NAMESPACE, account.id, account.model_dump_json()
            )

        await self._notify(RegistryEvent(action="saved", account_id=account.id))
        return True

    async def get(self, account_id: str) -> Optional[Account]:
        value = await self.storage.get(ACCOUNTS_NAMESPACE, account_id)
        if value is None:
            return None
        try:
            return Account.model_validate_json(value)
        except ValidationError:
            logger.warning("Stored account %s could not be decoded", account_id)
            return None

    async def load_all(self) -> Dict[str, Account]:
        accounts: Dict[str, Account] = {}
        for account_id in await self.storage.keys(ACCOUNTS_NAMESPACE):
            account = await self.get(account_id)
            if account is not None:
                accounts[account.id] = account
        return accounts

    async def remove(self, account_id: str, reason: str = "user") -> bool:
        """Delete an account. Returns whether an entry existed."""
        async with self._lock:
            existed = await self.storage.remove(ACCOUNTS_NAMESPACE, account_id)

        if existed:
            logger.info("Removed account %s (%s)", account_id, reason)
            await self._notify(
                RegistryEvent(action="removed", account_id=account_id, reason=reason)
            )
        return existed
