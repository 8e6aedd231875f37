"""
Secure key/value storage.

Every value written through `RedisSecureStorage` is encrypted with the configured Fernet
key before it reaches Redis, and every key is namespaced as `{prefix}:{namespace}:{key}`.

`OnceStore` layers consume-once semantics on top of storage. It backs both the pending
PKCE verifiers (`pop`) and the processed-state idempotency flags (`claim`), so the two
duplicate suppression mechanisms share one abstraction.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from redis import asyncio as redis

logger = logging.getLogger(__name__)


def normalize_redis_string(value: Any) -> str:
    """
    Normalize Redis value to string, handling bytes conversion.
    """
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class SecureStorage(ABC):
    """Async namespaced key/value storage."""

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(
        self, namespace: str, key: str, value: str, ttl: Optional[int] = None
    ) -> None:
        pass

    @abstractmethod
    async def set_if_absent(
        self, namespace: str, key: str, value: str, ttl: Optional[int] = None
    ) -> bool:
        """Write only when the key does not exist. Returns True if the write happened."""
        pass

    @abstractmethod
    async def remove(self, namespace: str, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        pass

    @abstractmethod
    async def pop(self, namespace: str, key: str) -> Optional[str]:
        """Atomically read and delete a key."""
        pass

    @abstractmethod
    async def keys(self, namespace: str) -> List[str]:
        pass


class RedisSecureStorage(SecureStorage):
    """SecureStorage backed by Redis with Fernet encrypted values."""

    def __init__(
        self, redis_client: redis.Redis, encryption_key: Fernet, prefix: str = "notify"
    ) -> None:
        self.redis_client = redis_client
        self.encryption_key = encryption_key
        self.prefix = prefix

    def _key(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    def _encrypt(self, value: str) -> str:
        return self.encryption_key.encrypt(value.encode()).decode()

    def _decrypt(self, namespace: str, key: str, value: Any) -> Optional[str]:
        if value is None:
            return None
        try:
            return self.encryption_key.decrypt(
                normalize_redis_string(value).encode()
            ).decode()
        except InvalidToken:
            logger.warning("Unable to decrypt stored value %s:%s", namespace, key)
            return None

    async def get(self, namespace: str, key: str) -> Optional[str]:
        value = await self.redis_client.get(self._key(namespace, key))
        return self._decrypt(namespace, key, value)

    async def set(
        self, namespace: str, key: str, value: str, ttl: Optional[int] = None
    ) -> None:
        await self.redis_client.set(
            self._key(namespace, key), self._encrypt(value), ex=ttl
        )

    async def set_if_absent(
        self, namespace: str, key: str, value: str, ttl: Optional[int] = None
    ) -> bool:
        res = await self.redis_client.set(
            self._key(namespace, key), self._encrypt(value), ex=ttl, nx=True
        )
        return bool(res)

    async def remove(self, namespace: str, key: str) -> bool:
        deleted = await self.redis_client.delete(self._key(namespace, key))
        return deleted > 0

    async def pop(self, namespace: str, key: str) -> Optional[str]:
        value = await self.redis_client.getdel(self._key(namespace, key))
        return self._decrypt(namespace, key, value)

    async def keys(self, namespace: str) -> List[str]:
        start = len(self._key(namespace, ""))
        return [
            normalize_redis_string(full_key)[start:]
            async for full_key in self.redis_client.scan_iter(
                match=self._key(namespace, "*")
            )
        ]


class OnceStore:
    """
    A consume-once token store over one storage namespace.

    `put` records a value, `consume` returns it at most once, and `claim` sets a marker
    that only the first caller wins.
    """

    def __init__(
        self, storage: SecureStorage, namespace: str, ttl: Optional[int] = None
    ) -> None:
        self.storage = storage
        self.namespace = namespace
        self.ttl = ttl

    async def put(self, key: str, value: str) -> None:
        await self.storage.set(self.namespace, key, value, ttl=self.ttl)

    async def consume(self, key: str) -> Optional[str]:
        return await self.storage.pop(self.namespace, key)

    async def discard(self, key: str) -> None:
        await self.storage.remove(self.namespace, key)

    async def claim(self, key: str) -> bool:
        return await self.storage.set_if_absent(self.namespace, key, "1", ttl=self.ttl)

    async def exists(self, key: str) -> bool:
        return await self.storage.get(self.namespace, key) is not None
