"""Key-value store with TTL support.

Holds quotes and cached vault reads. Two backends: an in-process store
for single-instance deployments and tests, and Redis.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from feerelay.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Set value with optional TTL in seconds."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if it existed."""
        pass

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """In-process store with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class RedisStore(KeyValueStore):
    """Redis-backed store.

    Connection and command errors surface as :class:`UpstreamUnavailable`.
    """

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self._url = url
        self._client = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            logger.error(f"Redis get error for {key}: {e}")
            raise UpstreamUnavailable("Key-value store is unavailable")

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            if ttl:
                await self._client.setex(key, ttl, value)
            else:
                await self._client.set(key, value)
        except RedisError as e:
            logger.error(f"Redis set error for {key}: {e}")
            raise UpstreamUnavailable("Key-value store is unavailable")

    async def delete(self, key: str) -> bool:
        try:
            return await self._client.delete(key) > 0
        except RedisError as e:
            logger.error(f"Redis delete error for {key}: {e}")
            raise UpstreamUnavailable("Key-value store is unavailable")

    async def close(self) -> None:
        await self._client.aclose()


def create_store(redis_url: Optional[str] = None) -> KeyValueStore:
    """Redis when a URL is configured, otherwise in-process."""
    if redis_url:
        logger.info("Using Redis key-value store")
        return RedisStore(redis_url)
    logger.info("Using in-process key-value store")
    return MemoryStore()
