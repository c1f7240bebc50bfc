"""
Transient State Store
=====================

Key-value storage with per-entry expiry, shared by CSRF state tokens and
session records.

Key layout: ``<namespace>:<key>``. Values are opaque strings; callers
serialize their own records. An expired entry and a never-written entry are
indistinguishable: both raise :class:`EntryNotFoundError`.

Implementations:
- RedisStore: redis.asyncio client, used in every deployed environment
- MemoryStore: in-process dict, for tests and single-process development
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Sequence, Tuple

import redis.asyncio
import redis.exceptions

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class StoreError(Exception):
    """Base exception for state store errors"""
    pass


class EntryNotFoundError(StoreError):
    """The key does not exist or has expired"""
    pass


class StoreUnavailableError(StoreError):
    """The backing store could not be reached or rejected the command"""
    pass


class CorruptEntryError(StoreError):
    """The stored value could not be decoded"""
    pass


def build_key(namespace: str, key: str) -> str:
    return f"{namespace}:{key}"


# =============================================================================
# Contract
# =============================================================================

class KeyValueStore(ABC):
    """Async key-value store with per-entry TTL."""

    @abstractmethod
    async def put(self, namespace: str, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value``, overwriting any existing entry, expiring after ``ttl_seconds``."""

    @abstractmethod
    async def get(self, namespace: str, key: str) -> str:
        """
        Return the stored value.

        Raises:
            EntryNotFoundError: If the entry is absent or expired
            StoreUnavailableError: If the store cannot be reached
        """

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> None:
        """Remove the entry. Deleting a missing entry is not an error."""

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None


def _check_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if ttl <= 0:
        raise ValueError(f"TTL must be positive, got {ttl_seconds}")
    return ttl


# =============================================================================
# Redis
# =============================================================================

class RedisStore(KeyValueStore):
    """
    Redis-backed store.

    The redis.asyncio client is safe to share between concurrent requests;
    connections are taken from its pool per command. Only reads are retried,
    since a retried write or delete could land twice.
    """

    def __init__(
        self,
        client: redis.asyncio.Redis,
        read_attempts: int = 2,
        backoff_delays: Sequence[float] = (0.05, 0.2, 0.5, 1.0),
    ) -> None:
        self.client = client
        self.read_attempts = max(1, read_attempts)
        self.backoff_delays = tuple(backoff_delays)

    @classmethod
    def from_settings(cls, settings) -> "RedisStore":
        """
        Build a store from application settings.

        Args:
            settings: Application settings (REDIS_* and STORE_READ_ATTEMPTS)

        Returns:
            RedisStore with its own connection pool
        """
        client = redis.asyncio.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
            decode_responses=True,
        )
        return cls(client, read_attempts=settings.STORE_READ_ATTEMPTS)

    async def put(self, namespace: str, key: str, value: str, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        try:
            await self.client.set(build_key(namespace, key), value, ex=ttl)
        except redis.exceptions.RedisError as e:
            raise StoreUnavailableError(f"Failed to write {namespace} entry: {e}") from e

    async def get(self, namespace: str, key: str) -> str:
        full_key = build_key(namespace, key)

        for attempt in range(self.read_attempts):
            try:
                value = await self.client.get(full_key)
                break
            except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
                if attempt < self.read_attempts - 1:
                    delay = self.backoff_delays[min(attempt, len(self.backoff_delays) - 1)]
                    logger.warning(
                        f"Store read failed (attempt {attempt + 1}/{self.read_attempts}), retrying after {delay}s",
                        extra={"namespace": namespace, "error": str(e)},
                    )
                    await asyncio.sleep(delay)
                    continue
                raise StoreUnavailableError(f"Failed to read {namespace} entry: {e}") from e
            except redis.exceptions.RedisError as e:
                raise StoreUnavailableError(f"Failed to read {namespace} entry: {e}") from e

        if value is None:
            raise EntryNotFoundError(f"No {namespace} entry for key")
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await self.client.delete(build_key(namespace, key))
        except redis.exceptions.RedisError as e:
            raise StoreUnavailableError(f"Failed to delete {namespace} entry: {e}") from e

    async def ping(self) -> None:
        try:
            await self.client.ping()
        except redis.exceptions.RedisError as e:
            raise StoreUnavailableError(f"Redis ping failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


# =============================================================================
# In-memory
# =============================================================================

class MemoryStore(KeyValueStore):
    """
    In-process store with lazy expiry.

    Not shared between worker processes. The clock is injectable so tests
    can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    async def put(self, namespace: str, key: str, value: str, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        self._purge_expired()
        self._entries[build_key(namespace, key)] = (value, self._clock() + ttl)

    async def get(self, namespace: str, key: str) -> str:
        full_key = build_key(namespace, key)
        entry: Optional[Tuple[str, float]] = self._entries.get(full_key)
        if entry is None:
            raise EntryNotFoundError(f"No {namespace} entry for key")
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(full_key, None)
            raise EntryNotFoundError(f"No {namespace} entry for key")
        return value

    async def delete(self, namespace: str, key: str) -> None:
        self._entries.pop(build_key(namespace, key), None)

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]


def create_store(settings) -> KeyValueStore:
    """Build the store selected by ``STORE_BACKEND``."""
    if settings.STORE_BACKEND == "memory":
        logger.warning("Using in-memory store; sessions are lost on restart and not shared between workers")
        return MemoryStore()
    return RedisStore.from_settings(settings)
