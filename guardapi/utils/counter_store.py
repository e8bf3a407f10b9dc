"""Counter store backends for lockout counters, session records and alert markers"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
import datetime
import json
import logging
import threading
from typing import Any, Callable, Iterator, Optional

import redis

from guardapi.errors import CounterStoreError

logger = logging.getLogger(__name__)

# INCR and set the TTL only when the key has none yet, so the window is
# anchored at the first increment and concurrent callers cannot extend it.
_INCREMENT_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if ttl > 0 and redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ttl)
end
return value
"""


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class CounterStore(ABC):
    """Key-value store with per-key TTL and atomic primitives.

    Values are JSON documents. Backends raise :class:`CounterStoreError` when
    the store cannot be reached; callers decide whether to fail open or closed.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value or ``default``."""

    @abstractmethod
    def put(self, key: str, value: Any, ttl: int) -> None:
        """Store ``value`` for ``ttl`` seconds."""

    @abstractmethod
    def increment(self, key: str, ttl: Optional[int] = None) -> int:
        """Atomically increment ``key``; ``ttl`` is applied only on creation."""

    @abstractmethod
    def forever(self, key: str, value: Any) -> None:
        """Store ``value`` without expiry, clearing any existing TTL."""

    @abstractmethod
    def forget(self, key: str) -> bool:
        """Delete ``key``. Returns True if it existed."""

    @abstractmethod
    def has(self, key: str) -> bool:
        pass

    @abstractmethod
    def add(self, key: str, value: Any, ttl: int) -> bool:
        """Atomically store ``value`` only if ``key`` is absent."""

    @abstractmethod
    def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of an existing key."""

    @abstractmethod
    def lock(
        self, name: str, timeout: int = 5, blocking_timeout: float = 5
    ) -> Iterator[None]:
        """Context manager guarding a critical section named ``name``."""

    @abstractmethod
    def ping(self) -> bool:
        pass


class RedisCounterStore(CounterStore):
    """Redis backed counter store"""

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self._url = url
        self._client = client
        self._increment = None
        if self._client is None:
            self._initialize_client()

    def _initialize_client(self):
        """Initialize Redis client"""
        try:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            logger.info("Counter store Redis client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize counter store Redis client: {e}")
            self._client = None

    @property
    def client(self) -> redis.Redis:
        """Get Redis client, reinitialize if needed"""
        if self._client is None:
            self._initialize_client()
        if self._client is None:
            raise CounterStoreError("Counter store is not available")
        return self._client

    @contextmanager
    def _errors(self, operation: str, key: str):
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"Counter store {operation} failed for key '{key}': {e}")
            raise CounterStoreError(f"Counter store {operation} failed: {e}") from e

    def get(self, key, default=None):
        with self._errors("get", key):
            raw = self.client.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable counter store value for '{key}'")
            return default

    def put(self, key, value, ttl):
        with self._errors("put", key):
            self.client.setex(key, int(ttl), json.dumps(value, default=str))

    def increment(self, key, ttl=None):
        with self._errors("increment", key):
            if self._increment is None:
                self._increment = self.client.register_script(_INCREMENT_SCRIPT)
            return int(self._increment(keys=[key], args=[int(ttl or 0)]))

    def forever(self, key, value):
        with self._errors("forever", key):
            self.client.set(key, json.dumps(value, default=str))

    def forget(self, key):
        with self._errors("forget", key):
            return self.client.delete(key) > 0

    def has(self, key):
        with self._errors("has", key):
            return bool(self.client.exists(key))

    def add(self, key, value, ttl):
        with self._errors("add", key):
            return bool(
                self.client.set(
                    key, json.dumps(value, default=str), nx=True, ex=int(ttl)
                )
            )

    def expire(self, key, ttl):
        with self._errors("expire", key):
            return bool(self.client.expire(key, int(ttl)))

    @contextmanager
    def lock(self, name, timeout=5, blocking_timeout=5):
        with self._errors("lock", name):
            redis_lock = self.client.lock(
                f"lock:{name}", timeout=timeout, blocking_timeout=blocking_timeout
            )
            acquired = redis_lock.acquire()
        if not acquired:
            raise CounterStoreError(f"Could not acquire lock '{name}'")
        try:
            yield
        finally:
            try:
                redis_lock.release()
            except redis.RedisError as e:
                # Lock expired on its own; the TTL bounds the critical section
                logger.warning(f"Failed to release lock '{name}': {e}")

    def ping(self):
        try:
            return bool(self.client.ping())
        except (redis.RedisError, CounterStoreError) as e:
            logger.warning(f"Counter store not available: {e}")
            return False


class MemoryCounterStore(CounterStore):
    """In-process counter store.

    Suitable for tests and single-process deployments. ``clock`` returns an
    aware datetime and drives expiry so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], datetime.datetime] = utcnow):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._mutex = threading.RLock()
        self._locks: dict[str, threading.RLock] = {}

    def _now(self) -> float:
        return self._clock().timestamp()

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return entry

    def _store(self, key, value, ttl):
        expires_at = self._now() + ttl if ttl else None
        self._data[key] = (json.dumps(value, default=str), expires_at)

    def get(self, key, default=None):
        with self._mutex:
            entry = self._live(key)
        if entry is None:
            return default
        return json.loads(entry[0])

    def put(self, key, value, ttl):
        with self._mutex:
            self._store(key, value, int(ttl))

    def increment(self, key, ttl=None):
        with self._mutex:
            entry = self._live(key)
            if entry is None:
                self._store(key, 1, int(ttl or 0))
                return 1
            value = int(json.loads(entry[0])) + 1
            self._data[key] = (json.dumps(value), entry[1])
            return value

    def forever(self, key, value):
        with self._mutex:
            self._store(key, value, 0)

    def forget(self, key):
        with self._mutex:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    def has(self, key):
        with self._mutex:
            return self._live(key) is not None

    def add(self, key, value, ttl):
        with self._mutex:
            if self._live(key) is not None:
                return False
            self._store(key, value, int(ttl))
            return True

    def expire(self, key, ttl):
        with self._mutex:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._now() + int(ttl))
            return True

    def ttl(self, key) -> Optional[float]:
        """Remaining seconds for ``key``; None when absent or without expiry."""
        with self._mutex:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._now()

    @contextmanager
    def lock(self, name, timeout=5, blocking_timeout=5):
        with self._mutex:
            key_lock = self._locks.setdefault(name, threading.RLock())
        if not key_lock.acquire(timeout=blocking_timeout):
            raise CounterStoreError(f"Could not acquire lock '{name}'")
        try:
            yield
        finally:
            key_lock.release()

    def ping(self):
        return True

    def clear(self):
        with self._mutex:
            self._data.clear()


def create_counter_store(url: Optional[str]) -> CounterStore:
    """Build the counter store configured by ``COUNTER_STORE_URL``."""
    if not url or url.startswith("memory://"):
        logger.info("Using in-memory counter store")
        return MemoryCounterStore()
    return RedisCounterStore(url)
