"""
Smart group membership cache.

A small key-value interface with two backends:
- MemoryCache: in-process dict with TTL expiry (default, used in tests)
- RedisCache: shared Redis instance for multi-process deployments

Keys are scoped per (group, user) so a user's entries can be evicted with a
single pattern without enumerating their groups:

    smart_group:<group_id>:<user_id>:members   (ids percent-encoded)
"""
import fnmatch
import logging
import threading
import time
from typing import Optional, Protocol
from urllib.parse import quote

import redis

from api.services.errors import CacheUnavailableError
from config.settings import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "smart_group"


def _key_part(value: str) -> str:
    # Percent-encoding leaves no glob metacharacters or ":" in a key segment
    return quote(str(value), safe="")


def smart_group_key(group_id: str, user_id: str) -> str:
    """Cache key for one group's member list."""
    return f"{KEY_PREFIX}:{_key_part(group_id)}:{_key_part(user_id)}:members"


def user_smart_group_pattern(user_id: str) -> str:
    """Glob pattern matching every cached smart group entry for a user."""
    return f"{KEY_PREFIX}:*:{_key_part(user_id)}:*"


class SmartGroupCache(Protocol):
    """Key-value cache used by the smart group evaluator."""

    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value or None when missing/expired."""

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store a value that expires after ttl_seconds."""

    def delete_matching(self, pattern: str) -> int:
        """Delete every key matching a glob pattern and return the count."""


class MemoryCache:
    """
    Thread-safe in-process cache.

    Expiry uses a monotonic clock so wall-clock changes never resurrect
    or prematurely drop entries.
    """

    def __init__(self, clock=time.monotonic):
        self._entries: dict[str, tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete_matching(self, pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCache:
    """
    Redis-backed cache.

    Every Redis failure (connection refused, timeout) is raised as
    CacheUnavailableError so callers can decide whether to fail open.
    """

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        if client is None:
            timeout = timeout_seconds if timeout_seconds is not None else settings.cache_timeout_seconds
            client = redis.Redis.from_url(
                url or settings.redis_url,
                socket_connect_timeout=timeout,
                socket_timeout=timeout,
            )
        self._client = client

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Redis GET failed for {key}: {e}") from e

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        try:
            self._client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Redis SET failed for {key}: {e}") from e

    def delete_matching(self, pattern: str) -> int:
        try:
            keys = list(self._client.scan_iter(match=pattern, count=500))
            if not keys:
                return 0
            return int(self._client.delete(*keys))
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Redis eviction failed for {pattern}: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False


# Singleton instance
_cache: Optional[SmartGroupCache] = None


def get_cache() -> SmartGroupCache:
    """
    Get or create the process-wide smart group cache.

    The backend is chosen by settings.cache_backend.
    """
    global _cache
    if _cache is None:
        if settings.use_redis_cache:
            _cache = RedisCache()
            logger.info(f"Smart group cache backend: redis ({settings.redis_url})")
        else:
            _cache = MemoryCache()
            logger.info("Smart group cache backend: memory")
    return _cache
