"""Capability cache backends.

The cache is advisory: correctness never depends on an entry being present, only on stale
entries being evicted after the mutations that affect them. Prefix invalidation walks an
explicit index of written keys rather than pattern-matching the keyspace.
"""
from __future__ import annotations
import json
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class CapabilityCache:
    """Interface: get / set with TTL / invalidate by exact key or key prefix."""

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: float) -> None:
        raise NotImplementedError

    def invalidate(self, key_or_prefix: str) -> int:
        raise NotImplementedError


class InMemoryCapabilityCache(CapabilityCache):
    """Thread-safe TTL cache with LRU eviction, for a single process."""

    def __init__(self, max_size: int = 10000, clock=time.monotonic):
        self.max_size = max_size
        self._clock = clock
        self._entries: 'OrderedDict[str, Tuple[float, Any]]' = OrderedDict()
        self._lock = Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def invalidate(self, key_or_prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(key_or_prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCapabilityCache(CapabilityCache):
    """Redis-backed cache shared by all workers. Values are JSON encoded.

    Connection failures degrade to cache misses; they are logged, never raised.
    """

    def __init__(self, client: redis.Redis, namespace: str = 'parish_authz'):
        self.client = client
        self.namespace = namespace
        self._index_key = f'{namespace}:index'

    @classmethod
    def from_url(cls, url: str, namespace: str = 'parish_authz') -> 'RedisCapabilityCache':
        return cls(redis.from_url(url, decode_responses=True), namespace)

    def _key(self, key: str) -> str:
        return f'{self.namespace}:{key}'

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(self._key(key))
        except redis.RedisError as e:
            logger.warning('Capability cache read failed for %s: %s', key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning('Discarding undecodable capability cache entry %s', key)
            return None

    def set(self, key: str, value: Any, ttl: float) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.setex(self._key(key), max(1, int(ttl)), json.dumps(value))
            pipe.sadd(self._index_key, key)
            pipe.execute()
        except redis.RedisError as e:
            logger.warning('Capability cache write failed for %s: %s', key, e)

    def _expired_members(self, members: List[str]) -> List[str]:
        """Index members whose entry already lapsed through its SETEX TTL."""
        if not members:
            return []
        pipe = self.client.pipeline()
        for k in members:
            pipe.exists(self._key(k))
        return [k for k, alive in zip(members, pipe.execute()) if not alive]

    def invalidate(self, key_or_prefix: str) -> int:
        try:
            indexed = list(self.client.smembers(self._index_key) or ())
            doomed = [k for k in indexed if k.startswith(key_or_prefix)]
            expired = self._expired_members([k for k in indexed if not k.startswith(key_or_prefix)])
            if not doomed and not expired:
                return 0
            pipe = self.client.pipeline()
            if doomed:
                pipe.delete(*[self._key(k) for k in doomed])
            pipe.srem(self._index_key, *(doomed + expired))
            pipe.execute()
            if expired:
                logger.debug('Pruned %d lapsed keys from capability cache index', len(expired))
            return len(doomed)
        except redis.RedisError as e:
            # Entries will still lapse at their TTL.
            logger.error('Capability cache invalidation failed for %s: %s', key_or_prefix, e)
            return 0


def build_cache(url: Optional[str], max_size: int = 10000) -> CapabilityCache:
    if url and url.startswith(('redis://', 'rediss://', 'unix://')):
        return RedisCapabilityCache.from_url(url)
    return InMemoryCapabilityCache(max_size=max_size)


__all__ = ['CapabilityCache', 'InMemoryCapabilityCache', 'RedisCapabilityCache', 'build_cache']
