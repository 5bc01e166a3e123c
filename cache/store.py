"""
Family Cache
============

JSON read-through helpers over the primary Redis client, namespaced by
cache family. Every read is counted by the stats tracker. Reads and writes
surface Redis errors to the caller; invalidation also announces itself on
the family's pub/sub channel when a publisher is attached.
"""

import json
import hashlib
import logging
from typing import Optional, Dict, Any, List, Union, Iterable, Tuple

from .client import RedisManager
from .families import CacheFamily, CacheKeyError, MEMORY_SEARCH_TTL, resolve_family, build_key
from .pubsub import EventPublisher
from .stats import CacheStatsTracker

logger = logging.getLogger(__name__)

FamilyArg = Union[str, CacheFamily]


class CacheUnavailableError(RuntimeError):
    """Raised when a cache operation is attempted with Redis disabled."""


def memory_search_key(query: str, namespace: Optional[str] = None, limit: Optional[int] = None) -> str:
    """Key (without family prefix) for a cached memory search result."""
    digest = hashlib.sha256(query.strip().lower().encode('utf-8')).hexdigest()[:16]
    return f"search:{namespace or 'all'}:{limit or 'default'}:{digest}"


class FamilyCache:
    """Namespaced cache operations for projects, tickets, patterns, memory and agents."""

    def __init__(
        self,
        redis_manager: RedisManager,
        stats: CacheStatsTracker,
        publisher: Optional[EventPublisher] = None
    ):
        self.redis_manager = redis_manager
        self.stats = stats
        self.publisher = publisher

    def _client(self):
        client = self.redis_manager.get_client()
        if client is None:
            raise CacheUnavailableError("Redis is disabled")
        return client

    def _record(self, fam: CacheFamily, value: Any) -> Any:
        if value is None:
            self.stats.record_miss(fam)
            return None
        try:
            decoded = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Undecodable {fam.value} cache entry, treating as miss")
            self.stats.record_miss(fam)
            return None
        self.stats.record_hit(fam)
        return decoded

    async def get(self, family: FamilyArg, key: str) -> Any:
        """Cached value or None. Counts a hit or a miss."""
        fam = resolve_family(family)
        full_key = build_key(fam, key)
        value = await self._client().get(full_key)
        return self._record(fam, value)

    async def set(self, family: FamilyArg, key: str, value: Any, ttl: Optional[int] = None) -> None:
        fam = resolve_family(family)
        full_key = build_key(fam, key)
        ttl = fam.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise CacheKeyError(f"TTL must be positive, got {ttl}")
        await self._client().set(full_key, json.dumps(value, default=str), ex=ttl)

    async def get_many(self, family: FamilyArg, keys: List[str]) -> List[Any]:
        """Pipelined GETs; results line up with `keys`."""
        fam = resolve_family(family)
        if not keys:
            return []
        full_keys = [build_key(fam, k) for k in keys]
        pipe = self._client().pipeline(transaction=False)
        for full_key in full_keys:
            pipe.get(full_key)
        values = await pipe.execute()
        return [self._record(fam, v) for v in values]

    async def set_many(
        self,
        family: FamilyArg,
        items: Iterable[Tuple[str, Any]],
        ttl: Optional[int] = None,
        index_key: Optional[str] = None
    ) -> int:
        """
        Cache several entries in one round trip. With `index_key`, also store
        the list of ids under that key (e.g. a project's ticket ids).
        """
        fam = resolve_family(family)
        ttl = fam.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise CacheKeyError(f"TTL must be positive, got {ttl}")
        items = list(items)
        pipe = self._client().pipeline(transaction=False)
        for key, value in items:
            pipe.set(build_key(fam, key), json.dumps(value, default=str), ex=ttl)
        if index_key is not None:
            ids = [key for key, _ in items]
            pipe.set(build_key(fam, index_key), json.dumps(ids), ex=ttl)
        await pipe.execute()
        return len(items)

    async def exists(self, family: FamilyArg, key: str) -> bool:
        return bool(await self._client().exists(build_key(family, key)))

    async def ttl(self, family: FamilyArg, key: str) -> int:
        """Remaining TTL in seconds; -1 without expiry, -2 when missing."""
        return await self._client().ttl(build_key(family, key))

    async def invalidate(self, family: FamilyArg, key: str) -> bool:
        fam = resolve_family(family)
        deleted = await self._client().delete(build_key(fam, key))
        await self._announce(fam, {'key': key})
        return bool(deleted)

    async def invalidate_family(self, family: FamilyArg, match: str = '*') -> int:
        """Delete every key in the family (optionally narrowed by a glob). Returns the count."""
        fam = resolve_family(family)
        client = self._client()
        deleted = 0
        batch: List[str] = []
        async for key in client.scan_iter(match=f"{fam.prefix}{match}", count=100):
            batch.append(key)
            if len(batch) >= 100:
                deleted += await client.delete(*batch)
                batch = []
        if batch:
            deleted += await client.delete(*batch)
        logger.info(f"Invalidated {deleted} {fam.value} cache entries")
        await self._announce(fam, {'pattern': match, 'deleted': deleted})
        return deleted

    async def cache_memory_search(
        self,
        query: str,
        results: Any,
        namespace: Optional[str] = None,
        limit: Optional[int] = None,
        ttl: int = MEMORY_SEARCH_TTL
    ) -> None:
        await self.set(CacheFamily.MEMORY, memory_search_key(query, namespace, limit), results, ttl=ttl)

    async def get_memory_search(self, query: str, namespace: Optional[str] = None, limit: Optional[int] = None) -> Any:
        return await self.get(CacheFamily.MEMORY, memory_search_key(query, namespace, limit))

    async def invalidate_memory_searches(self) -> int:
        return await self.invalidate_family(CacheFamily.MEMORY, 'search:*')

    async def _announce(self, fam: CacheFamily, data: Dict[str, Any]) -> None:
        if self.publisher is None or fam.value not in self.publisher.channels:
            return
        try:
            await self.publisher.publish(
                self.publisher.channel_for(fam.value),
                {'type': f"{fam.value}:cache_invalidated", 'data': data},
            )
        except Exception as e:
            # The delete already happened; a lost notification only delays clients
            logger.warning(f"Failed to publish {fam.value} invalidation: {e}")
