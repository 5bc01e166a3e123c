"""
Cache Statistics
================

In-process hit/miss accounting per cache family, plus a best-effort
key census taken from Redis with SCAN.
"""

import logging
import threading
from typing import Optional, Dict, Any, List, Union

from .client import RedisManager
from .families import CacheFamily, STATISTICS_FAMILIES, resolve_family

logger = logging.getLogger(__name__)

SAMPLE_KEYS = 10


def compute_hit_rate(hits: int, misses: int) -> float:
    """Hit rate as a percentage rounded to two decimals; 0 with no samples."""
    total = hits + misses
    if total == 0:
        return 0.0
    return round(hits / total * 100, 2)


class CacheStatsTracker:
    """Counts cache reads per family. Counters only ever grow until reset()."""

    def __init__(self, redis_manager: Optional[RedisManager] = None):
        self.redis_manager = redis_manager
        self._lock = threading.Lock()
        self._hits: Dict[CacheFamily, int] = {f: 0 for f in CacheFamily}
        self._misses: Dict[CacheFamily, int] = {f: 0 for f in CacheFamily}

    def record_hit(self, family: Union[str, CacheFamily]) -> None:
        fam = resolve_family(family)
        with self._lock:
            self._hits[fam] += 1

    def record_miss(self, family: Union[str, CacheFamily]) -> None:
        fam = resolve_family(family)
        with self._lock:
            self._misses[fam] += 1

    def get_stats(self, family: Union[str, CacheFamily, None] = None) -> Dict[str, Any]:
        """Aggregate counters, or a single family's when `family` is given."""
        with self._lock:
            if family is None:
                hits = sum(self._hits.values())
                misses = sum(self._misses.values())
            else:
                fam = resolve_family(family)
                hits = self._hits[fam]
                misses = self._misses[fam]
        return {'hits': hits, 'misses': misses, 'hit_rate': compute_hit_rate(hits, misses)}

    def get_family_stats(self) -> Dict[str, Dict[str, Any]]:
        return {fam.value: self.get_stats(fam) for fam in CacheFamily}

    def reset(self) -> None:
        with self._lock:
            for fam in CacheFamily:
                self._hits[fam] = 0
                self._misses[fam] = 0

    async def _collect_keys(self, client, match: str) -> List[str]:
        keys = []
        async for key in client.scan_iter(match=match, count=100):
            keys.append(key)
        return keys

    async def get_statistics(self) -> Optional[Dict[str, Any]]:
        """
        Key counts per family from the store.

        Optional data: returns None when Redis is disabled or the scan fails,
        and callers are expected to omit the section.
        """
        if self.redis_manager is None:
            return None
        client = self.redis_manager.get_client()
        if client is None:
            return None

        try:
            statistics: Dict[str, Any] = {}
            total = 0
            for fam in STATISTICS_FAMILIES:
                keys = await self._collect_keys(client, f"{fam.prefix}*")
                statistics[fam.value] = {'count': len(keys), 'keys': keys[:SAMPLE_KEYS]}
                total += len(keys)
            statistics['total_keys'] = total
            return statistics
        except Exception as e:
            logger.warning(f"Cache key statistics unavailable: {e}")
            return None
