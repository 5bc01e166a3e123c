"""Tests for cache hit/miss accounting and key statistics."""

from unittest.mock import MagicMock

import pytest

from cache.families import CacheFamily, CacheKeyError
from cache.stats import CacheStatsTracker, compute_hit_rate
from tests.conftest import make_scan_iter


class TestHitRate:

    def test_no_samples_is_zero(self):
        assert compute_hit_rate(0, 0) == 0.0

    def test_percentage_rounded_to_two_decimals(self):
        assert compute_hit_rate(40, 60) == 40.0
        assert compute_hit_rate(1, 2) == 33.33
        assert compute_hit_rate(5, 0) == 100.0


class TestCacheStatsTracker:

    def test_counts_aggregate_across_families(self):
        tracker = CacheStatsTracker()
        tracker.record_hit(CacheFamily.PATTERNS)
        tracker.record_hit('memory')
        tracker.record_miss('agents')

        stats = tracker.get_stats()
        assert stats == {'hits': 2, 'misses': 1, 'hit_rate': 66.67}

    def test_hit_rate_matches_counters(self):
        tracker = CacheStatsTracker()
        for _ in range(40):
            tracker.record_hit('tickets')
        for _ in range(60):
            tracker.record_miss('tickets')

        stats = tracker.get_stats()
        total = stats['hits'] + stats['misses']
        assert stats['hit_rate'] == round(stats['hits'] / total * 100, 2)

    def test_family_scoped_stats(self):
        tracker = CacheStatsTracker()
        tracker.record_hit('projects')
        tracker.record_miss('tickets')

        assert tracker.get_stats('projects') == {'hits': 1, 'misses': 0, 'hit_rate': 100.0}
        assert tracker.get_stats(CacheFamily.TICKETS)['misses'] == 1

        families = tracker.get_family_stats()
        assert set(families) == {f.value for f in CacheFamily}
        assert families['agents']['hits'] == 0

    def test_unknown_family_rejected(self):
        tracker = CacheStatsTracker()
        with pytest.raises(CacheKeyError):
            tracker.record_hit('sessions')

    def test_reset(self):
        tracker = CacheStatsTracker()
        tracker.record_hit('patterns')
        tracker.record_miss('patterns')
        tracker.reset()
        assert tracker.get_stats() == {'hits': 0, 'misses': 0, 'hit_rate': 0.0}


class TestKeyStatistics:

    @pytest.mark.asyncio
    async def test_counts_keys_per_family(self, redis_manager, mock_redis_client):
        keys = ['patterns:p1', 'patterns:p2', 'memory:search:all:5:abc', 'tickets:t1']
        keys += [f'agents:a{i}' for i in range(12)]
        mock_redis_client.scan_iter = MagicMock(side_effect=make_scan_iter(keys))

        statistics = await CacheStatsTracker(redis_manager).get_statistics()

        assert statistics['patterns'] == {'count': 2, 'keys': ['patterns:p1', 'patterns:p2']}
        assert statistics['memory']['count'] == 1
        assert statistics['agents']['count'] == 12
        assert len(statistics['agents']['keys']) == 10
        assert statistics['total_keys'] == 15
        assert 'tickets' not in statistics

    @pytest.mark.asyncio
    async def test_none_without_redis(self, disabled_redis_manager):
        assert await CacheStatsTracker().get_statistics() is None
        assert await CacheStatsTracker(disabled_redis_manager).get_statistics() is None

    @pytest.mark.asyncio
    async def test_none_when_scan_fails(self, redis_manager, mock_redis_client):
        mock_redis_client.scan_iter = MagicMock(side_effect=ConnectionError("connection reset"))
        assert await CacheStatsTracker(redis_manager).get_statistics() is None
