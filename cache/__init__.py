"""
Cache Package
=============

Redis connections, namespaced caching with hit/miss statistics, and
pub/sub fan-out of board events.
"""

from .client import RedisConfig, RedisManager
from .families import CacheFamily, CacheKeyError
from .stats import CacheStatsTracker
from .store import FamilyCache, CacheUnavailableError
from .pubsub import EventPublisher, PubSubBridge, build_channels

__all__ = [
    'RedisConfig',
    'RedisManager',
    'CacheFamily',
    'CacheKeyError',
    'CacheStatsTracker',
    'FamilyCache',
    'CacheUnavailableError',
    'EventPublisher',
    'PubSubBridge',
    'build_channels',
]
