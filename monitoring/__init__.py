"""
Monitoring Package
==================

Health aggregation over the database, cache and job executor.
"""

from .database import DatabaseProbe
from .health import HealthAggregator, HealthThresholds, classify_cache

__all__ = [
    'DatabaseProbe',
    'HealthAggregator',
    'HealthThresholds',
    'classify_cache',
]
