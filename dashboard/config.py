"""
Settings loading for the dashboard process.

Reads config/settings.yaml (or the file named by KANBAN_CONFIG), merges it
over built-in defaults and applies environment overrides. The Redis section
applies its own overrides in RedisConfig.from_dict.
"""

import os
import copy
import logging
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent / 'config' / 'settings.yaml'

DEFAULTS: Dict[str, Any] = {
    'redis': {
        'url': 'redis://localhost:6379/0',
        'enabled': True,
    },
    'pubsub': {
        'channel_prefix': 'kanban',
        'retry_delay': 1.0,
    },
    'database': {
        'url': None,
        'connect_timeout': 5,
    },
    'executor': {
        'max_concurrent': 3,
        'default_timeout': 300,
        'max_history': 500,
        'stop_grace': 10,
        'output_buffer_size': 1000,
    },
    'health': {
        'latency_threshold_ms': 100,
        'hit_rate_threshold': 50,
        'min_samples': 100,
        'executor_queue_threshold': 50,
        'require_cache_for_readiness': False,
    },
    'dashboard': {
        'host': '0.0.0.0',
        'port': 8080,
        'version': '1.0.0',
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load settings.yaml merged over defaults, with env overrides applied."""
    path = Path(config_path or os.environ.get('KANBAN_CONFIG') or CONFIG_PATH)
    loaded: Dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        logger.info(f"Loaded settings from {path}")
    else:
        logger.warning(f"No settings file at {path}, using defaults")

    config = _merge(DEFAULTS, loaded)

    if os.environ.get('DATABASE_URL'):
        config['database']['url'] = os.environ['DATABASE_URL']
    if os.environ.get('EXECUTOR_MAX_CONCURRENT'):
        config['executor']['max_concurrent'] = int(os.environ['EXECUTOR_MAX_CONCURRENT'])
    if os.environ.get('DASHBOARD_HOST'):
        config['dashboard']['host'] = os.environ['DASHBOARD_HOST']
    if os.environ.get('DASHBOARD_PORT'):
        config['dashboard']['port'] = int(os.environ['DASHBOARD_PORT'])
    return config
