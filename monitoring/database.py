"""
Database connectivity probe.

The relational store belongs to the rest of the tracker; health checks only
need to know that a trivial query round-trips. PostgreSQL is preferred
(DATABASE_URL or the DB_HOST/DB_USER/DB_NAME variables used in Docker),
with a SQLite file as the local fallback.
"""

import os
import time
import asyncio
import sqlite3
import logging
from typing import Optional, Dict, Any

import psycopg2

logger = logging.getLogger(__name__)


class DatabaseProbe:
    """Runs SELECT 1 against the configured database."""

    def __init__(self, database_url: Optional[str] = None, connect_timeout: int = 5):
        self.database_url = database_url or os.environ.get('DATABASE_URL')
        self.connect_timeout = connect_timeout

    @property
    def backend(self) -> Optional[str]:
        if self.database_url:
            return 'sqlite' if self.database_url.startswith('sqlite:') else 'postgresql'
        if os.environ.get('DB_HOST') and os.environ.get('DB_USER') and os.environ.get('DB_NAME'):
            return 'postgresql'
        return None

    def _connect_postgres(self):
        if self.database_url:
            return psycopg2.connect(self.database_url, connect_timeout=self.connect_timeout)
        return psycopg2.connect(
            host=os.environ.get('DB_HOST'),
            user=os.environ.get('DB_USER'),
            password=os.environ.get('DB_PASSWORD') or '',
            dbname=os.environ.get('DB_NAME'),
            connect_timeout=self.connect_timeout,
        )

    def _sqlite_path(self) -> str:
        # sqlite:///relative/path.db or sqlite:////absolute/path.db
        return self.database_url.split(':///', 1)[-1]

    def check(self) -> Dict[str, Any]:
        """Blocking probe. Never raises."""
        backend = self.backend
        if backend is None:
            return {'healthy': False, 'backend': None, 'error': 'No database configured (DATABASE_URL)'}

        start = time.monotonic()
        conn = None
        try:
            if backend == 'postgresql':
                conn = self._connect_postgres()
            else:
                # mode=rw: do not create an empty database as a side effect
                conn = sqlite3.connect(f"file:{self._sqlite_path()}?mode=rw", uri=True,
                                       timeout=self.connect_timeout)
            cursor = conn.cursor()
            cursor.execute('SELECT 1')
            cursor.fetchone()
            cursor.close()
            return {
                'healthy': True,
                'backend': backend,
                'latency_ms': round((time.monotonic() - start) * 1000, 2),
            }
        except Exception as e:
            logger.warning(f"Database health check failed ({backend}): {e}")
            return {
                'healthy': False,
                'backend': backend,
                'latency_ms': round((time.monotonic() - start) * 1000, 2),
                'error': str(e).strip() or e.__class__.__name__,
            }
        finally:
            if conn is not None:
                try:
                    conn.close()
                except Exception:
                    pass

    async def check_health(self) -> Dict[str, Any]:
        """Run the blocking probe off the event loop."""
        return await asyncio.to_thread(self.check)
