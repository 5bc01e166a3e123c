"""Tests for the database connectivity probe."""

import sqlite3
from unittest.mock import patch

import psycopg2
import pytest

from monitoring.database import DatabaseProbe


class TestDatabaseProbe:

    def test_not_configured(self):
        result = DatabaseProbe().check()
        assert result['healthy'] is False
        assert result['backend'] is None
        assert 'DATABASE_URL' in result['error']

    def test_sqlite_healthy(self, tmp_path):
        path = tmp_path / 'kanban.db'
        sqlite3.connect(path).close()

        result = DatabaseProbe(f'sqlite:///{path}').check()

        assert result['healthy'] is True
        assert result['backend'] == 'sqlite'
        assert result['latency_ms'] >= 0

    def test_sqlite_missing_file_is_not_created(self, tmp_path):
        path = tmp_path / 'missing.db'
        result = DatabaseProbe(f'sqlite:///{path}').check()
        assert result['healthy'] is False
        assert not path.exists()

    def test_postgres_failure_reported(self):
        probe = DatabaseProbe('postgresql://kanban@db:5432/kanban')
        with patch('monitoring.database.psycopg2.connect',
                   side_effect=psycopg2.OperationalError('could not connect to server')):
            result = probe.check()
        assert result == {
            'healthy': False,
            'backend': 'postgresql',
            'latency_ms': result['latency_ms'],
            'error': 'could not connect to server',
        }

    def test_backend_from_component_env(self, monkeypatch):
        monkeypatch.setenv('DB_HOST', 'db')
        monkeypatch.setenv('DB_USER', 'kanban')
        monkeypatch.setenv('DB_NAME', 'kanban')
        assert DatabaseProbe().backend == 'postgresql'

    def test_database_url_from_env(self, monkeypatch):
        monkeypatch.setenv('DATABASE_URL', 'sqlite:///tmp/x.db')
        assert DatabaseProbe().backend == 'sqlite'

    @pytest.mark.asyncio
    async def test_async_check_runs_in_thread(self, tmp_path):
        path = tmp_path / 'kanban.db'
        sqlite3.connect(path).close()
        result = await DatabaseProbe(f'sqlite:///{path}').check_health()
        assert result['healthy'] is True
