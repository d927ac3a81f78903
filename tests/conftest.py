"""Shared fixtures: fake live sources, a SQLite history store and database builders."""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from query_stats_server.config import DatabasePreset
from query_stats_server.monitoring.history_store import SqliteHistoryStore
from query_stats_server.monitoring.models import ProbeResult
from query_stats_server.monitoring.pg_monitor import StatsSource
from query_stats_server.monitoring.query_stats import QueryStatsDatabase, QueryStatsRegistry

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeSource(StatsSource):
    """In-memory live counters."""

    available = True

    def __init__(self, database_id, rows=None, error=None, reset_result=True):
        super().__init__(database_id)
        self.rows = list(rows or [])
        self.error = error
        self.reset_result = reset_result
        self.reads = 0
        self.resets = 0

    def current_stats(self, database_name=None, query_hash=None, limit=None):
        self.reads += 1
        if self.error is not None:
            raise self.error
        rows = [r for r in self.rows if query_hash is None or r.query_hash == query_hash]
        return [replace(r) for r in rows[:limit]]

    def reset(self):
        self.resets += 1
        if isinstance(self.reset_result, Exception):
            raise self.reset_result
        if self.reset_result:
            self.rows = []
        return self.reset_result


class FakeMonitor:
    def __init__(self, source, lock_acquired=True, probes=None):
        self.source = source
        self.lock_acquired = lock_acquired
        self.probes = probes or {}
        self.locks = []

    def resolve(self):
        return self.source

    def forget_unavailable(self):
        pass

    def _probe(self, name):
        probe = self.probes.get(name, ProbeResult(True))
        if isinstance(probe, Exception):
            raise probe
        return probe

    def probe_available(self):
        return self._probe("available")

    def probe_installed(self):
        return self._probe("installed")

    def probe_readable(self):
        return self._probe("readable")

    def enable_extension(self):
        return True

    def disable_extension(self):
        return True

    @contextmanager
    def advisory_lock(self, name):
        self.locks.append(name)
        yield self.lock_acquired


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store(tmp_path):
    history = SqliteHistoryStore(str(tmp_path / "history.db"))
    history.ensure_schema()
    return history


@pytest.fixture
def make_database(clock):
    """Build a QueryStatsDatabase over a FakeSource."""

    def _make(db_id, store, rows=None, reset_domain=None, source=None, capture=True, **monitor_kwargs):
        preset = DatabasePreset(id=db_id, host="localhost", reset_domain=reset_domain, capture_query_stats=capture)
        source = source if source is not None else FakeSource(db_id, rows)
        monitor = FakeMonitor(source, **monitor_kwargs)
        return QueryStatsDatabase(preset, monitor, store, slow_query_ms=20, slow_query_calls=100, clock=clock)

    return _make


@pytest.fixture
def make_registry(clock):
    def _make(store, *databases, **kwargs):
        return QueryStatsRegistry({db.id: db for db in databases}, store, clock=clock, **kwargs)

    return _make
