"""
Query Statistics Module

Live and historical statement statistics for PostgreSQL databases.

Components:
- normalizer.py: grouping key for statement text
- pg_monitor.py: pg_stat_statements probes and live reads
- history_store.py: append-only captured history (SQLite or PostgreSQL)
- aggregator.py: live + historical merge, ranking and derived metrics
- capture.py: snapshot → reset → persist cycle per reset domain
- query_stats.py: per-database API and registry
- scheduler.py: periodic capture and retention jobs
"""

from .aggregator import QueryStatsAggregator, merge_query_stats
from .capture import CaptureCoordinator, CaptureOutcome, CaptureResult
from .errors import CaptureDataLossError, HistoryStoreError, QueryStatsError, StatsFetchError
from .history_store import PostgresHistoryStore, SqliteHistoryStore, create_history_store
from .models import AggregatedStat, QueryStatsOptions, RawStatRecord
from .normalizer import normalize_query
from .pg_monitor import PgStatStatementsMonitor
from .query_stats import QueryStatsDatabase, QueryStatsRegistry, get_registry

__all__ = [
    'QueryStatsAggregator',
    'merge_query_stats',
    'CaptureCoordinator',
    'CaptureOutcome',
    'CaptureResult',
    'CaptureDataLossError',
    'HistoryStoreError',
    'QueryStatsError',
    'StatsFetchError',
    'PostgresHistoryStore',
    'SqliteHistoryStore',
    'create_history_store',
    'AggregatedStat',
    'QueryStatsOptions',
    'RawStatRecord',
    'normalize_query',
    'PgStatStatementsMonitor',
    'QueryStatsDatabase',
    'QueryStatsRegistry',
    'get_registry',
]
