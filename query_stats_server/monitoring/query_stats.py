"""
Per-database query stats API and the registry of configured databases.

Every operation takes its database explicitly (a QueryStatsDatabase from the
registry); there is no ambient "current database".

Read path (query_stats, slow_queries) has no side effects and may run while a
capture cycle is resetting the counters. Such a read can see a torn view for at
most one capture interval; that skew is accepted.
"""

import logging
from datetime import timedelta
from typing import Callable, Dict, Iterator, List, Optional

from query_stats_server.config import Config, DatabasePreset, get_config
from query_stats_server.db_connector import postgres_connector
from .aggregator import QueryStatsAggregator, filter_slow
from .capture import CaptureCoordinator, CaptureResult
from .errors import CaptureDataLossError, QueryStatsError, StatsFetchError
from .history_store import HistoricalStore, create_history_store
from .models import AggregatedStat, HashStatPoint, QueryStatsOptions, RawStatRecord, utc_now
from .pg_monitor import PgStatStatementsMonitor, StatsSource, UnavailableStatsSource

logger = logging.getLogger(__name__)


class QueryStatsDatabase:
    """One logical database registration: live source + shared history."""

    def __init__(
        self,
        preset: DatabasePreset,
        monitor: PgStatStatementsMonitor,
        store: HistoricalStore,
        slow_query_ms: float = 20,
        slow_query_calls: int = 100,
        clock: Callable = utc_now,
    ):
        self.preset = preset
        self.monitor = monitor
        self.store = store
        self.slow_query_ms = slow_query_ms
        self.slow_query_calls = slow_query_calls
        self.clock = clock
        self.aggregator = QueryStatsAggregator(clock=clock)

    @property
    def id(self) -> str:
        return self.preset.id

    @property
    def display_name(self) -> str:
        return self.preset.name

    @property
    def reset_domain_id(self) -> str:
        return self.preset.reset_domain_id

    @property
    def database_name(self) -> Optional[str]:
        return self.preset.database_name

    @property
    def source(self) -> StatsSource:
        return self.monitor.resolve()

    def __repr__(self) -> str:
        return f"QueryStatsDatabase(id={self.id!r}, reset_domain={self.reset_domain_id!r})"

    # ----------------------------------------
    # Capability probes (never raise)
    # ----------------------------------------

    def _safe(self, name: str, probe: Callable[[], object]) -> bool:
        try:
            return bool(probe())
        except Exception as e:
            logger.warning(f"⚠️  {name} probe failed for '{self.id}': {e}")
            return False

    def query_stats_available(self) -> bool:
        return self._safe("available", self.monitor.probe_available)

    def query_stats_extension_enabled(self) -> bool:
        return self._safe("installed", self.monitor.probe_installed)

    def query_stats_readable(self) -> bool:
        return self._safe("readable", self.monitor.probe_readable)

    def query_stats_enabled(self) -> bool:
        return self.query_stats_extension_enabled() and self.query_stats_readable()

    def historical_query_stats_enabled(self) -> bool:
        return self._safe("historical", self.store.enabled)

    def access_report(self) -> Dict[str, object]:
        """All probes with their error text, in diagnosis order."""
        report: Dict[str, object] = {"database": self.id}
        for name, probe in (
            ("available", self.monitor.probe_available),
            ("installed", self.monitor.probe_installed),
            ("readable", self.monitor.probe_readable),
        ):
            try:
                result = probe()
                report[name] = {"ok": result.ok, "error": result.error}
            except Exception as e:
                report[name] = {"ok": False, "error": str(e)}
        report["enabled"] = bool(report["installed"]["ok"] and report["readable"]["ok"])
        report["historical"] = self.historical_query_stats_enabled()
        return report

    # ----------------------------------------
    # Extension management
    # ----------------------------------------

    def enable_query_stats(self) -> bool:
        return self.monitor.enable_extension()

    def disable_query_stats(self) -> bool:
        return self.monitor.disable_extension()

    def reset_query_stats(self) -> bool:
        """Reset the live counters. Affects every database in the reset domain."""
        return self.source.reset()

    # ----------------------------------------
    # Capture support
    # ----------------------------------------

    def capture_lock(self):
        return self.monitor.advisory_lock(self.reset_domain_id)

    def reset_counters(self) -> bool:
        return self.source.reset()

    def recheck_source(self) -> None:
        """Check again on next use if the extension was missing. It may have been installed since."""
        self.monitor.forget_unavailable()

    def current_stats(self, limit: Optional[int] = None, query_hash: Optional[str] = None) -> List[RawStatRecord]:
        """
        Raw live rows for capture. Raises StatsFetchError when the server could not
        be asked, so that an unreachable member is never mistaken for an empty one.
        """
        source = self.source
        if isinstance(source, UnavailableStatsSource) and source.transient:
            raise StatsFetchError(self.id, f"pg_stat_statements state unknown: {source.reason}")
        rows = source.current_stats(database_name=self.database_name, query_hash=query_hash, limit=limit)
        if not self.store.capabilities().user:
            for row in rows:
                row.user = None
        return rows

    # ----------------------------------------
    # Read path
    # ----------------------------------------

    def query_stats(self, options: Optional[QueryStatsOptions] = None, **kwargs) -> List[AggregatedStat]:
        options = options or QueryStatsOptions(**kwargs)
        return self.aggregator.query_stats(
            self.id,
            self.source,
            self.store,
            options,
            database_name=self.database_name,
        )

    def slow_queries(self, options: Optional[QueryStatsOptions] = None, **kwargs) -> List[AggregatedStat]:
        stats = self.query_stats(options, **kwargs)
        return filter_slow(stats, self.slow_query_ms, self.slow_query_calls)

    def query_hash_stats(self, query_hash: str, start_at=None) -> List[HashStatPoint]:
        start_at = start_at or self.clock() - timedelta(hours=24)
        return self.store.hash_stats(self.id, query_hash, start_at)


class QueryStatsRegistry:
    """All configured databases, their reset domains and the capture coordinator."""

    def __init__(
        self,
        databases: Dict[str, QueryStatsDatabase],
        store: HistoricalStore,
        row_limit: int = 1000000,
        retention_days: int = 14,
        clock: Callable = utc_now,
    ):
        self.databases = databases
        self.store = store
        self.retention_days = retention_days
        self.clock = clock
        self.coordinator = CaptureCoordinator(self, store, row_limit=row_limit, clock=clock)

    @classmethod
    def from_config(cls, config: Config, connector=postgres_connector, store: Optional[HistoricalStore] = None):
        settings = config.settings
        store = store or create_history_store(config.stats_database)
        databases = {
            db_id: QueryStatsDatabase(
                preset,
                PgStatStatementsMonitor(connector, preset),
                store,
                slow_query_ms=settings.slow_query_ms,
                slow_query_calls=settings.slow_query_calls,
            )
            for db_id, preset in config.database_presets.items()
        }
        return cls(
            databases,
            store,
            row_limit=settings.capture.row_limit,
            retention_days=settings.capture.retention_days,
        )

    def get(self, database_id: Optional[str] = None) -> QueryStatsDatabase:
        database_id = database_id or self.primary.id
        if database_id not in self.databases:
            raise KeyError(f"Database '{database_id}' is not configured")
        return self.databases[database_id]

    @property
    def primary(self) -> QueryStatsDatabase:
        return next(iter(self.databases.values()))

    def __iter__(self) -> Iterator[QueryStatsDatabase]:
        return iter(self.databases.values())

    def domain_members(self, domain_id: str) -> List[QueryStatsDatabase]:
        """Owner first, then the databases that declared it as their reset domain."""
        owner = self.get(domain_id)
        followers = [db for db in self if db.reset_domain_id == domain_id and db.id != domain_id]
        return [owner] + followers

    def domains(self) -> List[str]:
        return [db.id for db in self if db.reset_domain_id == db.id]

    def capture_query_stats(self, database_id: Optional[str] = None) -> List[CaptureResult]:
        """
        One capture cycle per reset domain (or just database_id's domain).

        Every domain is attempted; a CaptureDataLossError is re-raised afterwards.
        """
        if database_id is not None:
            return [self.coordinator.capture(database_id)]

        results = []
        data_loss: Optional[CaptureDataLossError] = None
        for domain_id in self.domains():
            try:
                results.append(self.coordinator.capture(domain_id))
            except CaptureDataLossError as e:
                data_loss = data_loss or e
        if data_loss is not None:
            raise data_loss
        return results

    def clean_query_stats(self, retention_days: Optional[int] = None) -> int:
        days = self.retention_days if retention_days is None else retention_days
        try:
            return self.store.prune(self.clock() - timedelta(days=days))
        except QueryStatsError as e:
            logger.error(f"❌ Query stats cleanup failed: {e}")
            raise


_registry: Optional[QueryStatsRegistry] = None


def get_registry() -> QueryStatsRegistry:
    """Get or create the global registry from settings.yaml."""
    global _registry
    if _registry is None:
        _registry = QueryStatsRegistry.from_config(get_config())
    return _registry


def set_registry(registry: Optional[QueryStatsRegistry]) -> None:
    global _registry
    _registry = registry
