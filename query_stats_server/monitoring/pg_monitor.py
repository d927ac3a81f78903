"""
PostgreSQL Live Statement Statistics

Reads pg_stat_statements for one logical database and reports whether the
extension can be used at all.

Capability model:
- probe_available(): extension can be installed on this server (pg_available_extensions)
- probe_installed(): extension is installed in this database (pg_extension)
- probe_readable():  current credential may SELECT from the view
  A failed read-access probe is reported on its own, never as "not installed".
  "Usable now" = installed AND readable.
- resolve(): an Available (PgStatStatementsSource) or Unavailable
  (UnavailableStatsSource) source, cached until the extension is enabled/disabled.

Required permissions:
- SELECT on pg_stat_statements (pg_read_all_stats to see other roles' statements)
- EXECUTE on pg_stat_statements_reset() for the capture job
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import List, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor

from query_stats_server.config import DatabasePreset
from .errors import StatsFetchError, StatsResetError
from .models import LiveCapabilities, ProbeResult, RawStatRecord, Support

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 10000


def advisory_lock_key(name: str) -> int:
    """Stable signed 64-bit key for pg_try_advisory_lock."""
    digest = hashlib.md5(f"query_stats_capture:{name}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def is_transient_error(error: Exception) -> bool:
    """
    True for failures that say nothing about the extension itself: lost or
    refused connections, statement timeouts, server shutdown.

    A view that errors because pg_stat_statements is not in
    shared_preload_libraries is an OperationalError too, but a permanent one.
    """
    if isinstance(error, psycopg2.InterfaceError):
        return True
    if isinstance(error, psycopg2.errors.ObjectNotInPrerequisiteState):
        return False
    return isinstance(error, psycopg2.OperationalError)


class StatsSource(ABC):
    """Read side of the live statement statistics for one logical database."""

    available: bool = False

    def __init__(self, database_id: str):
        self.database_id = database_id

    @abstractmethod
    def current_stats(
        self,
        database_name: Optional[str] = None,
        query_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RawStatRecord]:
        """Rows currently held by the counters, largest total time first."""

    @abstractmethod
    def reset(self) -> bool:
        """Reset the (physical, possibly shared) counters. False when unavailable."""


class UnavailableStatsSource(StatsSource):
    """The extension is missing or unreadable; every read is empty."""

    available = False

    def __init__(self, database_id: str, reason: Optional[str] = None, transient: bool = False):
        super().__init__(database_id)
        self.reason = reason
        # True when the capability could not be determined (server unreachable)
        self.transient = transient

    def current_stats(self, database_name=None, query_hash=None, limit=None) -> List[RawStatRecord]:
        return []

    def reset(self) -> bool:
        return False


class PgStatStatementsSource(StatsSource):
    available = True

    def __init__(self, connector, preset: DatabasePreset, capabilities: LiveCapabilities):
        super().__init__(preset.id)
        self.connector = connector
        self.preset = preset
        self.capabilities = capabilities

    def _build_query(self, database_name: Optional[str], query_hash: Optional[str], limit: Optional[int]) -> str:
        hash_expr = "queryid::text" if self.capabilities.query_hash else "NULL::text"
        time_column = self.capabilities.total_time_column
        database_expr = "%(database)s" if database_name else "current_database()"
        hash_filter = "AND queryid = %(query_hash)s::bigint" if query_hash else ""
        limit_clause = "LIMIT %(limit)s" if limit else ""

        return f"""
            SELECT
                LEFT(query, {MAX_QUERY_LENGTH}) AS query,
                {hash_expr} AS query_hash,
                pg_roles.rolname AS "user",
                {time_column} AS total_time_ms,
                calls
            FROM
                pg_stat_statements
            INNER JOIN
                pg_database ON pg_database.oid = pg_stat_statements.dbid
            INNER JOIN
                pg_roles ON pg_roles.oid = pg_stat_statements.userid
            WHERE
                pg_database.datname = {database_expr}
                {hash_filter}
            ORDER BY
                total_time_ms DESC
            {limit_clause}
        """

    def current_stats(
        self,
        database_name: Optional[str] = None,
        query_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RawStatRecord]:
        if query_hash and not self.capabilities.query_hash:
            return []

        database_name = database_name or self.preset.database_name
        sql = self._build_query(database_name, query_hash, limit)
        params = {"database": database_name, "query_hash": query_hash, "limit": limit}

        try:
            with self.connector.connection(self.preset) as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.warning(f"⚠️  pg_stat_statements read failed for '{self.database_id}': {e}")
            raise StatsFetchError(self.database_id, f"pg_stat_statements read failed: {e}") from e

        records = [
            RawStatRecord(
                query=row["query"] or "",
                query_hash=row["query_hash"],
                user=row["user"],
                total_time_ms=float(row["total_time_ms"] or 0),
                calls=int(row["calls"] or 0),
                database_id=self.database_id,
            )
            for row in rows
        ]
        logger.debug(f"Read {len(records)} live statement rows for '{self.database_id}'")
        return records

    def reset(self) -> bool:
        try:
            with self.connector.connection(self.preset) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_stat_statements_reset()")
        except psycopg2.Error as e:
            raise StatsResetError(f"pg_stat_statements_reset() failed for '{self.database_id}': {e}") from e
        logger.info(f"🔄 Reset pg_stat_statements via '{self.database_id}'")
        return True


class PgStatStatementsMonitor:
    """Capability probes and source resolution for one logical database."""

    def __init__(self, connector, preset: DatabasePreset):
        self.connector = connector
        self.preset = preset
        self._capabilities: Optional[LiveCapabilities] = None
        self._source: Optional[StatsSource] = None

    def _probe(self, name: str, sql: str) -> ProbeResult:
        try:
            with self.connector.connection(self.preset) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql)
                    row = cur.fetchone()
        except psycopg2.Error as e:
            logger.debug(f"Probe '{name}' failed for '{self.preset.id}': {e}")
            return ProbeResult(False, str(e).strip(), transient=is_transient_error(e))
        return ProbeResult(bool(row and row[0]))

    def probe_available(self) -> ProbeResult:
        return self._probe(
            "available",
            "SELECT COUNT(*) > 0 FROM pg_available_extensions WHERE name = 'pg_stat_statements'",
        )

    def probe_installed(self) -> ProbeResult:
        return self._probe(
            "installed",
            "SELECT COUNT(*) > 0 FROM pg_extension WHERE extname = 'pg_stat_statements'",
        )

    def probe_readable(self) -> ProbeResult:
        privilege = self._probe(
            "readable",
            "SELECT has_table_privilege(current_user, 'pg_stat_statements', 'SELECT')",
        )
        if not privilege:
            return privilege
        # the view also errors when the library is not in shared_preload_libraries
        return self._probe(
            "readable",
            "SELECT (SELECT COUNT(*) FROM (SELECT 1 FROM pg_stat_statements LIMIT 1) s) >= 0",
        )

    def capabilities(self) -> LiveCapabilities:
        """Single introspection of the view's columns, cached."""
        if self._capabilities is None:
            with self.connector.connection(self.preset) as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        SELECT attname
                        FROM pg_attribute
                        WHERE attrelid = 'pg_stat_statements'::regclass
                          AND attnum > 0
                          AND NOT attisdropped
                    """)
                    columns = {row[0] for row in cur.fetchall()}
            self._capabilities = LiveCapabilities(
                query_hash=Support.of("queryid" in columns),
                total_time_column="total_exec_time" if "total_exec_time" in columns else "total_time",
            )
            logger.info(f"pg_stat_statements capabilities for '{self.preset.id}': {self._capabilities}")
        return self._capabilities

    def resolve(self) -> StatsSource:
        if self._source is not None:
            return self._source

        installed = self.probe_installed()
        readable = self.probe_readable() if installed else ProbeResult(False, "extension not installed")
        if not (installed and readable):
            reason = installed.error or readable.error or "pg_stat_statements is not usable"
            logger.info(f"pg_stat_statements unavailable for '{self.preset.id}': {reason}")
            # an installed check that errored, or a read check that timed out, says
            # nothing about the extension; ask again next time
            transient = installed.error is not None or readable.transient
            source = UnavailableStatsSource(self.preset.id, reason, transient=transient)
            if not transient:
                self._source = source
            return source

        try:
            capabilities = self.capabilities()
        except psycopg2.Error as e:
            # not cached: introspection failing is a connection problem, not a capability answer
            logger.warning(f"⚠️  Could not introspect pg_stat_statements for '{self.preset.id}': {e}")
            return UnavailableStatsSource(self.preset.id, str(e), transient=True)

        self._source = PgStatStatementsSource(self.connector, self.preset, capabilities)
        return self._source

    def invalidate(self) -> None:
        self._capabilities = None
        self._source = None

    def forget_unavailable(self) -> None:
        """Drop a cached Unavailable answer so the next resolve() checks again."""
        if self._source is not None and not self._source.available:
            self._source = None

    def enable_extension(self) -> bool:
        with self.connector.connection(self.preset) as conn:
            with conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS pg_stat_statements")
        self.invalidate()
        logger.info(f"✅ pg_stat_statements enabled for '{self.preset.id}'")
        return True

    def disable_extension(self) -> bool:
        with self.connector.connection(self.preset) as conn:
            with conn.cursor() as cur:
                cur.execute("DROP EXTENSION IF EXISTS pg_stat_statements")
        self.invalidate()
        logger.info(f"pg_stat_statements dropped for '{self.preset.id}'")
        return True

    @contextmanager
    def advisory_lock(self, name: str):
        """
        Session-level advisory lock on the engine; yields whether it was acquired.

        Scoped to the physical server, so capture cycles for the same reset domain
        never overlap across job runners.
        """
        key = advisory_lock_key(name)
        try:
            conn = self.connector.connect(self.preset)
        except psycopg2.Error as e:
            raise StatsFetchError(self.preset.id, f"could not open lock session: {e}") from e

        try:
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_try_advisory_lock(%s)", (key,))
                    acquired = bool(cur.fetchone()[0])
            except psycopg2.Error as e:
                raise StatsFetchError(self.preset.id, f"could not take capture lock: {e}") from e

            try:
                yield acquired
            finally:
                if acquired:
                    try:
                        with conn.cursor() as cur:
                            cur.execute("SELECT pg_advisory_unlock(%s)", (key,))
                    except psycopg2.Error as e:
                        # closing the session below releases it anyway
                        logger.warning(f"⚠️  Failed to release capture lock '{name}': {e}")
        finally:
            conn.close()
