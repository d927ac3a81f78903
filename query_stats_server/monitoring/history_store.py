"""
Historical Query Stats Store

Durable, append-only log of captured pg_stat_statements rows.

Backends:
- SqliteHistoryStore: local file (default), normalizer registered as a SQL function
- PostgresHistoryStore: shared stats database (psycopg2)

Table (columns in brackets are optional; their presence is detected once):
    database, query, total_time, calls, captured_at, [query_hash], [user]

Rows are never updated. They are only removed by prune() (retention sweep).
If the table is missing or lacks a required column the store reports
enabled() == False and every read returns an empty list.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

import psycopg2
from psycopg2.extras import RealDictCursor

from query_stats_server.config import StatsDatabaseSettings
from .errors import HistoryStoreError
from .models import (
    HashStatPoint,
    HistoricalRow,
    RawStatRecord,
    StoreCapabilities,
    Support,
    as_utc,
)
from .normalizer import normalize_query

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = frozenset({"database", "query", "total_time", "calls", "captured_at"})


class HistoricalStore(ABC):
    """Common behaviour: schema detection, capability caching, row shaping."""

    backend = "abstract"

    def __init__(self, table: str = "query_stats_history"):
        self.table = table
        self._columns: Optional[Set[str]] = None

    # ----------------------------------------
    # Schema detection
    # ----------------------------------------

    @abstractmethod
    def _fetch_columns(self) -> Set[str]:
        """Column names of the history table; empty set when it does not exist."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create the history table and its index if missing."""

    def _known_columns(self) -> Set[str]:
        if self._columns is None:
            columns = self._fetch_columns()
            # a missing table may be created later by a migration
            if not columns:
                return columns
            self._columns = columns
        return self._columns

    def enabled(self) -> bool:
        """History table exists and has the expected columns. Never raises."""
        try:
            columns = self._known_columns()
        except HistoryStoreError as e:
            logger.warning(f"⚠️  Historical store not reachable: {e}")
            return False
        missing = REQUIRED_COLUMNS - columns
        if columns and missing:
            logger.warning(f"⚠️  {self.table} is missing column(s) {sorted(missing)} - history disabled")
        return not missing

    def capabilities(self) -> StoreCapabilities:
        if not self.enabled():
            return StoreCapabilities()
        columns = self._known_columns()
        return StoreCapabilities(
            query_hash=Support.of("query_hash" in columns),
            user=Support.of("user" in columns),
        )

    def invalidate(self) -> None:
        self._columns = None

    def _insert_columns(self, capabilities: StoreCapabilities) -> List[str]:
        columns = ["database", "query", "total_time", "calls", "captured_at"]
        if capabilities.query_hash:
            columns.append("query_hash")
        if capabilities.user:
            columns.append("user")
        return columns

    @staticmethod
    def _row_values(row: HistoricalRow, capabilities: StoreCapabilities, stamp) -> List[Any]:
        values = [row.database_id, row.query, row.total_time_ms, row.calls, stamp(row.captured_at)]
        if capabilities.query_hash:
            values.append(row.query_hash)
        if capabilities.user:
            values.append(row.user)
        return values

    @staticmethod
    def _to_record(row: Dict[str, Any], database_id: str) -> RawStatRecord:
        query_hash = row.get("query_hash")
        return RawStatRecord(
            query=row["query"] or "",
            query_hash=str(query_hash) if query_hash is not None else None,
            user=row.get("user"),
            total_time_ms=float(row["total_time"] or 0),
            calls=int(row["calls"] or 0),
            database_id=database_id,
            explainable_query=row.get("explainable_query"),
        )

    # ----------------------------------------
    # Operations
    # ----------------------------------------

    def append(self, rows: Sequence[HistoricalRow]) -> int:
        """Insert all rows in one transaction. Returns the number inserted."""
        if not rows:
            return 0
        if not self.enabled():
            raise HistoryStoreError(f"{self.backend} history table '{self.table}' is not available")
        inserted = self._insert(rows, self.capabilities())
        logger.info(f"💾 Stored {inserted} query stats row(s) in {self.table}")
        return inserted

    def query(
        self,
        database_id: str,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        query_hash: Optional[str] = None,
    ) -> List[RawStatRecord]:
        """
        One summed row per (hash-or-normalized-text, user) over the window.

        query is the first text in normalized sort order, explainable_query the last.
        """
        if not self.enabled():
            return []
        capabilities = self.capabilities()
        if query_hash and not capabilities.query_hash:
            return []
        rows = self._select_window(database_id, as_utc(start_at), as_utc(end_at), query_hash, capabilities)
        records = [self._to_record(row, database_id) for row in rows]
        logger.debug(f"Read {len(records)} historical group(s) for '{database_id}'")
        return records

    def hash_stats(self, database_id: str, query_hash: str, start_at: datetime) -> List[HashStatPoint]:
        """Per-capture time series for one native hash."""
        if not self.enabled() or not self.capabilities().query_hash:
            return []
        points = []
        for row in self._select_hash_series(database_id, query_hash, as_utc(start_at)):
            total_time = float(row["total_time"] or 0)
            calls = int(row["calls"] or 0)
            points.append(HashStatPoint(
                captured_at=self._parse_time(row["captured_at"]),
                total_minutes=total_time / 60000.0,
                average_time_ms=total_time / calls if calls else 0.0,
                calls=calls,
            ))
        return points

    def prune(self, before: datetime) -> int:
        """Delete rows captured before the cutoff. Returns the deleted count."""
        if not self.enabled():
            return 0
        deleted = self._delete_before(as_utc(before))
        logger.info(f"Cleaned up {deleted} query stats row(s) captured before {before.isoformat()}")
        return deleted

    @staticmethod
    def _parse_time(value) -> datetime:
        return as_utc(value)

    @abstractmethod
    def _insert(self, rows: Sequence[HistoricalRow], capabilities: StoreCapabilities) -> int:
        ...

    @abstractmethod
    def _select_window(self, database_id, start_at, end_at, query_hash, capabilities) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def _select_hash_series(self, database_id, query_hash, start_at) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def _delete_before(self, before: datetime) -> int:
        ...


class SqliteHistoryStore(HistoricalStore):
    """History log in a local SQLite file."""

    backend = "sqlite"

    def __init__(self, db_path: str = "query_stats_history.db", table: str = "query_stats_history"):
        super().__init__(table)
        self.db_path = db_path

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.create_function("normalize_query", 1, normalize_query, deterministic=True)
        try:
            yield conn
        except sqlite3.Error as e:
            raise HistoryStoreError(f"SQLite history error: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _stamp(value: datetime) -> str:
        # fixed-width UTC text so string comparison orders by time
        return as_utc(value).strftime("%Y-%m-%d %H:%M:%S.%f")

    @staticmethod
    def _parse_time(value) -> datetime:
        return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    "database" TEXT NOT NULL,
                    "user" TEXT,
                    query TEXT,
                    query_hash TEXT,
                    total_time REAL,
                    calls INTEGER,
                    captured_at TEXT NOT NULL
                )
            """)
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_database_captured_at
                ON {self.table}("database", captured_at)
            """)
            conn.commit()
        self.invalidate()
        logger.info(f"History schema ensured in {self.db_path}")

    def _fetch_columns(self) -> Set[str]:
        with self._connect() as conn:
            rows = conn.execute(f"PRAGMA table_info({self.table})").fetchall()
        return {row["name"] for row in rows}

    def _insert(self, rows: Sequence[HistoricalRow], capabilities: StoreCapabilities) -> int:
        columns = self._insert_columns(capabilities)
        column_list = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        values = [self._row_values(row, capabilities, self._stamp) for row in rows]

        with self._connect() as conn:
            # `with conn` commits on success and rolls the whole batch back on error
            with conn:
                conn.executemany(
                    f"INSERT INTO {self.table} ({column_list}) VALUES ({placeholders})",
                    values,
                )
        return len(values)

    def _select_window(self, database_id, start_at, end_at, query_hash, capabilities) -> List[Dict[str, Any]]:
        hash_column = "query_hash" if capabilities.query_hash else "NULL"
        user_column = '"user"' if capabilities.user else "NULL"

        conditions = ['"database" = :database']
        params: Dict[str, Any] = {"database": database_id}
        if start_at:
            conditions.append("captured_at >= :start_at")
            params["start_at"] = self._stamp(start_at)
        if end_at:
            conditions.append("captured_at <= :end_at")
            params["end_at"] = self._stamp(end_at)
        if query_hash:
            conditions.append("query_hash = :query_hash")
            params["query_hash"] = str(query_hash)

        sql = f"""
            WITH scoped AS (
                SELECT
                    COALESCE({hash_column}, normalize_query(query)) AS group_key,
                    {hash_column} AS query_hash,
                    {user_column} AS "user",
                    query,
                    total_time,
                    calls
                FROM {self.table}
                WHERE {' AND '.join(conditions)}
            ),
            ranked AS (
                SELECT
                    group_key,
                    query_hash,
                    "user",
                    total_time,
                    calls,
                    FIRST_VALUE(query) OVER w AS query,
                    LAST_VALUE(query) OVER w AS explainable_query
                FROM scoped
                WINDOW w AS (
                    PARTITION BY group_key, "user"
                    ORDER BY REPLACE(normalize_query(query), '?', '!'), query
                    ROWS BETWEEN UNBOUNDED PRECEDING AND UNBOUNDED FOLLOWING
                )
            )
            SELECT
                MAX(query_hash) AS query_hash,
                "user",
                MIN(query) AS query,
                MIN(explainable_query) AS explainable_query,
                SUM(total_time) AS total_time,
                SUM(calls) AS calls
            FROM ranked
            GROUP BY group_key, "user"
            ORDER BY total_time DESC
        """
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def _select_hash_series(self, database_id, query_hash, start_at) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT
                    captured_at,
                    SUM(total_time) AS total_time,
                    SUM(calls) AS calls
                FROM {self.table}
                WHERE "database" = ?
                  AND captured_at >= ?
                  AND query_hash = ?
                GROUP BY captured_at
                ORDER BY captured_at ASC
            """, (database_id, self._stamp(start_at), str(query_hash))).fetchall()
        return [dict(row) for row in rows]

    def _delete_before(self, before: datetime) -> int:
        with self._connect() as conn:
            with conn:
                cursor = conn.execute(
                    f"DELETE FROM {self.table} WHERE captured_at < ?",
                    (self._stamp(before),),
                )
            return cursor.rowcount


# SQL rendition of normalize_query(): comments, placeholder runs, whitespace
_PG_NORMALIZED = r"""btrim(regexp_replace(regexp_replace(regexp_replace(
    query, '/\*.*?\*/', ' ', 'g'),
    '(\?|\$[0-9]+)(\s*,\s*(\?|\$[0-9]+))+', '?', 'g'),
    '\s+', ' ', 'g'))"""


class PostgresHistoryStore(HistoricalStore):
    """History log in a PostgreSQL stats database."""

    backend = "postgres"

    def __init__(self, dsn: str, table: str = "query_stats_history", connect_timeout: int = 5):
        super().__init__(table)
        self.dsn = dsn
        self.connect_timeout = connect_timeout

    @contextmanager
    def _cursor(self):
        """Cursor in its own transaction: commit on success, rollback on error."""
        try:
            conn = psycopg2.connect(self.dsn, connect_timeout=self.connect_timeout)
        except psycopg2.Error as e:
            raise HistoryStoreError(f"Cannot connect to stats database: {e}") from e
        try:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            yield cur
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"❌ Stats database error: {e}")
            raise HistoryStoreError(f"PostgreSQL history error: {e}") from e
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id bigserial PRIMARY KEY,
                    database text NOT NULL,
                    "user" text,
                    query text,
                    query_hash bigint,
                    total_time double precision,
                    calls bigint,
                    captured_at timestamptz NOT NULL
                )
            """)
            cur.execute(f"""
                CREATE INDEX IF NOT EXISTS {self.table}_database_captured_at_idx
                ON {self.table} (database, captured_at)
            """)
        self.invalidate()
        logger.info(f"History schema ensured: {self.table}")

    def _fetch_columns(self) -> Set[str]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT column_name
                FROM information_schema.columns
                WHERE table_schema = current_schema()
                  AND table_name = %s
            """, (self.table,))
            return {row["column_name"] for row in cur.fetchall()}

    @staticmethod
    def _stamp(value: datetime) -> datetime:
        return as_utc(value)

    def _insert(self, rows: Sequence[HistoricalRow], capabilities: StoreCapabilities) -> int:
        columns = self._insert_columns(capabilities)
        column_list = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join("%s" for _ in columns)
        hash_index = columns.index("query_hash") if "query_hash" in columns else None
        values = []
        for row in rows:
            row_values = self._row_values(row, capabilities, self._stamp)
            # query_hash is bigint here
            if hash_index is not None and row.query_hash is not None:
                row_values[hash_index] = int(row.query_hash)
            values.append(tuple(row_values))

        with self._cursor() as cur:
            cur.executemany(f"INSERT INTO {self.table} ({column_list}) VALUES ({placeholders})", values)
        return len(values)

    def _select_window(self, database_id, start_at, end_at, query_hash, capabilities) -> List[Dict[str, Any]]:
        hash_expr = "query_hash::text" if capabilities.query_hash else "NULL::text"
        user_expr = f'{self.table}."user"' if capabilities.user else "NULL::text"

        conditions = ["database = %(database)s"]
        params: Dict[str, Any] = {"database": database_id}
        if start_at:
            conditions.append("captured_at >= %(start_at)s")
            params["start_at"] = start_at
        if end_at:
            conditions.append("captured_at <= %(end_at)s")
            params["end_at"] = end_at
        if query_hash:
            conditions.append("query_hash = %(query_hash)s::bigint")
            params["query_hash"] = str(query_hash)

        sql = f"""
            WITH query_stats AS (
                SELECT
                    COALESCE({hash_expr}, {_PG_NORMALIZED}) AS group_key,
                    MAX({hash_expr}) AS query_hash,
                    {user_expr} AS "user",
                    array_agg(
                        LEFT(query, 10000)
                        ORDER BY REPLACE({_PG_NORMALIZED}, '?', '!') COLLATE "C" ASC, query COLLATE "C" ASC
                    ) AS query,
                    SUM(total_time) AS total_time,
                    SUM(calls) AS calls
                FROM {self.table}
                WHERE {' AND '.join(conditions)}
                GROUP BY 1, 3
            )
            SELECT
                query_hash,
                query_stats."user",
                query[1] AS query,
                query[array_length(query, 1)] AS explainable_query,
                total_time,
                calls
            FROM query_stats
            ORDER BY total_time DESC
        """
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]

    def _select_hash_series(self, database_id, query_hash, start_at) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT
                    captured_at,
                    SUM(total_time) AS total_time,
                    SUM(calls) AS calls
                FROM {self.table}
                WHERE database = %s
                  AND captured_at >= %s
                  AND query_hash = %s::bigint
                GROUP BY captured_at
                ORDER BY captured_at ASC
            """, (database_id, start_at, str(query_hash)))
            return [dict(row) for row in cur.fetchall()]

    def _delete_before(self, before: datetime) -> int:
        with self._cursor() as cur:
            cur.execute(f"DELETE FROM {self.table} WHERE captured_at < %s", (before,))
            return cur.rowcount


def create_history_store(settings: StatsDatabaseSettings) -> HistoricalStore:
    if settings.backend == "postgres":
        store = PostgresHistoryStore(settings.dsn, table=settings.table)
    else:
        store = SqliteHistoryStore(settings.path, table=settings.table)

    if settings.create_schema:
        try:
            store.ensure_schema()
        except HistoryStoreError as e:
            logger.error(f"❌ Could not create history schema: {e}")
    return store
