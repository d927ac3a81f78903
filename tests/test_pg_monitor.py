"""Tests for pg_stat_statements probes and reads, with a mocked psycopg2 connection."""

from unittest.mock import MagicMock

import psycopg2
import psycopg2.errors
import psycopg2.extensions
import pytest

from query_stats_server.config import DatabasePreset
from query_stats_server.monitoring.errors import StatsFetchError, StatsResetError
from query_stats_server.monitoring.models import LiveCapabilities, Support
from query_stats_server.monitoring.pg_monitor import (
    PgStatStatementsMonitor,
    PgStatStatementsSource,
    UnavailableStatsSource,
    advisory_lock_key,
    is_transient_error,
)


@pytest.fixture
def preset():
    return DatabasePreset(id="primary", host="localhost", database="app")


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def conn(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


@pytest.fixture
def connector(conn):
    connector = MagicMock()
    connector.connection.return_value.__enter__.return_value = conn
    connector.connect.return_value = conn
    return connector


def executed_sql(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


def test_probe_installed(connector, cursor, preset):
    cursor.fetchone.return_value = (True,)

    result = PgStatStatementsMonitor(connector, preset).probe_installed()

    assert result
    assert result.error is None
    assert "pg_extension" in executed_sql(cursor)[0]


def test_probe_error_is_reported_not_raised(connector, cursor, preset):
    cursor.execute.side_effect = psycopg2.OperationalError("permission denied for view pg_stat_statements")

    result = PgStatStatementsMonitor(connector, preset).probe_readable()

    assert not result
    assert "permission denied" in result.error


def test_probe_readable_stops_at_missing_privilege(connector, cursor, preset):
    cursor.fetchone.return_value = (False,)

    result = PgStatStatementsMonitor(connector, preset).probe_readable()

    assert not result
    assert len(executed_sql(cursor)) == 1


def test_resolve_available_source(connector, cursor, preset):
    cursor.fetchone.side_effect = [(True,), (True,), (True,)]
    cursor.fetchall.return_value = [("queryid",), ("total_exec_time",), ("calls",)]
    monitor = PgStatStatementsMonitor(connector, preset)

    source = monitor.resolve()

    assert isinstance(source, PgStatStatementsSource)
    assert source.capabilities.query_hash is Support.SUPPORTED
    assert source.capabilities.total_time_column == "total_exec_time"
    assert monitor.resolve() is source


def test_resolve_old_server_columns(connector, cursor, preset):
    cursor.fetchone.side_effect = [(True,), (True,), (True,)]
    cursor.fetchall.return_value = [("query",), ("total_time",), ("calls",)]

    source = PgStatStatementsMonitor(connector, preset).resolve()

    assert source.capabilities.query_hash is Support.UNSUPPORTED
    assert source.capabilities.total_time_column == "total_time"


def test_resolve_not_installed_is_cached(connector, cursor, preset):
    cursor.fetchone.return_value = (False,)
    monitor = PgStatStatementsMonitor(connector, preset)

    source = monitor.resolve()

    assert isinstance(source, UnavailableStatsSource)
    assert source.transient is False
    assert source.current_stats() == []
    assert source.reset() is False
    assert monitor.resolve() is source


def test_resolve_unreachable_server_is_not_cached(connector, cursor, preset):
    cursor.execute.side_effect = psycopg2.OperationalError("could not connect to server")
    monitor = PgStatStatementsMonitor(connector, preset)

    source = monitor.resolve()

    assert isinstance(source, UnavailableStatsSource)
    assert source.transient is True
    assert monitor.resolve() is not source


def test_read_access_timeout_is_transient_and_not_cached(connector, cursor, preset):
    """Installed, but the read-access check hit statement_timeout: state unknown, not 'empty'."""
    cursor.fetchone.return_value = (True,)
    cursor.execute.side_effect = [
        None,
        None,
        psycopg2.extensions.QueryCanceledError("canceling statement due to statement timeout"),
    ]
    monitor = PgStatStatementsMonitor(connector, preset)

    source = monitor.resolve()

    assert isinstance(source, UnavailableStatsSource)
    assert source.transient is True
    assert "statement timeout" in source.reason
    assert monitor._source is None


def test_read_access_lost_connection_is_transient(connector, cursor, preset):
    cursor.fetchone.return_value = (True,)
    cursor.execute.side_effect = [None, psycopg2.InterfaceError("connection already closed")]

    source = PgStatStatementsMonitor(connector, preset).resolve()

    assert source.transient is True


@pytest.mark.parametrize(
    "error",
    [
        psycopg2.errors.ObjectNotInPrerequisiteState("pg_stat_statements must be loaded via shared_preload_libraries"),
        psycopg2.ProgrammingError("permission denied for view pg_stat_statements"),
    ],
)
def test_read_access_permanent_failure_is_cached(connector, cursor, preset, error):
    cursor.fetchone.return_value = (True,)
    cursor.execute.side_effect = [None, None, error]
    monitor = PgStatStatementsMonitor(connector, preset)

    source = monitor.resolve()

    assert source.transient is False
    assert monitor.resolve() is source


def test_forget_unavailable_checks_again(connector, cursor, preset):
    cursor.fetchone.return_value = (False,)
    monitor = PgStatStatementsMonitor(connector, preset)
    first = monitor.resolve()

    monitor.forget_unavailable()

    assert monitor.resolve() is not first


def test_forget_unavailable_keeps_available_source(connector, cursor, preset):
    cursor.fetchone.side_effect = [(True,), (True,), (True,)]
    cursor.fetchall.return_value = [("queryid",), ("total_exec_time",)]
    monitor = PgStatStatementsMonitor(connector, preset)
    source = monitor.resolve()

    monitor.forget_unavailable()

    assert monitor.resolve() is source


def test_is_transient_error():
    assert is_transient_error(psycopg2.OperationalError("server closed the connection unexpectedly"))
    assert is_transient_error(psycopg2.extensions.QueryCanceledError("canceling statement"))
    assert not is_transient_error(psycopg2.ProgrammingError("permission denied"))
    assert not is_transient_error(psycopg2.errors.ObjectNotInPrerequisiteState("not preloaded"))


def test_enable_extension_invalidates_cache(connector, cursor, preset):
    cursor.fetchone.return_value = (False,)
    monitor = PgStatStatementsMonitor(connector, preset)
    first = monitor.resolve()

    monitor.enable_extension()

    assert "CREATE EXTENSION IF NOT EXISTS pg_stat_statements" in executed_sql(cursor)
    assert monitor.resolve() is not first


def test_current_stats_builds_query(connector, cursor, preset):
    cursor.fetchall.return_value = [
        {"query": "SELECT 1", "query_hash": "123", "user": "app", "total_time_ms": 12.5, "calls": 3},
    ]
    source = PgStatStatementsSource(connector, preset, LiveCapabilities(Support.SUPPORTED, "total_exec_time"))

    [record] = source.current_stats(database_name="app", limit=10)

    sql, params = cursor.execute.call_args.args
    assert "total_exec_time AS total_time_ms" in sql
    assert "queryid::text" in sql
    assert "LIMIT %(limit)s" in sql
    assert params["database"] == "app"
    assert params["limit"] == 10
    assert record.query_hash == "123"
    assert record.total_time_ms == 12.5
    assert record.calls == 3
    assert record.database_id == "primary"


def test_current_stats_defaults_to_session_database(connector, cursor, preset):
    cursor.fetchall.return_value = []
    source = PgStatStatementsSource(connector, preset, LiveCapabilities())

    source.current_stats()

    sql = cursor.execute.call_args.args[0]
    assert "current_database()" in sql
    assert "NULL::text AS query_hash" in sql
    assert "LIMIT" not in sql


def test_hash_filter_without_hash_support_reads_nothing(connector, cursor, preset):
    source = PgStatStatementsSource(connector, preset, LiveCapabilities())

    assert source.current_stats(query_hash="123") == []
    cursor.execute.assert_not_called()


def test_read_error_raises_fetch_error(connector, cursor, preset):
    cursor.execute.side_effect = psycopg2.OperationalError("canceling statement due to statement timeout")
    source = PgStatStatementsSource(connector, preset, LiveCapabilities())

    with pytest.raises(StatsFetchError, match="statement timeout"):
        source.current_stats()


def test_reset(connector, cursor, preset):
    source = PgStatStatementsSource(connector, preset, LiveCapabilities())

    assert source.reset() is True
    assert executed_sql(cursor) == ["SELECT pg_stat_statements_reset()"]


def test_reset_error(connector, cursor, preset):
    cursor.execute.side_effect = psycopg2.ProgrammingError("permission denied for function pg_stat_statements_reset")
    source = PgStatStatementsSource(connector, preset, LiveCapabilities())

    with pytest.raises(StatsResetError):
        source.reset()


def test_advisory_lock_acquired_and_released(connector, conn, cursor, preset):
    cursor.fetchone.return_value = (True,)
    monitor = PgStatStatementsMonitor(connector, preset)

    with monitor.advisory_lock("primary") as acquired:
        assert acquired is True

    key = advisory_lock_key("primary")
    assert cursor.execute.call_args_list[0].args == ("SELECT pg_try_advisory_lock(%s)", (key,))
    assert cursor.execute.call_args_list[1].args == ("SELECT pg_advisory_unlock(%s)", (key,))
    conn.close.assert_called_once()


def test_advisory_lock_not_acquired(connector, conn, cursor, preset):
    cursor.fetchone.return_value = (False,)
    monitor = PgStatStatementsMonitor(connector, preset)

    with monitor.advisory_lock("primary") as acquired:
        assert acquired is False

    assert len(executed_sql(cursor)) == 1
    conn.close.assert_called_once()


def test_advisory_lock_connection_failure(connector, preset):
    connector.connect.side_effect = psycopg2.OperationalError("connection refused")
    monitor = PgStatStatementsMonitor(connector, preset)

    with pytest.raises(StatsFetchError):
        with monitor.advisory_lock("primary"):
            pass


def test_advisory_lock_key_is_stable_signed_bigint():
    key = advisory_lock_key("primary")
    assert key == advisory_lock_key("primary")
    assert key != advisory_lock_key("reporting")
    assert -(2 ** 63) <= key < 2 ** 63
