"""Tests for the MCP tool response builders."""

from datetime import timedelta

from query_stats_server.monitoring.models import HistoricalRow, RawStatRecord
from query_stats_server.tools.query_stats_tools import MAX_QUERY_TEXT, capture_report, query_stats_report

from conftest import FakeSource


def rec(query, total_time_ms, calls, query_hash=None):
    return RawStatRecord(query=query, total_time_ms=total_time_ms, calls=calls, query_hash=query_hash, user="app")


def test_query_stats_report(store, make_database, make_registry):
    registry = make_registry(store, make_database("a", store, rows=[rec("SELECT 1", 90000, 3, query_hash="1")]))

    response = query_stats_report(registry, "a", sort="calls")

    assert "error" not in response
    assert response["database"] == "a"
    assert response["sort"] == "calls"
    assert response["count"] == 1
    [item] = response["queries"]
    assert item["total_minutes"] == 1.5
    assert item["average_time_ms"] == 30000.0
    assert item["total_percent"] == 100.0
    assert item["grouping_key"] == ["1", "app"]


def test_query_stats_report_with_string_window(store, make_database, make_registry, clock):
    registry = make_registry(store, make_database("a", store))
    store.append([HistoricalRow("a", "SELECT 1", 600, 2, clock() - timedelta(hours=3), "1", "app")])

    response = query_stats_report(
        registry,
        "a",
        historical=True,
        start_at=(clock() - timedelta(days=1)).isoformat(),
        end_at=None,
    )

    assert response["historical"] is True
    assert response["count"] == 1


def test_long_query_text_is_truncated(store, make_database, make_registry):
    long_query = "SELECT " + "x, " * 1000 + "1"
    registry = make_registry(store, make_database("a", store, rows=[rec(long_query, 100, 1)]))

    [item] = query_stats_report(registry, "a")["queries"]

    assert len(item["representative_query"]) == MAX_QUERY_TEXT + 3
    assert item["representative_query"].endswith("...")


def test_unknown_database(store, make_database, make_registry):
    registry = make_registry(store, make_database("a", store))

    response = query_stats_report(registry, "nope")

    assert "error" in response
    assert "nope" in response["prompt"]


def test_invalid_sort(store, make_database, make_registry):
    registry = make_registry(store, make_database("a", store))

    response = query_stats_report(registry, "a", sort="rows")

    assert response["error"].startswith("Invalid options")


def test_slow_only(store, make_database, make_registry):
    registry = make_registry(store, make_database("a", store, rows=[
        rec("SELECT 1", 100 * 50, 100, query_hash="1"),
        rec("SELECT 2", 100, 100, query_hash="2"),
    ]))

    response = query_stats_report(registry, "a", slow_only=True)

    assert [q["query_hash"] for q in response["queries"]] == ["1"]


def test_live_read_failure_is_reported(store, make_database, make_registry):
    from query_stats_server.monitoring.errors import StatsFetchError

    source = FakeSource("a", error=StatsFetchError("a", "statement timeout"))
    registry = make_registry(store, make_database("a", store, source=source))

    response = query_stats_report(registry, "a")

    assert "statement timeout" in response["error"]


def test_capture_report(store, make_database, make_registry):
    registry = make_registry(store, make_database("a", store, rows=[rec("SELECT 1", 100, 1)]))

    response = capture_report(registry)

    assert response["results"][0]["outcome"] == "captured"
    assert response["results"][0]["rows"] == {"a": 1}
    assert response["prompt"] == "a: captured"


def test_capture_report_data_loss(tmp_path, make_database, make_registry):
    from query_stats_server.monitoring.errors import HistoryStoreError
    from query_stats_server.monitoring.history_store import SqliteHistoryStore

    class FailingStore(SqliteHistoryStore):
        def _insert(self, rows, capabilities):
            raise HistoryStoreError("read-only file system")

    store = FailingStore(str(tmp_path / "ro.db"))
    store.ensure_schema()
    registry = make_registry(store, make_database("a", store, rows=[rec("SELECT 1", 100, 1)]))

    response = capture_report(registry, "a")

    assert response["data_loss"] is True
    assert "read-only file system" in response["error"]
