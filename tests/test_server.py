"""Tests for the ASGI app wiring."""

import pytest
from starlette.testclient import TestClient

from query_stats_server import server
from query_stats_server.config import parse_config, set_config
from query_stats_server.db_connector import postgres_connector
from query_stats_server.monitoring.query_stats import set_registry


@pytest.fixture
def app(store, make_database, make_registry, monkeypatch):
    set_config(parse_config({"server": {"name": "qs_test"}, "databases": {"a": {"host": "localhost"}}}))
    set_registry(make_registry(store, make_database("a", store)))
    monkeypatch.setattr(postgres_connector, "test_connection", lambda preset: True)
    yield server.build_app()
    set_config(None)
    set_registry(None)


def test_health_and_version(app):
    client = TestClient(app)

    assert client.get("/healthz").text == "ok"
    assert client.get("/version").json()["server"] == "qs_test"

