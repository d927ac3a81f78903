# query_stats_server/db_connector.py

import logging
from contextlib import contextmanager

import psycopg2

from query_stats_server.config import DatabasePreset

logger = logging.getLogger(__name__)


class PostgresConnector:
    """
    Opens psycopg2 sessions for a database preset.

    Every session carries connect_timeout and a server-side statement_timeout,
    so no statistics call can block forever.
    """

    def connect(self, preset: DatabasePreset):
        conn = psycopg2.connect(**preset.connect_kwargs())
        conn.autocommit = True
        return conn

    @contextmanager
    def connection(self, preset: DatabasePreset):
        conn = self.connect(preset)
        try:
            yield conn
        finally:
            conn.close()

    def test_connection(self, preset: DatabasePreset) -> bool:
        try:
            with self.connection(preset) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            logger.info(f"✅ DB preset '{preset.id}' is reachable.")
            return True
        except Exception as e:
            logger.error(f"❌ DB preset '{preset.id}' unreachable: {e}")
            return False


postgres_connector = PostgresConnector()
