"""Integration test fixtures.

Applies the Bible Bee schema against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from biblebee_etl.storage import PostgresStore

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_bible_bee_core.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations for every test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_store(db_conn):
    conn, _ = db_conn
    return PostgresStore(conn)
