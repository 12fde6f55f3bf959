"""Integration test fixtures.

Applies the Discourse core schema subset against an ephemeral PostgreSQL
database provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from discourse_etl.discourse_db import DiscourseDbPlatform
from discourse_etl.platform import RateLimiter
from db_seed import seed_category, seed_user

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_discourse_core.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (autocommit psycopg connection, dsn) with schema applied.

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
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def seeded(db_conn):
    """Seed one category and two users; return their ids."""
    conn, _ = db_conn
    category_id = seed_category(conn, "Support")
    asker_id = seed_user(conn, "asker", "asker@example.com")
    helper_id = seed_user(conn, "helper", "helper@example.com")
    return {"category_id": category_id, "asker_id": asker_id, "helper_id": helper_id}


@pytest.fixture
def db_platform(db_conn):
    conn, _ = db_conn
    return DiscourseDbPlatform(conn, RateLimiter(base_delay=0.0, jitter=0.0))

