import uuid
from typing import Iterator

import logfire
import pytest

import postpyro
from postpyro import Connection


def get_unique_name(name: str) -> str:
    """Append a short unique suffix to a name."""
    return f"{name}_{uuid.uuid4().hex[:8]}"


# ============================================================================
# Pytest Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def pgconn(require_postgres: str) -> Iterator[Connection]:
    """One live connection shared by the integration session."""
    with logfire.span("Pytest: pgconn"):
        conn = postpyro.connect(require_postgres, application_name="postpyro-integration")
    yield conn
    conn.close()


@pytest.fixture
def fresh_conn(require_postgres: str) -> Iterator[Connection]:
    """A private connection for tests that break or close it."""
    conn = postpyro.connect(require_postgres, statement_cache_size=2)
    yield conn
    conn.close()


@pytest.fixture
def users_table(pgconn: Connection) -> Iterator[str]:
    """A throwaway ``users`` table, dropped after the test."""
    table = get_unique_name("users")
    with logfire.span("Pytest: create {table}", table=table):
        pgconn.execute(
            f"CREATE TABLE {table} (id int PRIMARY KEY, name text NOT NULL, score numeric)"
        )
    yield table
    if pgconn.in_transaction:
        pgconn.execute_batch(["ROLLBACK"])
    pgconn.execute(f"DROP TABLE IF EXISTS {table}")
