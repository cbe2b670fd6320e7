"""Tests for the async connection core and placeholder scanning."""

from __future__ import annotations

import pytest

from fakes import FakeBackend

from postpyro.async_connection import AsyncConnection, count_placeholders, is_rollback
from postpyro.config import ConnectionOptions
from postpyro.errors import ConnectionClosedError, ProgrammingError
from postpyro.types import PostgresOID


class TestCountPlaceholders:
    @pytest.mark.parametrize(
        "sql, expected",
        [
            ("SELECT 1", 0),
            ("SELECT $1", 1),
            ("SELECT $1, $2, $1", 2),
            ("SELECT $3", 3),
            ("SELECT $10 + $2", 10),
            ("SELECT '$1'", 0),
            ("SELECT 'it''s $1', $2", 2),
            ("SELECT E'\\'$1', $1", 1),
            ('SELECT "col$1" FROM t WHERE a = $1', 1),
            ('SELECT "a""$2" FROM t', 0),
            ("SELECT $$ $2 $$, $1", 1),
            ("SELECT $tag$ $5 $tag$ || $1", 1),
            ("SELECT 1 -- $4\n, $2", 2),
            ("SELECT /* $3 /* nested $4 */ $5 */ $1", 1),
            ("SELECT price$1 FROM t", 0),
        ],
    )
    def test_counts(self, sql: str, expected: int):
        assert count_placeholders(sql) == expected

    def test_unterminated_literal_hides_rest(self):
        assert count_placeholders("SELECT '$1") == 0


class TestIsRollback:
    @pytest.mark.parametrize("sql", ["ROLLBACK", "  rollback to savepoint a", "ABORT"])
    def test_rollback_commands(self, sql: str):
        assert is_rollback(sql)

    @pytest.mark.parametrize("sql", ["COMMIT", "SELECT 'ROLLBACK'", "ROLLBACKS"])
    def test_other_commands(self, sql: str):
        assert not is_rollback(sql)


@pytest.fixture
def options() -> ConnectionOptions:
    return ConnectionOptions(user="tester", password="secret", statement_cache_size=4)


class TestAsyncConnection:
    @pytest.mark.asyncio
    async def test_connect_and_query(self, backend: FakeBackend, options: ConnectionOptions):
        backend.script(
            "SELECT $1::int + 1 AS next",
            columns=[("next", PostgresOID.INT4)],
            param_types=[PostgresOID.INT4],
            rows=lambda params: [(params[0] + 1,)],
        )
        async with await AsyncConnection.connect(options, backend) as conn:
            row = await conn.query_one("SELECT $1::int + 1 AS next", [41])
            assert row["next"] == 42
            assert conn.cache.get("SELECT $1::int + 1 AS next").name == "_pp_1"
        assert conn.closed
        assert backend.terminated

    @pytest.mark.asyncio
    async def test_scram_connect(self, options: ConnectionOptions):
        backend = FakeBackend(auth="scram")
        conn = await AsyncConnection.connect(options, backend)
        try:
            assert conn.session.backend_pid == 4242
            assert await conn.ping()
        finally:
            await conn.close()

    @pytest.mark.asyncio
    async def test_simple_returns_tag(self, backend: FakeBackend, options: ConnectionOptions):
        conn = await AsyncConnection.connect(options, backend)
        assert await conn.simple("BEGIN") == "BEGIN"
        assert conn.session.in_transaction
        assert await conn.simple("ROLLBACK") == "ROLLBACK"
        await conn.close()

    @pytest.mark.asyncio
    async def test_prepare_uses_server_types(self, backend: FakeBackend, options: ConnectionOptions):
        backend.script(
            "SELECT name FROM users WHERE id = $1 AND active = $2",
            columns=[("name", PostgresOID.TEXT)],
            param_types=[PostgresOID.INT8, PostgresOID.BOOL],
        )
        conn = await AsyncConnection.connect(options, backend)
        descriptor = await conn.describe("SELECT name FROM users WHERE id = $1 AND active = $2")
        assert descriptor.param_oids == (PostgresOID.INT8, PostgresOID.BOOL)
        assert [c.name for c in descriptor.columns] == ["name"]
        # Nothing about the parameters was declared by the client
        assert backend.parsed[-1][2] == [0, 0]
        await conn.close()

    @pytest.mark.asyncio
    async def test_placeholder_mismatch(self, backend: FakeBackend, options: ConnectionOptions):
        conn = await AsyncConnection.connect(options, backend)
        with pytest.raises(ProgrammingError):
            await conn.execute("SELECT $2", [1])
        assert conn.info()["healthy"]
        await conn.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, backend: FakeBackend, options: ConnectionOptions):
        conn = await AsyncConnection.connect(options, backend)
        await conn.close()
        await conn.close()
        assert backend.message_types().count("X") == 1
        with pytest.raises(ConnectionClosedError):
            await conn.query("SELECT 1")
        assert await conn.ping() is False
