"""
Async connection core.

:class:`AsyncConnection` owns one byte stream, the protocol state machine,
the server session and the prepared-statement cache. All of its operations
run on a single event loop and are serialized by a lock held for the whole
request/response cycle.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Sequence

import structlog

from .config import ConnectionOptions
from .errors import (
    ConnectionClosedError,
    ConnectionLostError,
    DatabaseError,
    InterfaceError,
    ProgrammingError,
    ProtocolError,
)
from .pg_protocol import FieldDescription, Notification, PGProtocol, PGQueryResult
from .row import Row
from .session import Session, TransactionStatus
from .statement_cache import (
    ColumnDescriptor,
    PreparedStatementDescriptor,
    StatementCache,
)
from .transport import ByteStream, TcpStream, WebSocketStream
from .types import BINARY_FORMAT, TypeCodecRegistry, default_registry

logger = structlog.get_logger(__name__)

_ROLLBACK_RE = re.compile(r"^\s*(ROLLBACK|ABORT)\b", re.IGNORECASE)

# Server errors after which a cached statement can no longer be used.
_INVALIDATING_SQLSTATES = frozenset({"0A000", "26000"})
_CACHED_PLAN_MESSAGE = "cached plan must not change result type"


def count_placeholders(sql: str) -> int:
    """Highest ``$n`` placeholder outside literals, identifiers and comments.

    Skips single-quoted strings (including ``E''`` escapes), double-quoted
    identifiers, dollar-quoted strings, ``--`` line comments and nested
    ``/* */`` block comments.
    """
    highest = 0
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if ch == "'":
            backslash = i > 0 and sql[i - 1] in "eE" and (i < 2 or not _is_ident(sql[i - 2]))
            i += 1
            while i < n:
                if backslash and sql[i] == "\\":
                    i += 2
                    continue
                if sql[i] == "'":
                    if i + 1 < n and sql[i + 1] == "'":
                        i += 2
                        continue
                    break
                i += 1
            i += 1
        elif ch == '"':
            end = sql.find('"', i + 1)
            while end != -1 and end + 1 < n and sql[end + 1] == '"':
                end = sql.find('"', end + 2)
            i = n if end == -1 else end + 1
        elif ch == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end + 1
        elif ch == "/" and sql.startswith("/*", i):
            depth = 1
            i += 2
            while i < n and depth:
                if sql.startswith("/*", i):
                    depth += 1
                    i += 2
                elif sql.startswith("*/", i):
                    depth -= 1
                    i += 2
                else:
                    i += 1
        elif ch == "$" and (i == 0 or not _is_ident(sql[i - 1])):
            j = i + 1
            if j < n and sql[j].isdigit():
                while j < n and sql[j].isdigit():
                    j += 1
                highest = max(highest, int(sql[i + 1 : j]))
                i = j
                continue
            while j < n and (sql[j].isalnum() or sql[j] == "_"):
                j += 1
            if j < n and sql[j] == "$":
                tag = sql[i : j + 1]
                end = sql.find(tag, j + 1)
                i = n if end == -1 else end + len(tag)
            else:
                i += 1
        else:
            i += 1
    return highest


def _is_ident(ch: str) -> bool:
    return ch.isalnum() or ch == "_" or ch == "$"


def is_rollback(sql: str) -> bool:
    return _ROLLBACK_RE.match(sql) is not None


class AsyncConnection:
    """One PostgreSQL session driven through the async protocol core."""

    def __init__(
        self,
        stream: ByteStream,
        protocol: PGProtocol,
        options: ConnectionOptions,
        registry: TypeCodecRegistry | None = None,
    ) -> None:
        self._stream = stream
        self._protocol = protocol
        self.options = options
        self.registry = registry or default_registry
        self.cache = StatementCache(options.statement_cache_size)
        self._request_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def connect(
        cls,
        options: ConnectionOptions,
        stream: ByteStream | None = None,
        registry: TypeCodecRegistry | None = None,
    ) -> "AsyncConnection":
        """Open the stream (unless given) and run the startup handshake."""
        if stream is None:
            if options.transport == "websocket":
                stream = await WebSocketStream.open(
                    options.ws_url, connect_timeout=options.connect_timeout
                )
            else:
                stream = await TcpStream.open(
                    options.host, options.port, options.connect_timeout
                )

        protocol = PGProtocol(stream.send, stream.recv)
        try:
            await asyncio.wait_for(
                protocol.startup(
                    options.user,
                    options.password,
                    options.database,
                    **options.startup_parameters(),
                ),
                timeout=options.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            await stream.close()
            raise ConnectionLostError(
                f"Startup did not complete within {options.connect_timeout}s"
            ) from e
        except BaseException:
            await stream.close()
            raise

        logger.info("Connection opened", **options.redacted())
        return cls(stream, protocol, options, registry)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._protocol.session

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def transaction_status(self) -> TransactionStatus:
        return self.session.transaction_status

    @property
    def notices(self) -> list[dict[str, str]]:
        return list(self._protocol.notices)

    @property
    def notifications(self) -> list[Notification]:
        return list(self._protocol.notifications)

    def take_notifications(self) -> list[Notification]:
        """Return the buffered notifications and forget them."""
        pending = self._protocol.notifications
        taken = []
        while pending:
            taken.append(pending.popleft())
        return taken

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionClosedError()
        if self._protocol.broken:
            raise InterfaceError("Connection is desynchronized and must be closed")

    def _guard_failed_transaction(self, sql: str) -> None:
        if self.session.in_failed_transaction and not is_rollback(sql):
            raise ProgrammingError(
                "current transaction is aborted, commands ignored until end of "
                "transaction block",
                sqlstate="25P02",
            )

    async def abort(self) -> None:
        """Tear down after an I/O failure or desync."""
        if self._closed:
            return
        self._closed = True
        self.cache.clear()
        self._protocol.discard_pending()
        self._protocol.broken = True
        await self._stream.close()
        logger.warning("Connection aborted", backend_pid=self.session.backend_pid)

    async def _locked(self, coro_fn, *args: Any) -> Any:
        async with self._request_lock:
            self._ensure_open()
            try:
                return await coro_fn(*args)
            except (ConnectionLostError, ProtocolError):
                await self.abort()
                raise
            except asyncio.CancelledError:
                await self.abort()
                raise
            except BaseException:
                # Requests queued before a client-side failure are never sent.
                self._protocol.discard_pending()
                raise

    # ------------------------------------------------------------------
    # Extended query
    # ------------------------------------------------------------------

    def _check_params(self, sql: str, params: Sequence[Any] | None) -> list[Any]:
        values = list(params) if params is not None else []
        expected = count_placeholders(sql)
        if expected != len(values):
            raise ProgrammingError(
                f"Query expects {expected} parameter(s) but {len(values)} were given"
            )
        return values

    async def get_or_prepare(
        self, sql: str, params: Sequence[Any] = ()
    ) -> PreparedStatementDescriptor:
        """Cached descriptor for *sql*, preparing it on a miss."""
        descriptor = self.cache.get(sql)
        if descriptor is not None:
            return descriptor

        param_oids = self.registry.infer_param_oids(params)
        name = self.cache.next_name() if self.cache.enabled else ""

        closes = self.cache.take_pending_closes()
        for stale in closes:
            self._protocol.close_statement(stale)
        self._protocol.parse(name, sql, param_oids)
        self._protocol.describe_statement(name)
        self._protocol.sync()
        outcomes = await self._protocol.flush()

        description = outcomes[len(closes) + 1]
        columns = [ColumnDescriptor.from_field(f, BINARY_FORMAT) for f in description.fields]
        descriptor = PreparedStatementDescriptor.create(
            sql, name, description.param_oids, columns
        )
        self.cache.put(descriptor)
        logger.debug(
            "Statement prepared",
            statement=name or "<unnamed>",
            params=len(descriptor.param_oids),
            columns=len(columns),
        )
        return descriptor

    async def _run_statement(
        self, sql: str, params: Sequence[Any]
    ) -> tuple[PreparedStatementDescriptor, PGQueryResult]:
        self._guard_failed_transaction(sql)
        descriptor = await self.get_or_prepare(sql, params)
        if len(params) != len(descriptor.param_oids):
            raise ProgrammingError(
                f"Statement expects {len(descriptor.param_oids)} parameter(s) "
                f"but {len(params)} were given"
            )

        # Encode before queueing anything so a bad value costs no I/O.
        formats: list[int] = []
        payloads: list[bytes | None] = []
        for value, oid in zip(params, descriptor.param_oids):
            fmt, payload = self.registry.encode_param(value, oid)
            formats.append(fmt)
            payloads.append(payload)

        closes = self.cache.take_pending_closes()
        for stale in closes:
            self._protocol.close_statement(stale)
        self._protocol.bind(descriptor.name, payloads, formats, [BINARY_FORMAT])
        self._protocol.describe_portal()
        self._protocol.execute()
        self._protocol.sync()
        try:
            outcomes = await self._protocol.flush()
        except DatabaseError as e:
            if self._invalidates(e):
                self.cache.discard(sql)
            raise

        portal_fields: list[FieldDescription] = outcomes[-3]
        result: PGQueryResult = outcomes[-2]
        columns = [ColumnDescriptor.from_field(f, BINARY_FORMAT) for f in portal_fields]
        if not descriptor.matches_columns(columns):
            logger.debug("Result shape changed; replacing descriptor", statement=descriptor.name)
            descriptor = descriptor.with_columns(columns)
            self.cache.replace(descriptor)
        return descriptor, result

    @staticmethod
    def _invalidates(error: DatabaseError) -> bool:
        if error.sqlstate not in _INVALIDATING_SQLSTATES:
            return False
        return error.sqlstate == "26000" or _CACHED_PLAN_MESSAGE in str(error)

    def _decode_rows(
        self, descriptor: PreparedStatementDescriptor, result: PGQueryResult
    ) -> list[Row]:
        columns = descriptor.columns
        names = [c.name for c in columns]
        index = descriptor.column_index
        decode = self.registry.decode
        rows = []
        for raw in result.rows:
            if len(raw) != len(columns):
                raise ProtocolError(
                    f"DataRow has {len(raw)} columns, expected {len(columns)}"
                )
            values = [decode(cell, column.type_oid) for cell, column in zip(raw, columns)]
            rows.append(Row(values, names, index))
        return rows

    async def _query(self, sql: str, params: Sequence[Any] | None) -> list[Row]:
        values = self._check_params(sql, params)
        descriptor, result = await self._run_statement(sql, values)
        return self._decode_rows(descriptor, result)

    async def _execute(self, sql: str, params: Sequence[Any] | None) -> int:
        values = self._check_params(sql, params)
        _, result = await self._run_statement(sql, values)
        return result.rowcount

    async def query(self, sql: str, params: Sequence[Any] | None = None) -> list[Row]:
        """Run *sql* and return every row."""
        return await self._locked(self._query, sql, params)

    async def query_one(self, sql: str, params: Sequence[Any] | None = None) -> Row:
        """Run *sql* and return its only row.

        Raises:
            ProgrammingError: If the query returns zero or several rows.
        """
        rows = await self.query(sql, params)
        if len(rows) != 1:
            raise ProgrammingError(f"Query returned {len(rows)} rows, expected exactly 1")
        return rows[0]

    async def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Run *sql* and return the affected row count."""
        return await self._locked(self._execute, sql, params)

    async def prepare(self, sql: str) -> str:
        """Prepare *sql* (parameter types inferred by the server) and return its name."""
        descriptor = await self.describe(sql)
        return descriptor.name

    async def describe(self, sql: str) -> PreparedStatementDescriptor:
        """Prepare *sql* if needed and return its descriptor."""

        async def _describe() -> PreparedStatementDescriptor:
            self._guard_failed_transaction(sql)
            return await self.get_or_prepare(sql, [None] * count_placeholders(sql))

        return await self._locked(_describe)

    # ------------------------------------------------------------------
    # Simple query
    # ------------------------------------------------------------------

    async def _simple(self, sql: str) -> str:
        self._guard_failed_transaction(sql)
        results = await self._protocol.simple_query(sql)
        return results[-1].command_tag if results else ""

    async def simple(self, sql: str) -> str:
        """Run a parameterless command with the simple protocol.

        Used for transaction control. Returns the last command tag.
        """
        return await self._locked(self._simple, sql)

    async def _execute_batch(self, statements: Sequence[str]) -> list[int]:
        if not statements:
            return []
        if self.session.in_failed_transaction:
            self._guard_failed_transaction(statements[0])
        wrap = not self.session.in_transaction
        batch = ["BEGIN", *statements, "COMMIT"] if wrap else list(statements)
        results = await self._protocol.simple_query_pipeline(batch)
        if wrap:
            results = results[1:-1]
        logger.debug("Batch executed", statements=len(statements), wrapped=wrap)
        return [r.rowcount for r in results]

    async def execute_batch(self, statements: Sequence[str]) -> list[int]:
        """Run several statements in one round trip.

        Outside a transaction the batch is wrapped in BEGIN/COMMIT, so it is
        applied entirely or not at all. Statements that cannot run inside a
        transaction block, such as ``VACUUM`` or ``CREATE DATABASE``, fail
        here; run them on their own with :meth:`execute` instead.
        """
        if isinstance(statements, str):
            raise ProgrammingError("execute_batch() takes a sequence of SQL strings")
        return await self._locked(self._execute_batch, list(statements))

    async def ping(self) -> bool:
        """Round trip an empty query; False if the connection is unusable."""
        if self._closed or self._protocol.broken:
            return False
        try:
            await self._locked(self._protocol.simple_query, "")
        except DatabaseError as e:
            logger.debug("Ping failed", error=str(e))
            return not self._closed
        return True

    # ------------------------------------------------------------------
    # Cache & lifecycle
    # ------------------------------------------------------------------

    async def clear_cache(self) -> None:
        """Forget every cached statement; they are closed with the next batch."""
        async with self._request_lock:
            for descriptor in self.cache:
                self.cache.discard(descriptor.sql)

    def info(self) -> dict[str, Any]:
        return {
            "closed": self._closed,
            "healthy": not self._closed and not self._protocol.broken,
            "cached_statements": len(self.cache),
            "transaction_status": self.session.transaction_status.name,
            "in_transaction": self.session.in_transaction,
            "server_version": self.session.server_version,
            "backend_pid": self.session.backend_pid,
        }

    async def close(self) -> None:
        """Send Terminate and close the stream. Idempotent.

        Terminate ends the server session, which drops every prepared
        statement, so the cache is cleared without Close frames.
        """
        if self._closed:
            return
        async with self._request_lock:
            if self._closed:
                return
            self._closed = True
            self.cache.clear()
            await self._protocol.terminate()
            await self._stream.close()
        logger.info("Connection closed", backend_pid=self.session.backend_pid)

    async def __aenter__(self) -> "AsyncConnection":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
