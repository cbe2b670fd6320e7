"""Scripted in-memory PostgreSQL backend for tests.

``FakeBackend`` implements :class:`postpyro.transport.ByteStream`: frontend
messages written with ``send()`` are parsed and answered immediately, and
``recv()`` hands the queued backend messages back to the client. SQL is not
interpreted; statements are answered from scripts registered per SQL text,
plus built-in handling of transaction-control commands.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from postpyro.types import PostgresOID, default_registry

SCRAM_SALT = b"fake-backend-salt"
SCRAM_ITERATIONS = 4096

_TXN_RE = re.compile(
    r"^\s*(BEGIN|START TRANSACTION|COMMIT|END|ROLLBACK|ABORT|SAVEPOINT|RELEASE|SET)\b(.*)$",
    re.IGNORECASE | re.DOTALL,
)


class FakeError(Exception):
    """Raised by script handlers to produce an ErrorResponse."""

    def __init__(self, code: str, message: str, **fields: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.fields = fields


@dataclass
class Script:
    """How the fake server answers one SQL text."""

    columns: list[tuple[str, int]] = field(default_factory=list)
    param_types: list[int] = field(default_factory=list)
    rows: Sequence[Sequence[Any]] | Callable[[list[Any]], Sequence[Sequence[Any]]] = ()
    tag: str | None = None
    error: tuple[str, str] | None = None
    parse_error: tuple[str, str] | None = None
    notice: str | None = None
    parameter_status: dict[str, str] = field(default_factory=dict)
    portal_columns: list[tuple[str, int]] | None = None

    def command_tag(self, row_count: int) -> str:
        if self.tag is not None:
            return self.tag.format(n=row_count)
        return f"SELECT {row_count}" if self.columns else "OK"


def _msg(msg_type: str, payload: bytes = b"") -> bytes:
    return msg_type.encode("ascii") + struct.pack("!I", len(payload) + 4) + payload


def _cstr(value: str) -> bytes:
    return value.encode() + b"\x00"


def _error(code: str, message: str, severity: str = "ERROR", **extra: str) -> bytes:
    payload = b"S" + _cstr(severity) + b"V" + _cstr(severity) + b"C" + _cstr(code)
    payload += b"M" + _cstr(message)
    letters = {
        "detail": "D",
        "hint": "H",
        "schema": "s",
        "table": "t",
        "column": "c",
        "constraint": "n",
    }
    for name, value in extra.items():
        payload += letters[name].encode() + _cstr(value)
    return _msg("E" if severity != "NOTICE" else "N", payload + b"\x00")


def _row_description(columns: Sequence[tuple[str, int]], fmt: int) -> bytes:
    payload = bytearray(struct.pack("!H", len(columns)))
    for position, (name, oid) in enumerate(columns, start=1):
        payload += _cstr(name)
        payload += struct.pack("!IhIhih", 0, position, oid, -1, -1, fmt)
    return _msg("T", bytes(payload))


def _data_row(values: Sequence[bytes | None]) -> bytes:
    payload = bytearray(struct.pack("!H", len(values)))
    for value in values:
        if value is None:
            payload += struct.pack("!i", -1)
        else:
            payload += struct.pack("!i", len(value)) + value
    return _msg("D", bytes(payload))


_INTEGER_OIDS = frozenset({PostgresOID.INT2, PostgresOID.INT4, PostgresOID.INT8})


def _from_text(value: str, oid: int) -> Any:
    """Apply the type's input function to a text-format parameter."""
    if oid in _INTEGER_OIDS:
        return int(value)
    if oid == PostgresOID.BOOL:
        return value.lower() in ("t", "true", "1", "on", "yes")
    return value


def _read_cstr(payload: bytes, pos: int) -> tuple[str, int]:
    end = payload.index(0, pos)
    return payload[pos:end].decode(), end + 1


@dataclass
class _Statement:
    sql: str
    param_oids: list[int]


@dataclass
class _Portal:
    statement: _Statement
    params: list[Any]
    result_formats: list[int]


class FakeBackend:
    """In-memory server side of one connection."""

    def __init__(
        self,
        *,
        auth: str = "trust",
        user: str = "tester",
        password: str = "secret",
        server_version: str = "16.2",
    ) -> None:
        self.auth = auth
        self.user = user
        self.password = password
        self.server_version = server_version
        self.scripts: dict[str, Script] = {}
        self.status = "I"
        self.backend_pid = 4242

        # Observations for assertions
        self.messages: list[tuple[str, Any]] = []
        self.parsed: list[tuple[str, str, list[int]]] = []
        self.bound: list[tuple[str, list[Any], list[int]]] = []
        self.closed_statements: list[str] = []
        self.simple_queries: list[str] = []
        self.writes = 0
        self.startup_params: dict[str, str] = {}
        self.terminated = False

        self._inbox = bytearray()
        self._outbox = bytearray()
        self._phase = "startup"
        self._statements: dict[str, _Statement] = {}
        self._portals: dict[str, _Portal] = {}
        self._skip_until_sync = False
        self._hang_on: set[str] = set()
        self._disconnect_on: set[str] = set()
        self._hanging = False
        self._eof = False
        self._closed = False
        self._event: asyncio.Event | None = None
        self._scram: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Scripting
    # ------------------------------------------------------------------

    def script(self, sql: str, **kwargs: Any) -> Script:
        script = Script(**kwargs)
        self.scripts[sql.strip()] = script
        return script

    def hang_on(self, sql: str) -> None:
        """Stop answering once *sql* arrives (simulates a stuck server)."""
        self._hang_on.add(sql.strip())

    def disconnect_on(self, sql: str) -> None:
        """Drop the connection once *sql* arrives."""
        self._disconnect_on.add(sql.strip())

    def parse_count(self, sql: str) -> int:
        return sum(1 for _, parsed_sql, _ in self.parsed if parsed_sql == sql.strip())

    def statement_names(self) -> list[str]:
        return sorted(name for name in self._statements if name)

    def message_types(self) -> list[str]:
        return [kind for kind, _ in self.messages]

    # ------------------------------------------------------------------
    # ByteStream
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionResetError("fake stream closed")
        self.writes += 1
        self._inbox += data
        self._process()
        self._wake()

    async def recv(self) -> bytes:
        while not self._outbox:
            if self._eof or self._closed:
                return b""
            if self._event is None:
                self._event = asyncio.Event()
            self._event.clear()
            await self._event.wait()
        data = bytes(self._outbox)
        self._outbox.clear()
        return data

    async def close(self) -> None:
        self._closed = True
        self._wake()

    def _wake(self) -> None:
        if self._event is not None:
            self._event.set()

    def push(self, data: bytes) -> None:
        """Queue raw backend bytes (unsolicited messages)."""
        self._outbox += data
        self._wake()

    # ------------------------------------------------------------------
    # Frontend parsing
    # ------------------------------------------------------------------

    def _process(self) -> None:
        while not self._hanging and not self._eof:
            if self._phase == "startup":
                if len(self._inbox) < 4:
                    return
                (length,) = struct.unpack_from("!I", self._inbox, 0)
                if len(self._inbox) < length:
                    return
                body = bytes(self._inbox[4:length])
                del self._inbox[:length]
                self._handle_startup(body)
                continue
            if len(self._inbox) < 5:
                return
            msg_type = chr(self._inbox[0])
            (length,) = struct.unpack_from("!I", self._inbox, 1)
            if len(self._inbox) < length + 1:
                return
            payload = bytes(self._inbox[5 : length + 1])
            del self._inbox[: length + 1]
            self._dispatch(msg_type, payload)

    def _handle_startup(self, body: bytes) -> None:
        (version,) = struct.unpack_from("!I", body, 0)
        assert version == 196608, version
        parts = body[4:].split(b"\x00")
        for key, value in zip(parts[0::2], parts[1::2]):
            if key:
                self.startup_params[key.decode()] = value.decode()
        self.messages.append(("startup", dict(self.startup_params)))

        if self.startup_params.get("user") != self.user:
            self._outbox += _error(
                "28000", f'role "{self.startup_params.get("user")}" does not exist', "FATAL"
            )
            self._eof = True
            return

        if self.auth == "trust":
            self._finish_auth()
        elif self.auth == "cleartext":
            self._outbox += _msg("R", struct.pack("!I", 3))
            self._phase = "password"
        elif self.auth == "md5":
            self._scram["salt"] = b"\x01\x02\x03\x04"
            self._outbox += _msg("R", struct.pack("!I", 5) + self._scram["salt"])
            self._phase = "password"
        elif self.auth == "scram":
            self._outbox += _msg("R", struct.pack("!I", 10) + b"SCRAM-SHA-256\x00\x00")
            self._phase = "sasl_initial"
        elif self.auth == "gss":
            self._outbox += _msg("R", struct.pack("!I", 7))
            self._phase = "password"
        else:
            raise ValueError(self.auth)

    def _finish_auth(self) -> None:
        self._outbox += _msg("R", struct.pack("!I", 0))
        for key, value in (
            ("server_version", self.server_version),
            ("server_encoding", "UTF8"),
            ("client_encoding", "UTF8"),
            ("TimeZone", "UTC"),
            ("integer_datetimes", "on"),
        ):
            self._outbox += _msg("S", _cstr(key) + _cstr(value))
        self._outbox += _msg("K", struct.pack("!II", self.backend_pid, 99))
        self._outbox += _msg("Z", b"I")
        self._phase = "ready"

    def _auth_failed(self) -> None:
        self._outbox += _error(
            "28P01", f'password authentication failed for user "{self.user}"', "FATAL"
        )
        self._eof = True

    def _dispatch(self, msg_type: str, payload: bytes) -> None:
        if self._phase == "password":
            self._handle_password(payload)
            return
        if self._phase == "sasl_initial":
            self._handle_sasl_initial(payload)
            return
        if self._phase == "sasl_final":
            self._handle_sasl_final(payload)
            return

        if msg_type == "X":
            self.messages.append(("X", None))
            self.terminated = True
            self._eof = True
            return
        if self._skip_until_sync and msg_type != "S":
            self.messages.append((msg_type, "skipped"))
            return

        handler = {
            "Q": self._on_query,
            "P": self._on_parse,
            "B": self._on_bind,
            "D": self._on_describe,
            "E": self._on_execute,
            "C": self._on_close,
            "S": self._on_sync,
        }[msg_type]
        handler(payload)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _handle_password(self, payload: bytes) -> None:
        supplied = payload.rstrip(b"\x00").decode()
        self.messages.append(("password", supplied))
        if self.auth == "cleartext":
            ok = supplied == self.password
        else:
            inner = hashlib.md5((self.password + self.user).encode()).hexdigest()
            expected = "md5" + hashlib.md5(inner.encode() + self._scram["salt"]).hexdigest()
            ok = supplied == expected
        if ok:
            self._finish_auth()
        else:
            self._auth_failed()

    def _handle_sasl_initial(self, payload: bytes) -> None:
        mechanism, pos = _read_cstr(payload, 0)
        (length,) = struct.unpack_from("!i", payload, pos)
        client_first = payload[pos + 4 : pos + 4 + length].decode()
        self.messages.append(("sasl_initial", mechanism))
        assert client_first.startswith("n,,")
        client_first_bare = client_first[3:]
        client_nonce = dict(p.split("=", 1) for p in client_first_bare.split(","))["r"]
        nonce = client_nonce + "fakeservernonce"
        server_first = (
            f"r={nonce},s={base64.b64encode(SCRAM_SALT).decode()},i={SCRAM_ITERATIONS}"
        )
        self._scram.update(
            client_first_bare=client_first_bare, server_first=server_first, nonce=nonce
        )
        self._outbox += _msg("R", struct.pack("!I", 11) + server_first.encode())
        self._phase = "sasl_final"

    def _handle_sasl_final(self, payload: bytes) -> None:
        client_final = payload.decode()
        without_proof, _, proof_b64 = client_final.rpartition(",p=")
        salted = hashlib.pbkdf2_hmac(
            "sha256", self.password.encode(), SCRAM_SALT, SCRAM_ITERATIONS
        )
        client_key = hmac.new(salted, b"Client Key", hashlib.sha256).digest()
        stored_key = hashlib.sha256(client_key).digest()
        auth_message = ",".join(
            [self._scram["client_first_bare"], self._scram["server_first"], without_proof]
        )
        signature = hmac.new(stored_key, auth_message.encode(), hashlib.sha256).digest()
        proof = base64.b64decode(proof_b64)
        recovered = bytes(a ^ b for a, b in zip(proof, signature))
        if hashlib.sha256(recovered).digest() != stored_key:
            self._auth_failed()
            return
        server_key = hmac.new(salted, b"Server Key", hashlib.sha256).digest()
        server_sig = hmac.new(server_key, auth_message.encode(), hashlib.sha256).digest()
        final = "v=" + base64.b64encode(server_sig).decode()
        self._outbox += _msg("R", struct.pack("!I", 12) + final.encode())
        self._finish_auth()

    # ------------------------------------------------------------------
    # SQL handling
    # ------------------------------------------------------------------

    def _fail(self, code: str, message: str, **extra: str) -> None:
        self._outbox += _error(code, message, **extra)
        if self.status == "T":
            self.status = "E"

    def _check_stop(self, sql: str) -> bool:
        key = sql.strip()
        if key in self._hang_on:
            self._hanging = True
            return True
        if key in self._disconnect_on:
            self._eof = True
            return True
        return False

    def _transaction_command(self, sql: str) -> str | None:
        """Apply a transaction-control command; returns its tag or None."""
        match = _TXN_RE.match(sql)
        if match is None:
            return None
        verb = match.group(1).upper()
        rest = match.group(2).strip().upper()
        if verb in ("BEGIN", "START TRANSACTION"):
            if self.status == "I":
                self.status = "T"
            return "BEGIN"
        if verb in ("COMMIT", "END"):
            failed = self.status == "E"
            self.status = "I"
            return "ROLLBACK" if failed else "COMMIT"
        if verb in ("ROLLBACK", "ABORT"):
            if rest.startswith("TO"):
                self.status = "T"
            else:
                self.status = "I"
            return "ROLLBACK"
        if verb == "SAVEPOINT":
            return "SAVEPOINT"
        if verb == "RELEASE":
            return "RELEASE"
        if verb == "SET":
            return "SET"
        return None

    def _script_for(self, sql: str) -> Script:
        script = self.scripts.get(sql.strip())
        if script is None:
            raise FakeError("42601", f"fake backend has no script for: {sql.strip()}")
        return script

    def _run(self, sql: str, params: list[Any]) -> tuple[Script, list[Sequence[Any]]]:
        if self.status == "E" and not re.match(r"^\s*(ROLLBACK|ABORT|COMMIT|END)\b", sql, re.I):
            raise FakeError(
                "25P02",
                "current transaction is aborted, commands ignored until end of transaction block",
            )
        script = self.scripts.get(sql.strip())
        if script is None:
            tag = self._transaction_command(sql)
            if tag is not None:
                return Script(tag=tag), []
        script = self._script_for(sql)
        if script.error is not None:
            code, message = script.error
            raise FakeError(code, message)
        rows = script.rows(params) if callable(script.rows) else script.rows
        rows = list(rows)
        for key, value in script.parameter_status.items():
            self._outbox += _msg("S", _cstr(key) + _cstr(value))
        if script.notice:
            self._outbox += _error("00000", script.notice, "NOTICE")
        return script, rows

    # -- simple protocol ------------------------------------------------

    def _on_query(self, payload: bytes) -> None:
        sql = payload.rstrip(b"\x00").decode()
        self.messages.append(("Q", sql))
        self.simple_queries.append(sql)
        if self._check_stop(sql):
            return
        if not sql.strip():
            self._outbox += _msg("I")
        else:
            try:
                script, rows = self._run(sql, [])
            except FakeError as e:
                self._fail(e.code, e.message, **e.fields)
            else:
                if script.columns:
                    self._outbox += _row_description(script.columns, 0)
                    for row in rows:
                        self._outbox += _data_row(
                            [None if v is None else str(v).encode() for v in row]
                        )
                self._outbox += _msg("C", _cstr(script.command_tag(len(rows))))
        self._outbox += _msg("Z", self.status.encode())

    # -- extended protocol ---------------------------------------------

    def _on_parse(self, payload: bytes) -> None:
        name, pos = _read_cstr(payload, 0)
        sql, pos = _read_cstr(payload, pos)
        (count,) = struct.unpack_from("!H", payload, pos)
        oids = list(struct.unpack_from(f"!{count}I", payload, pos + 2))
        self.messages.append(("P", name))
        self.parsed.append((name, sql.strip(), oids))
        if self._check_stop(sql):
            return
        if name and name in self._statements:
            self._extended_error("42P05", f'prepared statement "{name}" already exists')
            return
        script = self.scripts.get(sql.strip())
        if script is None and _TXN_RE.match(sql) is None:
            self._extended_error("42601", f"fake backend has no script for: {sql.strip()}")
            return
        if script is not None and script.parse_error is not None:
            self._extended_error(*script.parse_error)
            return
        declared = list(script.param_types) if script is not None else []
        resolved = [
            oid if oid else (declared[i] if i < len(declared) else PostgresOID.TEXT)
            for i, oid in enumerate(oids)
        ]
        resolved += declared[len(oids):]
        self._statements[name] = _Statement(sql.strip(), resolved)
        self._outbox += _msg("1")

    def _on_bind(self, payload: bytes) -> None:
        portal, pos = _read_cstr(payload, 0)
        name, pos = _read_cstr(payload, pos)
        (nfmt,) = struct.unpack_from("!H", payload, pos)
        pos += 2
        formats = list(struct.unpack_from(f"!{nfmt}h", payload, pos))
        pos += 2 * nfmt
        (nparams,) = struct.unpack_from("!H", payload, pos)
        pos += 2
        raw: list[bytes | None] = []
        for _ in range(nparams):
            (length,) = struct.unpack_from("!i", payload, pos)
            pos += 4
            if length == -1:
                raw.append(None)
            else:
                raw.append(payload[pos : pos + length])
                pos += length
        (nres,) = struct.unpack_from("!H", payload, pos)
        pos += 2
        result_formats = list(struct.unpack_from(f"!{nres}h", payload, pos))
        self.messages.append(("B", name))

        statement = self._statements.get(name)
        if statement is None:
            self._extended_error("26000", f'prepared statement "{name}" does not exist')
            return
        if len(raw) != len(statement.param_oids):
            self._extended_error(
                "08P01",
                f"bind message supplies {len(raw)} parameters, but prepared statement "
                f'"{name}" requires {len(statement.param_oids)}',
            )
            return
        params: list[Any] = []
        for i, value in enumerate(raw):
            fmt = formats[0] if len(formats) == 1 else (formats[i] if formats else 0)
            if value is None:
                params.append(None)
            elif fmt == 0:
                params.append(_from_text(value.decode(), statement.param_oids[i]))
            else:
                params.append(default_registry.decode(value, statement.param_oids[i]))
        self.bound.append((name, params, formats))
        self._portals[portal] = _Portal(statement, params, result_formats)
        self._outbox += _msg("2")

    def _columns_for(self, sql: str, portal: bool) -> list[tuple[str, int]]:
        script = self.scripts.get(sql)
        if script is None:
            return []
        if portal and script.portal_columns is not None:
            return script.portal_columns
        return script.columns

    def _on_describe(self, payload: bytes) -> None:
        kind = chr(payload[0])
        name, _ = _read_cstr(payload, 1)
        self.messages.append(("D" + kind, name))
        if kind == "S":
            statement = self._statements.get(name)
            if statement is None:
                self._extended_error("26000", f'prepared statement "{name}" does not exist')
                return
            oids = statement.param_oids
            self._outbox += _msg(
                "t", struct.pack("!H", len(oids)) + b"".join(struct.pack("!I", o) for o in oids)
            )
            columns = self._columns_for(statement.sql, portal=False)
            fmt = 0
        else:
            portal = self._portals.get(name)
            if portal is None:
                self._extended_error("34000", f'portal "{name}" does not exist')
                return
            columns = self._columns_for(portal.statement.sql, portal=True)
            fmt = 1 if portal.result_formats == [1] else 0
        if columns:
            self._outbox += _row_description(columns, fmt)
        else:
            self._outbox += _msg("n")

    def _on_execute(self, payload: bytes) -> None:
        name, _ = _read_cstr(payload, 0)
        self.messages.append(("E", name))
        portal = self._portals.pop(name, None)
        if portal is None:
            self._extended_error("34000", f'portal "{name}" does not exist')
            return
        sql = portal.statement.sql
        try:
            script, rows = self._run(sql, portal.params)
        except FakeError as e:
            self._extended_error(e.code, e.message, **e.fields)
            return
        columns = self._columns_for(sql, portal=True) if sql in self.scripts else []
        binary = portal.result_formats == [1]
        for row in rows:
            cells: list[bytes | None] = []
            for value, (_, oid) in zip(row, columns):
                if value is None:
                    cells.append(None)
                elif binary:
                    cells.append(default_registry.encode(value, oid))
                else:
                    cells.append(str(value).encode())
            self._outbox += _data_row(cells)
        self._outbox += _msg("C", _cstr(script.command_tag(len(rows))))

    def _on_close(self, payload: bytes) -> None:
        kind = chr(payload[0])
        name, _ = _read_cstr(payload, 1)
        self.messages.append(("C" + kind, name))
        if kind == "S":
            self._statements.pop(name, None)
            self.closed_statements.append(name)
        else:
            self._portals.pop(name, None)
        self._outbox += _msg("3")

    def _on_sync(self, payload: bytes) -> None:
        self.messages.append(("S", None))
        self._skip_until_sync = False
        self._portals.pop("", None)
        self._outbox += _msg("Z", self.status.encode())

    def _extended_error(self, code: str, message: str, **extra: str) -> None:
        self._fail(code, message, **extra)
        self._skip_until_sync = True
