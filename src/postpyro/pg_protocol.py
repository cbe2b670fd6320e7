"""PostgreSQL wire protocol v3.0 over async byte streams.

Transport-agnostic implementation that can be used over TCP, WebSocket or any
other async byte transport. Supports startup, authentication (trust,
cleartext, MD5, SCRAM-SHA-256), the simple query protocol, and a pipelined
extended query protocol whose responses are reconciled strictly in the order
the requests were queued.
"""

from __future__ import annotations

import base64
import collections
import hashlib
import hmac
import secrets
import struct
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, TypeVar

import structlog

from .errors import (
    AuthenticationError,
    ConnectionLostError,
    DatabaseError,
    InterfaceError,
    NotSupportedError,
    ProtocolError,
    error_from_fields,
)
from .session import Session, TransactionStatus

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PG_PROTOCOL_VERSION = 196608  # (3 << 16) | 0

# Frontend (client -> server) message types
QUERY_MSG = ord("Q")
PARSE_MSG = ord("P")
BIND_MSG = ord("B")
DESCRIBE_MSG = ord("D")
EXECUTE_MSG = ord("E")
SYNC_MSG = ord("S")
TERMINATE_MSG = ord("X")
PASSWORD_MSG = ord("p")
CLOSE_MSG = ord("C")

# Backend (server -> client) message types
AUTH_MSG = ord("R")
PARAM_STATUS_MSG = ord("S")
BACKEND_KEY_MSG = ord("K")
READY_MSG = ord("Z")
ROW_DESC_MSG = ord("T")
PARAM_DESC_MSG = ord("t")
DATA_ROW_MSG = ord("D")
COMMAND_COMPLETE_MSG = ord("C")
ERROR_RESPONSE_MSG = ord("E")
NOTICE_RESPONSE_MSG = ord("N")
NOTIFICATION_MSG = ord("A")
NEGOTIATE_VERSION_MSG = ord("v")
PARSE_COMPLETE_MSG = ord("1")
BIND_COMPLETE_MSG = ord("2")
CLOSE_COMPLETE_MSG = ord("3")
NO_DATA_MSG = ord("n")
EMPTY_QUERY_MSG = ord("I")
PORTAL_SUSPENDED_MSG = ord("s")

# Authentication subtypes
AUTH_OK = 0
AUTH_KERBEROS = 2
AUTH_CLEARTEXT = 3
AUTH_MD5 = 5
AUTH_GSS = 7
AUTH_GSS_CONTINUE = 8
AUTH_SSPI = 9
AUTH_SASL = 10
AUTH_SASL_CONTINUE = 11
AUTH_SASL_FINAL = 12

_AUTH_METHOD_NAMES = {
    AUTH_OK: "trust",
    AUTH_KERBEROS: "kerberos",
    AUTH_CLEARTEXT: "cleartext",
    AUTH_MD5: "md5",
    AUTH_GSS: "gss",
    AUTH_SSPI: "sspi",
    AUTH_SASL: "sasl",
}

MAX_NOTICES = 100
MAX_NOTIFICATIONS = 1000

# Raised by the payload parsers on truncated or garbled frames
_MALFORMED_PAYLOAD_ERRORS = (struct.error, ValueError, IndexError, UnicodeDecodeError)

# ErrorResponse / NoticeResponse field type -> name mapping
_ERROR_FIELD_NAMES: dict[int, str] = {
    ord("S"): "severity",
    ord("V"): "severity_nonlocalized",
    ord("C"): "code",
    ord("M"): "message",
    ord("D"): "detail",
    ord("H"): "hint",
    ord("P"): "position",
    ord("p"): "internal_position",
    ord("q"): "internal_query",
    ord("W"): "where",
    ord("s"): "schema",
    ord("t"): "table",
    ord("c"): "column",
    ord("d"): "datatype",
    ord("n"): "constraint",
    ord("F"): "file",
    ord("L"): "line",
    ord("R"): "routine",
}

# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class FieldDescription:
    """Metadata for a single column in a query result."""

    name: str
    table_oid: int
    column_index: int
    type_oid: int
    type_size: int
    type_modifier: int
    format_code: int  # 0 = text, 1 = binary


@dataclass
class PGQueryResult:
    """Result of a query execution via the wire protocol."""

    fields: list[FieldDescription]
    rows: list[list[bytes | None]]
    command_tag: str
    suspended: bool = False

    @property
    def rowcount(self) -> int:
        return rowcount_from_tag(self.command_tag)


@dataclass
class StatementDescription:
    """Response to Describe(Statement): parameter OIDs and result columns."""

    param_oids: list[int]
    fields: list[FieldDescription]


@dataclass(frozen=True)
class Notification:
    """Asynchronous NotificationResponse (LISTEN/NOTIFY)."""

    pid: int
    channel: str
    payload: str


@dataclass
class _Step:
    kind: str
    name: str = ""


def rowcount_from_tag(command_tag: str) -> int:
    """Affected row count from a CommandComplete tag.

    ``INSERT 0 5`` -> 5, ``UPDATE 3`` -> 3, ``SELECT 2`` -> 2; tags without
    a count (``CREATE TABLE``) -> 0.
    """
    parts = command_tag.split()
    if len(parts) >= 2 and parts[-1].isdigit():
        return int(parts[-1])
    return 0


# ---------------------------------------------------------------------------
# Buffered reader
# ---------------------------------------------------------------------------


class _BufferedReader:
    """Buffered async reader for exact byte counts.

    Transport chunk boundaries (TCP segments, WebSocket frames) do NOT align
    with PG message boundaries. This reader maintains an internal buffer and
    serves exact byte counts.
    """

    __slots__ = ("_recv", "_buffer", "_pos")

    def __init__(self, recv_fn: Callable[[], Awaitable[bytes]]) -> None:
        self._recv = recv_fn
        self._buffer = bytearray()
        self._pos = 0

    async def read_exact(self, n: int) -> bytes:
        """Read exactly *n* bytes, pulling from the source as needed."""
        while (self._pos + n) > len(self._buffer):
            chunk = await self._recv()
            if not chunk:
                raise ConnectionLostError("Connection closed while reading")
            self._buffer.extend(chunk)

        result = bytes(self._buffer[self._pos : self._pos + n])
        self._pos += n

        # Compact periodically to avoid unbounded growth
        if self._pos > 65536:
            del self._buffer[: self._pos]
            self._pos = 0

        return result

    async def read_message(self) -> tuple[int, bytes]:
        """Read a complete backend message.

        Returns ``(message_type, payload)`` where *payload* does **not**
        include the 4-byte length field.
        """
        header = await self.read_exact(5)  # 1 type + 4 length
        msg_type = header[0]
        (length,) = struct.unpack("!i", header[1:5])
        payload_len = length - 4
        if payload_len < 0:
            raise ProtocolError(
                f"Invalid message length {length} for type {chr(msg_type)!r}"
            )
        payload = await self.read_exact(payload_len) if payload_len > 0 else b""
        return msg_type, payload


# ---------------------------------------------------------------------------
# Message builders (frontend -> backend)
# ---------------------------------------------------------------------------


def _cstr(value: str) -> bytes:
    encoded = value.encode()
    if b"\x00" in encoded:
        raise InterfaceError("Strings sent to the server cannot contain NUL bytes")
    return encoded + b"\x00"


def _build_startup_message(user: str, database: str, **params: str) -> bytes:
    """Build a StartupMessage (no type byte, special format)."""
    body = bytearray(struct.pack("!I", PG_PROTOCOL_VERSION))
    body += b"user\x00" + _cstr(user)
    body += b"database\x00" + _cstr(database)
    for key, value in params.items():
        body += _cstr(key) + _cstr(value)
    body += b"\x00"
    length = len(body) + 4
    return struct.pack("!I", length) + bytes(body)


def _build_message(msg_type: int, payload: bytes = b"") -> bytes:
    length = len(payload) + 4
    return bytes([msg_type]) + struct.pack("!I", length) + payload


def _build_query_message(sql: str) -> bytes:
    return _build_message(QUERY_MSG, _cstr(sql))


def _build_parse_message(
    statement_name: str, sql: str, param_oids: Sequence[int]
) -> bytes:
    payload = bytearray()
    payload += _cstr(statement_name)
    payload += _cstr(sql)
    payload += struct.pack("!H", len(param_oids))
    for oid in param_oids:
        payload += struct.pack("!I", oid)
    return _build_message(PARSE_MSG, bytes(payload))


def _build_bind_message(
    portal_name: str,
    statement_name: str,
    params: Sequence[bytes | None],
    param_formats: Sequence[int] = (),
    result_formats: Sequence[int] = (),
) -> bytes:
    payload = bytearray()
    payload += _cstr(portal_name)
    payload += _cstr(statement_name)
    # Parameter format codes: none = all text, one = applies to all
    payload += struct.pack("!H", len(param_formats))
    for fmt in param_formats:
        payload += struct.pack("!h", fmt)
    # Parameter values
    payload += struct.pack("!H", len(params))
    for param in params:
        if param is None:
            payload += struct.pack("!i", -1)
        else:
            payload += struct.pack("!i", len(param)) + param
    payload += struct.pack("!H", len(result_formats))
    for fmt in result_formats:
        payload += struct.pack("!h", fmt)
    return _build_message(BIND_MSG, bytes(payload))


def _build_describe_message(describe_type: str, name: str = "") -> bytes:
    payload = describe_type.encode("ascii") + _cstr(name)
    return _build_message(DESCRIBE_MSG, payload)


def _build_execute_message(portal_name: str = "", max_rows: int = 0) -> bytes:
    payload = _cstr(portal_name) + struct.pack("!I", max_rows)
    return _build_message(EXECUTE_MSG, payload)


def _build_close_message(close_type: str, name: str) -> bytes:
    return _build_message(CLOSE_MSG, close_type.encode("ascii") + _cstr(name))


def _build_sync_message() -> bytes:
    return _build_message(SYNC_MSG)


def _build_terminate_message() -> bytes:
    return _build_message(TERMINATE_MSG)


def _build_password_message(password: str) -> bytes:
    return _build_message(PASSWORD_MSG, _cstr(password))


def _build_sasl_initial_response(mechanism: str, data: bytes) -> bytes:
    payload = _cstr(mechanism) + struct.pack("!I", len(data)) + data
    return _build_message(PASSWORD_MSG, payload)


def _build_sasl_response(data: bytes) -> bytes:
    return _build_message(PASSWORD_MSG, data)


# ---------------------------------------------------------------------------
# Response parsers
# ---------------------------------------------------------------------------


def _parse_error_fields(payload: bytes) -> dict[str, str]:
    """Parse ErrorResponse / NoticeResponse payload into field dict."""
    fields: dict[str, str] = {}
    pos = 0
    while pos < len(payload):
        field_type = payload[pos]
        pos += 1
        if field_type == 0:
            break
        null_pos = payload.index(0, pos)
        value = payload[pos:null_pos].decode("utf-8", errors="replace")
        pos = null_pos + 1
        name = _ERROR_FIELD_NAMES.get(field_type, f"unknown_{chr(field_type)}")
        fields[name] = value
    return fields


def _parse_row_description(payload: bytes) -> list[FieldDescription]:
    """Parse a RowDescription ('T') message payload."""
    pos = 0
    (num_fields,) = struct.unpack_from("!H", payload, pos)
    pos += 2
    fields: list[FieldDescription] = []
    for _ in range(num_fields):
        null_pos = payload.index(0, pos)
        name = payload[pos:null_pos].decode("utf-8", errors="replace")
        pos = null_pos + 1
        table_oid, col_idx, type_oid, type_size, type_mod, fmt = struct.unpack_from(
            "!IhIhih", payload, pos
        )
        pos += 18
        fields.append(
            FieldDescription(
                name=name,
                table_oid=table_oid,
                column_index=col_idx,
                type_oid=type_oid,
                type_size=type_size,
                type_modifier=type_mod,
                format_code=fmt,
            )
        )
    return fields


def _parse_parameter_description(payload: bytes) -> list[int]:
    """Parse a ParameterDescription ('t') message payload."""
    (count,) = struct.unpack_from("!H", payload, 0)
    return list(struct.unpack_from(f"!{count}I", payload, 2))


def _parse_data_row(payload: bytes) -> list[bytes | None]:
    """Parse a DataRow ('D') message payload."""
    pos = 0
    (num_cols,) = struct.unpack_from("!H", payload, pos)
    pos += 2
    values: list[bytes | None] = []
    for _ in range(num_cols):
        (col_len,) = struct.unpack_from("!i", payload, pos)
        pos += 4
        if col_len == -1:
            values.append(None)
        else:
            if col_len < 0 or pos + col_len > len(payload):
                raise ProtocolError(f"Invalid DataRow column length {col_len}")
            values.append(payload[pos : pos + col_len])
            pos += col_len
    return values


def _parse_command_tag(payload: bytes) -> str:
    return payload[: payload.index(0)].decode()


def _parse_backend_key(payload: bytes) -> tuple[int, int]:
    return struct.unpack_from("!II", payload, 0)


def _parse_authentication(payload: bytes) -> tuple[int, bytes]:
    """Split an Authentication ('R') payload into its code and data."""
    (auth_type,) = struct.unpack_from("!I", payload, 0)
    return auth_type, payload[4:]


def _parse_negotiate_version(payload: bytes) -> tuple[int, list[str]]:
    minor, count = struct.unpack_from("!ii", payload, 0)
    options = payload[8:].split(b"\x00")[:count]
    return minor, [option.decode() for option in options]


def _parse_sasl_mechanisms(payload: bytes) -> list[str]:
    return [mech.decode() for mech in payload.split(b"\x00") if mech]


def _parse_parameter_status(payload: bytes) -> tuple[str, str]:
    null1 = payload.index(0)
    key = payload[:null1].decode()
    null2 = payload.index(0, null1 + 1)
    value = payload[null1 + 1 : null2].decode()
    return key, value


def _parse_notification(payload: bytes) -> Notification:
    (pid,) = struct.unpack_from("!i", payload, 0)
    null1 = payload.index(0, 4)
    channel = payload[4:null1].decode()
    null2 = payload.index(0, null1 + 1)
    return Notification(pid, channel, payload[null1 + 1 : null2].decode())


# ---------------------------------------------------------------------------
# SCRAM-SHA-256 authentication
# ---------------------------------------------------------------------------


class _ScramSHA256:
    """SCRAM-SHA-256 SASL authentication handler (RFC 5802 / RFC 7677)."""

    MECHANISM = "SCRAM-SHA-256"

    def __init__(self, user: str, password: str, client_nonce: str | None = None) -> None:
        self._user = user
        self._password = password
        self._client_nonce = client_nonce or base64.b64encode(
            secrets.token_bytes(24)
        ).decode("ascii")
        self._client_first_bare = ""
        self._server_signature = b""

    def client_first_message(self) -> bytes:
        """Generate the client-first-message for SASLInitialResponse."""
        # The server takes the user name from the startup packet.
        self._client_first_bare = f"n=,r={self._client_nonce}"
        return f"n,,{self._client_first_bare}".encode()

    def process_server_first(self, server_first: str) -> bytes:
        """Process server-first-message and return client-final-message."""
        parts: dict[str, str] = {}
        for item in server_first.split(","):
            key, _, value = item.partition("=")
            parts[key] = value

        try:
            server_nonce = parts["r"]
            salt = base64.b64decode(parts["s"])
            iterations = int(parts["i"])
        except (KeyError, ValueError) as e:
            raise AuthenticationError(
                f"SCRAM: Malformed server-first-message: {server_first}"
            ) from e

        if not server_nonce.startswith(self._client_nonce):
            raise AuthenticationError(
                "SCRAM: Server nonce does not start with client nonce"
            )

        salted_password = hashlib.pbkdf2_hmac(
            "sha256", self._password.encode(), salt, iterations
        )
        client_key = hmac.new(
            salted_password, b"Client Key", hashlib.sha256
        ).digest()
        stored_key = hashlib.sha256(client_key).digest()

        channel_binding = base64.b64encode(b"n,,").decode("ascii")
        client_final_without_proof = f"c={channel_binding},r={server_nonce}"
        auth_message = (
            f"{self._client_first_bare},{server_first},{client_final_without_proof}"
        )

        client_signature = hmac.new(
            stored_key, auth_message.encode(), hashlib.sha256
        ).digest()
        client_proof = bytes(a ^ b for a, b in zip(client_key, client_signature))

        server_key = hmac.new(
            salted_password, b"Server Key", hashlib.sha256
        ).digest()
        self._server_signature = hmac.new(
            server_key, auth_message.encode(), hashlib.sha256
        ).digest()

        proof_b64 = base64.b64encode(client_proof).decode("ascii")
        return f"{client_final_without_proof},p={proof_b64}".encode()

    def verify_server_final(self, server_final: str) -> None:
        """Verify the server-final-message signature."""
        if server_final.startswith("e="):
            raise AuthenticationError(f"SCRAM: Server rejected proof: {server_final[2:]}")
        if not server_final.startswith("v="):
            raise AuthenticationError(
                f"SCRAM: Invalid server-final-message: {server_final}"
            )
        try:
            server_sig = base64.b64decode(server_final[2:])
        except ValueError as e:
            raise AuthenticationError(
                f"SCRAM: Invalid server-final-message: {server_final}"
            ) from e
        if not hmac.compare_digest(server_sig, self._server_signature):
            raise AuthenticationError(
                "SCRAM: Server signature verification failed"
            )


def _md5_password(user: str, password: str, salt: bytes) -> str:
    inner = hashlib.md5(password.encode() + user.encode()).hexdigest()
    return "md5" + hashlib.md5(inner.encode() + salt).hexdigest()


# ---------------------------------------------------------------------------
# PGProtocol
# ---------------------------------------------------------------------------


class PGProtocol:
    """PostgreSQL wire protocol v3.0 handler.

    Transport-agnostic: *send_fn* and *recv_fn* provide the underlying
    byte stream (e.g. a TCP socket or WebSocket binary frames).

    Extended-query requests are queued with :meth:`parse`, :meth:`bind`,
    :meth:`describe_statement`, :meth:`describe_portal`, :meth:`execute`,
    :meth:`close_statement` and :meth:`sync`, then sent in one write by
    :meth:`flush`, which returns one outcome per queued step.
    """

    def __init__(
        self,
        send_fn: Callable[[bytes], Awaitable[None]],
        recv_fn: Callable[[], Awaitable[bytes]],
        session: Session | None = None,
    ) -> None:
        self._send = send_fn
        self._reader = _BufferedReader(recv_fn)
        self.session = session or Session()
        self.notices: collections.deque[dict[str, str]] = collections.deque(
            maxlen=MAX_NOTICES
        )
        self.notifications: collections.deque[Notification] = collections.deque(
            maxlen=MAX_NOTIFICATIONS
        )
        self.broken = False
        self._out = bytearray()
        self._steps: list[_Step] = []

    @property
    def transaction_status(self) -> TransactionStatus:
        return self.session.transaction_status

    @property
    def pending_steps(self) -> int:
        return len(self._steps)

    # ------------------------------------------------------------------
    # Startup & authentication
    # ------------------------------------------------------------------

    async def startup(
        self,
        user: str,
        password: str | None,
        database: str,
        **extra_params: str,
    ) -> dict[str, str]:
        """Perform PG startup handshake including authentication.

        Returns server parameter dict on success.
        """
        await self._write(_build_startup_message(user, database, **extra_params))
        await self._handle_authentication(user, password)

        # Read ParameterStatus*, BackendKeyData, ReadyForQuery
        while True:
            msg_type, payload = await self._read()
            if msg_type == PARAM_STATUS_MSG:
                key, value = self._decode(_parse_parameter_status, payload)
                self.session.parameters[key] = value
            elif msg_type == BACKEND_KEY_MSG:
                pid, secret = self._decode(_parse_backend_key, payload)
                self.session.backend_pid = pid
                self.session.backend_secret = secret
            elif msg_type == READY_MSG:
                self._set_ready(payload)
                logger.info(
                    "Session established",
                    backend_pid=self.session.backend_pid,
                    server_version=self.session.server_version,
                )
                return dict(self.session.parameters)
            elif msg_type == ERROR_RESPONSE_MSG:
                raise self._startup_error(self._decode(_parse_error_fields, payload))
            elif msg_type == NOTICE_RESPONSE_MSG:
                self._record_notice(payload)
            elif msg_type == NEGOTIATE_VERSION_MSG:
                self._negotiate_version(payload)
            else:
                raise self._unexpected(msg_type, "during startup")

    def _startup_error(self, fields: dict[str, str]) -> DatabaseError:
        message = fields.get("message", "unknown")
        sqlstate = fields.get("code")
        self.broken = True
        if sqlstate == "0A000" and "protocol" in message:
            return ProtocolError(message, sqlstate=sqlstate, fields=fields)
        return AuthenticationError(message, sqlstate=sqlstate, fields=fields)

    def _negotiate_version(self, payload: bytes) -> None:
        minor, unrecognized = self._decode(_parse_negotiate_version, payload)
        self.session.protocol_version = (3, minor)
        logger.warning(
            "Server negotiated protocol version",
            protocol_version=f"3.{minor}",
            unrecognized_options=unrecognized,
        )

    async def _handle_authentication(self, user: str, password: str | None) -> None:
        while True:
            msg_type, payload = await self._read()

            if msg_type == ERROR_RESPONSE_MSG:
                raise self._startup_error(self._decode(_parse_error_fields, payload))

            if msg_type == NEGOTIATE_VERSION_MSG:
                self._negotiate_version(payload)
                continue

            if msg_type != AUTH_MSG:
                raise self._unexpected(msg_type, "while expecting Authentication")

            auth_type, data = self._decode(_parse_authentication, payload)
            logger.debug(
                "Authentication requested",
                method=_AUTH_METHOD_NAMES.get(auth_type, str(auth_type)),
            )

            if auth_type == AUTH_OK:
                return

            if auth_type in (AUTH_CLEARTEXT, AUTH_MD5, AUTH_SASL) and password is None:
                self.broken = True
                raise AuthenticationError(
                    "Server requested password authentication but no password was given"
                )

            if auth_type == AUTH_CLEARTEXT:
                await self._write(_build_password_message(password))

            elif auth_type == AUTH_MD5:
                salt = data[:4]
                if len(salt) != 4:
                    self.broken = True
                    raise ProtocolError("Malformed server message: truncated MD5 salt")
                await self._write(
                    _build_password_message(_md5_password(user, password, salt))
                )

            elif auth_type == AUTH_SASL:
                await self._handle_sasl(user, password, data)

            else:
                self.broken = True
                raise NotSupportedError(
                    f"Unsupported authentication method: "
                    f"{_AUTH_METHOD_NAMES.get(auth_type, auth_type)}"
                )

    async def _handle_sasl(
        self, user: str, password: str, mechanisms_payload: bytes
    ) -> None:
        mechanisms = self._decode(_parse_sasl_mechanisms, mechanisms_payload)

        if _ScramSHA256.MECHANISM not in mechanisms:
            self.broken = True
            raise NotSupportedError(
                f"Server requires unsupported SASL mechanisms: {mechanisms}"
            )

        scram = _ScramSHA256(user, password)
        client_first = scram.client_first_message()
        await self._write(
            _build_sasl_initial_response(_ScramSHA256.MECHANISM, client_first)
        )

        payload = await self._read_auth(AUTH_SASL_CONTINUE, "SASLContinue")
        client_final = scram.process_server_first(self._decode(bytes.decode, payload))
        await self._write(_build_sasl_response(client_final))

        payload = await self._read_auth(AUTH_SASL_FINAL, "SASLFinal")
        scram.verify_server_final(self._decode(bytes.decode, payload))

        # AuthenticationOk follows (handled by the caller's loop)

    async def _read_auth(self, expected: int, label: str) -> bytes:
        msg_type, payload = await self._read()
        if msg_type == ERROR_RESPONSE_MSG:
            raise self._startup_error(self._decode(_parse_error_fields, payload))
        if msg_type != AUTH_MSG:
            raise self._unexpected(msg_type, f"while expecting {label}")
        auth_type, data = self._decode(_parse_authentication, payload)
        if auth_type != expected:
            self.broken = True
            raise ProtocolError(f"Expected {label}, got authentication code {auth_type}")
        return data

    # ------------------------------------------------------------------
    # Simple Query protocol
    # ------------------------------------------------------------------

    async def simple_query(self, sql: str) -> list[PGQueryResult]:
        """Execute using the Simple Query protocol (no parameters).

        Rows come back in text format.
        """
        await self._write(_build_query_message(sql))
        results, error = await self._read_simple_results()
        if error is not None:
            raise error
        return results

    async def simple_query_pipeline(self, statements: Sequence[str]) -> list[PGQueryResult]:
        """Send several Query messages in one write.

        Every statement produces its own ReadyForQuery. All responses are
        consumed before the first server error, if any, is raised. Returns
        one result per statement (the last one when a Query holds several
        statements).
        """
        if not statements:
            return []
        buffer = bytearray()
        for sql in statements:
            buffer += _build_query_message(sql)
        await self._write(bytes(buffer))

        results: list[PGQueryResult] = []
        first_error: DatabaseError | None = None
        for _ in statements:
            query_results, error = await self._read_simple_results()
            if error is not None and first_error is None:
                first_error = error
            results.append(
                query_results[-1]
                if query_results
                else PGQueryResult(fields=[], rows=[], command_tag="")
            )
        if first_error is not None:
            raise first_error
        return results

    async def _read_simple_results(
        self,
    ) -> tuple[list[PGQueryResult], DatabaseError | None]:
        results: list[PGQueryResult] = []
        current_fields: list[FieldDescription] = []
        current_rows: list[list[bytes | None]] = []
        error: DatabaseError | None = None

        while True:
            msg_type, payload = await self._read_sync_message()

            if msg_type == ROW_DESC_MSG:
                current_fields = self._decode(_parse_row_description, payload)
                current_rows = []
            elif msg_type == DATA_ROW_MSG:
                current_rows.append(self._decode(_parse_data_row, payload))
            elif msg_type == COMMAND_COMPLETE_MSG:
                results.append(
                    PGQueryResult(
                        fields=list(current_fields),
                        rows=list(current_rows),
                        command_tag=self._decode(_parse_command_tag, payload),
                    )
                )
                current_fields = []
                current_rows = []
            elif msg_type == EMPTY_QUERY_MSG:
                results.append(PGQueryResult(fields=[], rows=[], command_tag=""))
            elif msg_type == ERROR_RESPONSE_MSG:
                error = error_from_fields(self._decode(_parse_error_fields, payload))
            elif msg_type == READY_MSG:
                self._set_ready(payload)
                return results, error
            else:
                raise self._unexpected(msg_type, "in simple query response")

    # ------------------------------------------------------------------
    # Extended Query protocol (pipelined)
    # ------------------------------------------------------------------

    def parse(self, name: str, sql: str, param_oids: Sequence[int] = ()) -> None:
        self._queue(_Step("parse", name), _build_parse_message(name, sql, param_oids))

    def bind(
        self,
        statement: str,
        params: Sequence[bytes | None],
        param_formats: Sequence[int] = (),
        result_formats: Sequence[int] = (),
        portal: str = "",
    ) -> None:
        self._queue(
            _Step("bind", portal),
            _build_bind_message(portal, statement, params, param_formats, result_formats),
        )

    def describe_statement(self, name: str) -> None:
        self._queue(_Step("describe_statement", name), _build_describe_message("S", name))

    def describe_portal(self, portal: str = "") -> None:
        self._queue(_Step("describe_portal", portal), _build_describe_message("P", portal))

    def execute(self, portal: str = "", max_rows: int = 0) -> None:
        self._queue(_Step("execute", portal), _build_execute_message(portal, max_rows))

    def close_statement(self, name: str) -> None:
        self._queue(_Step("close", name), _build_close_message("S", name))

    def sync(self) -> None:
        self._queue(_Step("sync"), _build_sync_message())

    def _queue(self, step: _Step, message: bytes) -> None:
        if self.broken:
            raise InterfaceError("Protocol is desynchronized; the connection must be closed")
        self._steps.append(step)
        self._out += message

    def discard_pending(self) -> None:
        """Drop queued requests that were never sent."""
        self._steps.clear()
        self._out.clear()

    async def flush(self) -> list[Any]:
        """Send every queued request and reconcile the responses.

        Returns a list aligned with the queued steps: ``None`` for parse,
        bind, close and sync; a :class:`StatementDescription` for a
        statement describe; a list of :class:`FieldDescription` for a portal
        describe (empty on NoData); a :class:`PGQueryResult` for an execute.

        On an ErrorResponse the responses are drained up to ReadyForQuery
        and the mapped error is raised afterwards. A response that does not
        match the next queued step raises :class:`ProtocolError` and marks
        the protocol broken.
        """
        if not self._steps:
            return []
        if self._steps[-1].kind != "sync":
            raise InterfaceError("An extended-query batch must end with sync()")

        steps, data = self._steps, bytes(self._out)
        self._steps, self._out = [], bytearray()
        await self._write(data)

        outcomes: list[Any] = [None] * len(steps)
        first_error: DatabaseError | None = None
        portal_fields: list[FieldDescription] = []
        i = 0
        while i < len(steps):
            step = steps[i]
            if step.kind == "sync":
                msg_type, payload = await self._read_sync_message()
                if msg_type == ERROR_RESPONSE_MSG:
                    # Errors raised at Sync (e.g. a failing implicit commit).
                    if first_error is None:
                        fields = self._decode(_parse_error_fields, payload)
                        first_error = error_from_fields(fields)
                    continue
                if msg_type != READY_MSG:
                    raise self._unexpected(msg_type, "while expecting ReadyForQuery")
                self._set_ready(payload)
                i += 1
                continue

            try:
                outcomes[i] = await self._reconcile(step, portal_fields)
            except _ServerError as e:
                if first_error is None:
                    first_error = e.error
                # The server skips everything up to the next Sync.
                while steps[i].kind != "sync":
                    i += 1
                continue
            if step.kind == "describe_portal":
                portal_fields = outcomes[i]
            i += 1

        if first_error is not None:
            raise first_error
        return outcomes

    async def _reconcile(
        self, step: _Step, portal_fields: list[FieldDescription]
    ) -> Any:
        kind = step.kind
        if kind == "parse":
            await self._expect(PARSE_COMPLETE_MSG, "ParseComplete")
            return None
        if kind == "bind":
            await self._expect(BIND_COMPLETE_MSG, "BindComplete")
            return None
        if kind == "close":
            await self._expect(CLOSE_COMPLETE_MSG, "CloseComplete")
            return None
        if kind == "describe_statement":
            payload = await self._expect(PARAM_DESC_MSG, "ParameterDescription")
            param_oids = self._decode(_parse_parameter_description, payload)
            return StatementDescription(param_oids, await self._read_row_shape())
        if kind == "describe_portal":
            return await self._read_row_shape()
        if kind == "execute":
            rows: list[list[bytes | None]] = []
            while True:
                msg_type, payload = await self._read_sync_message()
                if msg_type == DATA_ROW_MSG:
                    rows.append(self._decode(_parse_data_row, payload))
                elif msg_type == COMMAND_COMPLETE_MSG:
                    return PGQueryResult(
                        fields=portal_fields,
                        rows=rows,
                        command_tag=self._decode(_parse_command_tag, payload),
                    )
                elif msg_type == EMPTY_QUERY_MSG:
                    return PGQueryResult(fields=[], rows=[], command_tag="")
                elif msg_type == PORTAL_SUSPENDED_MSG:
                    return PGQueryResult(
                        fields=portal_fields, rows=rows, command_tag="", suspended=True
                    )
                elif msg_type == ERROR_RESPONSE_MSG:
                    fields = self._decode(_parse_error_fields, payload)
                    raise _ServerError(error_from_fields(fields))
                else:
                    raise self._unexpected(msg_type, "in Execute response")
        raise InterfaceError(f"Unknown pipeline step {kind!r}")

    async def _read_row_shape(self) -> list[FieldDescription]:
        msg_type, payload = await self._read_sync_message()
        if msg_type == ROW_DESC_MSG:
            return self._decode(_parse_row_description, payload)
        if msg_type == NO_DATA_MSG:
            return []
        if msg_type == ERROR_RESPONSE_MSG:
            fields = self._decode(_parse_error_fields, payload)
            raise _ServerError(error_from_fields(fields))
        raise self._unexpected(msg_type, "while expecting RowDescription or NoData")

    async def _expect(self, expected: int, label: str) -> bytes:
        msg_type, payload = await self._read_sync_message()
        if msg_type == expected:
            return payload
        if msg_type == ERROR_RESPONSE_MSG:
            fields = self._decode(_parse_error_fields, payload)
            raise _ServerError(error_from_fields(fields))
        raise self._unexpected(msg_type, f"while expecting {label}")

    # ------------------------------------------------------------------
    # Terminate
    # ------------------------------------------------------------------

    async def terminate(self) -> None:
        """Send Terminate message to close the connection gracefully."""
        self.discard_pending()
        try:
            await self._send(_build_terminate_message())
        except (ConnectionLostError, OSError) as e:
            logger.debug("Terminate not delivered", error=str(e))
        self.broken = True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _write(self, data: bytes) -> None:
        try:
            await self._send(data)
        except ConnectionLostError:
            self.broken = True
            raise
        except OSError as e:
            self.broken = True
            raise ConnectionLostError(f"Failed to send to server: {e}") from e

    async def _read(self) -> tuple[int, bytes]:
        try:
            return await self._reader.read_message()
        except (ConnectionLostError, ProtocolError):
            self.broken = True
            raise
        except OSError as e:
            self.broken = True
            raise ConnectionLostError(f"Failed to read from server: {e}") from e

    async def _read_sync_message(self) -> tuple[int, bytes]:
        """Next message that belongs to the request/response flow.

        NoticeResponse, ParameterStatus and NotificationResponse may arrive
        at any time and are absorbed here.
        """
        while True:
            msg_type, payload = await self._read()
            if msg_type == NOTICE_RESPONSE_MSG:
                self._record_notice(payload)
            elif msg_type == PARAM_STATUS_MSG:
                key, value = self._decode(_parse_parameter_status, payload)
                self.session.parameters[key] = value
                logger.debug("Server parameter changed", name=key, value=value)
            elif msg_type == NOTIFICATION_MSG:
                self.notifications.append(self._decode(_parse_notification, payload))
            else:
                return msg_type, payload

    def _set_ready(self, payload: bytes) -> None:
        try:
            self.session.transaction_status = TransactionStatus.from_byte(payload[0])
        except (IndexError, ValueError) as e:
            self.broken = True
            raise ProtocolError(f"Invalid ReadyForQuery payload {payload!r}") from e

    def _record_notice(self, payload: bytes) -> None:
        notice = self._decode(_parse_error_fields, payload)
        self.notices.append(notice)
        logger.warning(
            "Server notice",
            severity=notice.get("severity"),
            sqlstate=notice.get("code"),
            message=notice.get("message"),
        )

    def _decode(self, parse: Callable[[bytes], _T], payload: bytes) -> _T:
        """Run a payload parser, treating any decoding failure as a desync."""
        try:
            return parse(payload)
        except ProtocolError:
            self.broken = True
            raise
        except _MALFORMED_PAYLOAD_ERRORS as e:
            self.broken = True
            raise ProtocolError(f"Malformed server message: {e}") from e

    def _unexpected(self, msg_type: int, context: str) -> ProtocolError:
        self.broken = True
        return ProtocolError(f"Unexpected message {chr(msg_type)!r} {context}")


class _ServerError(Exception):
    """Carries a mapped ErrorResponse while the pipeline drains."""

    def __init__(self, error: DatabaseError) -> None:
        super().__init__(str(error))
        self.error = error
