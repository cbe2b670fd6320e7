"""
Binary type codecs for PostgreSQL values.

Every supported type has an encoder (Python value -> binary wire bytes) and a
decoder (binary wire bytes -> Python value) registered under its OID. Array
types are derived from their element codec. Values travel in PostgreSQL's
binary format in both directions; NULL is represented by ``None`` and never
reaches a codec.
"""

from __future__ import annotations

import datetime
import ipaddress
import json
import operator
import struct
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, NamedTuple, Sequence

from .errors import NotSupportedError, TypeConversionError


# Common PostgreSQL OIDs for reference
class PostgresOID:
    """PostgreSQL type OIDs known to the codec registry."""

    UNSPECIFIED = 0

    BOOL = 16
    BYTEA = 17
    CHAR = 18
    NAME = 19
    INT8 = 20
    INT2 = 21
    INT4 = 23
    TEXT = 25
    OID = 26
    JSON = 114
    CIDR = 650
    FLOAT4 = 700
    FLOAT8 = 701
    UNKNOWN = 705
    INET = 869
    BPCHAR = 1042
    VARCHAR = 1043
    DATE = 1082
    TIME = 1083
    TIMESTAMP = 1114
    TIMESTAMPTZ = 1184
    NUMERIC = 1700
    UUID = 2950
    JSONB = 3802

    BOOL_ARRAY = 1000
    BYTEA_ARRAY = 1001
    CHAR_ARRAY = 1002
    NAME_ARRAY = 1003
    INT2_ARRAY = 1005
    INT4_ARRAY = 1007
    TEXT_ARRAY = 1009
    BPCHAR_ARRAY = 1014
    VARCHAR_ARRAY = 1015
    INT8_ARRAY = 1016
    FLOAT4_ARRAY = 1021
    FLOAT8_ARRAY = 1022
    OID_ARRAY = 1028
    INET_ARRAY = 1041
    CIDR_ARRAY = 651
    TIMESTAMP_ARRAY = 1115
    DATE_ARRAY = 1182
    TIME_ARRAY = 1183
    TIMESTAMPTZ_ARRAY = 1185
    NUMERIC_ARRAY = 1231
    UUID_ARRAY = 2951
    JSON_ARRAY = 199
    JSONB_ARRAY = 3807


# Wire format codes
TEXT_FORMAT = 0
BINARY_FORMAT = 1


@dataclass(frozen=True)
class Json:
    """Wrap a Python object to bind it as ``json``."""

    obj: Any


@dataclass(frozen=True)
class Jsonb:
    """Wrap a Python object to bind it as ``jsonb``."""

    obj: Any


# ---------------------------------------------------------------------------
# Scalar codecs
# ---------------------------------------------------------------------------

_INT2 = struct.Struct("!h")
_INT4 = struct.Struct("!i")
_INT8 = struct.Struct("!q")
_UINT4 = struct.Struct("!I")
_FLOAT4 = struct.Struct("!f")
_FLOAT8 = struct.Struct("!d")
_NUMERIC_HEADER = struct.Struct("!hhHh")

_PG_EPOCH_DATE = datetime.date(2000, 1, 1)
_PG_EPOCH = datetime.datetime(2000, 1, 1)
_PG_EPOCH_UTC = datetime.datetime(2000, 1, 1, tzinfo=datetime.timezone.utc)
_PG_EPOCH_ORDINAL = _PG_EPOCH_DATE.toordinal()

_DATE_INFINITY = 0x7FFFFFFF
_DATE_NEG_INFINITY = -0x80000000
_TIMESTAMP_INFINITY = 0x7FFFFFFFFFFFFFFF
_TIMESTAMP_NEG_INFINITY = -0x8000000000000000

_NUMERIC_POS = 0x0000
_NUMERIC_NEG = 0x4000
_NUMERIC_NAN = 0xC000
_NUMERIC_PINF = 0xD000
_NUMERIC_NINF = 0xF000

# PGSQL_AF_INET / PGSQL_AF_INET6 from the server's inet.h
_PGSQL_AF_INET = 2
_PGSQL_AF_INET6 = 3


def _unpack(codec: struct.Struct, data: bytes, type_name: str) -> Any:
    if len(data) != codec.size:
        raise TypeConversionError(
            f"Invalid {type_name} payload: expected {codec.size} bytes, got {len(data)}"
        )
    return codec.unpack(data)[0]


def _as_integer(value: Any, type_name: str) -> int:
    if isinstance(value, float):
        if not value.is_integer():
            raise TypeConversionError(f"Cannot bind {value!r} as {type_name}: not integral")
        return int(value)
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise TypeConversionError(f"Cannot bind {value!r} as {type_name}: not integral")
        return int(value)
    try:
        return operator.index(value)
    except TypeError:
        raise TypeConversionError(
            f"Cannot bind {type(value).__name__} as {type_name}"
        ) from None


def _int_encoder(codec: struct.Struct, type_name: str, bits: int) -> Callable[[Any], bytes]:
    low = -(1 << (bits - 1))
    high = (1 << (bits - 1)) - 1

    def encode(value: Any) -> bytes:
        number = _as_integer(value, type_name)
        if not low <= number <= high:
            raise TypeConversionError(f"Value {number} out of range for {type_name}")
        return codec.pack(number)

    return encode


def _struct_decoder(codec: struct.Struct, type_name: str) -> Callable[[bytes], Any]:
    def decode(data: bytes) -> Any:
        return _unpack(codec, data, type_name)

    return decode


def _encode_oid(value: Any) -> bytes:
    number = _as_integer(value, "oid")
    if not 0 <= number <= 0xFFFFFFFF:
        raise TypeConversionError(f"Value {number} out of range for oid")
    return _UINT4.pack(number)


def _encode_bool(value: Any) -> bytes:
    if not isinstance(value, bool):
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as boolean")
    return b"\x01" if value else b"\x00"


def _decode_bool(data: bytes) -> bool:
    if len(data) != 1:
        raise TypeConversionError("Invalid boolean payload")
    return data != b"\x00"


def _encode_bytea(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeConversionError(f"Cannot bind {type(value).__name__} as bytea")


def _decode_bytea(data: bytes) -> bytes:
    return bytes(data)


def _encode_text(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        raise TypeConversionError("Cannot bind bytes as text; use a bytea column")
    if isinstance(value, (int, float, Decimal, uuid.UUID)):
        return str(value).encode("utf-8")
    raise TypeConversionError(f"Cannot bind {type(value).__name__} as text")


def _decode_text(data: bytes) -> str:
    try:
        return bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise TypeConversionError(f"Invalid UTF-8 in text value: {e}") from e


def _encode_char(value: Any) -> bytes:
    encoded = _encode_text(value)
    if len(encoded) > 1:
        raise TypeConversionError('"char" values must be a single byte')
    return encoded


def _encode_float4(value: Any) -> bytes:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as real")
    try:
        return _FLOAT4.pack(float(value))
    except OverflowError as e:
        raise TypeConversionError(f"Value {value!r} out of range for real") from e


def _encode_float8(value: Any) -> bytes:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as double precision")
    try:
        return _FLOAT8.pack(float(value))
    except OverflowError as e:
        raise TypeConversionError(f"Value {value!r} out of range for double precision") from e


def _encode_numeric(value: Any) -> bytes:
    if isinstance(value, bool):
        raise TypeConversionError("Cannot bind bool as numeric")
    if isinstance(value, int):
        value = Decimal(value)
    elif isinstance(value, float):
        value = Decimal(repr(value))
    elif not isinstance(value, Decimal):
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as numeric")

    if value.is_nan():
        return _NUMERIC_HEADER.pack(0, 0, _NUMERIC_NAN, 0)
    if value.is_infinite():
        sign = _NUMERIC_NINF if value.is_signed() else _NUMERIC_PINF
        return _NUMERIC_HEADER.pack(0, 0, sign, 0)

    sign_bit, digit_tuple, exponent = value.as_tuple()
    digits = "".join(map(str, digit_tuple))
    if exponent >= 0:
        int_part, frac_part = digits + "0" * exponent, ""
    elif len(digits) > -exponent:
        int_part, frac_part = digits[:exponent], digits[exponent:]
    else:
        int_part, frac_part = "", digits.rjust(-exponent, "0")
    dscale = len(frac_part)

    int_part = int_part.lstrip("0")
    if int_part:
        int_part = int_part.rjust(-(-len(int_part) // 4) * 4, "0")
    if frac_part:
        frac_part = frac_part.ljust(-(-len(frac_part) // 4) * 4, "0")

    groups = [int(int_part[i : i + 4]) for i in range(0, len(int_part), 4)]
    weight = len(groups) - 1
    groups += [int(frac_part[i : i + 4]) for i in range(0, len(frac_part), 4)]

    while groups and groups[0] == 0:
        groups.pop(0)
        weight -= 1
    while groups and groups[-1] == 0:
        groups.pop()
    if not groups:
        weight = 0

    sign = _NUMERIC_NEG if sign_bit and groups else _NUMERIC_POS
    header = _NUMERIC_HEADER.pack(len(groups), weight, sign, dscale)
    return header + struct.pack(f"!{len(groups)}H", *groups)


def _decode_numeric(data: bytes) -> Decimal:
    if len(data) < _NUMERIC_HEADER.size:
        raise TypeConversionError("Invalid numeric payload")
    ndigits, weight, sign, dscale = _NUMERIC_HEADER.unpack_from(data)
    if sign == _NUMERIC_NAN:
        return Decimal("NaN")
    if sign == _NUMERIC_PINF:
        return Decimal("Infinity")
    if sign == _NUMERIC_NINF:
        return Decimal("-Infinity")
    if sign not in (_NUMERIC_POS, _NUMERIC_NEG):
        raise TypeConversionError(f"Invalid numeric sign 0x{sign:04x}")
    if len(data) != _NUMERIC_HEADER.size + 2 * ndigits:
        raise TypeConversionError("Invalid numeric payload length")

    groups = struct.unpack_from(f"!{ndigits}H", data, _NUMERIC_HEADER.size)
    digits = [int(c) for group in groups for c in f"{group:04d}"]
    exponent = (weight + 1 - ndigits) * 4
    if not digits:
        digits, exponent = [0], 0

    # Align to the display scale the server reported.
    if exponent < -dscale:
        drop = -dscale - exponent
        digits = digits[:-drop] or [0]
        exponent = -dscale
    elif exponent > -dscale:
        digits += [0] * (exponent + dscale)
        exponent = -dscale

    return Decimal((1 if sign == _NUMERIC_NEG else 0, tuple(digits), exponent))


def _encode_date(value: Any) -> bytes:
    if not isinstance(value, datetime.date):
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as date")
    return _INT4.pack(value.toordinal() - _PG_EPOCH_ORDINAL)


def _decode_date(data: bytes) -> datetime.date:
    days = _unpack(_INT4, data, "date")
    if days in (_DATE_INFINITY, _DATE_NEG_INFINITY):
        raise TypeConversionError("Infinite dates cannot be represented as datetime.date")
    try:
        return datetime.date.fromordinal(days + _PG_EPOCH_ORDINAL)
    except (ValueError, OverflowError) as e:
        raise TypeConversionError(f"Date out of range: {e}") from e


def _encode_time(value: Any) -> bytes:
    if not isinstance(value, datetime.time):
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as time")
    micros = (
        (value.hour * 60 + value.minute) * 60 + value.second
    ) * 1_000_000 + value.microsecond
    return _INT8.pack(micros)


def _decode_time(data: bytes) -> datetime.time:
    micros = _unpack(_INT8, data, "time")
    seconds, micro = divmod(micros, 1_000_000)
    minutes, second = divmod(seconds, 60)
    hour, minute = divmod(minutes, 60)
    if hour >= 24:
        # 24:00:00 is a legal PostgreSQL time.
        raise TypeConversionError("time 24:00:00 cannot be represented as datetime.time")
    return datetime.time(hour, minute, second, micro)


def _timestamp_micros(delta: datetime.timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def _encode_timestamp(value: Any) -> bytes:
    if isinstance(value, datetime.datetime):
        naive = value.replace(tzinfo=None)
    elif isinstance(value, datetime.date):
        naive = datetime.datetime.combine(value, datetime.time())
    else:
        raise TypeConversionError(f"Cannot bind {type(value).__name__} as timestamp")
    return _INT8.pack(_timestamp_micros(naive - _PG_EPOCH))


def _encode_timestamptz(value: Any) -> bytes:
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None or value.utcoffset() is None:
            aware = value.replace(tzinfo=datetime.timezone.utc)
        else:
            aware = value.astimezone(datetime.timezone.utc)
    elif isinstance(value, datetime.date):
        aware = datetime.datetime.combine(
            value, datetime.time(), tzinfo=datetime.timezone.utc
        )
    else:
        raise TypeConversionError(
            f"Cannot bind {type(value).__name__} as timestamp with time zone"
        )
    return _INT8.pack(_timestamp_micros(aware - _PG_EPOCH_UTC))


def _decode_timestamp_micros(data: bytes, epoch: datetime.datetime) -> datetime.datetime:
    micros = _unpack(_INT8, data, "timestamp")
    if micros in (_TIMESTAMP_INFINITY, _TIMESTAMP_NEG_INFINITY):
        raise TypeConversionError(
            "Infinite timestamps cannot be represented as datetime.datetime"
        )
    try:
        return epoch + datetime.timedelta(microseconds=micros)
    except OverflowError as e:
        raise TypeConversionError(f"Timestamp out of range: {e}") from e


def _decode_timestamp(data: bytes) -> datetime.datetime:
    return _decode_timestamp_micros(data, _PG_EPOCH)


def _decode_timestamptz(data: bytes) -> datetime.datetime:
    return _decode_timestamp_micros(data, _PG_EPOCH_UTC)


def _encode_uuid(value: Any) -> bytes:
    if isinstance(value, uuid.UUID):
        return value.bytes
    if isinstance(value, str):
        try:
            return uuid.UUID(value).bytes
        except ValueError as e:
            raise TypeConversionError(f"Invalid UUID string: {value!r}") from e
    raise TypeConversionError(f"Cannot bind {type(value).__name__} as uuid")


def _decode_uuid(data: bytes) -> uuid.UUID:
    if len(data) != 16:
        raise TypeConversionError("Invalid uuid payload")
    return uuid.UUID(bytes=bytes(data))


def _dump_json(value: Any) -> bytes:
    if isinstance(value, (Json, Jsonb)):
        value = value.obj
    try:
        return json.dumps(value).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise TypeConversionError(f"Value is not JSON serializable: {e}") from e


def _encode_json(value: Any) -> bytes:
    return _dump_json(value)


def _encode_jsonb(value: Any) -> bytes:
    return b"\x01" + _dump_json(value)


def _decode_json(data: bytes) -> Any:
    try:
        return json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise TypeConversionError(f"Invalid JSON value: {e}") from e


def _decode_jsonb(data: bytes) -> Any:
    if not data or data[0] != 1:
        raise TypeConversionError("Unsupported jsonb binary version")
    return _decode_json(data[1:])


def _encode_network(value: Any, is_cidr: bool) -> bytes:
    try:
        if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
            address, prefix = value.network_address, value.prefixlen
        elif isinstance(value, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
            address, prefix = value.ip, value.network.prefixlen
        elif isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            address, prefix = value, value.max_prefixlen
        elif isinstance(value, str):
            parsed = (
                ipaddress.ip_network(value) if is_cidr else ipaddress.ip_interface(value)
            )
            return _encode_network(parsed, is_cidr)
        else:
            raise TypeConversionError(
                f"Cannot bind {type(value).__name__} as {'cidr' if is_cidr else 'inet'}"
            )
    except ValueError as e:
        raise TypeConversionError(f"Invalid network address {value!r}: {e}") from e

    family = _PGSQL_AF_INET if address.version == 4 else _PGSQL_AF_INET6
    packed = address.packed
    return bytes([family, prefix, 1 if is_cidr else 0, len(packed)]) + packed


def _decode_network(data: bytes) -> Any:
    if len(data) < 4:
        raise TypeConversionError("Invalid inet/cidr payload")
    family, bits, is_cidr, size = data[0], data[1], data[2], data[3]
    if family not in (_PGSQL_AF_INET, _PGSQL_AF_INET6) or len(data) != 4 + size:
        raise TypeConversionError("Invalid inet/cidr payload")
    address = ipaddress.ip_address(bytes(data[4:]))
    try:
        if is_cidr:
            return ipaddress.ip_network(f"{address}/{bits}")
        return ipaddress.ip_interface(f"{address}/{bits}")
    except ValueError as e:
        raise TypeConversionError(f"Invalid network value: {e}") from e


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class Codec(NamedTuple):
    """Encode/decode pair registered for one OID."""

    name: str
    encode: Callable[[Any], bytes]
    decode: Callable[[bytes], Any]
    array_oid: int | None = None
    element_oid: int | None = None


_ARRAY_HEADER = struct.Struct("!iiI")
_ARRAY_DIM = struct.Struct("!ii")


class TypeCodecRegistry:
    """OID -> binary codec mapping, including array types."""

    def __init__(self) -> None:
        self._codecs: dict[int, Codec] = {}
        self._register_defaults()

    def register(
        self,
        oid: int,
        name: str,
        encode: Callable[[Any], bytes],
        decode: Callable[[bytes], Any],
        *,
        array_oid: int | None = None,
    ) -> None:
        """Register a scalar codec and, optionally, its array type."""
        self._codecs[oid] = Codec(name, encode, decode, array_oid=array_oid)
        if array_oid is not None:
            self._codecs[array_oid] = Codec(
                f"{name}[]",
                self._array_encoder(oid),
                self._array_decoder(),
                element_oid=oid,
            )

    def _register_defaults(self) -> None:
        oid = PostgresOID
        self.register(oid.BOOL, "bool", _encode_bool, _decode_bool, array_oid=oid.BOOL_ARRAY)
        self.register(oid.BYTEA, "bytea", _encode_bytea, _decode_bytea, array_oid=oid.BYTEA_ARRAY)
        self.register(oid.CHAR, "char", _encode_char, _decode_text, array_oid=oid.CHAR_ARRAY)
        self.register(oid.NAME, "name", _encode_text, _decode_text, array_oid=oid.NAME_ARRAY)
        self.register(
            oid.INT2, "int2", _int_encoder(_INT2, "smallint", 16),
            _struct_decoder(_INT2, "smallint"), array_oid=oid.INT2_ARRAY,
        )
        self.register(
            oid.INT4, "int4", _int_encoder(_INT4, "integer", 32),
            _struct_decoder(_INT4, "integer"), array_oid=oid.INT4_ARRAY,
        )
        self.register(
            oid.INT8, "int8", _int_encoder(_INT8, "bigint", 64),
            _struct_decoder(_INT8, "bigint"), array_oid=oid.INT8_ARRAY,
        )
        self.register(
            oid.OID, "oid", _encode_oid, _struct_decoder(_UINT4, "oid"), array_oid=oid.OID_ARRAY
        )
        self.register(oid.TEXT, "text", _encode_text, _decode_text, array_oid=oid.TEXT_ARRAY)
        self.register(
            oid.VARCHAR, "varchar", _encode_text, _decode_text, array_oid=oid.VARCHAR_ARRAY
        )
        self.register(oid.BPCHAR, "bpchar", _encode_text, _decode_text, array_oid=oid.BPCHAR_ARRAY)
        self.register(oid.UNKNOWN, "unknown", _encode_text, _decode_text)
        self.register(oid.JSON, "json", _encode_json, _decode_json, array_oid=oid.JSON_ARRAY)
        self.register(oid.JSONB, "jsonb", _encode_jsonb, _decode_jsonb, array_oid=oid.JSONB_ARRAY)
        self.register(
            oid.FLOAT4, "float4", _encode_float4,
            _struct_decoder(_FLOAT4, "real"), array_oid=oid.FLOAT4_ARRAY,
        )
        self.register(
            oid.FLOAT8, "float8", _encode_float8,
            _struct_decoder(_FLOAT8, "double precision"), array_oid=oid.FLOAT8_ARRAY,
        )
        self.register(
            oid.NUMERIC, "numeric", _encode_numeric, _decode_numeric, array_oid=oid.NUMERIC_ARRAY
        )
        self.register(oid.DATE, "date", _encode_date, _decode_date, array_oid=oid.DATE_ARRAY)
        self.register(oid.TIME, "time", _encode_time, _decode_time, array_oid=oid.TIME_ARRAY)
        self.register(
            oid.TIMESTAMP, "timestamp", _encode_timestamp,
            _decode_timestamp, array_oid=oid.TIMESTAMP_ARRAY,
        )
        self.register(
            oid.TIMESTAMPTZ, "timestamptz", _encode_timestamptz,
            _decode_timestamptz, array_oid=oid.TIMESTAMPTZ_ARRAY,
        )
        self.register(oid.UUID, "uuid", _encode_uuid, _decode_uuid, array_oid=oid.UUID_ARRAY)
        self.register(
            oid.INET, "inet", lambda v: _encode_network(v, False),
            _decode_network, array_oid=oid.INET_ARRAY,
        )
        self.register(
            oid.CIDR, "cidr", lambda v: _encode_network(v, True),
            _decode_network, array_oid=oid.CIDR_ARRAY,
        )

    def is_supported(self, oid: int) -> bool:
        return oid in self._codecs

    def type_name(self, oid: int) -> str:
        codec = self._codecs.get(oid)
        return codec.name if codec is not None else f"oid {oid}"

    def array_oid_for(self, element_oid: int) -> int | None:
        codec = self._codecs.get(element_oid)
        return codec.array_oid if codec is not None else None

    def _lookup(self, oid: int) -> Codec:
        try:
            return self._codecs[oid]
        except KeyError:
            raise NotSupportedError(f"Unsupported PostgreSQL type OID {oid}") from None

    def encode(self, value: Any, oid: int) -> bytes | None:
        """Encode a Python value in binary format for the given type OID.

        Raises:
            NotSupportedError: If no codec is registered for the OID.
            TypeConversionError: If the value does not fit the type.
        """
        if value is None:
            return None
        return self._lookup(oid).encode(value)

    def decode(self, data: bytes | None, oid: int) -> Any:
        """Decode binary wire bytes for the given type OID.

        Raises:
            NotSupportedError: If no codec is registered for the OID.
            TypeConversionError: If the payload is malformed.
        """
        if data is None:
            return None
        codec = self._lookup(oid)
        try:
            return codec.decode(data)
        except (struct.error, ValueError) as e:
            raise TypeConversionError(f"Invalid {codec.name} payload: {e}") from e

    def encode_param(self, value: Any, oid: int) -> tuple[int, bytes | None]:
        """Encode a bind parameter, returning ``(format_code, payload)``.

        Strings bound to a non-textual type are sent in text format so the
        server parses them with the type's input function; everything else
        travels in binary.
        """
        if value is None:
            return BINARY_FORMAT, None
        if isinstance(value, str) and oid not in _STRING_BINARY_OIDS:
            return TEXT_FORMAT, value.encode("utf-8")
        if oid == PostgresOID.UNSPECIFIED:
            raise TypeConversionError(
                f"Parameter type for {type(value).__name__} value was not resolved"
            )
        return BINARY_FORMAT, self.encode(value, oid)

    # -- arrays -------------------------------------------------------------

    def _array_encoder(self, element_oid: int) -> Callable[[Any], bytes]:
        def encode(value: Any) -> bytes:
            return self._encode_array(value, element_oid)

        return encode

    def _array_decoder(self) -> Callable[[bytes], Any]:
        return self._decode_array

    def _encode_array(self, value: Any, element_oid: int) -> bytes:
        if not isinstance(value, (list, tuple)):
            raise TypeConversionError(f"Cannot bind {type(value).__name__} as an array")
        element = self._lookup(element_oid)

        dims: list[int] = []
        probe: Any = value
        while isinstance(probe, (list, tuple)):
            dims.append(len(probe))
            if not probe:
                break
            probe = probe[0]
        if not dims or dims[0] == 0:
            return _ARRAY_HEADER.pack(0, 0, element_oid)
        if 0 in dims:
            raise TypeConversionError("Multidimensional arrays cannot contain empty sub-arrays")

        items: list[bytes | None] = []

        def flatten(level: Any, depth: int) -> None:
            if not isinstance(level, (list, tuple)) or len(level) != dims[depth]:
                raise TypeConversionError("Multidimensional arrays must be rectangular")
            for item in level:
                if depth + 1 < len(dims):
                    flatten(item, depth + 1)
                elif isinstance(item, (list, tuple)):
                    raise TypeConversionError("Multidimensional arrays must be rectangular")
                else:
                    items.append(None if item is None else element.encode(item))

        flatten(value, 0)

        has_null = any(item is None for item in items)
        out = bytearray(_ARRAY_HEADER.pack(len(dims), 1 if has_null else 0, element_oid))
        for size in dims:
            out += _ARRAY_DIM.pack(size, 1)
        for item in items:
            if item is None:
                out += _INT4.pack(-1)
            else:
                out += _INT4.pack(len(item)) + item
        return bytes(out)

    def _decode_array(self, data: bytes) -> list[Any]:
        if len(data) < _ARRAY_HEADER.size:
            raise TypeConversionError("Invalid array payload")
        ndim, _flags, element_oid = _ARRAY_HEADER.unpack_from(data)
        if ndim < 0:
            raise TypeConversionError("Invalid array dimension count")
        if ndim == 0:
            return []
        pos = _ARRAY_HEADER.size
        dims: list[int] = []
        for _ in range(ndim):
            size, _lower = _ARRAY_DIM.unpack_from(data, pos)
            pos += _ARRAY_DIM.size
            dims.append(size)

        element = self._lookup(element_oid)
        total = 1
        for size in dims:
            total *= size

        items: list[Any] = []
        for _ in range(total):
            (length,) = _INT4.unpack_from(data, pos)
            pos += 4
            if length == -1:
                items.append(None)
                continue
            if length < 0 or pos + length > len(data):
                raise TypeConversionError("Invalid array element length")
            items.append(element.decode(data[pos : pos + length]))
            pos += length
        if pos != len(data):
            raise TypeConversionError("Trailing bytes after array payload")

        for size in reversed(dims[1:]):
            items = [items[i : i + size] for i in range(0, len(items), size)]
        return items

    # -- parameter inference ------------------------------------------------

    def infer_param_oid(self, value: Any) -> int:
        """Return the OID a Python value maps to unambiguously, or 0.

        ``int``, ``str``, ``None`` and lists of them are ambiguous: they are
        declared with the unspecified OID and resolved by the server.
        """
        if value is None or isinstance(value, str):
            return PostgresOID.UNSPECIFIED
        if isinstance(value, bool):
            return PostgresOID.BOOL
        if isinstance(value, int):
            return PostgresOID.UNSPECIFIED
        if isinstance(value, float):
            return PostgresOID.FLOAT8
        if isinstance(value, Decimal):
            return PostgresOID.NUMERIC
        if isinstance(value, (bytes, bytearray, memoryview)):
            return PostgresOID.BYTEA
        if isinstance(value, datetime.datetime):
            if value.tzinfo is not None and value.utcoffset() is not None:
                return PostgresOID.TIMESTAMPTZ
            return PostgresOID.TIMESTAMP
        if isinstance(value, datetime.date):
            return PostgresOID.DATE
        if isinstance(value, datetime.time):
            return PostgresOID.TIME
        if isinstance(value, uuid.UUID):
            return PostgresOID.UUID
        if isinstance(value, Jsonb) or isinstance(value, dict):
            return PostgresOID.JSONB
        if isinstance(value, Json):
            return PostgresOID.JSON
        if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
            return PostgresOID.CIDR
        if isinstance(
            value,
            (
                ipaddress.IPv4Interface,
                ipaddress.IPv6Interface,
                ipaddress.IPv4Address,
                ipaddress.IPv6Address,
            ),
        ):
            return PostgresOID.INET
        if isinstance(value, (list, tuple)):
            sample = _first_leaf(value)
            if sample is None:
                return PostgresOID.UNSPECIFIED
            element_oid = self.infer_param_oid(sample)
            if element_oid == PostgresOID.UNSPECIFIED:
                return PostgresOID.UNSPECIFIED
            return self.array_oid_for(element_oid) or PostgresOID.UNSPECIFIED
        raise TypeConversionError(
            f"Cannot adapt {type(value).__name__} to a PostgreSQL type"
        )

    def infer_param_oids(self, params: Sequence[Any]) -> list[int]:
        return [self.infer_param_oid(p) for p in params]


# OIDs whose binary representation of a str is its UTF-8 text.
_STRING_BINARY_OIDS = frozenset(
    {
        PostgresOID.TEXT,
        PostgresOID.VARCHAR,
        PostgresOID.BPCHAR,
        PostgresOID.NAME,
        PostgresOID.CHAR,
        PostgresOID.UNKNOWN,
    }
)


def _first_leaf(value: Sequence[Any]) -> Any:
    for item in value:
        if isinstance(item, (list, tuple)):
            leaf = _first_leaf(item)
            if leaf is not None:
                return leaf
        elif item is not None:
            return item
    return None


default_registry = TypeCodecRegistry()


def build_cursor_description(columns: Sequence[Any]) -> tuple[tuple, ...] | None:
    """Build PEP 249 cursor.description from column descriptors.

    Args:
        columns: Objects exposing ``name``, ``type_oid`` and ``type_size``.

    Returns:
        Tuple of 7-tuples as per PEP 249, or None if there are no columns.

    Each tuple contains:
        (name, type_code, display_size, internal_size, precision, scale, null_ok)
    """
    if not columns:
        return None

    description = []
    for column in columns:
        # PEP 249 requires 7-tuple
        description.append((
            column.name,        # name
            column.type_oid,    # type_code (OID)
            None,               # display_size (not provided)
            column.type_size,   # internal_size
            None,               # precision (not provided)
            None,               # scale (not provided)
            None,               # null_ok (not provided)
        ))

    return tuple(description)
