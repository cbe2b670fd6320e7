"""Bounded LRU cache of server-side prepared statements."""

from __future__ import annotations

import itertools
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterator, Mapping, Sequence

import structlog

from .pg_protocol import FieldDescription

logger = structlog.get_logger(__name__)

DEFAULT_CACHE_SIZE = 256
STATEMENT_NAME_PREFIX = "_pp_"


@dataclass(frozen=True, slots=True)
class ColumnDescriptor:
    """One result column of a prepared statement."""

    name: str
    type_oid: int
    format: int = 1  # 0 = text, 1 = binary
    type_size: int = -1
    table_oid: int = 0
    column_index: int = 0
    type_modifier: int = -1

    @classmethod
    def from_field(cls, desc: FieldDescription, format: int = 1) -> "ColumnDescriptor":
        return cls(
            name=desc.name,
            type_oid=desc.type_oid,
            format=format,
            type_size=desc.type_size,
            table_oid=desc.table_oid,
            column_index=desc.column_index,
            type_modifier=desc.type_modifier,
        )

    def same_shape(self, other: "ColumnDescriptor") -> bool:
        return self.name == other.name and self.type_oid == other.type_oid


def build_column_index(columns: Sequence[ColumnDescriptor]) -> dict[str, int]:
    """Name -> position map; the first column with a given name wins."""
    index: dict[str, int] = {}
    for position, column in enumerate(columns):
        index.setdefault(column.name, position)
    return index


@dataclass(frozen=True)
class PreparedStatementDescriptor:
    """A statement prepared on the server.

    Immutable: a schema change produces a new descriptor through
    :meth:`with_columns` rather than mutating this one.
    """

    sql: str
    name: str
    param_oids: tuple[int, ...]
    columns: tuple[ColumnDescriptor, ...]
    column_index: Mapping[str, int] = field(default_factory=dict, compare=False)

    @classmethod
    def create(
        cls,
        sql: str,
        name: str,
        param_oids: Sequence[int],
        columns: Sequence[ColumnDescriptor],
    ) -> "PreparedStatementDescriptor":
        columns = tuple(columns)
        return cls(
            sql=sql,
            name=name,
            param_oids=tuple(param_oids),
            columns=columns,
            column_index=build_column_index(columns),
        )

    def with_columns(
        self, columns: Sequence[ColumnDescriptor]
    ) -> "PreparedStatementDescriptor":
        return PreparedStatementDescriptor.create(
            self.sql, self.name, self.param_oids, columns
        )

    def matches_columns(self, columns: Sequence[ColumnDescriptor]) -> bool:
        if len(columns) != len(self.columns):
            return False
        return all(a.same_shape(b) for a, b in zip(self.columns, columns))


def normalize_sql(sql: str) -> str:
    return sql.strip()


class StatementCache:
    """Strict LRU of prepared statements keyed by normalized SQL text.

    Evicted or invalidated statements are not closed immediately: their
    names are queued and the caller sends the Close(Statement) frames with
    its next outbound batch (:meth:`take_pending_closes`).
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_SIZE) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self._entries: OrderedDict[str, PreparedStatementDescriptor] = OrderedDict()
        self._pending_closes: list[str] = []
        self._counter = itertools.count(1)

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, sql: str) -> bool:
        return normalize_sql(sql) in self._entries

    def __iter__(self) -> Iterator[PreparedStatementDescriptor]:
        return iter(list(self._entries.values()))

    def next_name(self) -> str:
        """A statement name never used before on this connection."""
        return f"{STATEMENT_NAME_PREFIX}{next(self._counter)}"

    def get(self, sql: str) -> PreparedStatementDescriptor | None:
        key = normalize_sql(sql)
        descriptor = self._entries.get(key)
        if descriptor is not None:
            self._entries.move_to_end(key)
        return descriptor

    def put(self, descriptor: PreparedStatementDescriptor) -> None:
        """Insert as most recently used, evicting beyond capacity."""
        if not self.enabled:
            return
        key = normalize_sql(descriptor.sql)
        previous = self._entries.pop(key, None)
        if previous is not None and previous.name != descriptor.name:
            self._pending_closes.append(previous.name)
        self._entries[key] = descriptor
        while len(self._entries) > self.capacity:
            _, evicted = self._entries.popitem(last=False)
            self._pending_closes.append(evicted.name)
            logger.debug("Prepared statement evicted", statement=evicted.name)

    def replace(self, descriptor: PreparedStatementDescriptor) -> None:
        """Swap in a new descriptor for the same server statement."""
        key = normalize_sql(descriptor.sql)
        if key in self._entries:
            self._entries[key] = descriptor
            self._entries.move_to_end(key)

    def discard(self, sql: str) -> PreparedStatementDescriptor | None:
        """Invalidate an entry; its statement is closed with the next batch."""
        descriptor = self._entries.pop(normalize_sql(sql), None)
        if descriptor is not None:
            self._pending_closes.append(descriptor.name)
            logger.debug("Prepared statement invalidated", statement=descriptor.name)
        return descriptor

    def take_pending_closes(self) -> list[str]:
        names, self._pending_closes = self._pending_closes, []
        return names

    def clear(self) -> None:
        """Forget every entry without scheduling Close frames."""
        self._entries.clear()
        self._pending_closes.clear()
