"""Immutable result rows with positional and by-name access."""

from __future__ import annotations

from typing import Any, Iterator, Mapping, Sequence


class Row:
    """A single result row.

    Values are decoded once and kept in a tuple. Every row of a result
    shares the same name -> position mapping; when a result has duplicate
    column names the first one wins.
    """

    __slots__ = ("_values", "_columns", "_index")

    def __init__(
        self,
        values: Sequence[Any],
        columns: Sequence[str],
        index: Mapping[str, int] | None = None,
    ) -> None:
        self._values = tuple(values)
        self._columns = tuple(columns)
        if index is None:
            index = {}
            for position, name in enumerate(self._columns):
                index.setdefault(name, position)
        self._index = index

    def __getitem__(self, key: int | slice | str) -> Any:
        if isinstance(key, str):
            try:
                return self._values[self._index[key]]
            except KeyError:
                raise KeyError(f"Column {key!r} not found") from None
        if isinstance(key, (int, slice)):
            return self._values[key]
        raise TypeError(f"Row indices must be integers or column names, not {type(key).__name__}")

    def get(self, name: str, default: Any = None) -> Any:
        position = self._index.get(name)
        return default if position is None else self._values[position]

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Row):
            return self._values == other._values
        if isinstance(other, tuple):
            return self._values == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._values)

    def __repr__(self) -> str:
        items = ", ".join(f"{name}={value!r}" for name, value in zip(self._columns, self._values))
        return f"Row({items})"

    def keys(self) -> list[str]:
        return list(self._columns)

    def values(self) -> list[Any]:
        return list(self._values)

    def items(self) -> list[tuple[str, Any]]:
        return list(zip(self._columns, self._values))

    def as_dict(self) -> dict[str, Any]:
        return {name: self._values[position] for name, position in self._index.items()}

    def as_tuple(self) -> tuple[Any, ...]:
        return self._values
