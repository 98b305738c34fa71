"""Composable row predicates shared between memory and postgres stores.

A ``Filter`` evaluates against an in-memory record and renders to a SQL
fragment with bound parameters, so both backends apply the same read
boundary (``not_deleted`` everywhere, ``active`` where rows can be disabled).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Sequence, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Filter:
    check: Callable[[Any], bool]
    clause: str
    params: Tuple[Any, ...] = ()

    def matches(self, row: Any) -> bool:
        return self.check(row)

    def __and__(self, other: "Filter") -> "Filter":
        return all_of(self, other)

    def sql(self) -> Tuple[str, Tuple[Any, ...]]:
        return self.clause, self.params


def all_of(*filters: Filter) -> Filter:
    parts = [f for f in filters if f is not None]
    if not parts:
        return Filter(lambda _row: True, "TRUE")
    clause = " AND ".join(f"({f.clause})" for f in parts)
    params: Tuple[Any, ...] = tuple(p for f in parts for p in f.params)
    return Filter(lambda row: all(f.check(row) for f in parts), clause, params)


def not_deleted(column: str = "deleted_at") -> Filter:
    return Filter(lambda row: getattr(row, "deleted_at") is None, f"{column} IS NULL")


def active(column: str = "is_active") -> Filter:
    return Filter(lambda row: bool(getattr(row, "is_active")), f"{column} = TRUE")


def unexpired(now: datetime, column: str = "expires_at") -> Filter:
    return Filter(lambda row: getattr(row, "expires_at") > now, f"{column} > %s", (now,))


def where(**fields: Any) -> Filter:
    """Equality match on each named attribute/column."""

    items = sorted(fields.items())

    def _check(row: Any) -> bool:
        return all(getattr(row, name) == value for name, value in items)

    clause = " AND ".join(f"{name} = %s" for name, _ in items) or "TRUE"
    return Filter(_check, clause, tuple(value for _, value in items))


def live(*extra: Filter) -> Filter:
    """Shorthand for the not-deleted boundary plus any extra predicates."""

    return all_of(not_deleted(), *extra)


def select(rows: Iterable[T], predicate: Filter) -> List[T]:
    return [row for row in rows if predicate.matches(row)]


def first(rows: Sequence[T] | Iterable[T], predicate: Filter) -> T | None:
    for row in rows:
        if predicate.matches(row):
            return row
    return None


__all__ = [
    "Filter",
    "active",
    "all_of",
    "first",
    "live",
    "not_deleted",
    "select",
    "unexpired",
    "where",
]
