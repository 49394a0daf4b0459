"""Query constraints and the client-side predicate evaluator.

The same evaluator backs the in-memory document store and the client-side
refinement step of :func:`agents.queries.fetch_without_index`, so a filter
means the same thing whether the backend or the caller applies it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

__all__ = [
    "FieldFilter",
    "OrderBy",
    "Query",
    "SUPPORTED_OPERATORS",
    "matches_filter",
    "matches_all",
    "apply_filters",
    "sort_records",
    "run_local_query",
]


def _compare(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def predicate(field_value: Any, value: Any) -> bool:
        if field_value is None or value is None:
            return False
        try:
            return bool(compare(field_value, value))
        except TypeError:
            return False

    return predicate


def _array_contains(field_value: Any, value: Any) -> bool:
    return isinstance(field_value, (list, tuple)) and value in field_value


def _in(field_value: Any, value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset)) and field_value in value


def _array_contains_any(field_value: Any, value: Any) -> bool:
    if not isinstance(field_value, (list, tuple)) or not isinstance(value, (list, tuple, set, frozenset)):
        return False
    return any(candidate in field_value for candidate in value)


def _not_in(field_value: Any, value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset)) and field_value not in value


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda field_value, value: field_value == value,
    "!=": lambda field_value, value: field_value != value,
    ">": _compare(lambda a, b: a > b),
    "<": _compare(lambda a, b: a < b),
    ">=": _compare(lambda a, b: a >= b),
    "<=": _compare(lambda a, b: a <= b),
    "array-contains": _array_contains,
    "in": _in,
    "array-contains-any": _array_contains_any,
    "not-in": _not_in,
}

SUPPORTED_OPERATORS: Tuple[str, ...] = tuple(_OPERATORS)


@dataclass(frozen=True)
class FieldFilter:
    """A single ``field <operator> value`` constraint."""

    field: str
    operator: str = "=="
    value: Any = None


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    """Filter/sort/limit constraints against one collection.

    Builder methods return new instances so a base query can be shared::

        Query("appointments").where("doctorId", "==", doctor_id).order_by("date").limit(10)
    """

    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    orders: Tuple[OrderBy, ...] = ()
    max_results: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.collection:
            raise ValueError("collection must be provided")
        if self.max_results is not None and self.max_results < 0:
            raise ValueError("limit must not be negative")

    def where(self, field_path: str, operator: str, value: Any) -> "Query":
        return replace(self, filters=self.filters + (FieldFilter(field_path, operator, value),))

    def order_by(self, field_path: str, *, descending: bool = False) -> "Query":
        return replace(self, orders=self.orders + (OrderBy(field_path, descending),))

    def limit(self, count: int) -> "Query":
        return replace(self, max_results=count)


def matches_filter(record: Mapping[str, Any], condition: FieldFilter) -> bool:
    """Evaluate ``condition`` against ``record``; unknown operators never match."""

    predicate = _OPERATORS.get(condition.operator)
    if predicate is None:
        logger.warning("Unsupported operator %r on field %s", condition.operator, condition.field)
        return False
    return predicate(record.get(condition.field), condition.value)


def matches_all(record: Mapping[str, Any], filters: Iterable[FieldFilter]) -> bool:
    return all(matches_filter(record, condition) for condition in filters)


def apply_filters(
    records: Iterable[Mapping[str, Any]], filters: Sequence[FieldFilter]
) -> List[Dict[str, Any]]:
    unsupported = {condition.operator for condition in filters} - set(_OPERATORS)
    if unsupported:
        # Every record would fail; skip the per-record warnings.
        logger.warning("Unsupported operators %s; no records match", sorted(unsupported))
        return []
    return [dict(record) for record in records if matches_all(record, filters)]


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Values of different kinds never compare against each other.
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, datetime):
        return (2, value.timestamp())
    if isinstance(value, str):
        return (3, value)
    return (4, repr(value))


def sort_records(
    records: Iterable[Mapping[str, Any]],
    field_path: str,
    *,
    descending: bool = False,
) -> List[Dict[str, Any]]:
    """Stable single-field sort; records missing the field stay last, in input order."""

    present: List[Dict[str, Any]] = []
    missing: List[Dict[str, Any]] = []
    for record in records:
        if record.get(field_path) is None:
            missing.append(dict(record))
        else:
            present.append(dict(record))
    present.sort(key=lambda record: _sort_key(record[field_path]), reverse=descending)
    return present + missing


def run_local_query(records: Iterable[Mapping[str, Any]], query: Query) -> List[Dict[str, Any]]:
    """Apply every constraint of ``query`` in memory."""

    results = apply_filters(records, query.filters)
    # Successive stable sorts, last key first, give multi-key ordering.
    for order in reversed(query.orders):
        results = sort_records(results, order.field, descending=order.descending)
    if query.max_results is not None:
        results = results[: query.max_results]
    return results


