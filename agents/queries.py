"""Query composition that avoids composite index requirements.

Firestore needs a composite index for most multi-field queries. These helpers
send only a single equality filter to the server and refine the result in
memory, trading a larger read for zero index configuration.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from connector import CarebookClientError, DocumentStore, FieldFilter, Query
from connector.query import apply_filters, sort_records

logger = logging.getLogger(__name__)


def fetch_without_index(
    store: DocumentStore,
    collection: str,
    primary: FieldFilter,
    additional: Sequence[FieldFilter] = (),
    *,
    sort_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Fetch ``collection`` where ``primary`` holds, then apply ``additional`` filters locally.

    Only equality is sent to the server for ``primary``. Errors from the store
    propagate unchanged.
    """

    if primary.operator != "==":
        raise ValueError("primary filter must be an equality filter")
    if limit is not None and limit < 0:
        raise ValueError("limit must not be negative")

    try:
        records = store.run_query(Query(collection).where(primary.field, "==", primary.value))
    except CarebookClientError:
        logger.error("Error fetching %s where %s == %r", collection, primary.field, primary.value)
        raise

    results = apply_filters(records, additional) if additional else records
    if sort_by:
        results = sort_records(results, sort_by, descending=descending)
    if limit is not None:
        results = results[:limit]
    logger.debug(
        "fetch_without_index(%s): %d fetched, %d kept", collection, len(records), len(results)
    )
    return results


def where_equals(field_path: str, value: Any) -> FieldFilter:
    return FieldFilter(field_path, "==", value)


def where_not_equals(field_path: str, value: Any) -> FieldFilter:
    return FieldFilter(field_path, "!=", value)


def where_in(field_path: str, values: Sequence[Any]) -> FieldFilter:
    return FieldFilter(field_path, "in", list(values))
