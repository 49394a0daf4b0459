"""In-memory document store with the same interface as :class:`FirestoreClient`."""
from __future__ import annotations

import copy
import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .firebase_client import SERVER_TIMESTAMP_FIELDS, DocumentNotFoundError, generate_document_id
from .query import Query, run_local_query

logger = logging.getLogger(__name__)


@dataclass
class _Listener:
    collection: str
    deliver: Callable[[], None]


class InMemoryDocumentStore:
    """Process-local document store used for fixtures, the CLI and tests.

    Queries are evaluated with the same predicate evaluator the query composer
    uses client-side. Every write pushes one fresh snapshot to each listener
    on the written collection.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or generate_document_id
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._listeners: Dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)

    def seed(self, collection: str, records: Iterable[Mapping[str, Any]]) -> List[str]:
        """Load records verbatim (no server timestamps); ``id`` keys become document ids."""

        identifiers: List[str] = []
        with self._lock:
            documents = self._collections.setdefault(collection, {})
            for record in records:
                fields = dict(record)
                document_id = str(fields.pop("id", None) or self._id_factory())
                documents[document_id] = copy.deepcopy(fields)
                identifiers.append(document_id)
        self._notify(collection)
        return identifiers

    def _snapshot(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            documents = self._collections.get(collection, {})
            return [{"id": document_id, **copy.deepcopy(fields)} for document_id, fields in documents.items()]

    def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        if not collection or not document_id:
            raise ValueError("collection and document_id must be provided")
        with self._lock:
            fields = self._collections.get(collection, {}).get(document_id)
            if fields is None:
                return None
            return {"id": document_id, **copy.deepcopy(fields)}

    def run_query(self, query: Query) -> List[Dict[str, Any]]:
        return run_local_query(self._snapshot(query.collection), query)

    def create_document(
        self, collection: str, data: Mapping[str, Any], document_id: Optional[str] = None
    ) -> str:
        if not collection:
            raise ValueError("collection must be provided")
        now = self._clock()
        fields = {key: copy.deepcopy(value) for key, value in data.items() if key != "id"}
        for name in SERVER_TIMESTAMP_FIELDS:
            fields[name] = now
        with self._lock:
            document_id = document_id or self._id_factory()
            self._collections.setdefault(collection, {})[document_id] = fields
        logger.debug("Created %s/%s", collection, document_id)
        self._notify(collection)
        return document_id

    def update_document(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        with self._lock:
            fields = self._collections.get(collection, {}).get(document_id)
            if fields is None:
                raise DocumentNotFoundError(f"No document to update: {collection}/{document_id}", status_code=404)
            fields.update({key: copy.deepcopy(value) for key, value in data.items() if key != "id"})
            fields["updatedAt"] = self._clock()
        self._notify(collection)

    def delete_document(self, collection: str, document_id: str) -> None:
        with self._lock:
            self._collections.get(collection, {}).pop(document_id, None)
        self._notify(collection)

    def _register(self, collection: str, deliver: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            listener_id = next(self._listener_ids)
            listener = _Listener(collection, deliver)
            self._listeners[listener_id] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        self._deliver(listener)
        return unsubscribe

    @staticmethod
    def _deliver(listener: _Listener) -> None:
        # Callback errors are logged; the write and the remaining listeners proceed.
        try:
            listener.deliver()
        except Exception:  # noqa: BLE001
            logger.exception("Subscription callback for %s failed", listener.collection)

    def subscribe(
        self,
        query: Query,
        callback: Callable[[List[Dict[str, Any]]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        return self._register(query.collection, lambda: callback(self.run_query(query)))

    def subscribe_document(
        self,
        collection: str,
        document_id: str,
        callback: Callable[[Optional[Dict[str, Any]]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        return self._register(collection, lambda: callback(self.get_document(collection, document_id)))

    def _notify(self, collection: str) -> None:
        with self._lock:
            listeners = [listener for listener in self._listeners.values() if listener.collection == collection]
        for listener in listeners:
            self._deliver(listener)
