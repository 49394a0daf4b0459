"""Connector interfaces for the Carebook backend services."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .firebase_client import (
    AuthError,
    AuthUser,
    CarebookClientError,
    DocumentNotFoundError,
    DocumentStoreError,
    DuplicateAccountError,
    FirebaseAuthClient,
    FirestoreClient,
    InvalidCredentialsError,
    RequiresRecentLoginError,
    StorageError,
    WeakPasswordError,
)
from .memory import InMemoryDocumentStore
from .query import FieldFilter, OrderBy, Query
from .storage_client import FirebaseStorageClient, create_unique_storage_path


class DocumentStore(Protocol):
    """Operations the workflow layer needs from a document database."""

    def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        """Return ``{"id": ..., **fields}`` or ``None`` when the document is missing."""

    def run_query(self, query: Query) -> List[Dict[str, Any]]:
        """Run ``query`` server-side and return the matching records."""

    def create_document(
        self, collection: str, data: Mapping[str, Any], document_id: Optional[str] = None
    ) -> str:
        """Create a document stamped with server ``createdAt``/``updatedAt``; return its id."""

    def update_document(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        """Merge ``data`` into an existing document and re-stamp ``updatedAt``."""

    def delete_document(self, collection: str, document_id: str) -> None:
        """Remove a document."""

    def subscribe(
        self,
        query: Query,
        callback: Callable[[List[Dict[str, Any]]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        """Deliver the full result set on every change; return a disposer."""

    def subscribe_document(
        self,
        collection: str,
        document_id: str,
        callback: Callable[[Optional[Dict[str, Any]]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        """Deliver one document on every change; return a disposer."""


__all__ = [
    "AuthError",
    "AuthUser",
    "CarebookClientError",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreError",
    "DuplicateAccountError",
    "FieldFilter",
    "FirebaseAuthClient",
    "FirebaseStorageClient",
    "FirestoreClient",
    "InMemoryDocumentStore",
    "InvalidCredentialsError",
    "OrderBy",
    "Query",
    "RequiresRecentLoginError",
    "StorageError",
    "WeakPasswordError",
    "create_unique_storage_path",
]
