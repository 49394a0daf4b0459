"""Firebase Storage client for avatars and uploaded documents."""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

import requests

from .firebase_client import (
    DEFAULT_API_KEY,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    FirebaseBaseClient,
    StorageError,
)

__all__ = ["FirebaseStorageClient", "create_unique_storage_path"]

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_BASE_URL = os.getenv(
    "FIREBASE_STORAGE_BASE_URL", "https://firebasestorage.googleapis.com/v0"
)
DEFAULT_STORAGE_BUCKET = os.getenv("FIREBASE_STORAGE_BUCKET")


def create_unique_storage_path(
    user_id: str, folder_name: str, file_name: str, *, now: Optional[datetime] = None
) -> str:
    """Build ``<folder>/<userId>/<timestamp_ms>_<fileName>`` for an upload."""

    if not user_id or not folder_name or not file_name:
        raise ValueError("user_id, folder_name and file_name must be provided")
    moment = now or datetime.now(timezone.utc)
    timestamp = int(moment.timestamp() * 1000)
    return f"{folder_name}/{user_id}/{timestamp}_{file_name}"


class FirebaseStorageClient(FirebaseBaseClient):
    """Client for the Firebase Storage REST API."""

    service_name = "Firebase Storage"
    error_class = StorageError

    def __init__(
        self,
        *,
        bucket: Optional[str] = DEFAULT_STORAGE_BUCKET,
        base_url: str = DEFAULT_STORAGE_BASE_URL,
        api_key: Optional[str] = DEFAULT_API_KEY,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be provided")
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            token_provider=token_provider,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            session=session,
        )
        self.bucket = bucket

    def _object_path(self, path: str) -> str:
        if not path:
            raise ValueError("path must be provided")
        return f"b/{self.bucket}/o/{quote(path, safe='')}"

    def _download_url(self, metadata: Mapping[str, Any]) -> str:
        name = metadata.get("name")
        tokens = str(metadata.get("downloadTokens") or "")
        token = tokens.split(",")[0].strip()
        if not name or not token:
            raise StorageError(f"No download token available for {name or 'object'}")
        return f"{self.base_url}/{self._object_path(str(name))}?alt=media&token={token}"

    def upload_file(
        self,
        path: str,
        content: Union[bytes, BinaryIO],
        *,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Upload ``content`` to ``path`` and return its download URL."""

        if not path:
            raise ValueError("path must be provided")
        body = content if isinstance(content, (bytes, bytearray)) else content.read()
        response = self._request(
            "POST",
            f"b/{self.bucket}/o",
            params={"name": path, "uploadType": "media"},
            data=body,
            headers={"Content-Type": content_type},
        )
        uploaded = response.json()
        if metadata:
            response = self._request(
                "PATCH",
                self._object_path(path),
                json_payload={"customMetadata": metadata},
            )
            uploaded = response.json()
        logger.info("Uploaded %s (%d bytes)", path, len(body))
        return self._download_url(uploaded)

    def get_download_url(self, path: str) -> str:
        response = self._request("GET", self._object_path(path))
        return self._download_url(response.json())

    def delete_file(self, path: str) -> None:
        self._request("DELETE", self._object_path(path), expected_status=(200, 204))

    def list_files(self, folder: str) -> List[str]:
        """Return download URLs for every object directly under ``folder``."""

        prefix = folder.rstrip("/") + "/" if folder else ""
        response = self._request(
            "GET",
            f"b/{self.bucket}/o",
            params={"prefix": prefix, "delimiter": "/"},
        )
        items = response.json().get("items", [])
        return [self.get_download_url(item["name"]) for item in items if item.get("name")]
