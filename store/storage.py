"""Blob stores for uploaded and augmented CSV files.

Every store offers ``get(path) -> bytes``, ``put(path, data, content_type)``
and ``delete(paths)``. ``get`` raises BlobNotFoundError for missing objects.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote

import requests

from engine.errors import BlobNotFoundError, StorageError, UploadFailedError
from store.supabase_io import SupabaseRestError

logger = logging.getLogger("listverify.storage")

CSV_CONTENT_TYPE = "text/csv"


class LocalBlobStore:
    """Blob store rooted at a local directory."""

    def __init__(self, root: Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root.resolve() not in target.parents:
            raise StorageError(f"path escapes blob root: {path}")
        return target

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFoundError(path)
        return target.read_bytes()

    def put(self, path: str, data: bytes, content_type: str = CSV_CONTENT_TYPE) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"failed to write {path}: {e}") from e

    def delete(self, paths: Iterable[str]) -> None:
        for path in paths:
            self._resolve(path).unlink(missing_ok=True)


class SupabaseStorageClient:
    """Supabase Storage REST client for one bucket."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        bucket: str = "csv-files",
        timeout_seconds: float = 30.0,
        request_fn=None,
    ):
        self._object_url = base_url.rstrip("/") + "/storage/v1/object"
        self._bucket = bucket
        self._timeout_seconds = timeout_seconds
        self._request_fn = request_fn or requests.request
        self._base_headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }

    def _request(self, method: str, url: str, *, headers=None, data=None, json_body=None):
        merged_headers = dict(self._base_headers)
        if headers:
            merged_headers.update(headers)
        try:
            return self._request_fn(
                method,
                url,
                headers=merged_headers,
                data=data,
                json=json_body,
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as e:
            raise StorageError(f"supabase storage request failed: {e}") from e

    def _url(self, path: str) -> str:
        return f"{self._object_url}/{self._bucket}/{quote(path)}"

    def get(self, path: str) -> bytes:
        resp = self._request("GET", self._url(path))
        if resp.status_code in (400, 404):
            raise BlobNotFoundError(path)
        if not (200 <= resp.status_code < 300):
            raise SupabaseRestError(resp.status_code, getattr(resp, "text", "")[:500])
        return resp.content

    def put(self, path: str, data: bytes, content_type: str = CSV_CONTENT_TYPE) -> None:
        resp = self._request(
            "POST",
            self._url(path),
            headers={"Content-Type": content_type, "x-upsert": "true"},
            data=data,
        )
        if not (200 <= resp.status_code < 300):
            raise SupabaseRestError(resp.status_code, getattr(resp, "text", "")[:500])

    def delete(self, paths: Iterable[str]) -> None:
        resp = self._request(
            "DELETE",
            f"{self._object_url}/{self._bucket}",
            headers={"Content-Type": "application/json"},
            json_body={"prefixes": list(paths)},
        )
        if not (200 <= resp.status_code < 300):
            raise SupabaseRestError(resp.status_code, getattr(resp, "text", "")[:500])


def put_with_retry(
    store,
    path: str,
    data: bytes,
    content_type: str = CSV_CONTENT_TYPE,
    attempts: int = 3,
    delay_seconds: float = 2.0,
    sleep_fn=None,
) -> None:
    """Upload with a fixed pause between attempts; transient store failures are expected."""
    sleep = sleep_fn or time.sleep
    last_exc: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            store.put(path, data, content_type)
            return
        except StorageError as e:
            last_exc = e
            logger.warning("Upload of %s failed (attempt %d/%d): %s", path, attempt, attempts, e)
            if attempt < attempts:
                sleep(delay_seconds)
    raise UploadFailedError(path, attempts, last_exc)


def blob_store_from_settings(settings):
    if settings.storage_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise StorageError("supabase storage selected but SUPABASE_URL/key not configured")
        return SupabaseStorageClient(
            settings.supabase_url,
            settings.supabase_key,
            bucket=settings.bucket_name,
        )
    return LocalBlobStore(settings.local_blob_dir)
