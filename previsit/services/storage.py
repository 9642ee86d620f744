"""Object storage access for patient uploads (Google Cloud Storage)."""
from __future__ import annotations

import asyncio
import logging
import urllib.error
import urllib.request
from datetime import timedelta

from google.cloud import storage

from previsit.config import STORAGE_BUCKET
from previsit.worker.errors import FileTooLargeError, StorageError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 256 * 1024


def _strip_bucket_prefix(path: str, bucket: str) -> str:
    """``gs://bucket/a/b.pdf`` or ``bucket/a/b.pdf`` -> ``a/b.pdf``."""
    for prefix in (f"gs://{bucket}/", f"{bucket}/"):
        if path.startswith(prefix):
            return path[len(prefix):].lstrip("/")
    return path.lstrip("/")


def _download_blocking(url: str, max_bytes: int, timeout: float) -> bytes:
    req = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            declared = resp.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise FileTooLargeError(_too_large_message(int(declared), max_bytes))
            buf = bytearray()
            while True:
                chunk = resp.read(_CHUNK_SIZE)
                if not chunk:
                    break
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise FileTooLargeError(_too_large_message(len(buf), max_bytes, partial=True))
            return bytes(buf)
    except urllib.error.HTTPError as e:
        raise StorageError(f"Failed to download file: {e.code}") from e
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        raise StorageError(f"Failed to download file: {e}") from e


def _too_large_message(size: int, max_bytes: int, partial: bool = False) -> str:
    mb = round(size / 1024 / 1024)
    limit_mb = round(max_bytes / 1024 / 1024)
    qualifier = "over " if partial else ""
    return f"File too large: {qualifier}{mb}MB exceeds {limit_mb}MB limit"


class StorageClient:
    """Signed-URL reads from the uploads bucket."""

    def __init__(self, bucket_name: str = STORAGE_BUCKET, client: storage.Client | None = None):
        self.bucket_name = bucket_name
        self._client = client

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    def _signed_url_blocking(self, file_path: str, ttl_seconds: int) -> str:
        blob = self.client.bucket(self.bucket_name).blob(_strip_bucket_prefix(file_path, self.bucket_name))
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
        )

    async def signed_url(self, file_path: str, ttl_seconds: int = 300) -> str:
        """Short-lived read URL for *file_path*."""
        try:
            url = await asyncio.to_thread(self._signed_url_blocking, file_path, ttl_seconds)
        except Exception as e:
            raise StorageError(f"Failed to get signed URL: {e}") from e
        if not url:
            raise StorageError("Failed to get signed URL: empty URL")
        return url

    async def download(self, url: str, max_bytes: int, timeout: float = 60.0) -> bytes:
        """Download at most *max_bytes*; larger payloads raise FileTooLargeError."""
        return await asyncio.to_thread(_download_blocking, url, max_bytes, timeout)
