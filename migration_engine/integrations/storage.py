"""
Blob storage for uploaded export files.

The import engine only ever reads blobs: ``open(key)`` returns a seekable
binary handle that readers stream from, so a large export is never loaded
into memory as a whole. ``put`` exists for the HTTP upload path and for tests.
S3-compatible backends (AWS S3, Backblaze B2, MinIO, ...) go through boto3.
"""
import io
import logging
import os
import shutil
import tempfile
import threading
from typing import BinaryIO, Dict, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from migration_engine.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when a blob is missing or cannot be downloaded."""
    pass


Content = Union[bytes, BinaryIO]


class BlobStore:
    def open(self, key: str) -> BinaryIO:
        """Seekable binary handle positioned at the start of the blob; the caller closes it."""
        raise NotImplementedError

    def put(self, key: str, content: Content) -> str:
        raise NotImplementedError


def _read_all(content: Content) -> bytes:
    return content if isinstance(content, (bytes, bytearray)) else content.read()


class InMemoryBlobStore(BlobStore):
    def __init__(self, blobs: Optional[Dict[str, bytes]] = None):
        self._blobs: Dict[str, bytes] = dict(blobs or {})
        self._lock = threading.Lock()

    def open(self, key: str) -> BinaryIO:
        with self._lock:
            try:
                return io.BytesIO(self._blobs[key])
            except KeyError:
                raise StorageDownloadError(f"Blob '{key}' not found")

    def put(self, key: str, content: Content) -> str:
        data = bytes(_read_all(content))
        with self._lock:
            self._blobs[key] = data
        return key


class LocalBlobStore(BlobStore):
    """Blobs as files below a root directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or settings.storage_local_root)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise StorageError(f"Blob key '{key}' escapes the storage root")
        return path

    def open(self, key: str) -> BinaryIO:
        try:
            return open(self._path(key), "rb")
        except FileNotFoundError:
            raise StorageDownloadError(f"Blob '{key}' not found")

    def put(self, key: str, content: Content) -> str:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as handle:
            if isinstance(content, (bytes, bytearray)):
                handle.write(content)
            else:
                shutil.copyfileobj(content, handle)
        return key


def get_storage_client():
    """
    Get S3-compatible storage client.

    Raises:
        ValueError: If storage configuration is incomplete
        StorageConnectionError: If the client cannot be created
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise ValueError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": 3, "mode": "standard"},
        connect_timeout=settings.store_timeout_seconds,
        read_timeout=settings.store_timeout_seconds,
    )

    client_kwargs = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": config,
    }
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except Exception as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


class S3BlobStore(BlobStore):
    def __init__(self, client=None, bucket: Optional[str] = None, prefix: str = "imports"):
        self._client = client
        self.bucket = bucket or settings.storage_bucket_name
        self.prefix = prefix.strip("/")

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def open(self, key: str) -> BinaryIO:
        """Copy the object into a temporary file in chunks and return it rewound."""
        spool = tempfile.TemporaryFile()
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
            shutil.copyfileobj(response["Body"], spool)
        except ClientError as e:
            spool.close()
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "NoSuchKey":
                raise StorageDownloadError(f"Blob '{key}' not found")
            logger.error(f"Storage download failed: {error_code} - {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}")
        except BotoCoreError as e:
            spool.close()
            logger.error(f"Unexpected error during download: {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}")
        spool.seek(0)
        return spool

    def put(self, key: str, content: Content) -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=self._key(key), Body=content)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Storage upload failed: {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}")
        return key


def get_blob_store() -> BlobStore:
    backend = settings.storage_backend.lower()
    if backend == "s3":
        return S3BlobStore()
    if backend == "memory":
        return InMemoryBlobStore()
    return LocalBlobStore()
