"""
Blob storage for raw uploaded files.

``S3BlobStore`` talks to any S3-compatible service (Backblaze B2, AWS S3,
MinIO, Wasabi, ...) through boto3; ``InMemoryBlobStore`` backs tests and
local runs without credentials.
"""
import logging
import threading
from typing import Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.errors import DataIntakeError, ErrorKind

logger = logging.getLogger(__name__)


class StorageError(DataIntakeError):
    """Base exception for storage operations."""

    kind = ErrorKind.STORAGE_ERROR


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""


class StorageUploadError(StorageError):
    """Raised when file upload fails."""


class StorageDownloadError(StorageError):
    """Raised when file download fails."""


class BlobStore(Protocol):
    def put(self, key: str, content: bytes) -> None:
        ...

    def get(self, key: str) -> bytes:
        ...


def build_storage_key(file_id: str, file_name: str, folder: Optional[str] = None) -> str:
    return f"{folder or settings.upload_folder}/{file_id}/{file_name}"


def get_storage_client():
    """
    Get an S3-compatible storage client from the configured credentials.

    Raises:
        StorageConnectionError: If configuration is incomplete or the client cannot be built
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConnectionError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": settings.storage_max_retries, "mode": "standard"},
    )
    client_kwargs = {
        "service_name": "s3",
        "aws_access_key_id": settings.storage_access_key_id,
        "aws_secret_access_key": settings.storage_secret_access_key,
        "config": config,
    }
    # Non-AWS providers (B2, MinIO, ...) need an explicit endpoint
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageConnectionError(f"Failed to connect to storage: {e}") from e


class S3BlobStore:
    """Blob store backed by an S3-compatible bucket."""

    def __init__(self, client=None, bucket_name: Optional[str] = None):
        self._client = client
        self.bucket_name = bucket_name or settings.storage_bucket_name

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def put(self, key: str, content: bytes) -> None:
        try:
            self.client.put_object(Bucket=self.bucket_name, Key=key, Body=content)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            logger.error("Storage upload failed: %s - %s", error_code, e)
            raise StorageUploadError(f"Upload failed: {e}") from e
        except BotoCoreError as e:
            logger.error("Unexpected error during upload: %s", e)
            raise StorageUploadError(f"Upload failed: {e}") from e
        logger.info("Stored %d bytes at %s", len(content), key)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code in ("NoSuchKey", "404"):
                raise StorageDownloadError(f"File not found: {key}") from e
            logger.error("Storage download failed: %s - %s", error_code, e)
            raise StorageDownloadError(f"Download failed: {e}") from e
        except BotoCoreError as e:
            logger.error("Unexpected error during download: %s", e)
            raise StorageDownloadError(f"Download failed: {e}") from e


class InMemoryBlobStore:
    """Process-local blob store."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, content: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(content)

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self._blobs:
                raise StorageDownloadError(f"File not found: {key}")
            return self._blobs[key]

    def __contains__(self, key: str) -> bool:
        return key in self._blobs
