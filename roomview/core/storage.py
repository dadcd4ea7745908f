"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for object storage with LocalStorage
(development) and AzureBlobStorage (production).

Only keys are ever persisted. URLs are short-lived and regenerated from
the key whenever a client needs one.
"""

import os
import hmac
import time
import asyncio
import hashlib
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional, Dict, Any
from urllib.parse import quote, urlencode
from datetime import timedelta

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.storage.blob import (
    BlobServiceClient,
    BlobSasPermissions,
    ContentSettings,
    generate_blob_sas,
)

from roomview.core.config import settings
from roomview.core.exceptions import (
    InvalidInputError,
    ObjectNotFoundError,
    StorageError,
    StoragePermissionError,
)
from roomview.core.logging import get_logger
from roomview.core.timestamps import utc_now

logger = get_logger(__name__)


def validate_key(storage_key: str) -> str:
    """Reject keys that are empty, absolute or escape their namespace."""
    path = PurePosixPath(storage_key)
    if not storage_key or path.is_absolute() or ".." in path.parts:
        raise InvalidInputError(f"Invalid storage key: {storage_key!r}", field="key")
    return storage_key


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def put(self, data: bytes, storage_key: str, content_type: str = "image/png") -> str:
        """
        Store bytes under a caller-chosen key.

        Args:
            data: Raw bytes of the object
            storage_key: Stable, namespaced key (see pipeline.keys)
            content_type: MIME type of the object

        Returns:
            The storage key
        """
        pass

    @abstractmethod
    async def get(self, storage_key: str) -> bytes:
        """Read an object. Raises ObjectNotFoundError if missing."""
        pass

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if an object exists in storage."""
        pass

    @abstractmethod
    async def signed_read_url(self, storage_key: str, expires_in: Optional[int] = None) -> str:
        """
        Get a time-limited URL for reading the object.

        Args:
            storage_key: The object key
            expires_in: Seconds until URL expires

        Returns:
            URL string for accessing the object
        """
        pass

    @abstractmethod
    async def signed_write_url(self, storage_key: str, expires_in: Optional[int] = None) -> Dict[str, Any]:
        """
        Get a time-limited URL a client can PUT the object to.

        Returns:
            {"url", "key", "method", "headers", "expires_in"}
        """
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development.

    Signed URLs point at /api/v1/storage/objects/{key} and carry an
    HMAC-SHA256 signature over method, key and expiry.
    """

    def __init__(
        self,
        base_path: str = "./data/storage",
        signing_secret: Optional[str] = None,
        public_base_url: Optional[str] = None
    ):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.signing_secret = (signing_secret or settings.STORAGE_SIGNING_SECRET).encode()
        self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")

    def _path(self, storage_key: str) -> Path:
        return self.base_path / validate_key(storage_key)

    async def put(self, data: bytes, storage_key: str, content_type: str = "image/png") -> str:
        file_path = self._path(storage_key)
        tmp_path = file_path.with_name(file_path.name + ".part")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, file_path)
        except PermissionError as e:
            raise StoragePermissionError(f"Permission denied writing object: {e}", key=storage_key)
        except OSError as e:
            raise StorageError(f"Failed to write object: {e}", key=storage_key)
        return storage_key

    async def get(self, storage_key: str) -> bytes:
        file_path = self._path(storage_key)
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise ObjectNotFoundError(storage_key)
        except PermissionError as e:
            raise StoragePermissionError(f"Permission denied reading object: {e}", key=storage_key)
        except OSError as e:
            raise StorageError(f"Failed to read object: {e}", key=storage_key)

    async def exists(self, storage_key: str) -> bool:
        return self._path(storage_key).is_file()

    # =========================================================================
    # URL signing
    # =========================================================================

    def _signature(self, method: str, storage_key: str, expires: int) -> str:
        message = f"{method.upper()}\n{storage_key}\n{expires}".encode()
        return hmac.new(self.signing_secret, message, hashlib.sha256).hexdigest()

    def _signed_url(self, method: str, storage_key: str, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "sig": self._signature(method, storage_key, expires)})
        return f"{self.public_base_url}/api/v1/storage/objects/{quote(storage_key)}?{query}"

    def verify_signature(self, method: str, storage_key: str, expires: int, sig: str) -> bool:
        """Check a signed URL presented to the local object endpoint."""
        if expires < int(time.time()):
            return False
        expected = self._signature(method, storage_key, expires)
        return hmac.compare_digest(expected, sig)

    async def signed_read_url(self, storage_key: str, expires_in: Optional[int] = None) -> str:
        validate_key(storage_key)
        return self._signed_url("GET", storage_key, expires_in or settings.SIGNED_READ_URL_TTL_SECONDS)

    async def signed_write_url(self, storage_key: str, expires_in: Optional[int] = None) -> Dict[str, Any]:
        validate_key(storage_key)
        expires_in = expires_in or settings.SIGNED_WRITE_URL_TTL_SECONDS
        return {
            "url": self._signed_url("PUT", storage_key, expires_in),
            "key": storage_key,
            "method": "PUT",
            "headers": {},
            "expires_in": expires_in,
        }


# =============================================================================
# Azure Blob Storage Implementation
# =============================================================================
#
# To use Azure Blob Storage:
# 1. Set ENVIRONMENT=PROD
# 2. Set AZURE_STORAGE_CONNECTION_STRING (account key auth, needed for SAS)
# 3. Optionally set AZURE_CONTAINER_NAME
#
# The SDK client is synchronous; calls run in a worker thread.

class AzureBlobStorage(IStorage):
    """Azure Blob Storage implementation for production."""

    def __init__(self, connection_string: str, container_name: str = "roomview"):
        self.blob_service_client = BlobServiceClient.from_connection_string(connection_string)
        self.container_name = container_name
        self._ensure_container_exists()

    def _ensure_container_exists(self):
        """Create container if it doesn't exist."""
        try:
            container_client = self.blob_service_client.get_container_client(self.container_name)
            if not container_client.exists():
                container_client.create_container()
        except AzureError as e:
            raise RuntimeError(f"Failed to initialize Azure container: {e}")

    def _blob(self, storage_key: str):
        return self.blob_service_client.get_blob_client(
            container=self.container_name,
            blob=validate_key(storage_key)
        )

    def _translate(self, e: AzureError, storage_key: str) -> StorageError:
        if isinstance(e, ResourceNotFoundError):
            return ObjectNotFoundError(storage_key)
        if isinstance(e, ClientAuthenticationError):
            return StoragePermissionError(f"Azure rejected credentials: {e}", key=storage_key)
        if isinstance(e, HttpResponseError) and e.status_code == 403:
            return StoragePermissionError(f"Azure denied access: {e}", key=storage_key)
        return StorageError(f"Azure storage error: {e}", key=storage_key)

    async def put(self, data: bytes, storage_key: str, content_type: str = "image/png") -> str:
        blob_client = self._blob(storage_key)
        try:
            await asyncio.to_thread(
                blob_client.upload_blob,
                data,
                content_settings=ContentSettings(content_type=content_type),
                overwrite=True,
            )
        except AzureError as e:
            raise self._translate(e, storage_key)
        return storage_key

    async def get(self, storage_key: str) -> bytes:
        blob_client = self._blob(storage_key)
        try:
            downloader = await asyncio.to_thread(blob_client.download_blob)
            return await asyncio.to_thread(downloader.readall)
        except AzureError as e:
            raise self._translate(e, storage_key)

    async def exists(self, storage_key: str) -> bool:
        blob_client = self._blob(storage_key)
        try:
            return await asyncio.to_thread(blob_client.exists)
        except AzureError as e:
            raise self._translate(e, storage_key)

    def _sas_url(self, storage_key: str, permission: BlobSasPermissions, expires_in: int) -> str:
        blob_client = self._blob(storage_key)
        sas_token = generate_blob_sas(
            account_name=self.blob_service_client.account_name,
            container_name=self.container_name,
            blob_name=storage_key,
            account_key=self.blob_service_client.credential.account_key,
            permission=permission,
            expiry=utc_now() + timedelta(seconds=expires_in)
        )
        return f"{blob_client.url}?{sas_token}"

    async def signed_read_url(self, storage_key: str, expires_in: Optional[int] = None) -> str:
        return self._sas_url(
            storage_key,
            BlobSasPermissions(read=True),
            expires_in or settings.SIGNED_READ_URL_TTL_SECONDS,
        )

    async def signed_write_url(self, storage_key: str, expires_in: Optional[int] = None) -> Dict[str, Any]:
        expires_in = expires_in or settings.SIGNED_WRITE_URL_TTL_SECONDS
        return {
            "url": self._sas_url(storage_key, BlobSasPermissions(create=True, write=True), expires_in),
            "key": storage_key,
            "method": "PUT",
            "headers": {"x-ms-blob-type": "BlockBlob"},
            "expires_in": expires_in,
        }


class StorageFactory:
    """
    Factory for creating storage instances.

    ENVIRONMENT=PROD with a connection string selects Azure Blob Storage;
    everything else uses the local filesystem.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on environment."""
        if cls._instance is None:
            if settings.ENVIRONMENT.upper() == "PROD" and settings.AZURE_STORAGE_CONNECTION_STRING:
                cls._instance = AzureBlobStorage(
                    connection_string=settings.AZURE_STORAGE_CONNECTION_STRING,
                    container_name=settings.AZURE_CONTAINER_NAME
                )
                logger.info("storage_initialized", backend="azure", container=settings.AZURE_CONTAINER_NAME)
            else:
                cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
                logger.info("storage_initialized", backend="local", path=settings.LOCAL_STORAGE_PATH)

        return cls._instance

    @classmethod
    def set_storage(cls, storage: IStorage):
        """Install a specific backend (tests, scripts)."""
        cls._instance = storage

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
