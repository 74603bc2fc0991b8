import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Optional, TypeVar

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

import config
from config import SUPPORTED_IMAGE_TYPES
from exceptions import SizeExceededError, StorageError, UnsupportedExtensionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_extension(ext: str) -> str:
    """Lower-case ``ext``, strip a leading dot and check it against the allow-list."""
    ext = ext.lower().lstrip(".")
    if ext not in SUPPORTED_IMAGE_TYPES:
        allowed = ", ".join(sorted(SUPPORTED_IMAGE_TYPES))
        raise UnsupportedExtensionError(f"Unsupported file extension: {ext} (allowed: {allowed})")
    return ext


def sniff_extension(data: bytes) -> Optional[str]:
    """Guess an image extension from its file signature."""
    if data.startswith(b"\xff\xd8\xff"):
        return "jpg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    return None


def key_from_url(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]


class BlobStore(ABC):
    """Durable image storage addressed by generated identifiers.

    Every operation is bounded by ``timeout`` seconds; a timeout is reported
    as a :class:`StorageError` like any other backend failure.
    """

    def __init__(self, max_size: int, timeout: float):
        self.max_size = max_size
        self.timeout = timeout

    async def _bounded(self, operation: Awaitable[T], description: str) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise StorageError(f"{description} timed out after {self.timeout}s")

    def _check_upload(self, data: bytes, ext: str, max_size: Optional[int]) -> str:
        ext = normalize_extension(ext)
        limit = self.max_size if max_size is None else max_size
        if len(data) > limit:
            raise SizeExceededError(f"File size {len(data)} bytes exceeds maximum allowed {limit} bytes")
        return ext

    @staticmethod
    def new_key(ext: str) -> str:
        return f"{uuid.uuid4().hex}.{ext}"

    @abstractmethod
    async def upload(self, data: bytes, ext: str, max_size: Optional[int] = None) -> str:
        """Store ``data`` under a new key and return its public URL."""

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Remove the blob behind ``url``. A blob that is already gone is not an error."""

    @abstractmethod
    async def exists(self, url: str) -> bool:
        """Report whether the blob behind ``url`` is present."""


class LocalBlobStore(BlobStore):
    def __init__(self, upload_dir: str, base_url: str, max_size: int, timeout: float):
        super().__init__(max_size, timeout)
        self.upload_dir = upload_dir
        self.base_url = base_url.rstrip("/")

    def _path(self, url: str) -> str:
        return os.path.join(self.upload_dir, key_from_url(url))

    def _write(self, key: str, data: bytes) -> None:
        os.makedirs(self.upload_dir, exist_ok=True)
        with open(os.path.join(self.upload_dir, key), "wb") as f:
            f.write(data)

    def _remove(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.info("Blob %s already absent", path)

    def _remove_when_done(self, key: str, write: "asyncio.Future[None]") -> None:
        """Delete ``key`` once an abandoned write finishes; the worker thread cannot be interrupted."""
        path = os.path.join(self.upload_dir, key)

        def _cleanup(done: "asyncio.Future[None]") -> None:
            if not done.cancelled() and done.exception() is not None:
                logger.warning("Abandoned upload of %s failed: %s", key, done.exception())
            done.get_loop().run_in_executor(None, self._remove, path)
            logger.info("Removing abandoned upload %s", key)

        write.add_done_callback(_cleanup)

    async def upload(self, data: bytes, ext: str, max_size: Optional[int] = None) -> str:
        ext = self._check_upload(data, ext, max_size)
        key = self.new_key(ext)
        write = asyncio.ensure_future(asyncio.to_thread(self._write, key, data))
        try:
            await self._bounded(asyncio.shield(write), f"Upload of {key}")
        except StorageError:
            logger.error("Upload of %s timed out; the file will be removed when the write completes", key)
            self._remove_when_done(key, write)
            raise
        except asyncio.CancelledError:
            self._remove_when_done(key, write)
            raise
        except OSError as e:
            raise StorageError(f"Failed to write file {key}: {e}") from e
        return f"{self.base_url}/{key}"

    async def delete(self, url: str) -> None:
        path = self._path(url)
        try:
            await self._bounded(asyncio.to_thread(self._remove, path), f"Deletion of {path}")
        except OSError as e:
            raise StorageError(f"Failed to delete file {path}: {e}") from e

    async def exists(self, url: str) -> bool:
        path = self._path(url)
        return await self._bounded(asyncio.to_thread(os.path.isfile, path), f"Existence check for {path}")


class S3BlobStore(BlobStore):
    def __init__(self, bucket: str, base_url: str, max_size: int, timeout: float,
                 session: Optional[Any] = None, endpoint_url: Optional[str] = None,
                 region: Optional[str] = None, access_key: str = "", secret_key: str = ""):
        super().__init__(max_size, timeout)
        if not bucket:
            raise StorageError("Missing required S3 configuration: bucket")
        self.bucket = bucket
        self.base_url = base_url.rstrip("/")
        self.endpoint_url = endpoint_url
        # aioboto3 sessions are reusable; a client is opened per operation
        self._session = session or aioboto3.Session(
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region,
        )

    def _client(self):
        return self._session.client("s3", endpoint_url=self.endpoint_url)

    async def _put(self, key: str, data: bytes, content_type: str) -> None:
        async with self._client() as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    async def _delete(self, key: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)

    async def _head(self, key: str) -> bool:
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                    return False
                raise
        return True

    async def upload(self, data: bytes, ext: str, max_size: Optional[int] = None) -> str:
        ext = self._check_upload(data, ext, max_size)
        key = self.new_key(ext)
        try:
            await self._bounded(self._put(key, data, SUPPORTED_IMAGE_TYPES[ext]), f"Upload of {key}")
        except StorageError:
            # The request may still have reached the bucket
            logger.error("Upload of %s to S3 bucket %s timed out; the object may exist", key, self.bucket)
            raise
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {key} to S3 bucket {self.bucket}: {e}") from e
        return f"{self.base_url}/{key}"

    async def delete(self, url: str) -> None:
        key = key_from_url(url)
        try:
            await self._bounded(self._delete(key), f"Deletion of {key}")
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {key} from S3 bucket {self.bucket}: {e}") from e

    async def exists(self, url: str) -> bool:
        key = key_from_url(url)
        try:
            return await self._bounded(self._head(key), f"Existence check for {key}")
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to check existence of {key} in S3 bucket {self.bucket}: {e}") from e


def create_blob_store(storage_type: str = config.STORAGE_TYPE) -> BlobStore:
    if storage_type == "s3":
        return S3BlobStore(
            bucket=config.S3_BUCKET,
            base_url=config.S3_BASE_URL,
            max_size=config.DEFAULT_MAX_IMAGE_SIZE,
            timeout=config.STORAGE_TIMEOUT_SECONDS,
            endpoint_url=config.S3_ENDPOINT_URL,
            region=config.S3_REGION,
            access_key=config.S3_ACCESS_KEY_ID,
            secret_key=config.S3_SECRET_ACCESS_KEY,
        )
    return LocalBlobStore(
        upload_dir=config.UPLOAD_DIR,
        base_url=config.UPLOAD_BASE_URL + config.UPLOAD_URL_PREFIX,
        max_size=config.DEFAULT_MAX_IMAGE_SIZE,
        timeout=config.STORAGE_TIMEOUT_SECONDS,
    )
