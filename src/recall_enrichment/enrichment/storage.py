"""Thumbnail blob storage.

The pipeline only needs ``put(key, data, content_type)``.  Keys are derived
deterministically from the item, so storing a thumbnail for the same item
twice overwrites the previous object instead of adding a second one.
"""

from __future__ import annotations

import io
import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from minio import Minio
from minio.error import S3Error

from recall_enrichment.core.exceptions import StorageError
from recall_enrichment.enrichment.config import THUMBNAIL_EXTENSION

if TYPE_CHECKING:
    from recall_enrichment.config.settings import Settings

logger = logging.getLogger(__name__)


def thumbnail_key(user_id: str, item_id: str) -> str:
    """Return the storage key of an item's thumbnail: ``{user_id}/{item_id}.jpg``."""
    return f"{user_id}/{item_id}.{THUMBNAIL_EXTENSION}"


class ThumbnailStorage(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store *data* under *key*, replacing any existing object.

        Raises:
            StorageError: If the store rejects the write.
        """


class MinioThumbnailStorage(ThumbnailStorage):
    """Stores thumbnails in a MinIO / S3-compatible bucket.

    The bucket is created on the first write if it does not exist yet.

    Args:
        client: Configured :class:`minio.Minio` client.
        bucket: Bucket name (``Settings.thumbnail_container``).
    """

    def __init__(self, client: Minio, bucket: str) -> None:
        self._client = client
        self._bucket = bucket
        self._bucket_ready = False
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> MinioThumbnailStorage:
        client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_root_user,
            secret_key=settings.minio_root_password,
            secure=settings.minio_secure,
        )
        return cls(client, settings.thumbnail_container)

    def _ensure_bucket(self) -> None:
        with self._lock:
            if self._bucket_ready:
                return
            if not self._client.bucket_exists(self._bucket):
                logger.info("enrichment: creating thumbnail bucket %s", self._bucket)
                try:
                    self._client.make_bucket(self._bucket)
                except S3Error as exc:
                    # Another worker created it first.
                    if exc.code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                        raise
            self._bucket_ready = True

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._ensure_bucket()
            self._client.put_object(
                self._bucket,
                key,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        except S3Error as exc:
            raise StorageError(f"thumbnail upload failed: {exc.code}", key=key) from exc
        except OSError as exc:
            raise StorageError(f"thumbnail upload failed: {exc}", key=key) from exc
        logger.debug("enrichment: stored thumbnail %s/%s (%d bytes)", self._bucket, key, len(data))
