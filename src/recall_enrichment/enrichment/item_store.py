"""Persistence of enrichment results on item records.

The ``items`` table is owned by the CRUD API.  This module touches only its
enrichment columns (plus ``title`` / ``excerpt`` when they are still empty):

- ``enrichment_status`` / ``enrichment_error`` / ``enriched_at``
- ``preview_image_url`` / ``thumbnail_storage_key``

Duplicate deliveries of the same job may race.  Writes are therefore
conditional:

- a success write only lands if the row's ``enriched_at`` is not newer than
  the one being written, so an older result never replaces a newer one;
- failure writes (terminal fetch failure, dead letter) only land while the
  item is still ``pending``, so a job that already succeeded is never marked
  failed afterwards.

Every write method returns ``True`` when a row was updated.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.exc import DataError

from recall_enrichment.core.database import get_sync_session
from recall_enrichment.enrichment.config import (
    DEAD_LETTER_MESSAGE,
    ERROR_MAX_LENGTH,
    GENERIC_ERROR_MESSAGE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCEEDED,
)
from recall_enrichment.enrichment.models import ItemEnrichmentState, SyncEnrichmentResult

logger = logging.getLogger(__name__)


def sanitize_error(message: str | None) -> str:
    """Trim *message* to :data:`ERROR_MAX_LENGTH`; blank becomes a generic message."""
    if not message or not message.strip():
        return GENERIC_ERROR_MESSAGE
    trimmed = message.strip()
    return trimmed[:ERROR_MAX_LENGTH]


class ItemStore(ABC):
    """Read and conditionally update the enrichment fields of one item."""

    @abstractmethod
    def get(self, item_id: str, user_id: str) -> ItemEnrichmentState | None:
        """Return the item owned by *user_id*, or ``None`` if it does not exist."""

    @abstractmethod
    def write_success(
        self,
        item_id: str,
        user_id: str,
        *,
        title: str | None,
        excerpt: str | None,
        preview_image_url: str | None,
        thumbnail_storage_key: str | None,
        enriched_at: datetime,
    ) -> bool:
        """Mark the item ``succeeded`` and store the enrichment fields.

        Existing ``title`` / ``excerpt`` values are kept.  ``None`` for the
        image URL or thumbnail key leaves the stored value untouched.  Skipped
        when the row already carries a newer ``enriched_at``.
        """

    @abstractmethod
    def write_partial(
        self,
        item_id: str,
        user_id: str,
        *,
        title: str | None,
        excerpt: str | None,
        preview_image_url: str | None,
        thumbnail_storage_key: str | None,
    ) -> bool:
        """Fill in whatever fields are known while the item stays ``pending``."""

    @abstractmethod
    def mark_failed(self, item_id: str, user_id: str, error: str) -> bool:
        """Mark a ``pending`` item ``failed`` with a sanitised *error*."""

    @abstractmethod
    def mark_dead_lettered(self, item_id: str, user_id: str) -> bool:
        """Mark a ``pending`` item ``failed`` with :data:`DEAD_LETTER_MESSAGE`."""

    def write_sync_result(
        self,
        item_id: str,
        user_id: str,
        result: SyncEnrichmentResult,
        *,
        enriched_at: datetime,
    ) -> bool:
        """Persist a save-time result.

        A complete result finishes the enrichment.  An incomplete one only
        records the fields obtained so far and leaves the item ``pending`` for
        the background job; the save path never writes ``failed``.
        """
        fields = {
            "title": result.title,
            "excerpt": result.excerpt,
            "preview_image_url": result.preview_image_url,
            "thumbnail_storage_key": result.thumbnail_storage_key,
        }
        if not result.needs_async_fallback and result.error is None:
            return self.write_success(item_id, user_id, enriched_at=enriched_at, **fields)
        if not any(fields.values()):
            return False
        return self.write_partial(item_id, user_id, **fields)


class SqlItemStore(ItemStore):
    """:class:`ItemStore` over the ``items`` table using a synchronous session."""

    def get(self, item_id: str, user_id: str) -> ItemEnrichmentState | None:
        try:
            with get_sync_session() as session:
                row = session.execute(
                    text(
                        """
                        SELECT id, user_id, title, excerpt, preview_image_url,
                               thumbnail_storage_key, enrichment_status,
                               enrichment_error, enriched_at
                        FROM items
                        WHERE id = :item_id
                          AND user_id = :user_id
                        """
                    ),
                    {"item_id": item_id, "user_id": user_id},
                ).fetchone()
        except DataError as exc:
            # Malformed identifier for the column type: no such item.
            logger.warning("enrichment: invalid item id %r: %s", item_id, exc.orig)
            return None

        if row is None:
            return None
        data = row._mapping
        return ItemEnrichmentState(
            item_id=str(data["id"]),
            user_id=str(data["user_id"]),
            title=data["title"],
            excerpt=data["excerpt"],
            preview_image_url=data["preview_image_url"],
            thumbnail_storage_key=data["thumbnail_storage_key"],
            enrichment_status=data["enrichment_status"] or STATUS_PENDING,
            enrichment_error=data["enrichment_error"],
            enriched_at=data["enriched_at"],
        )

    def write_success(
        self,
        item_id: str,
        user_id: str,
        *,
        title: str | None,
        excerpt: str | None,
        preview_image_url: str | None,
        thumbnail_storage_key: str | None,
        enriched_at: datetime,
    ) -> bool:
        return self._execute(
            """
            UPDATE items
            SET title = COALESCE(title, :title),
                excerpt = COALESCE(excerpt, :excerpt),
                preview_image_url = COALESCE(:preview_image_url, preview_image_url),
                thumbnail_storage_key = COALESCE(:thumbnail_storage_key, thumbnail_storage_key),
                enrichment_status = :status,
                enrichment_error = NULL,
                enriched_at = :enriched_at,
                updated_at = :enriched_at
            WHERE id = :item_id
              AND user_id = :user_id
              AND (enriched_at IS NULL OR enriched_at <= :enriched_at)
            """,
            {
                "item_id": item_id,
                "user_id": user_id,
                "title": title,
                "excerpt": excerpt,
                "preview_image_url": preview_image_url,
                "thumbnail_storage_key": thumbnail_storage_key,
                "status": STATUS_SUCCEEDED,
                "enriched_at": enriched_at,
            },
        )

    def write_partial(
        self,
        item_id: str,
        user_id: str,
        *,
        title: str | None,
        excerpt: str | None,
        preview_image_url: str | None,
        thumbnail_storage_key: str | None,
    ) -> bool:
        return self._execute(
            """
            UPDATE items
            SET title = COALESCE(title, :title),
                excerpt = COALESCE(excerpt, :excerpt),
                preview_image_url = COALESCE(:preview_image_url, preview_image_url),
                thumbnail_storage_key = COALESCE(:thumbnail_storage_key, thumbnail_storage_key)
            WHERE id = :item_id
              AND user_id = :user_id
              AND enrichment_status = :pending
            """,
            {
                "item_id": item_id,
                "user_id": user_id,
                "title": title,
                "excerpt": excerpt,
                "preview_image_url": preview_image_url,
                "thumbnail_storage_key": thumbnail_storage_key,
                "pending": STATUS_PENDING,
            },
        )

    def mark_failed(self, item_id: str, user_id: str, error: str) -> bool:
        return self._mark_failed(item_id, user_id, sanitize_error(error))

    def mark_dead_lettered(self, item_id: str, user_id: str) -> bool:
        return self._mark_failed(item_id, user_id, DEAD_LETTER_MESSAGE)

    def _mark_failed(self, item_id: str, user_id: str, error: str) -> bool:
        return self._execute(
            """
            UPDATE items
            SET enrichment_status = :failed,
                enrichment_error = :error
            WHERE id = :item_id
              AND user_id = :user_id
              AND enrichment_status = :pending
            """,
            {
                "item_id": item_id,
                "user_id": user_id,
                "error": error,
                "failed": STATUS_FAILED,
                "pending": STATUS_PENDING,
            },
        )

    def _execute(self, statement: str, params: dict[str, object]) -> bool:
        with get_sync_session() as session:
            result = session.execute(text(statement), params)
            session.commit()
            updated = (result.rowcount or 0) > 0
        if not updated:
            logger.debug(
                "enrichment: conditional update skipped for item %s", params["item_id"]
            )
        return updated
