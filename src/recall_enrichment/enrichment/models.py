"""Data model of the enrichment pipeline.

``EnrichmentJob`` is the broker message and is validated with pydantic since it
arrives as JSON.  The remaining types are in-process values and are plain
dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnrichmentJob(BaseModel):
    """Background enrichment request for one saved item.

    Created once per save attempt that needs the async fallback.  The broker
    may deliver the same job more than once.

    Attributes:
        item_id: Identifier of the item record to enrich.
        user_id: Owner of the item; part of the item key and the thumbnail key.
        url: The URL the user saved.
        enqueued_at: When the save path published the job (UTC).
    """

    model_config = ConfigDict(frozen=True)

    item_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @field_validator("item_id", "user_id", "url")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


@dataclass(frozen=True)
class PageMetadata:
    """Metadata extracted from one HTML page.  Any field may be ``None``."""

    title: str | None = None
    excerpt: str | None = None
    og_image_url: str | None = None

    @property
    def has_text(self) -> bool:
        return bool(self.title or self.excerpt)


@dataclass(frozen=True)
class SyncEnrichmentResult:
    """Outcome of the save-time enrichment attempt.

    Attributes:
        title: Sanitised page title, if one was extracted in time.
        excerpt: Sanitised page excerpt, if one was extracted in time.
        preview_image_url: Absolute URL of the page's preview image.
        needs_async_fallback: ``True`` whenever some step did not complete
            within the master timeout (or failed) and a background job should
            finish the work.
        error: Machine-readable cause when the page itself could not be
            enriched (``"timeout"``, ``"ssrf-denied:loopback"``, ...).
        duration: Wall-clock time spent in the attempt.
        thumbnail_storage_key: Blob key of the stored thumbnail, if one was
            stored in time.
    """

    title: str | None
    excerpt: str | None
    preview_image_url: str | None
    needs_async_fallback: bool
    error: str | None
    duration: timedelta
    thumbnail_storage_key: str | None = None


class JobOutcome(str, Enum):
    """What the job handler tells the broker adapter about one delivery."""

    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ItemEnrichmentState:
    """The enrichment-relevant slice of an item record."""

    item_id: str
    user_id: str
    title: str | None = None
    excerpt: str | None = None
    preview_image_url: str | None = None
    thumbnail_storage_key: str | None = None
    enrichment_status: str = "pending"
    enrichment_error: str | None = None
    enriched_at: datetime | None = None
