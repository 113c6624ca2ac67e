"""Explicit wiring of the enrichment components.

Construction order is ``SsrfValidator → HtmlFetcher → MetadataExtractor →
ThumbnailPipeline → SyncEnrichmentService / AsyncEnrichmentJobHandler``.
There is no container: callers build what they need from
:class:`~recall_enrichment.config.settings.Settings`.

The :class:`httpx.AsyncClient` is bound to the event loop it is used on, and
Celery tasks run each job in a fresh ``asyncio.run()``, so clients are opened
per run through the async context managers below.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

import httpx

from recall_enrichment.config.settings import Settings, get_settings
from recall_enrichment.enrichment.http_fetcher import FetchTimeouts, HtmlFetcher
from recall_enrichment.enrichment.item_store import ItemStore, SqlItemStore
from recall_enrichment.enrichment.job_handler import AsyncEnrichmentJobHandler
from recall_enrichment.enrichment.metadata_extractor import MetadataExtractor
from recall_enrichment.enrichment.ssrf import SsrfValidator
from recall_enrichment.enrichment.storage import MinioThumbnailStorage, ThumbnailStorage
from recall_enrichment.enrichment.sync_service import SyncEnrichmentService
from recall_enrichment.enrichment.thumbnails import ThumbnailPipeline

# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


def save_path_timeouts(settings: Settings) -> FetchTimeouts:
    """Per-attempt limits for the save-time path (``fetch_timeout_seconds``)."""
    fetch = settings.fetch_timeout_seconds
    return FetchTimeouts(
        connect=min(settings.connect_timeout_seconds, fetch),
        read=fetch,
        total=fetch,
    )


def background_timeouts(settings: Settings) -> FetchTimeouts:
    """Per-attempt limits for background jobs (connect / read timeouts)."""
    return FetchTimeouts(
        connect=settings.connect_timeout_seconds,
        read=settings.read_timeout_seconds,
        total=settings.read_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Return a client that never follows redirects and ignores proxy env vars."""
    return httpx.AsyncClient(
        follow_redirects=False,
        trust_env=False,
        timeout=httpx.Timeout(
            settings.read_timeout_seconds, connect=settings.connect_timeout_seconds
        ),
        headers={"User-Agent": settings.user_agent},
    )


def build_fetcher(
    client: httpx.AsyncClient,
    settings: Settings,
    validator: SsrfValidator | None = None,
) -> HtmlFetcher:
    return HtmlFetcher(
        client,
        validator or SsrfValidator(),
        max_redirects=settings.max_redirects,
        max_response_bytes=settings.max_response_size_bytes,
        user_agent=settings.user_agent,
    )


def build_thumbnail_pipeline(
    fetcher: HtmlFetcher,
    storage: ThumbnailStorage,
    settings: Settings,
) -> ThumbnailPipeline:
    return ThumbnailPipeline(
        fetcher,
        storage,
        max_width=settings.thumbnail_max_width,
        max_height=settings.thumbnail_max_height,
        quality=settings.thumbnail_quality,
    )


def build_sync_service(
    client: httpx.AsyncClient,
    storage: ThumbnailStorage,
    settings: Settings,
    validator: SsrfValidator | None = None,
) -> SyncEnrichmentService:
    fetcher = build_fetcher(client, settings, validator)
    return SyncEnrichmentService(
        fetcher,
        MetadataExtractor(),
        build_thumbnail_pipeline(fetcher, storage, settings),
        master_timeout=settings.master_timeout_seconds,
        fetch_timeouts=save_path_timeouts(settings),
    )


def build_job_handler(
    client: httpx.AsyncClient,
    storage: ThumbnailStorage,
    store: ItemStore,
    settings: Settings,
    validator: SsrfValidator | None = None,
) -> AsyncEnrichmentJobHandler:
    fetcher = build_fetcher(client, settings, validator)
    return AsyncEnrichmentJobHandler(
        store,
        fetcher,
        MetadataExtractor(),
        build_thumbnail_pipeline(fetcher, storage, settings),
        timeouts=background_timeouts(settings),
    )


@lru_cache
def get_thumbnail_storage() -> ThumbnailStorage:
    """Process-wide MinIO storage built from the current settings."""
    return MinioThumbnailStorage.from_settings(get_settings())


@lru_cache
def get_item_store() -> ItemStore:
    return SqlItemStore()


# ---------------------------------------------------------------------------
# Per-run contexts
# ---------------------------------------------------------------------------


@asynccontextmanager
async def open_job_handler(
    settings: Settings | None = None,
) -> AsyncIterator[AsyncEnrichmentJobHandler]:
    """Yield a job handler whose HTTP client is closed on exit."""
    settings = settings or get_settings()
    async with create_http_client(settings) as client:
        yield build_job_handler(client, get_thumbnail_storage(), get_item_store(), settings)


@asynccontextmanager
async def open_sync_service(
    settings: Settings | None = None,
) -> AsyncIterator[SyncEnrichmentService]:
    """Yield a save-path service whose HTTP client is closed on exit."""
    settings = settings or get_settings()
    async with create_http_client(settings) as client:
        yield build_sync_service(client, get_thumbnail_storage(), settings)
