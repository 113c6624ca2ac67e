"""Save-time enrichment under a hard wall-clock deadline.

:meth:`SyncEnrichmentService.enrich_sync` runs fetch → extract → thumbnail
inside a single ``asyncio.wait_for``.  When the master timeout expires the
in-flight step is cancelled (closing its streamed response) and whatever was
finished before the deadline is returned with ``needs_async_fallback=True``.

The service never raises into the save path: every failure degrades to a
result that asks for the background job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta

from recall_enrichment.core.exceptions import StorageError
from recall_enrichment.enrichment.http_fetcher import FetchError, FetchTimeouts, HtmlFetcher
from recall_enrichment.enrichment.metadata_extractor import MetadataExtractor
from recall_enrichment.enrichment.models import SyncEnrichmentResult
from recall_enrichment.enrichment.thumbnails import ThumbnailPipeline

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "timeout"
INTERNAL_ERROR = "internal-error"


@dataclass
class _Progress:
    """Fields completed so far; survives cancellation of the pipeline task."""

    title: str | None = None
    excerpt: str | None = None
    preview_image_url: str | None = None
    thumbnail_storage_key: str | None = None
    fetch_error: FetchError | None = None
    page_done: bool = False
    thumbnail_done: bool = False


class SyncEnrichmentService:
    """Bounded-latency enrichment for the item-save path.

    Args:
        fetcher: Shared SSRF-validated fetcher.
        extractor: HTML metadata extractor.
        thumbnails: Thumbnail pipeline.
        master_timeout: Deadline for the whole attempt (seconds).
        fetch_timeouts: Limits for each individual HTTP attempt.
    """

    def __init__(
        self,
        fetcher: HtmlFetcher,
        extractor: MetadataExtractor,
        thumbnails: ThumbnailPipeline,
        *,
        master_timeout: float,
        fetch_timeouts: FetchTimeouts,
    ) -> None:
        self._fetcher = fetcher
        self._extractor = extractor
        self._thumbnails = thumbnails
        self._master_timeout = master_timeout
        self._fetch_timeouts = fetch_timeouts

    async def enrich_sync(self, url: str, user_id: str, item_id: str) -> SyncEnrichmentResult:
        """Enrich *url* for item *item_id* within the master timeout.

        Args:
            url: URL the user saved.
            user_id: Item owner (part of the thumbnail key).
            item_id: Item being saved.

        Returns:
            A :class:`SyncEnrichmentResult`.  ``needs_async_fallback`` is set
            when anything is missing because of a failure or the deadline.
        """
        started = time.monotonic()
        progress = _Progress()
        logger.info("enrichment: sync attempt for item %s (%s)", item_id, url)

        try:
            await asyncio.wait_for(
                self._run(url, user_id, item_id, progress),
                timeout=self._master_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "enrichment: sync attempt for item %s hit the %.1fs deadline",
                item_id,
                self._master_timeout,
            )
            return self._build(progress, started, timed_out=True)
        except Exception:
            logger.exception("enrichment: sync attempt for item %s failed", item_id)
            return self._build(progress, started, error=INTERNAL_ERROR)

        return self._build(progress, started)

    async def _run(self, url: str, user_id: str, item_id: str, progress: _Progress) -> None:
        fetched = await self._fetcher.fetch(url, self._fetch_timeouts)
        if fetched.error is not None:
            progress.fetch_error = fetched.error
            logger.info("enrichment: sync fetch for item %s failed: %s", item_id, fetched.error)
            return

        # Parsing is CPU-bound; on the loop it would hold off the deadline.
        loop = asyncio.get_running_loop()
        metadata = await loop.run_in_executor(
            None, self._extractor.extract, fetched.content or b"", fetched.final_url
        )
        progress.title = metadata.title
        progress.excerpt = metadata.excerpt
        progress.preview_image_url = metadata.og_image_url
        progress.page_done = True

        if metadata.og_image_url is None:
            return

        try:
            progress.thumbnail_storage_key = await self._thumbnails.generate(
                user_id, item_id, metadata.og_image_url, self._fetch_timeouts
            )
        except StorageError as exc:
            logger.warning("enrichment: sync thumbnail store for item %s failed: %s", item_id, exc)
            return
        progress.thumbnail_done = progress.thumbnail_storage_key is not None

    @staticmethod
    def _build(
        progress: _Progress,
        started: float,
        *,
        timed_out: bool = False,
        error: str | None = None,
    ) -> SyncEnrichmentResult:
        duration = timedelta(seconds=time.monotonic() - started)

        if progress.fetch_error is not None:
            return SyncEnrichmentResult(
                title=None,
                excerpt=None,
                preview_image_url=None,
                needs_async_fallback=True,
                error=str(progress.fetch_error),
                duration=duration,
            )

        if error is None and timed_out and not progress.page_done:
            error = TIMEOUT_ERROR

        incomplete = (
            error is not None
            or not progress.page_done
            or (progress.preview_image_url is not None and not progress.thumbnail_done)
        )
        return SyncEnrichmentResult(
            title=progress.title,
            excerpt=progress.excerpt,
            preview_image_url=progress.preview_image_url,
            needs_async_fallback=incomplete,
            error=error,
            duration=duration,
            thumbnail_storage_key=progress.thumbnail_storage_key,
        )
