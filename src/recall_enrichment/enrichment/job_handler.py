"""Background enrichment of one item per job delivery.

:class:`AsyncEnrichmentJobHandler` is a plain async callable; the Celery
binding lives in :mod:`recall_enrichment.enrichment.tasks`.  The handler never
loops on failure itself: it reports :attr:`JobOutcome.RETRY` and lets the
broker redeliver with backoff.

Outcomes:

- ``skipped``   the item no longer exists (deleted between save and job)
- ``succeeded`` fields written, status ``succeeded``
- ``failed``    terminal fetch failure written to the item (SSRF denial,
  permanent 4xx)
- ``retry``     transient failure; nothing written, the item stays ``pending``

Re-running the same job recomputes everything and overwrites the same fields
and the same thumbnail key.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from recall_enrichment.core.exceptions import StorageError
from recall_enrichment.core.logging_config import job_id_var
from recall_enrichment.enrichment.http_fetcher import FetchTimeouts, HtmlFetcher
from recall_enrichment.enrichment.item_store import ItemStore
from recall_enrichment.enrichment.metadata_extractor import MetadataExtractor
from recall_enrichment.enrichment.models import EnrichmentJob, JobOutcome
from recall_enrichment.enrichment.thumbnails import ThumbnailPipeline

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AsyncEnrichmentJobHandler:
    """Runs the full pipeline for an :class:`EnrichmentJob` without the save-time budget.

    Args:
        store: Item persistence.
        fetcher: Shared SSRF-validated fetcher.
        extractor: HTML metadata extractor.
        thumbnails: Thumbnail pipeline.
        timeouts: Background fetch limits (longer than the save path's).
        clock: Returns the current UTC time; used for ``enriched_at``.
    """

    def __init__(
        self,
        store: ItemStore,
        fetcher: HtmlFetcher,
        extractor: MetadataExtractor,
        thumbnails: ThumbnailPipeline,
        *,
        timeouts: FetchTimeouts,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._extractor = extractor
        self._thumbnails = thumbnails
        self._timeouts = timeouts
        self._clock = clock

    async def process(self, job: EnrichmentJob) -> JobOutcome:
        """Handle one delivery of *job*.

        Never raises for pipeline or storage failures; they become
        :attr:`JobOutcome.RETRY`.
        """
        token = job_id_var.set(job.item_id)
        log = logger.bind(item_id=job.item_id, user_id=job.user_id)
        try:
            log.info("enrichment.job.started", url=job.url)
            outcome = await self._process(job, log)
        except Exception as exc:
            log.exception("enrichment.job.error", error=str(exc))
            outcome = JobOutcome.RETRY
        finally:
            job_id_var.reset(token)
        log.info("enrichment.job.finished", outcome=outcome.value)
        return outcome

    async def dead_letter(self, job: EnrichmentJob) -> bool:
        """Record terminal failure after the broker gave up on *job*.

        The write only lands while the item is still ``pending``.

        Returns:
            ``True`` if the item was marked failed.
        """
        token = job_id_var.set(job.item_id)
        try:
            updated = await self._call_store(
                self._store.mark_dead_lettered, job.item_id, job.user_id
            )
        finally:
            job_id_var.reset(token)
        logger.error(
            "enrichment.job.dead_lettered",
            item_id=job.item_id,
            user_id=job.user_id,
            marked_failed=updated,
        )
        return updated

    async def _process(self, job: EnrichmentJob, log: Any) -> JobOutcome:
        item = await self._call_store(self._store.get, job.item_id, job.user_id)
        if item is None:
            log.warning("enrichment.job.item_missing")
            return JobOutcome.SKIPPED

        fetched = await self._fetcher.fetch(job.url, self._timeouts)
        if fetched.error is not None:
            if fetched.error.is_terminal:
                log.warning("enrichment.job.terminal_failure", error=str(fetched.error))
                await self._call_store(
                    self._store.mark_failed,
                    job.item_id,
                    job.user_id,
                    fetched.error.user_message,
                )
                return JobOutcome.FAILED
            log.info("enrichment.job.fetch_failed", error=str(fetched.error))
            return JobOutcome.RETRY

        loop = asyncio.get_running_loop()
        metadata = await loop.run_in_executor(
            None, self._extractor.extract, fetched.content or b"", fetched.final_url
        )

        try:
            thumbnail_key = await self._thumbnails.generate(
                job.user_id, job.item_id, metadata.og_image_url, self._timeouts
            )
        except StorageError as exc:
            log.warning("enrichment.job.storage_failed", error=str(exc), key=exc.key)
            return JobOutcome.RETRY

        written = await self._call_store(
            functools.partial(
                self._store.write_success,
                job.item_id,
                job.user_id,
                title=metadata.title,
                excerpt=metadata.excerpt,
                preview_image_url=metadata.og_image_url,
                thumbnail_storage_key=thumbnail_key,
                enriched_at=self._clock(),
            )
        )
        if not written:
            log.info("enrichment.job.superseded")
        return JobOutcome.SUCCEEDED

    @staticmethod
    async def _call_store(func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
