"""Save-path entry points: run the bounded attempt and hand off to the worker.

The CRUD API calls :func:`enrich_saved_item` right after inserting an item
with ``enrichment_status = "pending"``.  It never raises: a failure to
persist the partial result or to enqueue the job is logged and the save
proceeds.

Usage::

    from recall_enrichment.enrichment.publisher import enrich_saved_item

    result = await enrich_saved_item(item.url, user.id, item.id)
"""

from __future__ import annotations

import asyncio
import functools
from datetime import datetime, timezone

import structlog

from recall_enrichment.enrichment.config import ENRICHMENT_QUEUE, PROCESS_TASK_NAME
from recall_enrichment.enrichment.item_store import ItemStore
from recall_enrichment.enrichment.models import EnrichmentJob, SyncEnrichmentResult
from recall_enrichment.enrichment.pipeline import get_item_store, open_sync_service
from recall_enrichment.enrichment.sync_service import SyncEnrichmentService
from recall_enrichment.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


def enqueue_enrichment_job(job: EnrichmentJob) -> str:
    """Publish *job* to the ``enrichment`` queue.

    Returns:
        The Celery task id.
    """
    result = celery_app.send_task(
        PROCESS_TASK_NAME,
        kwargs={"job": job.model_dump(mode="json")},
        queue=ENRICHMENT_QUEUE,
    )
    logger.info(
        "enrichment.job.enqueued",
        item_id=job.item_id,
        user_id=job.user_id,
        task_id=result.id,
    )
    return result.id


async def enrich_saved_item(
    url: str,
    user_id: str,
    item_id: str,
    *,
    service: SyncEnrichmentService | None = None,
    store: ItemStore | None = None,
) -> SyncEnrichmentResult:
    """Enrich a freshly saved item and schedule the background job if needed.

    Args:
        url: URL the user saved.
        user_id: Item owner.
        item_id: Newly inserted item.
        service: Save-path service; one is opened from settings when omitted.
        store: Item persistence; defaults to the SQL store.

    Returns:
        The save-time :class:`SyncEnrichmentResult`.
    """
    if service is None:
        async with open_sync_service() as opened:
            result = await opened.enrich_sync(url, user_id, item_id)
    else:
        result = await service.enrich_sync(url, user_id, item_id)

    store = store or get_item_store()
    loop = asyncio.get_running_loop()
    log = logger.bind(item_id=item_id, user_id=user_id)

    try:
        await loop.run_in_executor(
            None,
            functools.partial(
                store.write_sync_result,
                item_id,
                user_id,
                result,
                enriched_at=datetime.now(tz=timezone.utc),
            ),
        )
    except Exception as exc:
        log.warning("enrichment.sync.persist_failed", error=str(exc))

    if result.needs_async_fallback:
        job = EnrichmentJob(item_id=item_id, user_id=user_id, url=url)
        try:
            await loop.run_in_executor(None, enqueue_enrichment_job, job)
        except Exception as exc:
            log.error("enrichment.job.enqueue_failed", error=str(exc))

    log.info(
        "enrichment.sync.finished",
        needs_async_fallback=result.needs_async_fallback,
        error=result.error,
        duration_ms=round(result.duration.total_seconds() * 1000, 1),
    )
    return result
