"""Tests for the save-path glue: persisting the sync result and enqueueing."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from recall_enrichment.enrichment.config import ENRICHMENT_QUEUE, PROCESS_TASK_NAME
from recall_enrichment.enrichment.models import EnrichmentJob, SyncEnrichmentResult
from recall_enrichment.enrichment.publisher import enqueue_enrichment_job, enrich_saved_item
from recall_enrichment.workers.celery_app import celery_app


def _service(result: SyncEnrichmentResult) -> MagicMock:
    service = MagicMock()
    service.enrich_sync = AsyncMock(return_value=result)
    return service


def _complete() -> SyncEnrichmentResult:
    return SyncEnrichmentResult(
        title="Title",
        excerpt="Excerpt",
        preview_image_url="https://cdn.example.com/a.png",
        needs_async_fallback=False,
        error=None,
        duration=timedelta(milliseconds=250),
        thumbnail_storage_key="user-1/item-1.jpg",
    )


def _timed_out() -> SyncEnrichmentResult:
    return SyncEnrichmentResult(
        title=None,
        excerpt=None,
        preview_image_url=None,
        needs_async_fallback=True,
        error="timeout",
        duration=timedelta(seconds=4),
    )


class TestEnqueueEnrichmentJob:
    def test_sends_json_job_to_enrichment_queue(self) -> None:
        job = EnrichmentJob(item_id="item-1", user_id="user-1", url="https://example.com/")
        with patch.object(celery_app, "send_task", return_value=MagicMock(id="task-42")) as send:
            task_id = enqueue_enrichment_job(job)

        assert task_id == "task-42"
        name = send.call_args.args[0]
        kwargs = send.call_args.kwargs
        assert name == PROCESS_TASK_NAME
        assert kwargs["queue"] == ENRICHMENT_QUEUE
        sent = kwargs["kwargs"]["job"]
        assert sent["item_id"] == "item-1"
        assert sent["url"] == "https://example.com/"
        assert isinstance(sent["enqueued_at"], str)


@pytest.mark.asyncio
class TestEnrichSavedItem:
    async def test_complete_result_is_stored_without_job(self, item_store) -> None:
        item_store.add("item-1", "user-1")
        with patch("recall_enrichment.enrichment.publisher.enqueue_enrichment_job") as enqueue:
            result = await enrich_saved_item(
                "https://example.com/",
                "user-1",
                "item-1",
                service=_service(_complete()),
                store=item_store,
            )

        assert result.needs_async_fallback is False
        enqueue.assert_not_called()
        item = item_store.get("item-1", "user-1")
        assert item is not None
        assert item.enrichment_status == "succeeded"
        assert item.thumbnail_storage_key == "user-1/item-1.jpg"

    async def test_incomplete_result_enqueues_job(self, item_store) -> None:
        item_store.add("item-1", "user-1")
        with patch("recall_enrichment.enrichment.publisher.enqueue_enrichment_job") as enqueue:
            await enrich_saved_item(
                "https://slow.example.com/",
                "user-1",
                "item-1",
                service=_service(_timed_out()),
                store=item_store,
            )

        enqueue.assert_called_once()
        job = enqueue.call_args.args[0]
        assert isinstance(job, EnrichmentJob)
        assert (job.item_id, job.user_id, job.url) == (
            "item-1",
            "user-1",
            "https://slow.example.com/",
        )
        item = item_store.get("item-1", "user-1")
        assert item is not None and item.enrichment_status == "pending"

    async def test_store_failure_does_not_raise(self, item_store) -> None:
        with patch.object(item_store, "write_sync_result", side_effect=RuntimeError("db down")), patch(
            "recall_enrichment.enrichment.publisher.enqueue_enrichment_job"
        ) as enqueue:
            result = await enrich_saved_item(
                "https://example.com/",
                "user-1",
                "item-1",
                service=_service(_timed_out()),
                store=item_store,
            )

        assert result.error == "timeout"
        enqueue.assert_called_once()

    async def test_enqueue_failure_does_not_raise(self, item_store) -> None:
        with patch(
            "recall_enrichment.enrichment.publisher.enqueue_enrichment_job",
            side_effect=ConnectionError("broker unreachable"),
        ):
            result = await enrich_saved_item(
                "https://example.com/",
                "user-1",
                "item-1",
                service=_service(_timed_out()),
                store=item_store,
            )

        assert result.needs_async_fallback is True
