"""Celery tasks for background link enrichment.

Two tasks are provided:

``process_enrichment_job``
    Runs :meth:`AsyncEnrichmentJobHandler.process` for one
    :class:`~recall_enrichment.enrichment.models.EnrichmentJob`.  A ``retry``
    outcome is raised as :class:`EnrichmentRetryError` so that Celery's
    ``autoretry_for`` policy redelivers the job with exponential backoff.

``dead_letter_enrichment_job``
    Published by :meth:`EnrichmentTask.on_failure` once the retries are
    exhausted.  Marks the item ``failed`` unless it already left ``pending``.

Task naming convention::

    recall_enrichment.enrichment.tasks.<action>

Retry policy:
    ``max_retries = Settings.enrichment_max_retries``, backoff capped at five
    minutes.  Tasks are acknowledged late and rejected on worker loss, so a
    crashed worker leads to redelivery and the handler must be idempotent.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from celery import Task
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from recall_enrichment.config.settings import get_settings
from recall_enrichment.core.exceptions import EnrichmentRetryError
from recall_enrichment.enrichment.config import (
    DEAD_LETTER_QUEUE,
    DEAD_LETTER_TASK_NAME,
    PROCESS_TASK_NAME,
)
from recall_enrichment.enrichment.models import EnrichmentJob, JobOutcome
from recall_enrichment.enrichment.pipeline import open_job_handler
from recall_enrichment.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)

_settings = get_settings()


def _parse_job(payload: Any) -> EnrichmentJob | None:
    try:
        return EnrichmentJob.model_validate(payload)
    except ValidationError as exc:
        logger.error("enrichment.job.invalid_payload", errors=exc.errors(include_url=False))
        return None


async def _process(job: EnrichmentJob) -> JobOutcome:
    async with open_job_handler() as handler:
        return await handler.process(job)


async def _dead_letter(job: EnrichmentJob) -> bool:
    async with open_job_handler() as handler:
        return await handler.dead_letter(job)


class EnrichmentTask(Task):
    """Base task that forwards jobs whose retries ran out to the dead-letter queue."""

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        einfo: Any,
    ) -> None:
        if not isinstance(exc, EnrichmentRetryError):
            # Not retry exhaustion (e.g. a time limit); the item stays pending.
            logger.error(
                "enrichment.job.task_error",
                task_id=task_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return

        payload = kwargs.get("job") if kwargs else None
        if payload is None and args:
            payload = args[0]
        if payload is None:
            logger.error("enrichment.job.failed_without_payload", task_id=task_id)
            return

        logger.warning(
            "enrichment.job.retries_exhausted",
            task_id=task_id,
            error=str(exc),
            retries=self.request.retries,
        )
        celery_app.send_task(
            DEAD_LETTER_TASK_NAME,
            kwargs={"job": payload},
            queue=DEAD_LETTER_QUEUE,
        )


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name=PROCESS_TASK_NAME,
    bind=True,
    base=EnrichmentTask,
    max_retries=_settings.enrichment_max_retries,
    autoretry_for=(EnrichmentRetryError,),
    retry_backoff=True,
    retry_backoff_max=300,  # cap backoff at 5 minutes
    retry_jitter=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_enrichment_job(self: Any, job: dict[str, Any]) -> dict[str, Any]:
    """Enrich one saved item in the background.

    Args:
        job: JSON form of an :class:`EnrichmentJob`.

    Returns:
        Dict with ``item_id`` and the handler ``outcome``.

    Raises:
        EnrichmentRetryError: The attempt failed transiently; triggers a retry.
    """
    enrichment_job = _parse_job(job)
    if enrichment_job is None:
        return {"item_id": None, "outcome": "invalid"}

    logger.info(
        "enrichment.task.started",
        item_id=enrichment_job.item_id,
        attempt=self.request.retries + 1,
    )
    outcome = asyncio.run(_process(enrichment_job))

    if outcome is JobOutcome.RETRY:
        raise EnrichmentRetryError(
            f"enrichment attempt {self.request.retries + 1} failed",
            item_id=enrichment_job.item_id,
        )
    return {"item_id": enrichment_job.item_id, "outcome": outcome.value}


@celery_app.task(
    name=DEAD_LETTER_TASK_NAME,
    bind=True,
    max_retries=3,
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_backoff_max=300,
    acks_late=True,
)
def dead_letter_enrichment_job(self: Any, job: dict[str, Any]) -> dict[str, Any]:
    """Record terminal failure for a job whose retries ran out.

    Args:
        job: JSON form of an :class:`EnrichmentJob`.

    Returns:
        Dict with ``item_id`` and whether the item was ``marked_failed``.
    """
    enrichment_job = _parse_job(job)
    if enrichment_job is None:
        return {"item_id": None, "marked_failed": False}

    marked = asyncio.run(_dead_letter(enrichment_job))
    return {"item_id": enrichment_job.item_id, "marked_failed": marked}
