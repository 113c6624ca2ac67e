"""Celery application factory for the Recall enrichment worker.

Configures the broker, result backend, serialization and task routing.  All
configuration values are sourced from ``Settings`` so that no secrets or
environment-specific values are hard-coded here.

Usage (starting a worker)::

    celery -A recall_enrichment.workers.celery_app worker \
        -Q enrichment,enrichment.deadletter --loglevel=info

Usage (within application code)::

    from recall_enrichment.workers.celery_app import celery_app

    celery_app.send_task(
        "recall_enrichment.enrichment.tasks.process_enrichment_job",
        kwargs={"job": job.model_dump(mode="json")},
    )
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import worker_process_init
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env into os.environ before Settings is first built.
load_dotenv()

from recall_enrichment.config.settings import get_settings  # noqa: E402

settings = get_settings()

#: The global Celery application instance.
#: Import this object wherever tasks need to be sent or inspected.
celery_app = Celery(
    "recall_enrichment",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "recall_enrichment.enrichment.tasks",
    ],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    # Serialization: all task arguments are JSON (EnrichmentJob.model_dump).
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge only after the task has completed; a crashed worker leads
    # to redelivery.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=86_400,
    # A single enrichment is bounded by the fetch timeouts; these are a
    # backstop against a wedged worker.
    task_soft_time_limit=300,
    task_time_limit=360,
    task_default_queue="enrichment",
    task_routes={
        "recall_enrichment.enrichment.tasks.process_enrichment_job": {
            "queue": "enrichment",
        },
        "recall_enrichment.enrichment.tasks.dead_letter_enrichment_job": {
            "queue": "enrichment.deadletter",
        },
    },
)


# ---------------------------------------------------------------------------
# Per-process setup after fork
# ---------------------------------------------------------------------------
@worker_process_init.connect
def _init_worker_process(**kwargs: object) -> None:  # noqa: ARG001
    """Configure logging and drop database connections inherited from the parent.

    Pooled psycopg2 connections must not be shared across ``fork()``;
    disposing the engine makes the child open its own.
    """
    from recall_enrichment.core import database as _db  # noqa: PLC0415
    from recall_enrichment.core.logging_config import configure_logging  # noqa: PLC0415

    configure_logging(settings.log_level)
    _db.dispose_engine()
    _logger.info("enrichment worker process initialised")
