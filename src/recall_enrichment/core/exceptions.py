"""Application-wide exception hierarchy for the Recall enrichment pipeline.

All custom exceptions subclass ``RecallEnrichmentError``, enabling
consistent error handling and structured logging across the application.

Network and parse failures are *not* exceptions: the fetcher reports them as
:class:`~recall_enrichment.enrichment.http_fetcher.FetchError` values so that
"needs fallback" stays an ordinary return value.

Hierarchy::

    RecallEnrichmentError
    ├── ImageDecodeError
    ├── StorageError
    └── EnrichmentRetryError     (outcome: str)
"""

from __future__ import annotations


class RecallEnrichmentError(Exception):
    """Base class for all Recall enrichment exceptions."""


class ImageDecodeError(RecallEnrichmentError):
    """Raised when fetched bytes cannot be decoded as a supported image.

    Always handled inside the thumbnail pipeline; a broken image never fails
    an enrichment.
    """


class StorageError(RecallEnrichmentError):
    """Raised when the blob store rejects a thumbnail write.

    Args:
        message: Human-readable description of the failure.
        key: Object key that was being written.
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class EnrichmentRetryError(RecallEnrichmentError):
    """Raised by the Celery adapter to hand a failed attempt back to the broker.

    The job handler never retries on its own; raising this from the task body
    lets Celery's ``autoretry_for`` policy schedule the redelivery.

    Args:
        message: Human-readable description of the failed attempt.
        item_id: Item the job was enriching.
    """

    def __init__(self, message: str, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id
