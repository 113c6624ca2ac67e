"""Constants and tuning parameters for the enrichment pipeline.

Deployment-specific values (timeouts, size caps, thumbnail dimensions) live in
:class:`recall_enrichment.config.settings.Settings`; this module holds the
fixed parts of the contract.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Extracted text
# ---------------------------------------------------------------------------

#: Longest title persisted on an item (characters, before the ellipsis).
TITLE_MAX_LENGTH: int = 200

#: Longest excerpt persisted on an item.  Keeps the excerpt a preview, not a copy.
EXCERPT_MAX_LENGTH: int = 500

#: Paragraphs shorter than this are skipped when looking for an excerpt
#: (bylines, cookie notices, "Share this" blurbs).
MIN_PARAGRAPH_CHARS: int = 40

#: Longest error message persisted on an item.
ERROR_MAX_LENGTH: int = 500

#: Appended to text cut at a length cap.
ELLIPSIS: str = "..."

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

#: Status codes treated as redirects by the fetcher's own redirect loop.
REDIRECT_STATUSES: frozenset[int] = frozenset({301, 302, 303, 307, 308})

#: 4xx statuses that are still worth retrying from the background job.
RETRYABLE_CLIENT_STATUSES: frozenset[int] = frozenset({408, 425, 429})

#: Accept header for page fetches.
HTML_ACCEPT: str = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"

#: Accept header for preview image fetches.
IMAGE_ACCEPT: str = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"

# ---------------------------------------------------------------------------
# Thumbnails
# ---------------------------------------------------------------------------

#: Output format and matching content type of every stored thumbnail.
THUMBNAIL_FORMAT: str = "JPEG"
THUMBNAIL_CONTENT_TYPE: str = "image/jpeg"
THUMBNAIL_EXTENSION: str = "jpg"

#: Largest source image (width × height) decoded for a thumbnail.  Pillow's
#: own bomb limit is far above what a preview needs.
MAX_SOURCE_PIXELS: int = 40_000_000

# ---------------------------------------------------------------------------
# Item status values
# ---------------------------------------------------------------------------

STATUS_PENDING: str = "pending"
STATUS_SUCCEEDED: str = "succeeded"
STATUS_FAILED: str = "failed"

#: Diagnostic written by the dead-letter handler once the broker gives up.
DEAD_LETTER_MESSAGE: str = "Max retry attempts exceeded"

#: Fallback diagnostic when an error carries no usable message.
GENERIC_ERROR_MESSAGE: str = "Enrichment failed."

# ---------------------------------------------------------------------------
# Celery
# ---------------------------------------------------------------------------

PROCESS_TASK_NAME: str = "recall_enrichment.enrichment.tasks.process_enrichment_job"
DEAD_LETTER_TASK_NAME: str = "recall_enrichment.enrichment.tasks.dead_letter_enrichment_job"
ENRICHMENT_QUEUE: str = "enrichment"
DEAD_LETTER_QUEUE: str = "enrichment.deadletter"
