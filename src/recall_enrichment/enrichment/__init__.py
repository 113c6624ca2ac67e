"""Link enrichment pipeline.

Given an untrusted, user-saved URL, fetches the page, extracts a title,
excerpt and preview image, and stores a resized thumbnail.

Sub-modules:
- ``config``             - constants and tuning parameters
- ``models``             - ``EnrichmentJob``, ``PageMetadata``, ``SyncEnrichmentResult``
- ``ssrf``               - per-hop SSRF validation of fetch targets
- ``http_fetcher``       - redirect-validated, size-capped async httpx fetcher
- ``metadata_extractor`` - BeautifulSoup Open Graph / HTML metadata extraction
- ``thumbnails``         - Pillow resize + re-encode of the preview image
- ``storage``            - thumbnail blob storage (MinIO)
- ``item_store``         - item enrichment-field persistence (SQLAlchemy)
- ``sync_service``       - save-time fast path under a master timeout
- ``job_handler``        - background job processing and dead-letter handling
- ``pipeline``           - explicit construction of the components above
- ``publisher``          - save-time glue and job enqueueing
- ``tasks``              - Celery tasks (``process_enrichment_job``, ``dead_letter_enrichment_job``)
"""
