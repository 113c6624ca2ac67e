"""Structured JSON logging configuration using structlog.

Call ``configure_logging()`` once per process: the Celery worker does it in
its ``worker_process_init`` handler.  Modules then log through either API:

Stdlib usage (pipeline modules)::

    import logging
    logger = logging.getLogger(__name__)
    logger.info("enrichment: fetched %s", url)

Structlog usage (task and handler modules)::

    import structlog
    logger = structlog.get_logger(__name__)
    logger.info("enrichment.job.started", item_id=job.item_id)

A ``job_id`` context variable is set by the job handler while an
:class:`~recall_enrichment.enrichment.models.EnrichmentJob` is processed and
is merged into every record emitted during that job.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, WrappedLogger

# ---------------------------------------------------------------------------
# Context variable: set by the job handler, read by the log processor
# ---------------------------------------------------------------------------

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
"""Identifier of the enrichment job currently being processed (the item ID).

Usage in a handler::

    from recall_enrichment.core.logging_config import job_id_var
    token = job_id_var.set(job.item_id)
    try:
        ...
    finally:
        job_id_var.reset(token)
"""


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


_SECRET_SUBSTRINGS: frozenset[str] = frozenset({
    "password",
    "secret",
    "token",
    "credential",
    "authorization",
    "access_key",
    "root_user",
    "cookie",
})
"""Lower-cased substrings that identify log event-dict keys whose values
must be redacted before the record reaches any renderer."""


def _redact_secrets(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Replace values of secret-bearing keys with a redaction marker.

    Scans top-level keys and one level of nested ``dict`` values (e.g.
    ``headers={...}``).  Keys match case-insensitively against
    :data:`_SECRET_SUBSTRINGS`.
    """
    redacted = "[REDACTED]"
    for key in list(event_dict.keys()):
        if any(secret in key.lower() for secret in _SECRET_SUBSTRINGS):
            event_dict[key] = redacted
            continue
        val = event_dict[key]
        if isinstance(val, dict):
            for nested_key in list(val.keys()):
                if any(secret in str(nested_key).lower() for secret in _SECRET_SUBSTRINGS):
                    val[nested_key] = redacted
    return event_dict


def _inject_job_id(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Add the current ``job_id`` to the event dict unless already bound."""
    job_id = job_id_var.get()
    if job_id is not None and "job_id" not in event_dict:
        event_dict["job_id"] = job_id
    return event_dict


# ---------------------------------------------------------------------------
# Public configuration entry-point
# ---------------------------------------------------------------------------


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog and stdlib logging for the enrichment worker.

    Non-DEBUG levels render newline-delimited JSON for log aggregators;
    ``"DEBUG"`` switches to structlog's coloured ``ConsoleRenderer``.

    Every record carries ``timestamp``, ``level``, ``logger`` and ``event``,
    plus ``job_id`` while a job is being processed.

    Calling this more than once is safe: the root handlers are replaced and
    structlog's configuration is overwritten.

    Args:
        log_level: One of ``"DEBUG"``, ``"INFO"``, ``"WARNING"``,
            ``"ERROR"``, ``"CRITICAL"`` (case-insensitive).
    """
    level_upper = log_level.upper()
    numeric_level = getattr(logging, level_upper, logging.INFO)
    is_development = level_upper == "DEBUG"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_job_id,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if is_development:
        final_renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(
            colors=True,
        )
    else:
        final_renderer = structlog.processors.JSONRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            final_renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    # httpx logs every request at INFO, which would echo user URLs twice.
    if not is_development:
        for noisy_logger in ("httpx", "httpcore", "PIL", "urllib3"):
            logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
