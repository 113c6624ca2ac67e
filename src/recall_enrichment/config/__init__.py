"""Configuration package for the Recall enrichment pipeline.

Re-exports the settings symbols so that callers can write::

    from recall_enrichment.config import get_settings
"""

from __future__ import annotations

from recall_enrichment.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
