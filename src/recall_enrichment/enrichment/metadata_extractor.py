"""Title / excerpt / preview-image extraction from raw HTML.

Parses with BeautifulSoup's ``html.parser`` backend, which tolerates truncated
and malformed markup (the fetcher may hand over a page cut at the size cap).
Extraction is total: any field that cannot be found is ``None`` and no input
makes :meth:`MetadataExtractor.extract` raise.

Preference order:

- title:   ``og:title`` → ``<title>`` → first ``<h1>``
- excerpt: ``og:description`` → ``<meta name="description">`` → first
  substantive paragraph
- image:   ``og:image`` (and its ``secure_url`` / ``url`` variants) →
  ``twitter:image``, joined against the page URL
"""

from __future__ import annotations

import html as html_module
import logging
import re
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from recall_enrichment.enrichment.config import (
    ELLIPSIS,
    EXCERPT_MAX_LENGTH,
    MIN_PARAGRAPH_CHARS,
    TITLE_MAX_LENGTH,
)
from recall_enrichment.enrichment.models import PageMetadata

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")

_OG_IMAGE_PROPERTIES: tuple[str, ...] = ("og:image", "og:image:secure_url", "og:image:url")
_TWITTER_IMAGE_NAMES: tuple[str, ...] = ("twitter:image", "twitter:image:src")
_PARAGRAPH_SELECTORS: tuple[str, ...] = ("article p", "main p", "p")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def sanitize_text(value: str | None, max_length: int) -> str | None:
    """Normalise extracted text for storage.

    Unescapes entities, strips any embedded markup, collapses whitespace and
    truncates to *max_length* characters with a trailing ellipsis.

    Args:
        value: Raw text (may contain entities or tags).
        max_length: Maximum length before the ellipsis.

    Returns:
        The cleaned text, or ``None`` if nothing meaningful remains.
    """
    if not value:
        return None
    decoded = html_module.unescape(value)
    stripped = _TAG_RE.sub("", decoded)
    normalized = _WHITESPACE_RE.sub(" ", stripped).strip()
    if not normalized:
        return None
    if len(normalized) <= max_length:
        return normalized
    return normalized[:max_length].rstrip() + ELLIPSIS


def _meta_content(soup: BeautifulSoup, *, prop: str | None = None, name: str | None = None) -> str | None:
    """Return the stripped ``content`` of the first matching ``<meta>`` tag."""
    attr, key = ("property", prop) if prop else ("name", name)
    for tag in soup.find_all("meta"):
        if not isinstance(tag, Tag):
            continue
        value = tag.get(attr)
        if isinstance(value, str) and value.strip().lower() == key:
            content = tag.get("content")
            if isinstance(content, str) and content.strip():
                return content.strip()
    return None


def _first_paragraph(soup: BeautifulSoup) -> str | None:
    """Return the first paragraph long enough to read as prose.

    Tries article and main content before any paragraph on the page.  If no
    paragraph reaches :data:`MIN_PARAGRAPH_CHARS`, the first non-empty one is
    used.
    """
    fallback: str | None = None
    for selector in _PARAGRAPH_SELECTORS:
        for paragraph in soup.select(selector):
            text = _WHITESPACE_RE.sub(" ", paragraph.get_text(" ")).strip()
            if not text:
                continue
            if len(text) >= MIN_PARAGRAPH_CHARS:
                return text
            if fallback is None:
                fallback = text
    return fallback


def _absolute_http_url(candidate: str | None, base_url: str) -> str | None:
    if not candidate:
        return None
    try:
        resolved = urljoin(base_url, candidate.strip())
        parts = urlsplit(resolved)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return resolved


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class MetadataExtractor:
    """Best-effort extraction of :class:`PageMetadata` from HTML bytes."""

    def extract(self, html: bytes | str, base_url: str) -> PageMetadata:
        """Extract title, excerpt and preview-image URL.

        Args:
            html: Raw page body.  Bytes are decoded by BeautifulSoup's encoding
                detection (``<meta charset>``, BOM, then heuristics).
            base_url: Final URL of the page, used to absolutise relative
                image URLs.

        Returns:
            A :class:`PageMetadata`; fields that could not be found are ``None``.
        """
        if not html:
            return PageMetadata()

        try:
            soup = BeautifulSoup(html, "html.parser")
        except Exception as exc:  # noqa: BLE001
            logger.warning("enrichment: html parse failed for %s: %s", base_url, exc)
            return PageMetadata()

        title = self._extract_title(soup, base_url)
        excerpt = self._extract_excerpt(soup, base_url)
        image = self._extract_image(soup, base_url)

        if title is None and excerpt is None and image is None:
            logger.debug("enrichment: no metadata found in %s", base_url)

        return PageMetadata(title=title, excerpt=excerpt, og_image_url=image)

    def _extract_title(self, soup: BeautifulSoup, base_url: str) -> str | None:
        try:
            candidate = _meta_content(soup, prop="og:title")
            if not candidate and soup.title is not None:
                candidate = soup.title.get_text(" ")
            if not sanitize_text(candidate, TITLE_MAX_LENGTH):
                h1 = soup.find("h1")
                candidate = h1.get_text(" ") if isinstance(h1, Tag) else None
            return sanitize_text(candidate, TITLE_MAX_LENGTH)
        except Exception as exc:  # noqa: BLE001
            logger.debug("enrichment: title extraction failed for %s: %s", base_url, exc)
            return None

    def _extract_excerpt(self, soup: BeautifulSoup, base_url: str) -> str | None:
        try:
            candidate = (
                _meta_content(soup, prop="og:description")
                or _meta_content(soup, name="description")
                or _first_paragraph(soup)
            )
            return sanitize_text(candidate, EXCERPT_MAX_LENGTH)
        except Exception as exc:  # noqa: BLE001
            logger.debug("enrichment: excerpt extraction failed for %s: %s", base_url, exc)
            return None

    def _extract_image(self, soup: BeautifulSoup, base_url: str) -> str | None:
        try:
            for prop in _OG_IMAGE_PROPERTIES:
                url = _absolute_http_url(_meta_content(soup, prop=prop), base_url)
                if url:
                    return url
            for name in _TWITTER_IMAGE_NAMES:
                url = _absolute_http_url(
                    _meta_content(soup, name=name) or _meta_content(soup, prop=name),
                    base_url,
                )
                if url:
                    return url
        except Exception as exc:  # noqa: BLE001
            logger.debug("enrichment: image extraction failed for %s: %s", base_url, exc)
        return None
