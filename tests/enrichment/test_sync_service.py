"""Tests for the save-time enrichment service.

Exercises the full fetch → extract → thumbnail chain with mocked httpx
responses, including the master deadline and partial results.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from unittest.mock import patch

import httpx
import pytest
import respx

from recall_enrichment.enrichment.metadata_extractor import MetadataExtractor
from recall_enrichment.enrichment.pipeline import build_sync_service
from recall_enrichment.enrichment.ssrf import SsrfValidator

_ARTICLE = b"""
<html><head>
  <title>Ignored</title>
  <meta property="og:title" content="Saving links, safely">
  <meta property="og:description" content="How Recall enriches what you save.">
  <meta property="og:image" content="https://cdn.example.com/cover.png">
</head><body><p>Body text.</p></body></html>
"""

_NO_IMAGE = b"""
<html><head><title>Plain page</title></head>
<body><p>A paragraph that is comfortably longer than forty characters.</p></body></html>
"""


async def _trickle(first: bytes, delay: float = 5.0) -> AsyncIterator[bytes]:
    yield first
    await asyncio.sleep(delay)
    yield b""


@pytest.mark.asyncio
class TestSyncEnrichmentService:
    async def test_public_article_with_image(
        self, settings, public_validator, thumbnail_storage, make_image
    ) -> None:
        with respx.mock() as mock:
            mock.get("https://example.com/post").mock(
                return_value=httpx.Response(200, content=_ARTICLE)
            )
            mock.get("https://cdn.example.com/cover.png").mock(
                return_value=httpx.Response(200, content=make_image(1200, 630))
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                result = await service.enrich_sync("https://example.com/post", "user-1", "item-1")

        assert result.title == "Saving links, safely"
        assert result.excerpt == "How Recall enriches what you save."
        assert result.preview_image_url == "https://cdn.example.com/cover.png"
        assert result.thumbnail_storage_key == "user-1/item-1.jpg"
        assert result.needs_async_fallback is False
        assert result.error is None
        assert result.duration.total_seconds() >= 0

    async def test_page_without_image_needs_no_fallback(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        with respx.mock() as mock:
            mock.get("https://example.com/plain").mock(
                return_value=httpx.Response(200, content=_NO_IMAGE)
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                result = await service.enrich_sync("https://example.com/plain", "u", "i")

        assert result.title == "Plain page"
        assert result.excerpt == "A paragraph that is comfortably longer than forty characters."
        assert result.preview_image_url is None
        assert result.needs_async_fallback is False

    async def test_loopback_denied_without_network(
        self, settings, resolver, thumbnail_storage
    ) -> None:
        validator = SsrfValidator(resolver=resolver({"evil.example": ["127.0.0.1"]}))
        with respx.mock(assert_all_called=False) as mock:
            route = mock.route().mock(return_value=httpx.Response(200))
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, validator)
                result = await service.enrich_sync("http://evil.example/", "u", "i")

        assert result.error == "ssrf-denied:loopback"
        assert result.needs_async_fallback is True
        assert result.title is None
        assert route.called is False

    async def test_slow_server_hits_master_timeout(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        with respx.mock() as mock:
            mock.get("https://slow.example.com/").mock(
                return_value=httpx.Response(200, content=_trickle(b"<html><title>late"))
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                started = time.monotonic()
                result = await service.enrich_sync("https://slow.example.com/", "u", "i")
                elapsed = time.monotonic() - started

        assert result.needs_async_fallback is True
        assert result.error == "timeout"
        assert result.title is None
        assert elapsed < settings.master_timeout_seconds + 0.5

    async def test_oversize_body_skips_extraction(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        chunk = b"<p>" + b"x" * 16 * 1024

        async def _endless() -> AsyncIterator[bytes]:
            for _ in range(10):
                yield chunk

        with respx.mock() as mock:
            mock.get("https://big.example.com/").mock(
                return_value=httpx.Response(200, content=_endless())
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                with patch.object(MetadataExtractor, "extract") as extract:
                    result = await service.enrich_sync("https://big.example.com/", "u", "i")

        assert result.error == "response-too-large"
        assert result.needs_async_fallback is True
        extract.assert_not_called()

    async def test_text_kept_when_thumbnail_misses_deadline(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        with respx.mock() as mock:
            mock.get("https://example.com/post").mock(
                return_value=httpx.Response(200, content=_ARTICLE)
            )
            mock.get("https://cdn.example.com/cover.png").mock(
                return_value=httpx.Response(200, content=_trickle(b"\x89PNG"))
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                result = await service.enrich_sync("https://example.com/post", "u", "i")

        assert result.title == "Saving links, safely"
        assert result.preview_image_url == "https://cdn.example.com/cover.png"
        assert result.thumbnail_storage_key is None
        assert result.needs_async_fallback is True
        assert result.error is None
        assert thumbnail_storage.objects == {}

    async def test_broken_image_requests_fallback(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        with respx.mock() as mock:
            mock.get("https://example.com/post").mock(
                return_value=httpx.Response(200, content=_ARTICLE)
            )
            mock.get("https://cdn.example.com/cover.png").mock(
                return_value=httpx.Response(200, content=b"not an image")
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                result = await service.enrich_sync("https://example.com/post", "u", "i")

        assert result.title == "Saving links, safely"
        assert result.thumbnail_storage_key is None
        assert result.needs_async_fallback is True

    async def test_http_error_reported(self, settings, public_validator, thumbnail_storage) -> None:
        with respx.mock() as mock:
            mock.get("https://example.com/missing").mock(return_value=httpx.Response(404))
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                result = await service.enrich_sync("https://example.com/missing", "u", "i")

        assert result.error == "http-error:404"
        assert result.needs_async_fallback is True

    async def test_unexpected_exception_never_raises(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        with respx.mock() as mock:
            mock.get("https://example.com/post").mock(
                return_value=httpx.Response(200, content=_ARTICLE)
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                with patch.object(MetadataExtractor, "extract", side_effect=RuntimeError("boom")):
                    result = await service.enrich_sync("https://example.com/post", "u", "i")

        assert result.error == "internal-error"
        assert result.needs_async_fallback is True

    async def test_slow_parse_of_fast_page_keeps_deadline(
        self, settings, public_validator, thumbnail_storage
    ) -> None:
        page = b"<html><head><title>Huge</title></head><body>" + b"<div><p>short</p></div>" * 2000
        real_extract = MetadataExtractor.extract

        def _slow_extract(extractor, html, base_url):
            time.sleep(1.5)
            return real_extract(extractor, html, base_url)

        ticks = 0

        async def _ticker() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.05)
                ticks += 1

        with respx.mock() as mock:
            mock.get("https://example.com/huge").mock(
                return_value=httpx.Response(200, content=page)
            )
            async with httpx.AsyncClient() as client:
                service = build_sync_service(client, thumbnail_storage, settings, public_validator)
                ticker = asyncio.create_task(_ticker())
                with patch.object(MetadataExtractor, "extract", new=_slow_extract):
                    started = time.monotonic()
                    result = await service.enrich_sync("https://example.com/huge", "u", "i")
                    elapsed = time.monotonic() - started
                ticker.cancel()

        assert elapsed < settings.master_timeout_seconds + 0.5
        assert result.needs_async_fallback is True
        assert result.error == "timeout"
        assert result.title is None
        # The loop kept running while the page was parsed.
        assert ticks >= 5
