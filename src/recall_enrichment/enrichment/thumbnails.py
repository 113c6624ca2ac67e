"""Preview thumbnail generation.

Fetches the page's preview image through the shared
:class:`~recall_enrichment.enrichment.http_fetcher.HtmlFetcher` (images get
the same SSRF validation and size cap as pages), resizes it with Pillow and
stores a JPEG under a key derived from the item.

Decoding, resizing and encoding are CPU-bound and run in an executor so a
large image cannot stall the event loop that is servicing other jobs.

A missing, unreachable or undecodable image is a soft failure: ``generate``
returns ``None`` and the enrichment carries on with text only.
"""

from __future__ import annotations

import asyncio
import functools
import io
import logging
from concurrent.futures import Executor

from PIL import Image, ImageOps, UnidentifiedImageError

from recall_enrichment.core.exceptions import ImageDecodeError
from recall_enrichment.enrichment.config import (
    IMAGE_ACCEPT,
    MAX_SOURCE_PIXELS,
    THUMBNAIL_CONTENT_TYPE,
    THUMBNAIL_FORMAT,
)
from recall_enrichment.enrichment.http_fetcher import FetchTimeouts, HtmlFetcher
from recall_enrichment.enrichment.storage import ThumbnailStorage, thumbnail_key

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    ValueError,
    SyntaxError,
)


# ---------------------------------------------------------------------------
# Image helpers (run in the executor)
# ---------------------------------------------------------------------------


def compute_thumbnail_size(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
) -> tuple[int, int]:
    """Fit ``width × height`` inside ``max_width × max_height``.

    Aspect ratio is preserved and images already inside the box keep their
    size (no upscaling).  Neither side drops below one pixel.

    Raises:
        ValueError: If any dimension is not positive.
    """
    if width <= 0 or height <= 0 or max_width <= 0 or max_height <= 0:
        raise ValueError(
            f"dimensions must be positive: {width}x{height} into {max_width}x{max_height}"
        )
    if width <= max_width and height <= max_height:
        return width, height
    # Integer arithmetic: the bounding side lands exactly on the box edge.
    if width * max_height >= height * max_width:
        return max_width, max(1, height * max_width // width)
    return max(1, width * max_height // height), max_height


def _flatten(img: Image.Image) -> Image.Image:
    """Convert *img* to RGB, compositing any transparency onto white."""
    if img.mode == "RGB":
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def render_thumbnail(
    data: bytes,
    *,
    max_width: int,
    max_height: int,
    quality: int,
) -> bytes:
    """Decode *data*, resize it into the bounding box and encode it as JPEG.

    Args:
        data: Raw image bytes in any format Pillow can read.
        max_width: Bounding-box width.
        max_height: Bounding-box height.
        quality: JPEG quality (1-95).

    Returns:
        The encoded thumbnail.

    Raises:
        ImageDecodeError: If *data* is not a readable image (unsupported
            format, truncated file, decompression bomb).
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            # Only the header is read so far; refuse before decoding pixels.
            if source.width * source.height > MAX_SOURCE_PIXELS:
                raise ImageDecodeError(
                    f"image too large to decode: {source.width}x{source.height}"
                )
            # JPEG decodes at a reduced scale, still at least the box on both sides.
            edge = max(max_width, max_height)
            source.draft("RGB", (edge, edge))
            source.load()
            img = ImageOps.exif_transpose(source) or source
            size = compute_thumbnail_size(img.width, img.height, max_width, max_height)
            if size != img.size:
                img = img.resize(size, Image.Resampling.LANCZOS)
            img = _flatten(img)

            out = io.BytesIO()
            img.save(out, format=THUMBNAIL_FORMAT, quality=quality, optimize=True)
            return out.getvalue()
    except _DECODE_ERRORS as exc:
        raise ImageDecodeError(f"cannot decode image: {exc}") from exc


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ThumbnailPipeline:
    """Fetch → resize → store for one item's preview image.

    Args:
        fetcher: Shared SSRF-validated fetcher.
        storage: Blob store receiving the JPEG.
        max_width: ``Settings.thumbnail_max_width``.
        max_height: ``Settings.thumbnail_max_height``.
        quality: ``Settings.thumbnail_quality``.
        executor: Executor for decode/resize/encode and the blocking storage
            call.  ``None`` uses the event loop's default thread pool.
    """

    def __init__(
        self,
        fetcher: HtmlFetcher,
        storage: ThumbnailStorage,
        *,
        max_width: int,
        max_height: int,
        quality: int,
        executor: Executor | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._storage = storage
        self._max_width = max_width
        self._max_height = max_height
        self._quality = quality
        self._executor = executor

    async def generate(
        self,
        user_id: str,
        item_id: str,
        image_url: str | None,
        timeouts: FetchTimeouts,
    ) -> str | None:
        """Produce and store the thumbnail for ``(user_id, item_id)``.

        Args:
            user_id: Item owner.
            item_id: Item being enriched.
            image_url: Absolute preview image URL, or ``None``.
            timeouts: Limits for the image fetch.

        Returns:
            The storage key on success; ``None`` when there is no image or it
            could not be fetched or decoded.

        Raises:
            StorageError: If the blob store rejects the write.
        """
        if not image_url or not image_url.strip():
            return None

        result = await self._fetcher.fetch(image_url, timeouts, accept=IMAGE_ACCEPT)
        if result.error is not None:
            logger.info(
                "enrichment: thumbnail fetch failed for item %s: %s", item_id, result.error
            )
            return None
        if not result.content:
            logger.debug("enrichment: empty image body for item %s", item_id)
            return None

        loop = asyncio.get_running_loop()
        render = functools.partial(
            render_thumbnail,
            result.content,
            max_width=self._max_width,
            max_height=self._max_height,
            quality=self._quality,
        )
        try:
            data = await loop.run_in_executor(self._executor, render)
        except ImageDecodeError as exc:
            logger.info("enrichment: unusable image for item %s: %s", item_id, exc)
            return None

        key = thumbnail_key(user_id, item_id)
        await loop.run_in_executor(
            self._executor, self._storage.put, key, data, THUMBNAIL_CONTENT_TYPE
        )
        logger.info("enrichment: thumbnail stored for item %s at %s", item_id, key)
        return key
