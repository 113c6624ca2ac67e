"""Redirect-validated, size-capped async HTTP fetcher.

Uses ``httpx`` for all HTTP requests.  Automatic redirect following is
disabled: the fetcher walks the redirect chain itself so that every hop is
checked by :class:`~recall_enrichment.enrichment.ssrf.SsrfValidator` before a
connection is opened.

Failures are returned, not raised.  Callers branch on
:attr:`FetchResult.error` (a :class:`FetchError`) rather than on httpx
exceptions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

import httpx

from recall_enrichment.enrichment.config import (
    HTML_ACCEPT,
    REDIRECT_STATUSES,
    RETRYABLE_CLIENT_STATUSES,
)
from recall_enrichment.enrichment.ssrf import SsrfValidator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class FetchErrorKind(str, Enum):
    SSRF_DENIED = "ssrf-denied"
    TIMEOUT = "timeout"
    RESPONSE_TOO_LARGE = "response-too-large"
    HTTP_ERROR = "http-error"
    NETWORK_ERROR = "network-error"
    TOO_MANY_REDIRECTS = "too-many-redirects"


_ERROR_MESSAGES: dict[FetchErrorKind, str] = {
    FetchErrorKind.SSRF_DENIED: "URL blocked: private network access not allowed.",
    FetchErrorKind.TIMEOUT: "Fetch timed out.",
    FetchErrorKind.RESPONSE_TOO_LARGE: "Page too large to fetch.",
    FetchErrorKind.HTTP_ERROR: "Failed to fetch page.",
    FetchErrorKind.NETWORK_ERROR: "Failed to fetch page.",
    FetchErrorKind.TOO_MANY_REDIRECTS: "Too many redirects.",
}


@dataclass(frozen=True)
class FetchError:
    """Classified fetch failure.

    Attributes:
        kind: Failure class.
        reason: SSRF denial reason (``kind == SSRF_DENIED`` only).
        status_code: HTTP status (``kind == HTTP_ERROR`` only).
        detail: Free-form diagnostic for logs; never persisted.
    """

    kind: FetchErrorKind
    reason: str | None = None
    status_code: int | None = None
    detail: str | None = None

    def __str__(self) -> str:
        if self.kind is FetchErrorKind.SSRF_DENIED and self.reason:
            return f"{self.kind.value}:{self.reason}"
        if self.kind is FetchErrorKind.HTTP_ERROR and self.status_code is not None:
            return f"{self.kind.value}:{self.status_code}"
        return self.kind.value

    @property
    def is_terminal(self) -> bool:
        """``True`` when retrying the same URL cannot succeed.

        SSRF denials and client errors (other than timeouts and rate limits)
        are terminal; timeouts, 5xx, oversize bodies and network errors are
        worth another delivery.
        """
        if self.kind is FetchErrorKind.SSRF_DENIED:
            return True
        if self.kind is FetchErrorKind.HTTP_ERROR and self.status_code is not None:
            return (
                400 <= self.status_code < 500
                and self.status_code not in RETRYABLE_CLIENT_STATUSES
            )
        return False

    @property
    def user_message(self) -> str:
        """Human-readable message safe to persist on the item."""
        if self.kind is FetchErrorKind.HTTP_ERROR and self.status_code is not None:
            return f"Failed to fetch page (HTTP {self.status_code})."
        return _ERROR_MESSAGES[self.kind]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FetchTimeouts:
    """Per-attempt time limits.

    Attributes:
        connect: TCP/TLS connect timeout (seconds).
        read: Maximum wait for any single read (seconds).
        total: Wall-clock budget for one HTTP attempt, headers and body
            (seconds).  Independent of the orchestrator's master timeout.
    """

    connect: float
    read: float
    total: float

    def as_httpx(self) -> httpx.Timeout:
        return httpx.Timeout(self.read, connect=self.connect)


@dataclass(frozen=True)
class FetchResult:
    """Result of fetching one URL (after following redirects).

    Attributes:
        content: Decoded response body, or ``None`` on failure.
        status_code: Status of the final response, or ``None`` if none arrived.
        final_url: Last URL requested (or the URL that was refused).
        content_type: ``Content-Type`` of the final response.
        error: Classified failure, ``None`` on success.
    """

    content: bytes | None
    status_code: int | None
    final_url: str
    content_type: str | None = None
    error: FetchError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


@dataclass(frozen=True)
class _Redirect:
    location: str | None


def _failure(url: str, error: FetchError, status_code: int | None = None) -> FetchResult:
    return FetchResult(content=None, status_code=status_code, final_url=url, error=error)


# ---------------------------------------------------------------------------
# Redirect helpers
# ---------------------------------------------------------------------------


def resolve_redirect(current_url: str, location: str | None) -> tuple[str | None, str | None]:
    """Resolve a ``Location`` header against the URL that returned it.

    Args:
        current_url: URL whose response carried the redirect.
        location: Raw ``Location`` header value (may be relative).

    Returns:
        ``(next_url, None)`` when the hop may be followed, otherwise
        ``(None, reason)`` with ``reason`` one of ``"bad-location"``,
        ``"bad-scheme"`` or ``"scheme-downgrade"``.
    """
    if location is None or not location.strip():
        return None, "bad-location"
    try:
        current = httpx.URL(current_url)
        target = current.join(location.strip())
    except (httpx.InvalidURL, ValueError):
        return None, "bad-location"

    if target.scheme not in ("http", "https"):
        return None, "bad-scheme"
    if current.scheme == "https" and target.scheme == "http":
        return None, "scheme-downgrade"
    if not target.host:
        return None, "bad-location"
    return str(target), None


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class HtmlFetcher:
    """Bounded GET with per-hop SSRF validation.

    One instance is shared by the page fetch and the thumbnail image fetch, so
    both go through the same validation and size cap.

    Args:
        client: Shared :class:`httpx.AsyncClient`.  Must not follow redirects
            on its own; requests pass ``follow_redirects=False`` regardless.
        validator: SSRF validator consulted before every hop.
        max_redirects: Redirect hops followed before giving up.
        max_response_bytes: Streaming cap on the decoded body.
        user_agent: ``User-Agent`` header sent with every request.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        validator: SsrfValidator,
        *,
        max_redirects: int,
        max_response_bytes: int,
        user_agent: str,
    ) -> None:
        self._client = client
        self._validator = validator
        self._max_redirects = max_redirects
        self._max_response_bytes = max_response_bytes
        self._user_agent = user_agent

    async def fetch(
        self,
        url: str,
        timeouts: FetchTimeouts,
        *,
        accept: str = HTML_ACCEPT,
    ) -> FetchResult:
        """Fetch *url*, following at most ``max_redirects`` validated redirects.

        Performs the following for each hop:

        1. **SSRF**: validates the hop URL; a denial ends the fetch with
           ``ssrf-denied:<reason>`` before any connection is made.
        2. **HTTP GET**: streams the response under ``timeouts.total``.
        3. **Redirect**: resolves ``Location``, rejecting malformed targets
           and ``https`` → ``http`` downgrades, then loops.
        4. **Body**: reads incrementally and aborts as soon as the body would
           exceed the cap, whatever ``Content-Length`` claims.

        Args:
            url: Absolute URL to fetch.
            timeouts: Connect / read / per-attempt limits.
            accept: ``Accept`` header value.

        Returns:
            A :class:`FetchResult`; ``error`` is set on any failure.
        """
        current_url = url
        for hop in range(self._max_redirects + 1):
            decision = await self._validator.validate(current_url)
            if not decision.allowed:
                return _failure(
                    current_url,
                    FetchError(FetchErrorKind.SSRF_DENIED, reason=decision.reason),
                )

            try:
                outcome = await asyncio.wait_for(
                    self._request(current_url, timeouts, accept),
                    timeout=timeouts.total,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                logger.warning("enrichment: timeout fetching %s", current_url)
                return _failure(current_url, FetchError(FetchErrorKind.TIMEOUT))
            except httpx.InvalidURL as exc:
                return _failure(
                    current_url,
                    FetchError(FetchErrorKind.SSRF_DENIED, reason="invalid-url", detail=str(exc)),
                )
            except httpx.HTTPError as exc:
                logger.warning("enrichment: request error for %s: %s", current_url, exc)
                return _failure(
                    current_url,
                    FetchError(FetchErrorKind.NETWORK_ERROR, detail=str(exc)),
                )

            if not isinstance(outcome, _Redirect):
                return outcome

            next_url, reason = resolve_redirect(current_url, outcome.location)
            if next_url is None:
                logger.warning(
                    "enrichment: refused redirect from %s to %r (%s)",
                    current_url,
                    outcome.location,
                    reason,
                )
                return _failure(current_url, FetchError(FetchErrorKind.SSRF_DENIED, reason=reason))
            logger.debug("enrichment: redirect %d %s -> %s", hop + 1, current_url, next_url)
            current_url = next_url

        logger.info("enrichment: more than %d redirects for %s", self._max_redirects, url)
        return _failure(current_url, FetchError(FetchErrorKind.TOO_MANY_REDIRECTS))

    async def _request(
        self,
        url: str,
        timeouts: FetchTimeouts,
        accept: str,
    ) -> FetchResult | _Redirect:
        """Issue one GET and read its body under the size cap.

        Leaving the ``stream`` context, whether normally, early or through
        cancellation, closes the response and releases its connection.
        """
        headers = {"User-Agent": self._user_agent, "Accept": accept}
        async with self._client.stream(
            "GET",
            url,
            headers=headers,
            timeout=timeouts.as_httpx(),
            follow_redirects=False,
        ) as response:
            status = response.status_code
            content_type = response.headers.get("content-type")

            if status in REDIRECT_STATUSES:
                return _Redirect(response.headers.get("location"))

            if status >= 400:
                logger.info("enrichment: HTTP %d for %s", status, url)
                return FetchResult(
                    content=None,
                    status_code=status,
                    final_url=url,
                    content_type=content_type,
                    error=FetchError(FetchErrorKind.HTTP_ERROR, status_code=status),
                )

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self._max_response_bytes:
                logger.info(
                    "enrichment: declared length %s exceeds cap for %s", declared, url
                )
                return self._too_large(url, status)

            body = bytearray()
            async for chunk in response.aiter_bytes():
                if len(body) + len(chunk) > self._max_response_bytes:
                    logger.info(
                        "enrichment: body exceeded %d bytes for %s",
                        self._max_response_bytes,
                        url,
                    )
                    return self._too_large(url, status)
                body.extend(chunk)

            return FetchResult(
                content=bytes(body),
                status_code=status,
                final_url=url,
                content_type=content_type,
            )

    def _too_large(self, url: str, status: int) -> FetchResult:
        return _failure(url, FetchError(FetchErrorKind.RESPONSE_TOO_LARGE), status_code=status)
