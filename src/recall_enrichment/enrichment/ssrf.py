"""SSRF validation of fetch targets.

A URL is fetchable only if it is ``http``/``https`` and **every** address its
host resolves to is a public unicast address.  The fetcher calls
:meth:`SsrfValidator.validate` for the origin URL and again for every redirect
hop, so a public page cannot bounce the worker onto ``127.0.0.1`` or the cloud
metadata endpoint.

Denials carry a short machine-readable reason:

==================  ===========================================================
``invalid-url``     unparsable URL or missing host
``bad-scheme``      anything other than ``http`` / ``https``
``unresolvable``    DNS lookup failed or returned no addresses
``loopback``        127.0.0.0/8, ::1
``link-local``      169.254.0.0/16 (incl. metadata endpoints), fe80::/10
``private-ip``      RFC 1918, 100.64.0.0/10 (CGNAT), fc00::/7
``multicast``       224.0.0.0/4, ff00::/8
``reserved``        unspecified, reserved, documentation and other non-global
==================  ===========================================================
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import urllib.parse
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

#: ``(host, port) -> [address, ...]``.  Injected in tests.
Resolver = Callable[[str, int], Awaitable[list[str]]]

_ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})
_DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}
_CGNAT_NETWORK = ipaddress.ip_network("100.64.0.0/10")


@dataclass(frozen=True)
class SsrfDecision:
    """Result of validating one URL.

    Attributes:
        allowed: ``True`` if the URL may be fetched.
        reason: Machine-readable denial reason, ``None`` when allowed.
    """

    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> SsrfDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> SsrfDecision:
        return cls(allowed=False, reason=reason)


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve *host* to its distinct IP address strings without blocking the loop."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return list(dict.fromkeys(str(info[4][0]) for info in infos))


def classify_address(ip: IPAddress) -> str | None:
    """Return the denial reason for *ip*, or ``None`` if it is publicly routable."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if ip.is_loopback:
        return "loopback"
    if ip.is_link_local:
        return "link-local"
    if ip.is_multicast:
        return "multicast"
    if ip.is_unspecified or ip.is_reserved:
        return "reserved"
    if ip.is_private or (isinstance(ip, ipaddress.IPv4Address) and ip in _CGNAT_NETWORK):
        return "private-ip"
    if not ip.is_global:
        return "reserved"
    return None


def _parse_ip_literal(host: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


class SsrfValidator:
    """Decides whether a URL may be fetched.

    Args:
        resolver: Async ``(host, port) -> addresses`` callable.  Defaults to
            :func:`resolve_host` (the event loop's ``getaddrinfo``).
    """

    def __init__(self, resolver: Resolver | None = None) -> None:
        self._resolve = resolver or resolve_host

    async def validate(self, url: str) -> SsrfDecision:
        """Validate *url* for a single fetch.

        Hosts that are IP literals are classified without DNS.  Hostnames are
        resolved and denied if **any** resolved address is disallowed, so a
        record set mixing a public and a private address is rejected.

        Args:
            url: Absolute URL about to be requested.

        Returns:
            An :class:`SsrfDecision`.
        """
        try:
            parts = urllib.parse.urlsplit(url)
            port = parts.port
        except ValueError:
            return SsrfDecision.deny("invalid-url")

        scheme = parts.scheme.lower()
        if scheme not in _ALLOWED_SCHEMES:
            return SsrfDecision.deny("bad-scheme")

        host = parts.hostname
        if not host:
            return SsrfDecision.deny("invalid-url")
        if port is None:
            port = _DEFAULT_PORTS[scheme]

        literal = _parse_ip_literal(host)
        if literal is not None:
            reason = classify_address(literal)
            if reason:
                logger.info("enrichment: ssrf denied %s (%s)", url, reason)
                return SsrfDecision.deny(reason)
            return SsrfDecision.allow()

        try:
            addresses = await self._resolve(host, port)
        except (OSError, UnicodeError) as exc:
            logger.info("enrichment: dns resolution failed for %s: %s", host, exc)
            return SsrfDecision.deny("unresolvable")

        if not addresses:
            return SsrfDecision.deny("unresolvable")

        for address in addresses:
            ip = _parse_ip_literal(address.split("%", 1)[0])
            if ip is None:
                return SsrfDecision.deny("unresolvable")
            reason = classify_address(ip)
            if reason:
                logger.warning(
                    "enrichment: ssrf denied %s: %s resolves to %s (%s)",
                    url,
                    host,
                    address,
                    reason,
                )
                return SsrfDecision.deny(reason)

        return SsrfDecision.allow()
