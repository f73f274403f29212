"""SSRF guard for outbound scrape requests.

Every URL is validated before any network I/O: scheme, embedded credentials,
metadata/localhost hostnames, literal IP addresses and (optionally) the
addresses the hostname resolves to.
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import urlsplit

from src.config import settings

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

# Cloud metadata endpoints (AWS, GCP, ECS task metadata, AWS IPv6 IMDS)
METADATA_HOSTS = frozenset({
    "169.254.169.254",
    "metadata.google.internal",
    "metadata.goog",
    "169.254.170.2",
    "fd00:ec2::254",
})

LOCALHOST_NAMES = frozenset({
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
})

Resolver = Callable[[str], Awaitable[list[str]]]


class SSRFError(ValueError):
    """Raised when a URL targets a disallowed scheme, host or address."""

    pass


def is_disallowed_ip(address: str) -> bool:
    """
    Check whether an IP literal is loopback, private, link-local, unique-local,
    unspecified or reserved. IPv4-mapped IPv6 addresses are checked as IPv4.
    """
    try:
        ip = ipaddress.ip_address(address.strip("[]").split("%", 1)[0])
    except ValueError:
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
        or (isinstance(ip, ipaddress.IPv6Address) and ip.is_site_local)
    )


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]").split("%", 1)[0])
        return True
    except ValueError:
        return False


def check_url_static(url: str) -> str:
    """
    Validate a URL without DNS resolution.

    Returns:
        Lowercased hostname

    Raises:
        SSRFError: If the URL is not safe to fetch
    """
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise SSRFError(f"Malformed URL: {e}") from e

    scheme = (parts.scheme or "").lower()
    if scheme not in ALLOWED_SCHEMES:
        raise SSRFError(f"Scheme not allowed: {scheme or '(none)'}")

    if parts.username or parts.password:
        raise SSRFError("Embedded credentials are not allowed")

    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        raise SSRFError("URL has no host")

    if host in METADATA_HOSTS:
        raise SSRFError(f"Metadata host blocked: {host}")

    if host in LOCALHOST_NAMES or host.endswith(".localhost"):
        raise SSRFError(f"Localhost blocked: {host}")

    if _is_ip_literal(host) and is_disallowed_ip(host):
        raise SSRFError(f"Private or reserved address blocked: {host}")

    return host


async def _default_resolver(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def validate_url(
    url: str,
    resolve_dns: Optional[bool] = None,
    resolver: Optional[Resolver] = None,
) -> str:
    """
    Validate a URL for outbound fetching.

    Args:
        url: URL to validate
        resolve_dns: Also check resolved addresses (defaults to settings)
        resolver: Async hostname resolver returning IP strings

    Returns:
        Lowercased hostname

    Raises:
        SSRFError: If the URL or any resolved address is disallowed
    """
    host = check_url_static(url)

    if resolve_dns is None:
        resolve_dns = settings.ssrf_resolve_dns
    if not resolve_dns or _is_ip_literal(host):
        return host

    try:
        addresses = await (resolver or _default_resolver)(host)
    except (OSError, socket.gaierror) as e:
        raise SSRFError(f"DNS resolution failed for {host}: {e}") from e

    if not addresses:
        raise SSRFError(f"No addresses resolved for {host}")

    for address in addresses:
        if is_disallowed_ip(address) or address in METADATA_HOSTS:
            logger.warning(f"SSRF guard: {host} resolves to blocked address {address}")
            raise SSRFError(f"{host} resolves to blocked address {address}")

    return host


def validate_manifest_base_urls(base_urls: Iterable[str]) -> None:
    """
    Validate adapter manifest base URLs: https only and public hosts.

    Raises:
        SSRFError: If any base URL is not an https URL on a public host
    """
    for base_url in base_urls:
        if urlsplit(base_url).scheme.lower() != "https":
            raise SSRFError(f"Manifest base URL must be https: {base_url}")
        check_url_static(base_url)


def is_host_allowed_for_manifest(host: str, base_urls: Iterable[str]) -> bool:
    """Whether a hostname is one of the manifest's base URL hosts."""
    host = host.lower().rstrip(".")
    allowed = {(urlsplit(u).hostname or "").lower() for u in base_urls}
    return host in allowed
