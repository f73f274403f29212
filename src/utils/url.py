"""URL canonicalization and identity key helpers.

The identity key precedence (retailer product id > retailer SKU > canonical
URL hash) determines product matching for every written observation. Changing
it retroactively re-keys existing source products, so it is fixed here and
covered by tests.
"""

import hashlib
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import tldextract

# Offline extractor: uses the public suffix snapshot bundled with tldextract
_domain_extractor = tldextract.TLDExtract(suffix_list_urls=())

TRACKING_PARAMS = frozenset({"fbclid", "gclid", "ref", "source", "campaign"})
TRACKING_PREFIXES = ("utm_",)

IDENTITY_KEY_TYPES = ("PID", "SKU", "URL")
MAX_IDENTITY_VALUE_LENGTH = 255


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def canonicalize_url(url: str) -> str:
    """
    Canonicalize a product URL for identity hashing and storage.

    - Forces https and lowercases the host
    - Drops tracking parameters (utm_*, fbclid, gclid, ref, source, campaign)
    - Drops empty parameters and sorts the remainder
    - Drops the fragment
    - Strips a trailing slash except on the root path

    Args:
        url: Absolute URL

    Returns:
        Canonical URL string

    Raises:
        ValueError: If the URL has no host
    """
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError(f"URL has no host: {url!r}")

    netloc = host
    if parts.port and parts.port not in (80, 443):
        netloc = f"{host}:{parts.port}"

    params = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if value != "" and not _is_tracking_param(name)
    ]
    params.sort()

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunsplit(("https", netloc, path, urlencode(params), ""))


def hash_url(canonical_url: str) -> str:
    """Short stable hash of a canonical URL."""
    return hashlib.sha256(canonical_url.encode("utf-8")).hexdigest()[:16]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def generate_identity_key(
    retailer_product_id: Optional[str],
    retailer_sku: Optional[str],
    canonical_url: str,
) -> str:
    """
    Derive the identity key for an offer.

    Precedence: retailer product id, then retailer SKU, then a hash of the
    canonical URL. Blank values are ignored.
    """
    pid = _clean(retailer_product_id)
    if pid:
        return f"PID:{pid}"

    sku = _clean(retailer_sku)
    if sku:
        return f"SKU:{sku}"

    return f"URL:{hash_url(canonical_url)}"


def parse_identity_key(key: str) -> Optional[tuple[str, str]]:
    """
    Split an identity key into (type, value).

    Returns:
        Tuple of key type and value, or None if the key is malformed
    """
    if not key or ":" not in key:
        return None

    key_type, value = key.split(":", 1)
    if key_type not in IDENTITY_KEY_TYPES:
        return None
    if not value or ":" in value or len(value) > MAX_IDENTITY_VALUE_LENGTH:
        return None

    return key_type, value


def get_hostname(url: str) -> str:
    """Lowercased hostname of a URL (empty string if absent)."""
    return (urlsplit(url).hostname or "").lower()


def get_registrable_domain(url: str) -> str:
    """
    Registrable domain (eTLD+1) of a URL, used as the rate-limit key.

    Falls back to the bare hostname for IPs and hosts without a known suffix.
    """
    hostname = get_hostname(url)
    if not hostname:
        return ""

    extracted = _domain_extractor(hostname)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    return hostname


def is_valid_http_url(url: Optional[str]) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)
