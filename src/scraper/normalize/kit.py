"""Shared normalization helpers used by every adapter."""

import logging
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from src.scraper.normalize.ballistics import (
    canonicalize_caliber,
    extract_ballistic_fields,
    in_grain_range,
    in_round_count_range,
    extract_bullet_type,
    extract_case_material,
)
from src.scraper.types import Availability, NormalizedScrapeOffer, RawScrapeOffer
from src.utils.url import canonicalize_url, generate_identity_key

logger = logging.getLogger(__name__)

NAN = float("nan")

_PRICE_STRIP = re.compile(r"[$,\s]|USD", re.IGNORECASE)
_PRICE_NUMBER = re.compile(r"^\d+(?:\.\d+)?$")
_PRICE_TOKENS = re.compile(r"\d[\d,]*(?:\.\d+)?")

# Free-text availability phrases, checked in order
AVAILABILITY_PHRASES: list[tuple[str, Availability]] = [
    ("out of stock", Availability.OUT_OF_STOCK),
    ("sold out", Availability.OUT_OF_STOCK),
    ("unavailable", Availability.OUT_OF_STOCK),
    ("backorder", Availability.BACKORDER),
    ("back order", Availability.BACKORDER),
    ("preorder", Availability.BACKORDER),
    ("pre-order", Availability.BACKORDER),
    ("in stock", Availability.IN_STOCK),
    ("available", Availability.IN_STOCK),
]

SCHEMA_AVAILABILITY: dict[str, Availability] = {
    "instock": Availability.IN_STOCK,
    "instoreonly": Availability.IN_STOCK,
    "limitedavailability": Availability.IN_STOCK,
    "onlineonly": Availability.IN_STOCK,
    "outofstock": Availability.OUT_OF_STOCK,
    "soldout": Availability.OUT_OF_STOCK,
    "discontinued": Availability.OUT_OF_STOCK,
    "backorder": Availability.BACKORDER,
    "preorder": Availability.BACKORDER,
    "presale": Availability.BACKORDER,
}


class NormalizationError(ValueError):
    """Raised when a raw offer cannot be brought into canonical shape."""

    pass


def is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def parse_price_cents(value: Any) -> float:
    """
    Parse a price into integer minor units.

    Strips currency symbols, thousands separators and whitespace. Unparsable
    or negative input yields NaN, which the validation gate rejects as
    PRICE_PARSE_FAILED. Zero is returned as 0 so that it can be quarantined.

    Args:
        value: Price as text or number (major units, e.g. "$1,234.56")

    Returns:
        Cents as an int, or NaN
    """
    if value is None or isinstance(value, bool):
        return NAN

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return NAN
    else:
        cleaned = _PRICE_STRIP.sub("", str(value))
        if not _PRICE_NUMBER.match(cleaned):
            return NAN
        amount = Decimal(cleaned)

    if not amount.is_finite() or amount < 0:
        return NAN

    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_optional_price_cents(value: Any) -> Optional[int]:
    """Price in cents when positive and parsable, else None (price absent)."""
    cents = parse_price_cents(value)
    if is_nan(cents) or cents <= 0:
        return None
    return int(cents)


def count_distinct_prices(text: Optional[str]) -> int:
    """Number of distinct numeric price tokens in a text fragment."""
    if not text:
        return 0
    values = {token.replace(",", "") for token in _PRICE_TOKENS.findall(text)}
    return len(values)


def map_availability_text(text: Optional[str]) -> Availability:
    """Map free availability text (e.g. "In Stock", "Sold Out") to Availability."""
    if not text:
        return Availability.UNKNOWN
    lowered = " ".join(text.lower().split())
    for phrase, availability in AVAILABILITY_PHRASES:
        if phrase in lowered:
            return availability
    return Availability.UNKNOWN


def map_schema_availability(value: Optional[str]) -> Availability:
    """Map a schema.org availability URL or token to Availability."""
    if not value:
        return Availability.UNKNOWN
    token = str(value).rstrip("/").rsplit("/", 1)[-1].lower()
    return SCHEMA_AVAILABILITY.get(token, Availability.UNKNOWN)


def compute_cost_per_round(price_cents: Optional[float], round_count: Optional[int]) -> Optional[int]:
    """Rounded cents per round, or None when either input is unusable."""
    if price_cents is None or is_nan(price_cents) or price_cents <= 0:
        return None
    if not round_count or round_count <= 0:
        return None
    return int(round(price_cents / round_count))


def clean_text(value: Any) -> Optional[str]:
    """Trimmed string or None."""
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def build_normalized_offer(raw: RawScrapeOffer) -> NormalizedScrapeOffer:
    """
    Derive the canonical shape of a raw offer.

    Canonicalizes the URL, derives the identity key, resolves ballistic fields
    (adapter-provided values first, then the title/description cascade) and
    computes cost per round. Out-of-range numbers become None.

    Raises:
        NormalizationError: If title or description text cannot be parsed
    """
    try:
        canonical_url = canonicalize_url(raw.url)
    except ValueError:
        # Left as-is; the validation gate drops it as INVALID_URL
        canonical_url = raw.url
    try:
        parsed = extract_ballistic_fields(raw.title, raw.description)
    except (TypeError, AttributeError) as e:
        raise NormalizationError(f"Cannot parse ballistic fields for {raw.url}: {e}") from e

    caliber = canonicalize_caliber(raw.caliber) or parsed.caliber
    grain_weight = raw.grain_weight if in_grain_range(raw.grain_weight) else parsed.grain_weight
    round_count = raw.round_count if in_round_count_range(raw.round_count) else parsed.round_count
    bullet_type = extract_bullet_type(raw.bullet_type) or parsed.bullet_type
    case_material = extract_case_material(raw.case_material) or parsed.case_material

    return NormalizedScrapeOffer(
        source_id=raw.source_id,
        retailer_id=raw.retailer_id,
        url=canonical_url,
        title=clean_text(raw.title) or "",
        price_cents=raw.price_cents,
        availability=raw.availability,
        observed_at=raw.observed_at,
        adapter_version=raw.adapter_version,
        currency=raw.currency,
        retailer_product_id=clean_text(raw.retailer_product_id),
        retailer_sku=clean_text(raw.retailer_sku),
        upc=clean_text(raw.upc),
        brand=clean_text(raw.brand),
        image_url=clean_text(raw.image_url),
        description=raw.description,
        caliber=caliber,
        grain_weight=grain_weight,
        round_count=round_count,
        case_material=case_material,
        bullet_type=bullet_type,
        load_type=clean_text(raw.load_type),
        shell_length=clean_text(raw.shell_length),
        shipping_cents=raw.shipping_cents,
        price_ambiguous=raw.price_ambiguous,
        identity_key=generate_identity_key(raw.retailer_product_id, raw.retailer_sku, canonical_url),
        cost_per_round_cents=compute_cost_per_round(raw.price_cents, round_count),
    )
