"""Primary Arms adapter.

Primary Arms serves product data from a NetSuite JSON endpoint (/api/items).
The adapter consumes that JSON payload, not the HTML shell.
"""

import json
import re
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

from src.scraper.adapters.base import BaseAdapter, missing_price_result
from src.scraper.normalize.kit import clean_text, parse_price_cents
from src.scraper.types import (
    AdapterContext,
    AdapterManifest,
    AdapterMode,
    Availability,
    ExtractFailureReason,
    ExtractResult,
    RateLimitConfig,
)

PRODUCT_BASE_URL = "https://www.primaryarms.com"

# Attribute labels used in the custitem_test_for_website payload
ATTRIBUTE_LABELS = {
    "caliber": ("caliber", "cartridge", "gauge"),
    "bullet_weight": ("bullet weight", "grain weight", "weight"),
    "case_material": ("case material", "casing"),
    "bullet_type": ("bullet type", "projectile type", "projectile"),
    "brand": ("brand", "manufacturer"),
    "load_type": ("load type", "shot size"),
    "shell_length": ("shell length",),
}

GRAIN_TEXT = re.compile(r"(\d+(?:\.\d+)?)\s*(?:gr|grain)", re.IGNORECASE)
ROUND_COUNT_PATTERNS = (
    re.compile(r"\b(?:box|case|bag|pack)\s+of\s+(\d+)\b", re.IGNORECASE),
    re.compile(r"\b(\d+)\s*(?:rounds|round|rds|rd|ct)\b", re.IGNORECASE),
)


def parse_attributes(raw: Optional[str]) -> dict[str, str]:
    """Flatten the {"attributes": [{"attribute", "value"}]} payload into a lowercase-keyed map."""
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}

    entries = payload.get("attributes") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        return {}

    attributes: dict[str, str] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = str(entry.get("attribute") or "").strip().lower()
        value = str(entry.get("value") or "").strip()
        if key and value:
            attributes[key] = value
    return attributes


def attribute_value(attributes: dict[str, str], field: str) -> Optional[str]:
    for label in ATTRIBUTE_LABELS[field]:
        if attributes.get(label):
            return attributes[label]
    return None


def parse_grain_text(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = GRAIN_TEXT.search(value)
    return int(round(float(match.group(1)))) if match else None


def parse_round_count(title: Optional[str]) -> Optional[int]:
    if not title:
        return None
    for pattern in ROUND_COUNT_PATTERNS:
        match = pattern.search(title)
        if match:
            return int(match.group(1))
    return None


def resolve_availability(item: dict[str, Any]) -> Availability:
    if item.get("isinstock") is True:
        return Availability.IN_STOCK
    if item.get("isbackorderable") is True:
        return Availability.BACKORDER
    if item.get("isinstock") is False:
        return Availability.OUT_OF_STOCK
    if item.get("ispurchasable") is True:
        return Availability.IN_STOCK
    if item.get("ispurchasable") is False:
        return Availability.OUT_OF_STOCK
    return Availability.UNKNOWN


def product_url(item: dict[str, Any], request_url: str) -> tuple[str, bool]:
    """
    Public product URL for an item.

    Returns:
        Tuple of (url, whether it came from the payload rather than the request)
    """
    component = clean_text(item.get("urlcomponent"))
    if not component:
        values = parse_qs(urlsplit(request_url).query).get("url")
        component = values[0].lstrip("/") if values else None
        if not component:
            return request_url, False

    if component.startswith(("http://", "https://")):
        return component, True
    return f"{PRODUCT_BASE_URL}/{component.lstrip('/')}", True


class PrimaryArmsAdapter(BaseAdapter):
    """Adapter for the primaryarms.com items API."""

    manifest = AdapterManifest(
        id="primaryarms",
        name="Primary Arms",
        owner="ingestion",
        version="1.0.0",
        mode=AdapterMode.JSON,
        base_urls=("https://www.primaryarms.com",),
        rate_limit=RateLimitConfig(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1),
    )

    def parse(self, document: str, url: str, ctx: AdapterContext) -> ExtractResult:
        text = document.strip()
        if text.startswith("<"):
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details="Expected JSON payload, got HTML"
            )
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details="Invalid JSON payload"
            )
        if not isinstance(payload, dict):
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details="Unexpected payload shape"
            )

        code = payload.get("code")
        if code and code != 200:
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details=f"API code {code}"
            )

        items = payload.get("items") or []
        if not items or not isinstance(items[0], dict):
            return ExtractResult.failure(ExtractFailureReason.EMPTY_PAGE)
        if len(items) > 1:
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                details=f"Expected one item, got {len(items)}",
            )
        item = items[0]

        title = (
            clean_text(item.get("pagetitle"))
            or clean_text(item.get("displayname"))
            or clean_text(item.get("itemid"))
        )
        if not title:
            return ExtractResult.failure(ExtractFailureReason.TITLE_NOT_FOUND)

        availability = resolve_availability(item)

        raw_price = item.get("onlinecustomerprice")
        if raw_price is None:
            raw_price = (item.get("onlinecustomerprice_detail") or {}).get("onlinecustomerprice")
        if raw_price is None or str(raw_price).strip() == "":
            return missing_price_result(availability)

        page_url, from_payload = product_url(item, url)
        if not from_payload:
            ctx.logger.warning(f"Primary Arms payload missing urlcomponent; using request URL {url}")

        attributes = parse_attributes(item.get("custitem_test_for_website"))
        images = (item.get("itemimages_detail") or {}).get("urls") or []
        image_url = next((i.get("url") for i in images if isinstance(i, dict) and i.get("url")), None)
        internal_id = item.get("internalid")

        offer = self.build_offer(
            ctx,
            url=page_url,
            title=title,
            price_cents=parse_price_cents(raw_price),
            availability=availability,
            retailer_product_id=str(internal_id) if internal_id not in (None, "") else None,
            retailer_sku=clean_text(item.get("itemid")),
            upc=clean_text(item.get("upccode")),
            brand=(
                clean_text(item.get("custitem_brand"))
                or clean_text(item.get("manufacturer"))
                or attribute_value(attributes, "brand")
            ),
            caliber=attribute_value(attributes, "caliber"),
            grain_weight=parse_grain_text(attribute_value(attributes, "bullet_weight")) or parse_grain_text(title),
            round_count=parse_round_count(title),
            case_material=attribute_value(attributes, "case_material"),
            bullet_type=attribute_value(attributes, "bullet_type"),
            load_type=attribute_value(attributes, "load_type"),
            shell_length=attribute_value(attributes, "shell_length"),
            image_url=image_url,
        )
        return ExtractResult.success(offer)
