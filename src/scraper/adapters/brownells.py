"""Brownells adapter.

Product pages carry JSON-LD wrapped in @graph containers. Variant pages list
one offer per SKU; the `?sku=` query parameter selects the offer. Without a
selector, variants with distinct prices are ambiguous and extraction refuses.
"""

from selectolax.parser import HTMLParser

from src.scraper.adapters.base import (
    BaseAdapter,
    as_list,
    brand_name,
    find_jsonld_product,
    first_image,
    first_node,
    first_text,
    looks_blocked,
    missing_price_result,
    query_param,
)
from src.scraper.normalize.kit import is_nan, map_schema_availability, parse_price_cents
from src.scraper.types import (
    AdapterContext,
    AdapterManifest,
    AdapterMode,
    Availability,
    ExtractFailureReason,
    ExtractResult,
    RateLimitConfig,
)

SELECTORS = {
    "title": ["h1[itemprop='name']", "h1.product-title", "h1"],
    "in_stock": ["[data-availability='in-stock']", ".availability.in-stock"],
    "out_of_stock": ["[data-availability='out-of-stock']", ".availability.out-of-stock"],
    "backorder": ["[data-availability='backorder']", ".availability.backorder"],
}


def offer_price(offer: dict):
    """Direct price, then priceSpecification price/minPrice/maxPrice. None if absent."""
    value = offer.get("price")
    if value not in (None, ""):
        return parse_price_cents(value)

    for spec in as_list(offer.get("priceSpecification")):
        if not isinstance(spec, dict):
            continue
        for key in ("price", "minPrice", "maxPrice"):
            if spec.get(key) not in (None, ""):
                return parse_price_cents(spec[key])
    return None


class BrownellsAdapter(BaseAdapter):
    """Adapter for brownells.com product pages."""

    manifest = AdapterManifest(
        id="brownells",
        name="Brownells",
        owner="ingestion",
        version="1.0.0",
        mode=AdapterMode.HTML,
        base_urls=("https://www.brownells.com",),
        rate_limit=RateLimitConfig(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1),
    )

    def parse(self, document: str, url: str, ctx: AdapterContext) -> ExtractResult:
        parser = HTMLParser(document)

        product = find_jsonld_product(parser)
        if product is None:
            if looks_blocked(parser):
                return ExtractResult.failure(ExtractFailureReason.BLOCKED_PAGE)
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details="No JSON-LD Product object found"
            )

        title = (product.get("name") or "").strip() or first_text(parser, SELECTORS["title"])
        if not title:
            return ExtractResult.failure(ExtractFailureReason.TITLE_NOT_FOUND)

        offers = [o for o in as_list(product.get("offers")) if isinstance(o, dict)]
        sku_param = query_param(url, "sku")

        selected = None
        if sku_param:
            selected = next((o for o in offers if str(o.get("sku") or "").strip() == sku_param), None)
        if selected is None:
            prices = {offer_price(o) for o in offers}
            prices = {p for p in prices if p is not None and not is_nan(p)}
            if len(prices) > 1:
                return ExtractResult.failure(
                    ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                    details=f"{len(offers)} variant offers with {len(prices)} distinct prices and no sku selector",
                )
            selected = offers[0] if offers else None

        availability = map_schema_availability((selected or {}).get("availability"))
        if availability == Availability.UNKNOWN:
            availability = self._availability_from_dom(parser)

        price_cents = offer_price(selected) if selected else None
        if price_cents is None:
            return missing_price_result(
                availability, details="Selected offer did not contain a usable price"
            )

        retailer_sku = (
            str((selected or {}).get("sku") or "").strip()
            or str(product.get("sku") or "").strip()
            or None
        )

        offer = self.build_offer(
            ctx,
            url=url,
            title=title,
            price_cents=price_cents,
            availability=availability,
            retailer_product_id=sku_param,
            retailer_sku=retailer_sku,
            brand=brand_name(product.get("brand")),
            image_url=first_image(product.get("image")),
            description=product.get("description"),
        )
        return ExtractResult.success(offer)

    @staticmethod
    def _availability_from_dom(parser: HTMLParser) -> Availability:
        if first_node(parser, SELECTORS["in_stock"]) is not None:
            return Availability.IN_STOCK
        if first_node(parser, SELECTORS["out_of_stock"]) is not None:
            return Availability.OUT_OF_STOCK
        if first_node(parser, SELECTORS["backorder"]) is not None:
            return Availability.BACKORDER
        return Availability.UNKNOWN
