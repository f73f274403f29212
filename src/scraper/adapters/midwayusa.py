"""MidwayUSA adapter.

Price and availability are rendered client-side, so extraction reads the
JSON-LD Product object embedded in the page (usually wrapped in an array).
"""

from selectolax.parser import HTMLParser

from src.scraper.adapters.base import (
    BaseAdapter,
    as_list,
    brand_name,
    find_jsonld_product,
    first_image,
    looks_blocked,
    missing_price_result,
)
from src.scraper.normalize.kit import is_nan, map_schema_availability, parse_price_cents
from src.scraper.types import (
    AdapterContext,
    AdapterManifest,
    AdapterMode,
    ExtractFailureReason,
    ExtractResult,
    RateLimitConfig,
)


class MidwayUSAAdapter(BaseAdapter):
    """Adapter for midwayusa.com product pages."""

    manifest = AdapterManifest(
        id="midwayusa",
        name="MidwayUSA",
        owner="ingestion",
        version="1.0.0",
        mode=AdapterMode.HTML,
        base_urls=("https://www.midwayusa.com",),
        rate_limit=RateLimitConfig(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1),
    )

    def parse(self, document: str, url: str, ctx: AdapterContext) -> ExtractResult:
        parser = HTMLParser(document)

        product = find_jsonld_product(parser)
        if product is None:
            if looks_blocked(parser):
                return ExtractResult.failure(ExtractFailureReason.BLOCKED_PAGE)
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details="No JSON-LD Product found"
            )

        title = (product.get("name") or "").strip()
        if not title:
            return ExtractResult.failure(ExtractFailureReason.TITLE_NOT_FOUND)

        offers = [o for o in as_list(product.get("offers")) if isinstance(o, dict)]
        prices = {
            parse_price_cents(o["price"]) for o in offers if o.get("price") not in (None, "")
        }
        prices = {p for p in prices if not is_nan(p)} or prices
        if len(prices) > 1:
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                details=f"{len(prices)} distinct offer prices",
            )

        offer_data = offers[0] if offers else {}
        availability = map_schema_availability(offer_data.get("availability"))

        if not prices:
            return missing_price_result(availability)

        offer = self.build_offer(
            ctx,
            url=url,
            title=title,
            price_cents=prices.pop(),
            availability=availability,
            retailer_product_id=str(product.get("inProductGroupWithID") or "").strip() or None,
            retailer_sku=str(product.get("sku") or "").strip() or None,
            upc=str(product.get("mpn") or "").strip() or None,
            brand=brand_name(product.get("brand")),
            image_url=first_image(product.get("image")),
            description=product.get("description"),
        )
        return ExtractResult.success(offer)
