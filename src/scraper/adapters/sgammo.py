"""SGAmmo adapter.

WooCommerce storefront. JSON-LD Product data is preferred; DOM selectors fill
in any field the structured data lacks. Identity comes from the SKU only.
"""

import logging
from typing import Optional

from selectolax.parser import HTMLParser

from src.scraper.adapters.base import (
    BaseAdapter,
    as_list,
    find_jsonld_product,
    first_image,
    first_node,
    first_text,
    looks_blocked,
    missing_price_result,
)
from src.scraper.normalize.kit import (
    NAN,
    count_distinct_prices,
    is_nan,
    map_availability_text,
    map_schema_availability,
    parse_price_cents,
)
from src.scraper.types import (
    AdapterContext,
    AdapterManifest,
    AdapterMode,
    Availability,
    ExtractFailureReason,
    ExtractResult,
    RateLimitConfig,
)

logger = logging.getLogger(__name__)

SELECTORS = {
    "title": ["h1.product_title", "h1.entry-title", ".product h1"],
    "price_block": ".summary p.price",
    "price_block_fallback": "p.price",
    "sale_price": "ins .woocommerce-Price-amount",
    "sku": [".sku_wrapper .sku", ".sku"],
    "in_stock": [".stock.in-stock"],
    "out_of_stock": [".stock.out-of-stock"],
    "stock": [".stock"],
    "image": [".woocommerce-product-gallery__image img", ".wp-post-image"],
    "description": [".woocommerce-product-details__short-description"],
}


class SGAmmoAdapter(BaseAdapter):
    """Adapter for sgammo.com product pages."""

    manifest = AdapterManifest(
        id="sgammo",
        name="SGAmmo",
        owner="ingestion",
        version="1.0.0",
        mode=AdapterMode.HTML,
        base_urls=("https://sgammo.com", "https://www.sgammo.com"),
        rate_limit=RateLimitConfig(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1),
    )

    def parse(self, document: str, url: str, ctx: AdapterContext) -> ExtractResult:
        parser = HTMLParser(document)
        if looks_blocked(parser):
            return ExtractResult.failure(ExtractFailureReason.BLOCKED_PAGE)

        title = None
        price_cents: Optional[float] = None
        price_ambiguous = False
        availability = Availability.UNKNOWN
        sku = None
        image_url = None

        # Strategy 1: JSON-LD
        product = find_jsonld_product(parser)
        if product:
            offers = [o for o in as_list(product.get("offers")) if isinstance(o, dict)]
            prices = self._prices_from_offers(offers)
            if len(prices) > 1:
                return ExtractResult.failure(
                    ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                    details=f"JSON-LD offers carry {len(prices)} distinct prices",
                )
            if prices:
                price_cents = prices[0]

            title = (product.get("name") or "").strip() or None
            for offer in offers:
                if offer.get("availability"):
                    availability = map_schema_availability(offer["availability"])
                    break
            sku = str(product.get("sku") or "").strip() or None
            image_url = first_image(product.get("image"))
            ctx.logger.debug(
                f"sgammo JSON-LD: title={bool(title)} price={price_cents is not None} "
                f"availability={availability.value} sku={bool(sku)}"
            )

        # Strategy 2: DOM fallback for missing fields
        if not title:
            title = first_text(parser, SELECTORS["title"])

        if price_cents is None:
            blocks = parser.css(SELECTORS["price_block"]) or parser.css(SELECTORS["price_block_fallback"])
            block_texts = {" ".join(b.text(separator=" ").split()) for b in blocks}
            block_texts.discard("")
            if len(block_texts) > 1:
                return ExtractResult.failure(
                    ExtractFailureReason.PAGE_STRUCTURE_CHANGED,
                    details=f"{len(block_texts)} distinct price blocks",
                )
            if blocks:
                price_cents, price_ambiguous = self._price_from_block(blocks[0])

        if availability == Availability.UNKNOWN:
            availability = self._availability_from_dom(parser)

        if not sku:
            sku = first_text(parser, SELECTORS["sku"])

        if not image_url:
            img = first_node(parser, SELECTORS["image"])
            image_url = img.attributes.get("src") if img is not None else None

        if not title:
            return ExtractResult.failure(ExtractFailureReason.TITLE_NOT_FOUND)

        if price_cents is None:
            return missing_price_result(availability)

        offer = self.build_offer(
            ctx,
            url=url,
            title=title,
            price_cents=price_cents,
            price_ambiguous=price_ambiguous,
            availability=availability,
            retailer_sku=sku,
            image_url=image_url,
            description=first_text(parser, SELECTORS["description"]),
        )
        return ExtractResult.success(offer)

    @staticmethod
    def _prices_from_offers(offers: list[dict]) -> list[float]:
        """Distinct parsed prices across offers (direct price, then price specifications)."""
        prices: list[float] = []
        for offer in offers:
            candidates = [offer.get("price")] + [
                spec.get("price") for spec in as_list(offer.get("priceSpecification")) if isinstance(spec, dict)
            ]
            for value in candidates:
                if value is None or str(value).strip() == "":
                    continue
                cents = parse_price_cents(value)
                if not is_nan(cents) and cents not in prices:
                    prices.append(cents)
                break
        return prices

    @staticmethod
    def _price_from_block(block) -> tuple[Optional[float], bool]:
        """
        Price from a WooCommerce price block.

        A sale block (<del> old, <ins> new) is disambiguated by the <ins> price.
        A block with several amounts and no sale markup is a variant range.

        Returns:
            Tuple of (price cents or NaN, ambiguous flag)
        """
        sale = block.css_first(SELECTORS["sale_price"])
        if sale is not None:
            return parse_price_cents(sale.text(strip=True)), False

        text = " ".join(block.text(separator=" ").split())
        if not text:
            return None, False
        if count_distinct_prices(text) > 1:
            return NAN, True
        return parse_price_cents(text), False

    @staticmethod
    def _availability_from_dom(parser: HTMLParser) -> Availability:
        if first_node(parser, SELECTORS["in_stock"]) is not None:
            return Availability.IN_STOCK
        if first_node(parser, SELECTORS["out_of_stock"]) is not None:
            return Availability.OUT_OF_STOCK
        return map_availability_text(first_text(parser, SELECTORS["stock"]))
