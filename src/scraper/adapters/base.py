"""Base adapter contract and shared parsing helpers for retailer adapters."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional
from urllib.parse import parse_qs, urlsplit

from selectolax.parser import HTMLParser, Node

from src.scraper.normalize.kit import NormalizationError, build_normalized_offer
from src.scraper.process.validator import validate_offer
from src.scraper.types import (
    AdapterContext,
    AdapterManifest,
    Availability,
    ExtractFailureReason,
    ExtractResult,
    NormalizedScrapeOffer,
    NormalizeResult,
    QuarantineReason,
    RawScrapeOffer,
)
from src.utils.url import generate_identity_key

logger = logging.getLogger(__name__)

# Markers of interstitial/challenge pages served with a 200
BLOCK_PAGE_MARKERS = (
    "captcha",
    "cf-challenge",
    "access denied",
    "are you a robot",
    "unusual traffic",
    "request blocked",
)


class BaseAdapter(ABC):
    """
    Abstract base class for per-retailer scrape adapters.

    Adapters are stateless. `extract` must be a pure function of its inputs
    (no network or file I/O) so captured fixtures produce deterministic output.
    Extraction never raises: every failure is a typed ExtractResult.
    """

    manifest: AdapterManifest

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def version(self) -> str:
        return self.manifest.version

    @abstractmethod
    def parse(self, document: str, url: str, ctx: AdapterContext) -> ExtractResult:
        """
        Adapter-specific extraction.

        Args:
            document: Raw fetched document (HTML or JSON text)
            url: Requested URL
            ctx: Adapter context

        Returns:
            ExtractResult with an offer or a typed failure reason
        """
        pass

    def extract(self, document: str, url: str, ctx: AdapterContext) -> ExtractResult:
        """Extract a raw offer, converting empty documents and parser errors into typed failures."""
        if not document or not document.strip():
            return ExtractResult.failure(ExtractFailureReason.EMPTY_PAGE)

        try:
            return self.parse(document, url, ctx)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            ctx.logger.warning(f"{self.id}: extraction error for {url}: {e}")
            return ExtractResult.failure(
                ExtractFailureReason.PAGE_STRUCTURE_CHANGED, details=str(e)
            )

    def normalize(self, offer: RawScrapeOffer, ctx: AdapterContext) -> NormalizeResult:
        """
        Normalize and validate a raw offer.

        Adapters with extra domain knowledge override this and may route to
        quarantine themselves.
        """
        try:
            normalized = build_normalized_offer(offer)
        except NormalizationError as e:
            ctx.logger.warning(f"{self.id}: normalization failed for {offer.url}: {e}")
            fallback = NormalizedScrapeOffer(
                **vars(offer),
                identity_key=generate_identity_key(
                    offer.retailer_product_id, offer.retailer_sku, offer.url
                ),
            )
            return NormalizeResult.quarantine(
                [QuarantineReason.NORMALIZATION_FAILED], fallback, details=str(e)
            )
        return validate_offer(normalized)

    def build_offer(self, ctx: AdapterContext, **fields: Any) -> RawScrapeOffer:
        """Construct a RawScrapeOffer stamped with context and adapter version."""
        return RawScrapeOffer(
            source_id=ctx.source_id,
            retailer_id=ctx.retailer_id,
            observed_at=ctx.now,
            adapter_version=self.version,
            **fields,
        )


def missing_price_result(availability: Availability, details: Optional[str] = None) -> ExtractResult:
    """OOS pages legitimately omit a price; anything else is PRICE_NOT_FOUND."""
    if availability == Availability.OUT_OF_STOCK:
        return ExtractResult.failure(ExtractFailureReason.OOS_NO_PRICE)
    return ExtractResult.failure(ExtractFailureReason.PRICE_NOT_FOUND, details=details)


def looks_blocked(parser: HTMLParser) -> bool:
    """Heuristic check for a bot-challenge page."""
    title = parser.css_first("title")
    text = (title.text() if title else "").lower()
    body = parser.body
    if body is not None and len(body.text(strip=True)) < 2000:
        text += " " + body.text(separator=" ").lower()
    return any(marker in text for marker in BLOCK_PAGE_MARKERS)


def is_type(node: dict, type_name: str) -> bool:
    """Match a JSON-LD @type that may be a string or a list."""
    value = node.get("@type")
    if isinstance(value, list):
        return any(str(v).lower() == type_name.lower() for v in value)
    return value is not None and str(value).lower() == type_name.lower()


def flatten_jsonld(value: Any) -> list[dict]:
    """Breadth-first flatten of JSON-LD roots, arrays and @graph containers."""
    queue: list[Any] = list(value) if isinstance(value, list) else [value]
    nodes: list[dict] = []
    while queue:
        current = queue.pop(0)
        if isinstance(current, list):
            queue.extend(current)
            continue
        if not isinstance(current, dict):
            continue
        nodes.append(current)
        graph = current.get("@graph")
        if isinstance(graph, list):
            queue.extend(graph)
    return nodes


def iter_jsonld_blocks(parser: HTMLParser) -> Iterable[Any]:
    """Parsed JSON payloads of every ld+json script; malformed blocks are skipped."""
    for script in parser.css('script[type="application/ld+json"]'):
        raw = (script.text() or "").strip()
        if not raw:
            continue
        try:
            yield json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed JSON-LD block")
            continue


def find_jsonld_product(parser: HTMLParser) -> Optional[dict]:
    """First JSON-LD node typed Product."""
    for block in iter_jsonld_blocks(parser):
        for node in flatten_jsonld(block):
            if is_type(node, "Product"):
                return node
    return None


def as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def first_text(parser: HTMLParser, selectors: Iterable[str]) -> Optional[str]:
    """Text of the first element matched by a selector cascade."""
    node = first_node(parser, selectors)
    if node is None:
        return None
    text = " ".join(node.text(separator=" ").split())
    return text or None


def first_node(parser: HTMLParser, selectors: Iterable[str]) -> Optional[Node]:
    for selector in selectors:
        node = parser.css_first(selector)
        if node is not None:
            return node
    return None


def brand_name(brand: Any) -> Optional[str]:
    if isinstance(brand, dict):
        brand = brand.get("name")
    if brand is None:
        return None
    text = str(brand).strip()
    return text or None


def first_image(image: Any) -> Optional[str]:
    for item in as_list(image):
        if isinstance(item, dict):
            item = item.get("url")
        if item and str(item).strip():
            return str(item).strip()
    return None


def query_param(url: str, name: str) -> Optional[str]:
    values = parse_qs(urlsplit(url).query).get(name)
    if not values:
        return None
    value = values[0].strip()
    return value or None
