"""Tests for retailer adapters against captured fixtures."""

import pytest

from src.scraper.adapters import ALL_ADAPTERS
from src.scraper.adapters.brownells import BrownellsAdapter
from src.scraper.adapters.midwayusa import MidwayUSAAdapter
from src.scraper.adapters.primaryarms import PrimaryArmsAdapter, parse_attributes, resolve_availability
from src.scraper.adapters.sgammo import SGAmmoAdapter
from src.scraper.fetch.ssrf import validate_manifest_base_urls
from src.scraper.fixtures import deterministic_hash
from src.scraper.types import Availability, ExtractFailureReason, NormalizeStatus, QuarantineReason
from tests.helpers import load_fixture

SGAMMO_URL = "https://sgammo.com/product/federal-american-eagle-9mm-115gr-fmj/"
MIDWAY_URL = "https://www.midwayusa.com/product/1019131936"
PRIMARY_URL = (
    "https://www.primaryarms.com/api/items"
    "?url=pmc-bronze-556-nato-55gr-fmj-20-rounds&fieldset=details"
)
BROWNELLS_URL = "https://www.brownells.com/ammunition/handgun-ammo/gold-dot-40-sw-165gr/"

BLOCKED_PAGE = (
    "<html><head><title>Just a moment...</title></head>"
    "<body><p>Please complete the CAPTCHA to continue.</p></body></html>"
)


# =============================================================================
# SGAmmo
# =============================================================================

def test_sgammo_in_stock(ctx):
    """JSON-LD offer yields price, availability and SKU identity."""
    adapter = SGAmmoAdapter()
    result = adapter.extract(load_fixture("sgammo", "in_stock"), SGAMMO_URL, ctx)

    assert result.ok
    offer = result.offer
    assert offer.title == "Federal American Eagle 9mm Luger 115 Grain FMJ - 50 Rounds"
    assert offer.price_cents == 1899
    assert offer.availability == Availability.IN_STOCK
    assert offer.retailer_sku == "AE9DP"
    assert offer.retailer_product_id is None
    assert offer.adapter_version == adapter.version
    assert offer.observed_at == ctx.now

    normalized = adapter.normalize(offer, ctx)
    assert normalized.status == NormalizeStatus.ACCEPT
    assert normalized.offer.identity_key == "SKU:AE9DP"
    assert normalized.offer.caliber == "9mm"
    assert normalized.offer.grain_weight == 115
    assert normalized.offer.round_count == 50
    assert normalized.offer.cost_per_round_cents == 38


def test_sgammo_out_of_stock_without_price(ctx):
    result = SGAmmoAdapter().extract(load_fixture("sgammo", "out_of_stock"), SGAMMO_URL, ctx)

    assert not result.ok
    assert result.reason == ExtractFailureReason.OOS_NO_PRICE


def test_sgammo_distinct_price_blocks_refused(ctx):
    """Two different price blocks on one page mean the layout changed."""
    result = SGAmmoAdapter().extract(load_fixture("sgammo", "malformed"), SGAMMO_URL, ctx)

    assert not result.ok
    assert result.reason == ExtractFailureReason.PAGE_STRUCTURE_CHANGED


def test_sgammo_sale_price_uses_ins(ctx):
    html = """
    <html><body><div class="summary">
      <h1 class="product_title">Blazer Brass 9mm 115gr FMJ Box of 50</h1>
      <p class="price">
        <del><span class="woocommerce-Price-amount">$20.00</span></del>
        <ins><span class="woocommerce-Price-amount">$15.00</span></ins>
      </p>
      <p class="stock in-stock">In stock</p>
    </div></body></html>
    """
    result = SGAmmoAdapter().extract(html, SGAMMO_URL, ctx)

    assert result.ok
    assert result.offer.price_cents == 1500
    assert result.offer.price_ambiguous is False


def test_sgammo_price_range_is_quarantined(ctx):
    """A variant price range extracts as ambiguous and normalizes to quarantine."""
    html = """
    <html><body><div class="summary">
      <h1 class="product_title">Blazer Brass 9mm 115gr FMJ</h1>
      <p class="price">$15.00 &ndash; $300.00</p>
      <p class="stock in-stock">In stock</p>
    </div></body></html>
    """
    adapter = SGAmmoAdapter()
    result = adapter.extract(html, SGAMMO_URL, ctx)

    assert result.ok
    assert result.offer.price_ambiguous is True

    normalized = adapter.normalize(result.offer, ctx)
    assert normalized.status == NormalizeStatus.QUARANTINE
    assert normalized.quarantine_reasons == [QuarantineReason.AMBIGUOUS_PRICE]


def test_sgammo_missing_title(ctx):
    html = '<html><body><p class="price">$15.00</p></body></html>'
    result = SGAmmoAdapter().extract(html, SGAMMO_URL, ctx)

    assert result.reason == ExtractFailureReason.TITLE_NOT_FOUND


def test_sgammo_in_stock_without_price(ctx):
    html = '<html><body><h1 class="product_title">Blazer 9mm</h1><p class="stock in-stock">In stock</p></body></html>'
    result = SGAmmoAdapter().extract(html, SGAMMO_URL, ctx)

    assert result.reason == ExtractFailureReason.PRICE_NOT_FOUND


def test_sgammo_blocked_page(ctx):
    result = SGAmmoAdapter().extract(BLOCKED_PAGE, SGAMMO_URL, ctx)

    assert result.reason == ExtractFailureReason.BLOCKED_PAGE


@pytest.mark.parametrize("adapter_class", ALL_ADAPTERS)
def test_empty_document(adapter_class, ctx):
    result = adapter_class().extract("   \n", "https://example.com/x", ctx)

    assert not result.ok
    assert result.reason == ExtractFailureReason.EMPTY_PAGE


# =============================================================================
# MidwayUSA
# =============================================================================

def test_midwayusa_in_stock(ctx):
    adapter = MidwayUSAAdapter()
    result = adapter.extract(load_fixture("midwayusa", "in_stock"), MIDWAY_URL, ctx)

    assert result.ok
    offer = result.offer
    assert offer.price_cents == 3699
    assert offer.availability == Availability.IN_STOCK
    assert offer.retailer_product_id == "1019131936"
    assert offer.retailer_sku == "2348713"
    assert offer.upc == "029465064458"
    assert offer.brand == "Federal"
    assert offer.image_url == "https://media.mwstatic.com/product-images/2348713.jpg"

    normalized = adapter.normalize(offer, ctx)
    assert normalized.status == NormalizeStatus.ACCEPT
    assert normalized.offer.identity_key == "PID:1019131936"
    assert normalized.offer.caliber == "9mm"
    assert normalized.offer.grain_weight == 124
    assert normalized.offer.round_count == 50
    assert normalized.offer.bullet_type == "HST"


def test_midwayusa_out_of_stock_without_price(ctx):
    result = MidwayUSAAdapter().extract(load_fixture("midwayusa", "out_of_stock"), MIDWAY_URL, ctx)

    assert result.reason == ExtractFailureReason.OOS_NO_PRICE


def test_midwayusa_distinct_offer_prices_refused(ctx):
    result = MidwayUSAAdapter().extract(load_fixture("midwayusa", "malformed"), MIDWAY_URL, ctx)

    assert result.reason == ExtractFailureReason.PAGE_STRUCTURE_CHANGED


def test_midwayusa_without_jsonld(ctx):
    html = "<html><head><title>MidwayUSA</title></head><body><h1>Some product</h1></body></html>"
    result = MidwayUSAAdapter().extract(html, MIDWAY_URL, ctx)

    assert result.reason == ExtractFailureReason.PAGE_STRUCTURE_CHANGED


def test_midwayusa_blocked_page(ctx):
    result = MidwayUSAAdapter().extract(BLOCKED_PAGE, MIDWAY_URL, ctx)

    assert result.reason == ExtractFailureReason.BLOCKED_PAGE


# =============================================================================
# Primary Arms
# =============================================================================

def test_primaryarms_in_stock(ctx):
    adapter = PrimaryArmsAdapter()
    result = adapter.extract(load_fixture("primaryarms", "in_stock"), PRIMARY_URL, ctx)

    assert result.ok
    offer = result.offer
    assert offer.url == "https://www.primaryarms.com/pmc-bronze-556-nato-55gr-fmj-20-rounds"
    assert offer.title == "PMC Bronze 5.56 NATO 55gr FMJ 20 Rounds"
    assert offer.price_cents == 1099
    assert offer.availability == Availability.IN_STOCK
    assert offer.retailer_product_id == "117744"
    assert offer.retailer_sku == "PMC-223A-20"
    assert offer.upc == "741569070016"
    assert offer.brand == "PMC"
    assert offer.caliber == "5.56 NATO"
    assert offer.grain_weight == 55
    assert offer.round_count == 20
    assert offer.case_material == "Brass"
    assert offer.image_url == "https://www.primaryarms.com/images/pmc-223a.jpg"

    normalized = adapter.normalize(offer, ctx)
    assert normalized.status == NormalizeStatus.ACCEPT
    assert normalized.offer.identity_key == "PID:117744"
    assert normalized.offer.caliber == "5.56 NATO"
    assert normalized.offer.bullet_type == "FMJ"
    assert normalized.offer.cost_per_round_cents == 55


def test_primaryarms_out_of_stock_without_price(ctx):
    result = PrimaryArmsAdapter().extract(load_fixture("primaryarms", "out_of_stock"), PRIMARY_URL, ctx)

    assert result.reason == ExtractFailureReason.OOS_NO_PRICE


def test_primaryarms_multiple_items_refused(ctx):
    result = PrimaryArmsAdapter().extract(load_fixture("primaryarms", "malformed"), PRIMARY_URL, ctx)

    assert result.reason == ExtractFailureReason.PAGE_STRUCTURE_CHANGED


@pytest.mark.parametrize(
    "document,reason",
    [
        ("<html><body>Maintenance</body></html>", ExtractFailureReason.PAGE_STRUCTURE_CHANGED),
        ("{not json", ExtractFailureReason.PAGE_STRUCTURE_CHANGED),
        ('{"code": 500, "items": []}', ExtractFailureReason.PAGE_STRUCTURE_CHANGED),
        ('{"code": 200, "items": []}', ExtractFailureReason.EMPTY_PAGE),
        ('{"code": 200, "items": [{"isinstock": true, "onlinecustomerprice": 5}]}',
         ExtractFailureReason.TITLE_NOT_FOUND),
    ],
)
def test_primaryarms_payload_failures(document, reason, ctx):
    result = PrimaryArmsAdapter().extract(document, PRIMARY_URL, ctx)

    assert result.reason == reason


def test_primaryarms_falls_back_to_request_url_param(ctx):
    document = '{"items": [{"internalid": 1, "pagetitle": "Test 9mm 115gr", "isinstock": true, "onlinecustomerprice": 12.5}]}'
    result = PrimaryArmsAdapter().extract(document, PRIMARY_URL, ctx)

    assert result.ok
    assert result.offer.url == "https://www.primaryarms.com/pmc-bronze-556-nato-55gr-fmj-20-rounds"
    assert result.offer.price_cents == 1250


def test_primaryarms_availability_flags():
    assert resolve_availability({"isinstock": True}) == Availability.IN_STOCK
    assert resolve_availability({"isinstock": False, "isbackorderable": True}) == Availability.BACKORDER
    assert resolve_availability({"isinstock": False}) == Availability.OUT_OF_STOCK
    assert resolve_availability({"ispurchasable": True}) == Availability.IN_STOCK
    assert resolve_availability({}) == Availability.UNKNOWN


def test_primaryarms_parse_attributes():
    raw = '{"attributes": [{"attribute": "Caliber", "value": "9mm"}, {"attribute": "", "value": "x"}]}'

    assert parse_attributes(raw) == {"caliber": "9mm"}
    assert parse_attributes("not json") == {}
    assert parse_attributes(None) == {}


# =============================================================================
# Brownells
# =============================================================================

def test_brownells_sku_selects_variant(ctx):
    adapter = BrownellsAdapter()
    url = BROWNELLS_URL + "?sku=100033145"
    result = adapter.extract(load_fixture("brownells", "in_stock"), url, ctx)

    assert result.ok
    offer = result.offer
    assert offer.price_cents == 2999
    assert offer.availability == Availability.IN_STOCK
    assert offer.retailer_product_id == "100033145"
    assert offer.retailer_sku == "100033145"
    assert offer.brand == "Speer"

    normalized = adapter.normalize(offer, ctx)
    assert normalized.status == NormalizeStatus.ACCEPT
    assert normalized.offer.identity_key == "PID:100033145"
    assert normalized.offer.caliber == ".40 S&W"
    assert normalized.offer.grain_weight == 165
    assert normalized.offer.bullet_type == "GDHP"


def test_brownells_variants_without_selector_refused(ctx):
    """Without ?sku= the two variant prices are ambiguous."""
    result = BrownellsAdapter().extract(load_fixture("brownells", "in_stock"), BROWNELLS_URL, ctx)

    assert result.reason == ExtractFailureReason.PAGE_STRUCTURE_CHANGED


def test_brownells_out_of_stock_uses_dom_availability(ctx):
    url = "https://www.brownells.com/ammunition/handgun-ammo/umc-45-acp/?sku=100021877"
    result = BrownellsAdapter().extract(load_fixture("brownells", "out_of_stock"), url, ctx)

    assert result.reason == ExtractFailureReason.OOS_NO_PRICE


def test_brownells_malformed(ctx):
    result = BrownellsAdapter().extract(load_fixture("brownells", "malformed"), BROWNELLS_URL, ctx)

    assert result.reason == ExtractFailureReason.PAGE_STRUCTURE_CHANGED


def test_brownells_blocked_page(ctx):
    result = BrownellsAdapter().extract(BLOCKED_PAGE, BROWNELLS_URL, ctx)

    assert result.reason == ExtractFailureReason.BLOCKED_PAGE


# =============================================================================
# Contract
# =============================================================================

@pytest.mark.parametrize("adapter_class", ALL_ADAPTERS)
def test_manifest_base_urls_are_public_https(adapter_class):
    manifest = adapter_class().manifest

    validate_manifest_base_urls(manifest.base_urls)
    assert manifest.rate_limit is not None


@pytest.mark.parametrize(
    "adapter_class,url",
    [
        (SGAmmoAdapter, SGAMMO_URL),
        (MidwayUSAAdapter, MIDWAY_URL),
        (PrimaryArmsAdapter, PRIMARY_URL),
        (BrownellsAdapter, BROWNELLS_URL + "?sku=100033145"),
    ],
)
def test_extraction_is_deterministic(adapter_class, url, ctx):
    """Same document, URL and context produce identical output."""
    adapter = adapter_class()
    document = load_fixture(adapter.id, "in_stock")

    first = adapter.extract(document, url, ctx)
    second = adapter.extract(document, url, ctx)

    assert first.ok
    assert deterministic_hash(first.offer) == deterministic_hash(second.offer)
