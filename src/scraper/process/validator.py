"""Fail-closed validation gate for normalized offers.

Every offer is classified as accepted, dropped (excluded, not persisted) or
quarantined (persisted for review, never consumer-visible). Checks run in a
fixed order and the first failing check decides the outcome.
"""

import logging
from typing import Iterable, Optional, Union

from src.config import settings
from src.scraper.normalize.kit import is_nan
from src.scraper.types import (
    Availability,
    DropReason,
    ExtractFailureReason,
    NormalizedScrapeOffer,
    NormalizeResult,
    QuarantineReason,
)
from src.utils.url import is_valid_http_url, parse_identity_key

logger = logging.getLogger(__name__)

MAX_PRICE_CENTS = 99_999_999

REQUIRED_FIELDS = (
    "source_id",
    "retailer_id",
    "url",
    "title",
    "price_cents",
    "currency",
    "availability",
    "observed_at",
    "identity_key",
    "adapter_version",
)


def _build_drift_table(exempt: Iterable[str]) -> dict[Union[DropReason, QuarantineReason], bool]:
    """
    Classification of every rejection reason: True if it counts toward drift.

    Every drop reason is assigned explicitly; quarantine always counts.
    """
    exempt_set = {DropReason(reason) for reason in exempt}
    table: dict[Union[DropReason, QuarantineReason], bool] = {
        reason: reason not in exempt_set for reason in DropReason
    }
    table.update({reason: True for reason in QuarantineReason})
    return table


DRIFT_CLASSIFICATION = _build_drift_table(settings.drift_exempt_drop_reasons)


def counts_toward_drift(reason: Union[DropReason, QuarantineReason]) -> bool:
    """Whether a rejection should increment the target's consecutive-failure counter."""
    return DRIFT_CLASSIFICATION[reason]


def extract_failure_counts_toward_drift(reason: ExtractFailureReason) -> bool:
    """OOS without price is a legitimate page state; every other extract failure counts."""
    return reason != ExtractFailureReason.OOS_NO_PRICE


def _missing_required_field(offer: NormalizedScrapeOffer) -> Optional[str]:
    for name in REQUIRED_FIELDS:
        value = getattr(offer, name, None)
        if value is None:
            return name
        if isinstance(value, str) and not value.strip():
            return name
    return None


def validate_offer(offer: NormalizedScrapeOffer) -> NormalizeResult:
    """
    Apply the acceptance rule to an offer.

    Order:
        1. Missing required field -> drop MISSING_REQUIRED_FIELD
        2. UNKNOWN availability -> drop UNKNOWN_AVAILABILITY
        3. Ambiguous price text -> quarantine AMBIGUOUS_PRICE
        4. Zero price -> quarantine ZERO_PRICE_EXTRACTED
        5. Unparsable price (NaN) -> drop PRICE_PARSE_FAILED
        6. Non-integer or out-of-range price -> drop INVALID_PRICE
        7. Bad URL or malformed identity key -> drop INVALID_URL / MISSING_REQUIRED_FIELD

    Args:
        offer: Normalized offer

    Returns:
        NormalizeResult verdict
    """
    missing = _missing_required_field(offer)
    if missing:
        return NormalizeResult.drop(
            DropReason.MISSING_REQUIRED_FIELD, offer, details=f"Missing field: {missing}"
        )

    if offer.availability == Availability.UNKNOWN:
        return NormalizeResult.drop(DropReason.UNKNOWN_AVAILABILITY, offer)

    if offer.price_ambiguous:
        return NormalizeResult.quarantine(
            [QuarantineReason.AMBIGUOUS_PRICE],
            offer,
            details="Price text contained multiple distinct amounts",
        )

    price = offer.price_cents
    if not is_nan(price) and price == 0:
        return NormalizeResult.quarantine(
            [QuarantineReason.ZERO_PRICE_EXTRACTED],
            offer,
            details="Extracted price was zero",
        )

    if is_nan(price):
        return NormalizeResult.drop(DropReason.PRICE_PARSE_FAILED, offer)

    if float(price) != int(price) or price < 1 or price > MAX_PRICE_CENTS:
        return NormalizeResult.drop(
            DropReason.INVALID_PRICE, offer, details=f"Price out of range: {price}"
        )

    if not is_valid_http_url(offer.url):
        return NormalizeResult.drop(DropReason.INVALID_URL, offer, details=offer.url)

    if parse_identity_key(offer.identity_key) is None:
        return NormalizeResult.drop(
            DropReason.MISSING_REQUIRED_FIELD,
            offer,
            details=f"Malformed identity key: {offer.identity_key!r}",
        )

    return NormalizeResult.accept(offer)
