"""Shared types for the scrape ingestion pipeline."""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Availability(str, Enum):
    """Stock state reported by a retailer page."""

    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    BACKORDER = "BACKORDER"
    UNKNOWN = "UNKNOWN"


class AdapterMode(str, Enum):
    """Transport mode of an adapter's documents."""

    HTML = "html"
    JSON = "json"


class ExtractFailureReason(str, Enum):
    """Typed reasons an adapter could not produce an offer."""

    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    PRICE_NOT_FOUND = "PRICE_NOT_FOUND"
    TITLE_NOT_FOUND = "TITLE_NOT_FOUND"
    PAGE_STRUCTURE_CHANGED = "PAGE_STRUCTURE_CHANGED"
    BLOCKED_PAGE = "BLOCKED_PAGE"
    EMPTY_PAGE = "EMPTY_PAGE"
    OOS_NO_PRICE = "OOS_NO_PRICE"


class DropReason(str, Enum):
    """Reasons an offer is excluded and not persisted."""

    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_PRICE = "INVALID_PRICE"
    PRICE_PARSE_FAILED = "PRICE_PARSE_FAILED"
    INVALID_URL = "INVALID_URL"
    DUPLICATE_WITHIN_RUN = "DUPLICATE_WITHIN_RUN"
    BLOCKED_BY_ROBOTS_TXT = "BLOCKED_BY_ROBOTS_TXT"
    OOS_NO_PRICE = "OOS_NO_PRICE"
    UNKNOWN_AVAILABILITY = "UNKNOWN_AVAILABILITY"


class QuarantineReason(str, Enum):
    """Reasons an offer is held for human review."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    SELECTOR_FAILURE = "SELECTOR_FAILURE"
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"
    ZERO_PRICE_EXTRACTED = "ZERO_PRICE_EXTRACTED"
    AMBIGUOUS_PRICE = "AMBIGUOUS_PRICE"


class FetchStatus(str, Enum):
    """Outcome of a fetch attempt."""

    OK = "ok"
    ERROR = "error"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    TOO_LARGE = "too_large"
    ROBOTS_BLOCKED = "robots_blocked"
    REFUSED = "refused"  # SSRF or compliance guard, no network I/O


# Fetch outcomes that feed the per-source block window
BLOCK_CLASS_STATUSES = frozenset({FetchStatus.BLOCKED, FetchStatus.ROBOTS_BLOCKED})


class JobTrigger(str, Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"
    RETRY = "RETRY"
    RECHECK = "RECHECK"


class TargetStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BROKEN = "BROKEN"


class TargetLastStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    QUARANTINED = "QUARANTINED"


class NormalizeStatus(str, Enum):
    ACCEPT = "accept"
    DROP = "drop"
    QUARANTINE = "quarantine"


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-domain politeness settings declared by an adapter manifest."""

    requests_per_second: float
    min_delay_ms: int
    max_concurrent: int


@dataclass(frozen=True)
class AdapterManifest:
    """Static description of an adapter, consumed by the registry and fetch policy."""

    id: str
    name: str
    owner: str
    version: str
    mode: AdapterMode
    base_urls: tuple[str, ...]
    rate_limit: Optional[RateLimitConfig] = None


@dataclass
class RawScrapeOffer:
    """Adapter extraction output. Lives only between extraction and normalization."""

    source_id: str
    retailer_id: str
    url: str
    title: str
    # Integer minor units; NaN when price text could not be parsed
    price_cents: Optional[float]
    availability: Availability
    observed_at: datetime
    adapter_version: str
    currency: str = "USD"
    retailer_product_id: Optional[str] = None
    retailer_sku: Optional[str] = None
    upc: Optional[str] = None
    brand: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    caliber: Optional[str] = None
    grain_weight: Optional[int] = None
    round_count: Optional[int] = None
    case_material: Optional[str] = None
    bullet_type: Optional[str] = None
    load_type: Optional[str] = None
    shell_length: Optional[str] = None
    shipping_cents: Optional[int] = None
    # Price text held several distinct amounts (e.g. a variant range)
    price_ambiguous: bool = False


@dataclass
class NormalizedScrapeOffer(RawScrapeOffer):
    """Raw offer plus derived identity key and cost per round."""

    identity_key: str = ""
    cost_per_round_cents: Optional[int] = None

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe dict of the offer, used for quarantine payloads."""
        data = asdict(self)
        data["availability"] = self.availability.value
        data["observed_at"] = self.observed_at.isoformat()
        price = data.get("price_cents")
        if isinstance(price, float) and price != price:
            data["price_cents"] = None
        return data


@dataclass
class ExtractResult:
    """Either a populated offer or a typed failure reason."""

    ok: bool
    offer: Optional[RawScrapeOffer] = None
    reason: Optional[ExtractFailureReason] = None
    details: Optional[str] = None

    @classmethod
    def success(cls, offer: RawScrapeOffer) -> "ExtractResult":
        return cls(ok=True, offer=offer)

    @classmethod
    def failure(cls, reason: ExtractFailureReason, details: Optional[str] = None) -> "ExtractResult":
        return cls(ok=False, reason=reason, details=details)


@dataclass
class NormalizeResult:
    """Validation gate verdict for one offer."""

    status: NormalizeStatus
    offer: Optional[NormalizedScrapeOffer] = None
    drop_reason: Optional[DropReason] = None
    quarantine_reasons: list[QuarantineReason] = field(default_factory=list)
    details: Optional[str] = None

    @classmethod
    def accept(cls, offer: NormalizedScrapeOffer) -> "NormalizeResult":
        return cls(status=NormalizeStatus.ACCEPT, offer=offer)

    @classmethod
    def drop(
        cls,
        reason: DropReason,
        offer: Optional[NormalizedScrapeOffer] = None,
        details: Optional[str] = None,
    ) -> "NormalizeResult":
        return cls(status=NormalizeStatus.DROP, offer=offer, drop_reason=reason, details=details)

    @classmethod
    def quarantine(
        cls,
        reasons: list[QuarantineReason],
        offer: NormalizedScrapeOffer,
        details: Optional[str] = None,
    ) -> "NormalizeResult":
        return cls(
            status=NormalizeStatus.QUARANTINE,
            offer=offer,
            quarantine_reasons=list(reasons),
            details=details,
        )


@dataclass
class AdapterContext:
    """Per-call context handed to adapter extract/normalize."""

    source_id: str
    retailer_id: str
    now: datetime
    target_id: Optional[str] = None
    run_id: Optional[str] = None
    logger: logging.Logger | logging.LoggerAdapter = field(
        default_factory=lambda: logging.getLogger("src.scraper.adapters")
    )


@dataclass
class FetchResult:
    """Outcome of a policy-guarded fetch."""

    status: FetchStatus
    url: str
    status_code: Optional[int] = None
    content: Optional[str] = None
    content_type: Optional[str] = None
    content_hash: Optional[str] = None
    duration_ms: float = 0.0
    error: Optional[str] = None
    retry_after_seconds: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK

    @property
    def is_block_class(self) -> bool:
        return self.status in BLOCK_CLASS_STATUSES


@dataclass
class ScrapeUrlJob:
    """Job payload consumed from the scrape queue."""

    target_id: str
    url: str
    source_id: str
    retailer_id: str
    adapter_id: str
    run_id: str
    trigger: JobTrigger = JobTrigger.SCHEDULED
    priority: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trigger"] = self.trigger.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScrapeUrlJob":
        return cls(
            target_id=str(data["target_id"]),
            url=data["url"],
            source_id=str(data["source_id"]),
            retailer_id=str(data["retailer_id"]),
            adapter_id=data["adapter_id"],
            run_id=str(data["run_id"]),
            trigger=JobTrigger(data.get("trigger", JobTrigger.SCHEDULED.value)),
            priority=int(data.get("priority", 0)),
        )


@dataclass
class ResolverJob:
    """Downstream product-resolution job produced after a successful write."""

    source_product_id: str
    identity_key: str
    source_id: str
    resolver_version: str
    trigger: str = "INGEST"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_product_id": self.source_product_id,
            "trigger": self.trigger,
            "resolver_version": self.resolver_version,
            "context": {
                "source_id": self.source_id,
                "identity_key": self.identity_key,
            },
        }


@dataclass
class ScrapeRunMetrics:
    """Aggregate counters for one run."""

    urls_attempted: int = 0
    urls_succeeded: int = 0
    urls_failed: int = 0
    offers_extracted: int = 0
    offers_valid: int = 0
    offers_dropped: int = 0
    offers_quarantined: int = 0
    zero_price_count: int = 0
    oos_no_price_count: int = 0


@dataclass(frozen=True)
class DerivedMetrics:
    failure_rate: float
    yield_rate: float
    drop_rate: float


@dataclass
class WriteResult:
    """Writer outcome. Persistence errors are carried here, never raised."""

    success: bool
    source_product_id: Optional[str] = None
    price_id: Optional[str] = None
    error: Optional[str] = None
