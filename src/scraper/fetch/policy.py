"""Fetch policy: ordered guard list, rate limiting, then the HTTP fetch.

Guards run in order and the first denial short-circuits before any network
I/O to the target. Only the robots guard talks to the network (robots.txt).
"""

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from src.metrics import record_policy_refusal
from src.scraper.fetch.http_fetcher import HttpFetcher
from src.scraper.fetch.rate_limiter import RateLimiter, clamp_rate_limit
from src.scraper.fetch.robots import RobotsPolicy
from src.scraper.fetch.ssrf import SSRFError, is_host_allowed_for_manifest, validate_url
from src.scraper.types import AdapterManifest, FetchResult, FetchStatus
from src.utils.url import get_registrable_domain

logger = logging.getLogger(__name__)


@dataclass
class FetchRequest:
    """Everything the guards need to decide on one fetch."""

    url: str
    manifest: AdapterManifest
    source_scrape_enabled: bool = True
    source_robots_compliant: bool = True
    target_robots_path_blocked: bool = False


@dataclass(frozen=True)
class GuardDecision:
    """Allow, or deny with a reason and the fetch status to report."""

    allow: bool
    reason: Optional[str] = None
    status: Optional[FetchStatus] = None

    @classmethod
    def allowed(cls) -> "GuardDecision":
        return cls(allow=True)

    @classmethod
    def deny(cls, reason: str, status: FetchStatus = FetchStatus.REFUSED) -> "GuardDecision":
        return cls(allow=False, reason=reason, status=status)


Guard = Callable[[FetchRequest], Awaitable[GuardDecision]]


async def source_enabled_guard(request: FetchRequest) -> GuardDecision:
    if not request.source_scrape_enabled:
        return GuardDecision.deny("SOURCE_SCRAPE_DISABLED")
    return GuardDecision.allowed()


async def source_compliance_guard(request: FetchRequest) -> GuardDecision:
    if not request.source_robots_compliant:
        return GuardDecision.deny("SOURCE_NOT_ROBOTS_COMPLIANT")
    return GuardDecision.allowed()


async def target_path_guard(request: FetchRequest) -> GuardDecision:
    if request.target_robots_path_blocked:
        return GuardDecision.deny("TARGET_ROBOTS_PATH_BLOCKED")
    return GuardDecision.allowed()


class FetchPolicy:
    """
    Compose compliance guards, the SSRF guard, robots policy and the
    per-domain rate limiter around an HttpFetcher.
    """

    def __init__(
        self,
        robots: RobotsPolicy,
        rate_limiter: RateLimiter,
        fetcher: HttpFetcher,
        url_validator: Optional[Callable[[str], Awaitable[str]]] = None,
    ):
        self.robots = robots
        self.rate_limiter = rate_limiter
        self.fetcher = fetcher
        self.url_validator = url_validator or validate_url
        self.guards: list[Guard] = [
            source_enabled_guard,
            source_compliance_guard,
            target_path_guard,
            self.ssrf_guard,
            self.manifest_host_guard,
            self.robots_guard,
        ]

    async def ssrf_guard(self, request: FetchRequest) -> GuardDecision:
        try:
            await self.url_validator(request.url)
        except SSRFError as e:
            return GuardDecision.deny(f"SSRF_REJECTED: {e}")
        return GuardDecision.allowed()

    async def manifest_host_guard(self, request: FetchRequest) -> GuardDecision:
        host = urlsplit(request.url).hostname or ""
        if not is_host_allowed_for_manifest(host, request.manifest.base_urls):
            return GuardDecision.deny(f"HOST_NOT_IN_MANIFEST: {host}")
        return GuardDecision.allowed()

    async def robots_guard(self, request: FetchRequest) -> GuardDecision:
        if not await self.robots.is_allowed(request.url):
            return GuardDecision.deny("BLOCKED_BY_ROBOTS_TXT", status=FetchStatus.ROBOTS_BLOCKED)
        return GuardDecision.allowed()

    async def check(self, request: FetchRequest) -> GuardDecision:
        """Run guards in order; the first denial wins."""
        for guard in self.guards:
            decision = await guard(request)
            if not decision.allow:
                return decision
        return GuardDecision.allowed()

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """
        Fetch a target URL under policy.

        Args:
            request: URL plus manifest and compliance flags

        Returns:
            FetchResult; guard denials come back as refused or robots_blocked
            without a request to the target
        """
        adapter_id = request.manifest.id
        decision = await self.check(request)
        if not decision.allow:
            logger.info(f"Fetch denied for {request.url}: {decision.reason}")
            record_policy_refusal(adapter_id, (decision.reason or "unknown").split(":", 1)[0])
            return FetchResult(status=decision.status, url=request.url, error=decision.reason)

        config = clamp_rate_limit(request.manifest.rate_limit)
        crawl_delay_ms = int(await self.robots.get_crawl_delay(request.url) * 1000)
        if crawl_delay_ms > config.min_delay_ms:
            config = replace(config, min_delay_ms=crawl_delay_ms)

        domain = get_registrable_domain(request.url)
        await self.rate_limiter.acquire(domain, config)

        return await self.fetcher.fetch(request.url, adapter_id=adapter_id)
