"""HTTP fetcher for scrape targets.

Never raises on transport problems: every outcome is a FetchResult with a
status. There is no retry inside a fetch; failed jobs are redelivered by the
queue.
"""

import hashlib
import logging
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import urljoin

import httpx

from src.config import settings
from src.metrics import record_fetch
from src.scraper.fetch.ssrf import SSRFError, validate_url
from src.scraper.types import FetchResult, FetchStatus

logger = logging.getLogger(__name__)

# Body markers of bot-challenge pages returned with 403/503
BLOCK_MARKERS = (
    "captcha",
    "cf-challenge",
    "cf-browser-verification",
    "access denied",
    "are you a robot",
    "request blocked",
    "unusual traffic",
)

REDIRECT_CODES = frozenset({301, 302, 303, 307, 308})


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def has_block_markers(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in BLOCK_MARKERS)


class HttpFetcher:
    """
    Single-request fetcher with a size cap and SSRF-checked redirects.

    The initial URL is expected to have passed the fetch policy guards; each
    redirect hop is re-validated here before it is followed.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_bytes: Optional[int] = None,
        max_redirects: Optional[int] = None,
        url_validator: Optional[Callable[[str], Awaitable[str]]] = None,
    ):
        self.client = client
        self.user_agent = user_agent or settings.scraper_user_agent
        self.timeout_seconds = timeout_seconds or settings.fetch_timeout_seconds
        self.max_bytes = max_bytes or settings.fetch_max_bytes
        self.max_redirects = max_redirects if max_redirects is not None else settings.fetch_max_redirects
        self.url_validator = url_validator or validate_url

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=False)
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }

    async def fetch(self, url: str, adapter_id: str = "unknown") -> FetchResult:
        """
        Fetch a URL.

        Args:
            url: URL that already passed the fetch policy guards
            adapter_id: Adapter label for metrics

        Returns:
            FetchResult with status ok, error, blocked, timeout, too_large or refused
        """
        started = time.perf_counter()
        result = await self._fetch(url)
        result.duration_ms = (time.perf_counter() - started) * 1000
        record_fetch(adapter_id, result.status.value, result.duration_ms / 1000)

        if not result.ok:
            logger.info(
                f"Fetch {result.status.value} for {url}"
                + (f" (HTTP {result.status_code})" if result.status_code else "")
                + (f": {result.error}" if result.error else "")
            )
        return result

    async def _fetch(self, url: str) -> FetchResult:
        client = await self._get_client()
        current = url

        try:
            for hop in range(self.max_redirects + 1):
                if hop > 0:
                    try:
                        await self.url_validator(current)
                    except SSRFError as e:
                        return FetchResult(
                            status=FetchStatus.REFUSED,
                            url=current,
                            error=f"Redirect refused: {e}",
                        )

                async with client.stream(
                    "GET",
                    current,
                    headers=self._headers(),
                    timeout=self.timeout_seconds,
                    follow_redirects=False,
                ) as response:
                    location = response.headers.get("location")
                    if response.status_code in REDIRECT_CODES and location:
                        current = urljoin(current, location)
                        continue
                    return await self._read_response(response, current)

            return FetchResult(
                status=FetchStatus.ERROR,
                url=current,
                error=f"Too many redirects (>{self.max_redirects})",
            )

        except httpx.TimeoutException as e:
            return FetchResult(status=FetchStatus.TIMEOUT, url=current, error=type(e).__name__)
        except httpx.HTTPError as e:
            return FetchResult(status=FetchStatus.ERROR, url=current, error=f"{type(e).__name__}: {e}")

    async def _read_response(self, response: httpx.Response, url: str) -> FetchResult:
        status_code = response.status_code
        content_type = response.headers.get("content-type")

        if status_code == 429:
            return FetchResult(
                status=FetchStatus.BLOCKED,
                url=url,
                status_code=status_code,
                error="Rate limited (429)",
                retry_after_seconds=parse_retry_after(response.headers.get("retry-after")),
            )

        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            return FetchResult(
                status=FetchStatus.TOO_LARGE,
                url=url,
                status_code=status_code,
                error=f"Content-Length {declared} exceeds {self.max_bytes} bytes",
            )

        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > self.max_bytes:
                return FetchResult(
                    status=FetchStatus.TOO_LARGE,
                    url=url,
                    status_code=status_code,
                    error=f"Response exceeds {self.max_bytes} bytes",
                )
            chunks.append(chunk)

        body = b"".join(chunks)
        text = body.decode(response.encoding or "utf-8", errors="replace")

        if status_code == 403 or (status_code == 503 and has_block_markers(text)):
            return FetchResult(
                status=FetchStatus.BLOCKED,
                url=url,
                status_code=status_code,
                content_type=content_type,
                error=f"Blocked (HTTP {status_code})",
            )

        if not 200 <= status_code < 300:
            return FetchResult(
                status=FetchStatus.ERROR,
                url=url,
                status_code=status_code,
                content_type=content_type,
                error=f"HTTP {status_code}",
            )

        return FetchResult(
            status=FetchStatus.OK,
            url=url,
            status_code=status_code,
            content=text,
            content_type=content_type,
            content_hash=hashlib.sha256(body).hexdigest()[:32],
        )
