"""
Rate-Limited Fetcher - Pulls Douban pages under an anti-bot delay policy.

Every request is preceded by a randomized delay. Once a fetcher has issued
`slow_threshold` requests it switches to a slower, wider schedule for the
rest of its life. One fetcher belongs to one sync job, so the request
counter (and therefore slow mode) is never shared between jobs.

Block pages are detected by status code and body markers and raised as
BlockedError, which is never retried. Timeouts and 5xx responses are
retried in place with exponential backoff.
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

from models.job import DelayPolicy

logger = logging.getLogger("shelfsync")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}

# Human-verification and throttling pages. Matched case-insensitively.
VERIFICATION_MARKERS = [
    "<title>禁止访问</title>",
    "验证码",
    "人机验证",
    "captcha",
    "robot check",
    "安全验证",
]

BLOCK_MARKERS = [
    "访问被拒绝",
    "access denied",
    "请求频繁",
    "too many requests",
    "系统繁忙",
]

BLOCKED_STATUS_CODES = {403, 429}


class FetchError(Exception):
    """Raised when a page cannot be fetched and retrying will not help."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Fetch failed for {url}: {reason}")


class BlockedError(FetchError):
    """The source served a block or verification page. Fatal for the job."""


class TransientError(FetchError):
    """Timeout, transport failure or 5xx, after the retry budget is spent."""

    def __init__(self, url: str, reason: str, attempts: int = 1, status_code: Optional[int] = None):
        self.attempts = attempts
        super().__init__(url, reason, status_code)


def detect_block(body: str) -> Optional[str]:
    """Return the first block/verification marker found in a page body, if any."""
    if not body:
        return None
    lowered = body.lower()
    for marker in VERIFICATION_MARKERS + BLOCK_MARKERS:
        if marker.lower() in lowered:
            return marker
    return None


def delay_bounds(policy: DelayPolicy, request_count: int) -> tuple[int, int]:
    """Min/max pre-request delay in ms for a fetcher that has issued `request_count` requests."""
    if request_count >= policy.slow_threshold:
        return policy.slow_base_ms, policy.slow_base_ms + policy.slow_jitter_ms
    return policy.base_ms, policy.base_ms + policy.jitter_ms


class RateLimitedFetcher:
    """
    Serial HTTP GET client for the source site.

    Not safe to share between jobs; create one per job.
    """

    def __init__(
        self,
        policy: Optional[DelayPolicy] = None,
        cookie: str = "",
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._policy = policy or DelayPolicy()
        self._cookie = cookie
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._request_count = 0

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def in_slow_mode(self) -> bool:
        return self._request_count >= self._policy.slow_threshold

    def next_delay_ms(self) -> float:
        """Draw the delay for the next request from the current schedule."""
        low, high = delay_bounds(self._policy, self._request_count)
        return low + self._rng.uniform(0, high - low)

    def backoff_ms(self, attempt: int) -> float:
        """Extra wait before retry number `attempt` (1-based)."""
        base = self._policy.retry_base_ms * (2 ** (attempt - 1))
        return base + self._rng.uniform(0, self._policy.retry_jitter_ms)

    def _headers_for(self, url: str) -> dict:
        headers = dict(BROWSER_HEADERS)
        host = urlparse(url).netloc
        if host:
            headers["Referer"] = f"https://{host}/"
        if self._cookie:
            headers["Cookie"] = self._cookie
        return headers

    async def fetch(self, url: str) -> str:
        """
        Fetch one page and return its HTML.

        Raises:
            BlockedError: Block or verification page (never retried).
            TransientError: Retry budget exhausted on timeouts/5xx.
            FetchError: Any other non-200 response.
        """
        start = time.time()
        max_attempts = self._policy.max_retries
        last_error: Optional[TransientError] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                backoff = self.backoff_ms(attempt - 1)
                logger.info(
                    "Retrying fetch",
                    extra={"event": "fetch_retry", "url": url, "attempt": attempt,
                           "backoff_ms": round(backoff, 2)},
                )
                await self._sleep(backoff / 1000)

            delay = self.next_delay_ms()
            await self._sleep(delay / 1000)

            try:
                body = await self._request(url)
            except BlockedError as e:
                logger.error(
                    "Source blocked request",
                    extra={"event": "fetch_blocked", "url": url, "reason": e.reason,
                           "request_count": self._request_count},
                )
                raise
            except TransientError as e:
                last_error = e
                logger.warning(
                    "Transient fetch failure",
                    extra={"event": "fetch_transient", "url": url, "attempt": attempt,
                           "reason": e.reason},
                )
                continue

            duration_ms = round((time.time() - start) * 1000, 2)
            logger.info(
                "Fetch complete",
                extra={"event": "fetch_complete", "url": url, "attempts": attempt,
                       "request_count": self._request_count, "slow_mode": self.in_slow_mode,
                       "content_length": len(body), "duration_ms": duration_ms},
            )
            return body

        raise TransientError(
            url,
            last_error.reason if last_error else "retry budget exhausted",
            attempts=max_attempts,
            status_code=last_error.status_code if last_error else None,
        )

    async def _request(self, url: str) -> str:
        """One GET attempt. Classifies the outcome into the fetch error taxonomy."""
        self._request_count += 1
        try:
            async with httpx.AsyncClient(
                headers=self._headers_for(url),
                timeout=self._policy.timeout_seconds,
                follow_redirects=True,
            ) as client:
                resp = await client.get(url)
        except httpx.TimeoutException as e:
            raise TransientError(url, f"timeout: {e}")
        except httpx.HTTPError as e:
            raise TransientError(url, f"transport error: {e}")

        if resp.status_code in BLOCKED_STATUS_CODES:
            raise BlockedError(url, f"HTTP {resp.status_code}", resp.status_code)

        if resp.status_code >= 500:
            raise TransientError(url, f"HTTP {resp.status_code}", status_code=resp.status_code)

        if resp.status_code != 200:
            raise FetchError(url, f"HTTP {resp.status_code}", resp.status_code)

        body = resp.text
        marker = detect_block(body)
        if marker:
            raise BlockedError(url, f"block marker '{marker}'", resp.status_code)

        return body
