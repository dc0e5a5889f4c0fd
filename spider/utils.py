"""
Utility Functions
URL normalization and identity hashing, retry with backoff, request pacing.
"""

import asyncio
import hashlib
import logging
import random
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """
    Normalize a URL for identity hashing.

    Strips surrounding whitespace, lower-cases scheme and host and drops the
    fragment.  Path and query are kept exactly as given (servers are
    case-sensitive and the query may select content).

    Strings that do not parse as URLs are returned stripped but otherwise
    unchanged, so the hash stays a pure function of the input.
    """
    url = (url or "").strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url.split("#", 1)[0]
    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path,
        parts.query,
        "",
    ))


def url_id(url: str) -> str:
    """Stable content-addressed identifier for a URL (MD5 of the normalized form)."""
    return hashlib.md5(normalize_url(url).encode("utf-8")).hexdigest()


class RetryHandler:
    """
    Handles retry logic with exponential backoff.

    The attempt loop is explicit and bounded: ``max_attempts`` counts the
    first try, so ``max_attempts=3`` means "fail, fail, succeed" is the last
    schedule that still succeeds.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            max_attempts: Total number of attempts (first try included)
            base_delay: Delay before the second attempt, in seconds
            max_delay: Upper bound for any single delay
            exponential_base: Growth factor between successive delays
            jitter: Add ±25% random jitter to each delay
            sleep: Awaitable sleep function (injectable for tests)
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay to wait after failed attempt number ``attempt`` (1-indexed).
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    async def run(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        should_retry: Callable[[Any], bool] = lambda result: False,
        retry_on: tuple = (Exception,),
        label: str = "operation",
    ) -> Any:
        """
        Await ``func()`` until it succeeds or attempts run out.

        A call "fails" when it raises one of ``retry_on`` or when
        ``should_retry(result)`` is true for its return value.  After the
        last attempt the final exception is re-raised, or the final
        (still failing) result is returned.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await func()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.error(f"[RETRY] {label}: all {attempt} attempts failed")
                    raise
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"[RETRY] {label}: attempt {attempt}/{self.max_attempts} "
                    f"failed: {exc}. Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)
                continue

            if should_retry(result) and attempt < self.max_attempts:
                delay = self.calculate_delay(attempt)
                logger.info(
                    f"[RETRY] {label}: attempt {attempt}/{self.max_attempts} "
                    f"returned a retryable result. Retrying in {delay:.2f}s..."
                )
                await self._sleep(delay)
                continue
            return result


async def polite_delay(min_s: float, max_s: float) -> float:
    """Sleep a random time in ``[min_s, max_s]``.  Returns the delay used."""
    if max_s <= 0:
        return 0.0
    delay = random.uniform(max(0.0, min_s), max(min_s, max_s))
    await asyncio.sleep(delay)
    return delay


def truncate(text: Optional[str], length: int = 80) -> str:
    """Shorten long URLs / messages for log lines."""
    text = text or ""
    return text if len(text) <= length else text[: length - 3] + "..."
