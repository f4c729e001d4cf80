"""Rate limiting and backoff utilities for external API calls."""
import asyncio
import time
from typing import Any
import httpx
from taskflow_engine.config.logging import get_logger

logger = get_logger("rate_limiter")


class RateLimiter:
    """Sliding-window rate limiter for API calls."""

    def __init__(self, max_calls: int = 10, time_window: float = 60.0):
        self.max_calls = max_calls
        self.time_window = time_window
        self.calls = []
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Acquire permission to make an API call, blocking if necessary."""
        while True:
            async with self._lock:
                now = time.time()

                # Remove old calls outside the time window
                self.calls = [call_time for call_time in self.calls if now - call_time < self.time_window]

                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    return

                wait_time = self.time_window - (now - min(self.calls))

            logger.warning("Rate limit reached, waiting",
                           wait_seconds=round(wait_time, 2),
                           max_calls=self.max_calls,
                           time_window=self.time_window)
            await asyncio.sleep(max(wait_time, 0))


class ExponentialBackoff:
    """Delay schedule between retries of a failed request."""

    def __init__(self,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (0-based) failed attempt."""
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

    async def wait(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay > 0:
            await asyncio.sleep(delay)


class RateLimitedHTTPClient:
    """HTTP client wrapper with built-in rate limiting.

    Retries are left to the caller: the LLM ensemble decides whether a failed
    attempt is retried on the same model or the next one.
    """

    def __init__(self, rate_limiter: RateLimiter):
        self.rate_limiter = rate_limiter
        self.logger = get_logger("http_client")

    async def request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Any:
        """Make an HTTP request after acquiring a rate limit slot."""
        await self.rate_limiter.acquire()

        self.logger.debug("Making HTTP request", method=method, url=url)
        response = await client.request(method.upper(), url, **kwargs)

        if response.status_code == 429:  # Too Many Requests
            self.logger.warning("Server rate limit hit",
                                retry_after=response.headers.get("retry-after"),
                                url=url)

        response.raise_for_status()
        return response
