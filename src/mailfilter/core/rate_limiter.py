"""Token bucket rate limiting for outbound API calls.

Two buckets are used by the application:
- ms_graph: 10 requests per second (Microsoft Graph mail API), consumed
  synchronously from the worker thread that runs GraphClient requests
- claude_api: 2 requests per second, consumed from the event loop by the
  classifier
"""

import asyncio
import threading
import time

from mailfilter.core.errors import RateLimitExceeded
from mailfilter.core.logging import get_logger

logger = get_logger(__name__)

# Waits longer than this are refused rather than blocking a poll cycle
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens refill at ``rate`` per second up to ``capacity``. Each call
    consumes one or more tokens, sleeping until they are available.
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()
        self.sync_lock = threading.Lock()

    def _check_request(self, tokens: int) -> None:
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

    def _reserve(self, tokens: int) -> float:
        """Take tokens if available; otherwise return the wait needed.

        Must be called with a lock held.
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return 0.0

        wait_time = (tokens - self.tokens) / self.rate
        if wait_time > MAX_WAIT_SECONDS:
            logger.warning("rate_limit_wait_excessive", wait_time=wait_time)
            raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")
        return wait_time

    def _take_after_wait(self, tokens: int) -> None:
        self._refill()
        if self.tokens < tokens:
            raise RateLimitExceeded("Failed to get enough tokens even after waiting")
        self.tokens -= tokens

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from an async context, waiting if needed.

        Raises:
            RateLimitExceeded: If tokens cannot be consumed within MAX_WAIT_SECONDS
        """
        self._check_request(tokens)
        async with self.lock:
            wait_time = self._reserve(tokens)
        if wait_time == 0.0:
            return True

        logger.debug("rate_limit_waiting", wait_time=wait_time)
        await asyncio.sleep(wait_time)
        async with self.lock:
            self._take_after_wait(tokens)
        return True

    def consume_sync(self, tokens: int = 1) -> bool:
        """Thread-safe blocking variant of consume() for GraphClient requests."""
        self._check_request(tokens)
        with self.sync_lock:
            wait_time = self._reserve(tokens)
        if wait_time == 0.0:
            return True

        logger.debug("rate_limit_waiting_sync", wait_time=wait_time)
        time.sleep(wait_time)
        with self.sync_lock:
            self._take_after_wait(tokens)
        return True

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the process-wide token bucket registered under ``name``.

    rate and capacity only apply when the bucket is created.
    """
    if name not in _buckets:
        _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
    return _buckets[name]
