"""
Rate limiting for outbound source requests.

Ensures we respect rate limits across all sources.
"""

import asyncio
from collections import defaultdict, deque
from time import monotonic
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window rate limiter with per-source tracking.

    Each source gets its own lock, so a throttled source never delays
    requests to the others.
    """

    # Default limits per source (requests, period_seconds)
    DEFAULT_LIMITS = {
        "arxiv": (1, 3),          # arXiv asks for one request every 3 seconds
        "default": (60, 60),
    }

    def __init__(self):
        self._request_times: dict[str, deque[float]] = defaultdict(deque)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._custom_limits: dict[str, tuple[int, int]] = {}

    def set_limit(self, source: str, requests: int, period_seconds: int):
        """Set custom rate limit for a source."""
        self._custom_limits[source] = (requests, period_seconds)

    def _get_limit(self, source: str) -> tuple[int, int]:
        if source in self._custom_limits:
            return self._custom_limits[source]
        return self.DEFAULT_LIMITS.get(source, self.DEFAULT_LIMITS["default"])

    async def acquire(self, source: str, timeout: Optional[float] = 30.0) -> bool:
        """
        Acquire permission to make a request.

        Args:
            source: Source name for rate limiting
            timeout: Max seconds to wait (None = wait forever)

        Returns:
            True if acquired, False if waiting would exceed the timeout
        """
        started = monotonic()
        max_requests, period_seconds = self._get_limit(source)

        async with self._locks[source]:
            window = self._request_times[source]
            while True:
                now = monotonic()
                while window and window[0] <= now - period_seconds:
                    window.popleft()

                if len(window) < max_requests:
                    window.append(now)
                    return True

                wait_seconds = window[0] + period_seconds - now
                if timeout is not None and (now - started) + wait_seconds > timeout:
                    logger.warning(
                        f"Rate limit timeout for {source}: "
                        f"would need to wait {wait_seconds:.1f}s"
                    )
                    return False

                logger.debug(f"Rate limited for {source}, waiting {wait_seconds:.1f}s")
                await asyncio.sleep(wait_seconds)

    def get_status(self, source: str) -> dict:
        """Get current rate limit status for a source."""
        max_requests, period_seconds = self._get_limit(source)
        cutoff = monotonic() - period_seconds
        recent = [t for t in self._request_times[source] if t > cutoff]

        return {
            "source": source,
            "max_requests": max_requests,
            "period_seconds": period_seconds,
            "current_requests": len(recent),
            "available": max_requests - len(recent),
        }


# Global rate limiter instance
_global_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the global rate limiter instance."""
    global _global_limiter
    if _global_limiter is None:
        _global_limiter = RateLimiter()
    return _global_limiter
