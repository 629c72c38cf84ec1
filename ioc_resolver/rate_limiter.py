"""Token bucket rate limiter for platform API calls."""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter."""

    requests_per_minute: float
    name: str = "default"


class TokenBucketRateLimiter:
    """Async token bucket rate limiter shared by all requests to one platform."""

    def __init__(self, config: RateLimiterConfig):
        """Initialize the rate limiter."""
        if config.requests_per_minute <= 0:
            raise ValueError(f"{config.name}: requests_per_minute must be positive")
        self.config = config
        self.tokens = config.requests_per_minute
        self.max_tokens = config.requests_per_minute
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request may be made, then consume one token."""
        async with self.lock:
            now = time.monotonic()
            elapsed = now - self.last_refill
            self.tokens = min(
                self.max_tokens, self.tokens + elapsed * (self.max_tokens / 60.0)
            )
            self.last_refill = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / (self.max_tokens / 60.0)
                await asyncio.sleep(wait_time)
                self.tokens = 0
                self.last_refill = time.monotonic()
            else:
                self.tokens -= 1


# Default request budgets per platform type
RATE_LIMITS = {
    "opencti": RateLimiterConfig(requests_per_minute=120, name="opencti"),
    "openaev": RateLimiterConfig(requests_per_minute=120, name="openaev"),
}


def make_limiter(platform_type: str, override: Optional[float] = None) -> TokenBucketRateLimiter:
    """Build a limiter for a platform type, applying a configured override if set."""
    base = RATE_LIMITS.get(platform_type, RateLimiterConfig(requests_per_minute=60, name=platform_type))
    if override is not None:
        base = RateLimiterConfig(requests_per_minute=override, name=base.name)
    return TokenBucketRateLimiter(base)
