"""
Rate Limiter Module

Asynchronous token-bucket rate limiting with bounded in-flight concurrency,
one limiter pair (general + account-scan) per RPC endpoint.
"""

import asyncio
from dataclasses import dataclass
import time
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

@dataclass
class RateLimitConfig:
    """Configuration for rate limiting"""
    max_ops: int = 100          # Tokens refilled per period (bucket capacity)
    period: float = 10.0        # Refill period in seconds
    max_concurrent: int = 8     # Maximum in-flight calls

    @property
    def ops_per_second(self) -> float:
        return self.max_ops / self.period

class AsyncRateLimiter:
    """
    Asynchronous rate limiter using a token bucket and a semaphore

    Callers that exceed the bucket suspend until a token is available; this
    is the only deliberate blocking point below the estimators.
    """

    def __init__(
        self,
        name: str,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        on_wait: Optional[Callable[[str, float], None]] = None
    ):
        """
        Args:
            name: Name of the rate limited resource
            config: Rate limit configuration
            clock: Monotonic clock, replaceable in tests
            on_wait: Callback receiving (name, seconds waited)
        """
        self.name = name
        self.config = config
        self.semaphore = asyncio.Semaphore(config.max_concurrent)
        self.tokens = float(config.max_ops)
        self._clock = clock
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self._on_wait = on_wait

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self.tokens = min(
            float(self.config.max_ops),
            self.tokens + elapsed * self.config.ops_per_second
        )
        self._last_refill = now

    async def acquire_token(self) -> float:
        """Take one token, waiting if the bucket is empty

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        # Waiters queue on the lock, so tokens are handed out in arrival order
        async with self._lock:
            self._refill()
            while self.tokens < 1:
                wait_time = (1 - self.tokens) / self.config.ops_per_second
                logger.debug(
                    "rate limit reached",
                    limiter=self.name,
                    wait=round(wait_time, 3)
                )
                await asyncio.sleep(wait_time)
                waited += wait_time
                self._refill()
            self.tokens -= 1

        if waited and self._on_wait:
            self._on_wait(self.name, waited)
        return waited

    async def acquire(self):
        """Acquire a token and an in-flight slot"""
        await self.acquire_token()
        await self.semaphore.acquire()

    def release(self):
        """Release the in-flight slot"""
        self.semaphore.release()

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()

class RateLimiterRegistry:
    """
    Registry of rate limiters keyed by name
    """

    def __init__(self, on_wait: Optional[Callable[[str, float], None]] = None):
        self._limiters: Dict[str, AsyncRateLimiter] = {}
        self._on_wait = on_wait

    def get_limiter(self, name: str, config: Optional[RateLimitConfig] = None) -> AsyncRateLimiter:
        """Get or create a rate limiter

        Args:
            name: Name of the rate limited resource
            config: Configuration used when the limiter is created

        Returns:
            Rate limiter instance
        """
        if name not in self._limiters:
            self._limiters[name] = AsyncRateLimiter(
                name, config or RateLimitConfig(), on_wait=self._on_wait
            )
        return self._limiters[name]
