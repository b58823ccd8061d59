"""Unit tests for the rate limiter module"""

import asyncio
from unittest.mock import MagicMock

import pytest

from metrics_oracle.utils.rate_limiter import (
    AsyncRateLimiter,
    RateLimiterRegistry,
    RateLimitConfig
)

@pytest.fixture
def rate_limiter():
    """Create a rate limiter instance"""
    config = RateLimitConfig(max_ops=2, period=0.1, max_concurrent=2)
    return AsyncRateLimiter('test', config)

@pytest.fixture
def registry():
    """Create a rate limiter registry instance"""
    return RateLimiterRegistry()

def test_default_limits():
    """Defaults match the general RPC budget"""
    config = RateLimitConfig()
    assert config.max_ops == 100
    assert config.period == 10.0
    assert config.ops_per_second == 10.0
    assert config.max_concurrent == 8

@pytest.mark.asyncio
async def test_rate_limiter_basic_acquire_release(rate_limiter):
    """Test basic acquire and release functionality"""
    await rate_limiter.acquire()
    assert rate_limiter.tokens < rate_limiter.config.max_ops

    rate_limiter.release()
    assert rate_limiter.semaphore._value == rate_limiter.config.max_concurrent

@pytest.mark.asyncio
async def test_rate_limiter_max_concurrent():
    """In-flight calls are bounded by max_concurrent"""
    limiter = AsyncRateLimiter('test', RateLimitConfig(max_ops=10, period=1.0, max_concurrent=1))
    await limiter.acquire()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(limiter.acquire(), timeout=0.05)

    limiter.release()
    await limiter.acquire()
    limiter.release()

@pytest.mark.asyncio
async def test_rate_limiter_waits_for_token(rate_limiter):
    """Callers suspend once the bucket is empty"""
    on_wait = MagicMock()
    rate_limiter._on_wait = on_wait

    assert await rate_limiter.acquire_token() == 0.0
    assert await rate_limiter.acquire_token() == 0.0
    waited = await rate_limiter.acquire_token()

    assert waited > 0
    on_wait.assert_called_once()
    assert on_wait.call_args[0][0] == 'test'

@pytest.mark.asyncio
async def test_rate_limiter_refills_from_clock():
    """Tokens refill in proportion to elapsed time, capped at max_ops"""
    now = [0.0]
    limiter = AsyncRateLimiter('test', RateLimitConfig(max_ops=4, period=2.0), clock=lambda: now[0])

    for _ in range(4):
        await limiter.acquire_token()
    assert limiter.tokens < 1

    now[0] += 1.0
    limiter._refill()
    assert limiter.tokens == pytest.approx(2.0)

    now[0] += 100.0
    limiter._refill()
    assert limiter.tokens == 4.0

@pytest.mark.asyncio
async def test_context_manager_releases(rate_limiter):
    async with rate_limiter:
        assert rate_limiter.semaphore._value == rate_limiter.config.max_concurrent - 1
    assert rate_limiter.semaphore._value == rate_limiter.config.max_concurrent

def test_registry_get_limiter(registry):
    """Test getting rate limiters from registry"""
    config = RateLimitConfig(max_ops=40)
    limiter1 = registry.get_limiter('scan', config)
    limiter2 = registry.get_limiter('scan')

    assert limiter1 is limiter2
    assert limiter1.config.max_ops == 40
    assert registry.get_limiter('general') is not limiter1
    assert registry.get_limiter('general').config.max_ops != 40
