import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar('T')

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base 250ms, x2, 3 attempts"""
    max_attempts: int = 3
    initial_delay: float = 0.25
    exponential_base: float = 2.0
    max_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    exceptions: Tuple[Type[BaseException], ...],
    deadline: Optional[float] = None,
    description: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """Run `func` until it succeeds, attempts run out or the deadline passes

    Args:
        func: Zero-argument coroutine factory
        policy: Retry policy
        exceptions: Exception types that trigger a retry
        deadline: Optional monotonic deadline; no retry is scheduled past it
        description: Name used in log events
        sleep: Sleep coroutine, replaceable in tests

    Returns:
        The result of the first successful attempt

    Raises:
        The last exception once attempts or time run out
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            last_exception = e
            if attempt == policy.max_attempts:
                break

            delay = policy.delay_for(attempt)
            if deadline is not None and time.monotonic() + delay >= deadline:
                logger.debug("retry deadline reached", call=description, attempt=attempt)
                break

            logger.debug(
                "retrying",
                call=description,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e)
            )
            await sleep(delay)

    assert last_exception is not None
    raise last_exception
