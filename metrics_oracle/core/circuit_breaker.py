"""
Circuit Breaker Module

Gateway-wide circuit breaker for the oracle:
- Trailing-window RPC failure rate
- Slot-stall (staleness) detection
- DEGRADED state that forces confidence to zero
- Recovery after a stabilization period with a healthy trailing window
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum
import time
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import structlog

from ..config.settings import BreakerConfig

logger = structlog.get_logger(__name__)

class CircuitState(Enum):
    """Circuit breaker states"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"

@dataclass
class CircuitStats:
    """Circuit breaker statistics over the trailing window"""
    total_calls: int = 0
    failures: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.total_calls if self.total_calls else 0.0

class CircuitBreaker:
    """Tracks RPC outcomes and data staleness; trips to DEGRADED"""

    def __init__(
        self,
        name: str = "rpc",
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[Any] = None
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._events: Deque[Tuple[float, bool]] = deque()
        self._state = CircuitState.HEALTHY
        self._state_change_time = clock()
        self._reason: Optional[str] = None
        self._last_slot: Optional[int] = None
        self._last_slot_change: Optional[float] = None
        self._stall_seen_at: Optional[float] = None

    def record_success(self) -> None:
        self._record(True)

    def record_failure(self) -> None:
        self._record(False)

    def _record(self, ok: bool) -> None:
        now = self._clock()
        self._events.append((now, ok))
        self._prune(now)
        self._evaluate(now)

    def record_slot(self, slot: int) -> None:
        """
        Record an observed chain slot

        Staleness is judged only here: the same slot read again more than
        `max_slot_stall` seconds after it last advanced.
        """
        now = self._clock()
        if self._last_slot is None or slot > self._last_slot:
            self._last_slot = slot
            self._last_slot_change = now
            self._stall_seen_at = None
        elif now - self._last_slot_change > self.config.max_slot_stall:
            self._stall_seen_at = now
        self._evaluate(now)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.window
        while self._events and self._events[0][0] < horizon:
            self._events.popleft()

    def stats(self) -> CircuitStats:
        self._prune(self._clock())
        failures = sum(1 for _, ok in self._events if not ok)
        return CircuitStats(total_calls=len(self._events), failures=failures)

    def _failure_tripped(self, stats: CircuitStats) -> bool:
        return (
            stats.total_calls >= self.config.min_calls
            and stats.failure_rate > self.config.failure_threshold
        )

    def _slot_stalled(self, now: float) -> bool:
        # A stall sighting expires after one stabilization period; the next slot read re-judges it
        if self._stall_seen_at is None:
            return False
        return now - self._stall_seen_at < self.config.stabilization

    def _evaluate(self, now: float) -> None:
        stats = self.stats()
        failing = self._failure_tripped(stats)
        stalled = self._slot_stalled(now)

        if self._state == CircuitState.HEALTHY:
            if failing or stalled:
                reason = (
                    f"failure rate {stats.failure_rate:.0%} over {stats.total_calls} calls"
                    if failing else "slot stalled"
                )
                self._transition(CircuitState.DEGRADED, now, reason)
            return

        stabilized = now - self._state_change_time >= self.config.stabilization
        if stabilized and not failing and not stalled:
            self._transition(CircuitState.HEALTHY, now, None)

    def _transition(self, state: CircuitState, now: float, reason: Optional[str]) -> None:
        self._state = state
        self._state_change_time = now
        self._reason = reason
        if self._metrics is not None:
            self._metrics.set_circuit_state(self.name, state == CircuitState.DEGRADED)
        if state == CircuitState.DEGRADED:
            logger.warning("circuit degraded", breaker=self.name, reason=reason)
        else:
            logger.info("circuit recovered", breaker=self.name)

    @property
    def state(self) -> CircuitState:
        self._evaluate(self._clock())
        return self._state

    def is_degraded(self) -> bool:
        return self.state == CircuitState.DEGRADED

    def reset(self) -> None:
        """Clear history and return to HEALTHY"""
        self._events.clear()
        self._last_slot = None
        self._last_slot_change = None
        self._stall_seen_at = None
        self._transition(CircuitState.HEALTHY, self._clock(), None)

    def get_metrics(self) -> Dict[str, Any]:
        """Current breaker metrics"""
        stats = self.stats()
        return {
            'name': self.name,
            'state': self.state.value,
            'reason': self._reason,
            'failure_rate': stats.failure_rate,
            'total_calls': stats.total_calls,
            'last_slot': self._last_slot,
            'time_in_current_state': self._clock() - self._state_change_time,
        }
