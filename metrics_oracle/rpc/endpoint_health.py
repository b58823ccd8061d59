"""
Endpoint health tracking

Process-wide, explicitly constructed store of RPC endpoint health. It is
the only state that outlives a single MetricRequest and it only informs
future routing.
"""

from collections import deque
from dataclasses import dataclass, field
import time
from typing import Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

@dataclass
class RpcEndpoint:
    """One JSON-RPC endpoint and its rolling health"""
    url: str
    priority: int = 0
    window: int = 50
    outcomes: Deque[bool] = field(default_factory=deque)
    parked_until: float = 0.0
    total_calls: int = 0
    total_failures: int = 0

    @property
    def health(self) -> float:
        """Success ratio over the trailing window (1.0 with no history)"""
        if not self.outcomes:
            return 1.0
        return sum(self.outcomes) / len(self.outcomes)

    def is_parked(self, now: float) -> bool:
        return now < self.parked_until

    def _push(self, ok: bool) -> None:
        self.outcomes.append(ok)
        while len(self.outcomes) > self.window:
            self.outcomes.popleft()
        self.total_calls += 1
        if not ok:
            self.total_failures += 1

class EndpointHealthStore:
    """
    Health of every configured endpoint

    Scores decay on failure and recover on success. An endpoint whose score
    falls below `park_threshold` after at least `park_min_calls`
    observations is parked for `park_cooldown` seconds.
    """

    def __init__(
        self,
        window: int = 50,
        park_threshold: float = 0.5,
        park_min_calls: int = 5,
        park_cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self._endpoints: Dict[str, RpcEndpoint] = {}
        self.window = window
        self.park_threshold = park_threshold
        self.park_min_calls = park_min_calls
        self.park_cooldown = park_cooldown
        self._clock = clock

    def register(self, url: str, priority: int = 0) -> RpcEndpoint:
        endpoint = self._endpoints.get(url)
        if endpoint is None:
            endpoint = RpcEndpoint(url=url, priority=priority, window=self.window)
            self._endpoints[url] = endpoint
        return endpoint

    def get(self, url: str) -> Optional[RpcEndpoint]:
        return self._endpoints.get(url)

    def record_success(self, url: str) -> float:
        endpoint = self._endpoints[url]
        endpoint._push(True)
        return endpoint.health

    def record_failure(self, url: str) -> float:
        endpoint = self._endpoints[url]
        endpoint._push(False)
        if (
            len(endpoint.outcomes) >= self.park_min_calls
            and endpoint.health < self.park_threshold
            and not endpoint.is_parked(self._clock())
        ):
            endpoint.parked_until = self._clock() + self.park_cooldown
            # Start the next probation period from a clean slate
            endpoint.outcomes.clear()
            logger.warning(
                "endpoint parked",
                endpoint=url,
                cooldown=self.park_cooldown
            )
        return endpoint.health

    def routing_order(self) -> List[RpcEndpoint]:
        """Unparked endpoints, by priority then health"""
        now = self._clock()
        candidates = [e for e in self._endpoints.values() if not e.is_parked(now)]
        return sorted(candidates, key=lambda e: (e.priority, -e.health))

    def snapshot(self) -> List[Dict[str, object]]:
        now = self._clock()
        return [
            {
                'url': e.url,
                'priority': e.priority,
                'health': round(e.health, 4),
                'parked': e.is_parked(now),
                'parked_for': max(0.0, e.parked_until - now),
                'total_calls': e.total_calls,
                'total_failures': e.total_failures,
            }
            for e in sorted(self._endpoints.values(), key=lambda e: e.priority)
        ]
