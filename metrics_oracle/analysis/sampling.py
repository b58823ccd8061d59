"""
Sampling primitives

- SampleBucket: running sum/count/variance of one sub-interval (Welford),
  with a pure pooled combine (Chan et al.)
- SlotClock: maps wall-clock time to an approximate slot so that a window
  boundary can be turned into a signature cursor
"""

from dataclasses import dataclass, replace
from functools import reduce
import math
import time
from typing import Iterable, Optional

import structlog

from ..rpc.gateway import RpcGateway

logger = structlog.get_logger(__name__)


@dataclass
class SampleBucket:
    """Running statistics of the values sampled in one time bucket"""
    index: int
    start: float
    end: float
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    signatures: int = 0           # successful signatures observed in the bucket
    density: Optional[float] = None  # successful signatures per second

    def add(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    @property
    def total(self) -> float:
        return self.mean * self.count

    @property
    def variance(self) -> float:
        """Sample variance, zero below two observations"""
        return self.m2 / (self.count - 1) if self.count > 1 else 0.0

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)

    def combine(self, other: "SampleBucket") -> "SampleBucket":
        """Pooled statistics of two buckets; neither input is modified"""
        if other.count == 0:
            return replace(self, start=min(self.start, other.start), end=max(self.end, other.end))
        if self.count == 0:
            return replace(other, start=min(self.start, other.start), end=max(self.end, other.end))
        count = self.count + other.count
        delta = other.mean - self.mean
        return SampleBucket(
            index=min(self.index, other.index),
            start=min(self.start, other.start),
            end=max(self.end, other.end),
            count=count,
            mean=self.mean + delta * other.count / count,
            m2=self.m2 + other.m2 + delta * delta * self.count * other.count / count,
            signatures=self.signatures + other.signatures,
        )


def pooled(buckets: Iterable[SampleBucket]) -> Optional[SampleBucket]:
    buckets = list(buckets)
    if not buckets:
        return None
    return reduce(lambda a, b: a.combine(b), buckets)


class SlotClock:
    """Linear time -> slot mapping anchored at the current slot"""

    def __init__(self, anchor_slot: int, anchor_time: float, slot_seconds: float = 0.4):
        self.anchor_slot = anchor_slot
        self.anchor_time = anchor_time
        self.slot_seconds = slot_seconds

    def slot_for(self, timestamp: float) -> int:
        offset = (timestamp - self.anchor_time) / self.slot_seconds
        return max(0, int(self.anchor_slot + offset))

    @classmethod
    async def calibrate(
        cls,
        gateway: RpcGateway,
        slot_seconds: float = 0.4,
        lookback: int = 10_000,
        clock=time.time
    ) -> "SlotClock":
        """
        Anchor at the current slot and measure the recent slot duration

        Falls back to the local clock for the anchor time and to
        `slot_seconds` when block times are unavailable.
        """
        slot = await gateway.current_slot()
        anchor_time = await gateway.block_time(slot)
        if anchor_time is None:
            anchor_time = clock()

        past_slot = max(0, slot - lookback)
        past_time = await gateway.block_time(past_slot)
        if past_time is not None and slot > past_slot:
            measured = (anchor_time - past_time) / (slot - past_slot)
            # Ignore implausible values (clock skew, missing blocks)
            if 0.2 <= measured <= 1.0:
                slot_seconds = measured

        logger.debug("slot clock calibrated", slot=slot, slot_seconds=slot_seconds)
        return cls(slot, float(anchor_time), slot_seconds)
