"""
Core Oracle Types

Request, measurement and result structures shared by every component:
- MetricRequest: immutable description of what to measure
- Measurement: one estimator output with its sub-scores
- ConsensusResult: terminal output handed to the settlement consumer
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


class MetricKind(Enum):
    """Metric kinds the oracle can estimate"""
    TVL = "tvl"
    VOLUME = "volume"
    USERS = "users"


class Flag(str, Enum):
    """Quality flags attached to measurements and results"""
    STALE = "STALE"
    LOW_LIQUIDITY = "LOW_LIQUIDITY"
    PRICE_DIVERGENCE = "PRICE_DIVERGENCE"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"
    INSUFFICIENT_SAMPLE = "INSUFFICIENT_SAMPLE"
    ORACLE_DEGRADED = "ORACLE_DEGRADED"
    PARTIAL_COVERAGE = "PARTIAL_COVERAGE"
    TIMEOUT = "TIMEOUT"


class ConsensusState(Enum):
    """Consensus engine states"""
    COLLECTING = "collecting"
    FILTERING = "filtering"
    DONE = "done"
    LOW_CONFIDENCE = "low_confidence"
    DEGRADED = "degraded"


class Recommendation(Enum):
    """Action recommended to the settlement consumer"""
    RESOLVE = "resolve"
    RESOLVE_FLAGGED = "resolve_flagged"  # extended dispute window
    DELAY = "delay"                      # re-measure once
    CANCEL = "cancel"


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time window [start, end) in unix seconds"""
    start: float
    end: float

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end} must be after start {self.start}")

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp < self.end

    def split(self, parts: int) -> List["TimeWindow"]:
        """Split into `parts` equal sub-windows, oldest first"""
        step = self.duration / parts
        edges = [self.start + i * step for i in range(parts)] + [self.end]
        return [TimeWindow(edges[i], edges[i + 1]) for i in range(parts)]

    @classmethod
    def trailing(cls, seconds: float, end: Optional[float] = None) -> "TimeWindow":
        end = end if end is not None else time.time()
        return cls(end - seconds, end)


@dataclass(frozen=True)
class MetricRequest:
    """A single oracle request. Immutable once issued."""
    protocol_id: str
    kind: MetricKind
    window: Optional[TimeWindow] = None
    target_time: Optional[float] = None
    deadline: Optional[float] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self):
        if self.kind in (MetricKind.VOLUME, MetricKind.USERS) and self.window is None:
            raise ValueError(f"{self.kind.value} requests require a time window")

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds left before the deadline, None when unbounded"""
        if self.deadline is None:
            return None
        now = now if now is not None else time.time()
        return max(0.0, self.deadline - now)


@dataclass(frozen=True)
class VaultAccount:
    """Token vault snapshot, valid for one measurement only"""
    address: str
    mint: str
    raw_balance: int
    decimals: int
    owner_program: str

    @property
    def ui_balance(self) -> float:
        return self.raw_balance / (10 ** self.decimals)


@dataclass
class PricePoint:
    """Resolved USD price for a mint"""
    mint: str
    price: float
    liquidity: float
    pools: List[str] = field(default_factory=list)
    flags: List[Flag] = field(default_factory=list)
    reliability: float = 1.0


@dataclass
class Measurement:
    """One estimator output"""
    value: Optional[float]
    slot: int
    timestamp: float = field(default_factory=time.time)
    data_quality: float = 0.0
    price_reliability: float = 0.0
    coverage: float = 0.0
    interval: Optional[Tuple[float, float]] = None
    flags: List[Flag] = field(default_factory=list)
    details: Dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.value is not None

    @classmethod
    def failed(cls, flag: Flag, slot: int = 0, **details: float) -> "Measurement":
        return cls(value=None, slot=slot, flags=[flag], details=dict(details))


@dataclass
class ComponentScores:
    """Sub-scores composed by the confidence scorer, each in [0, 1]"""
    data_quality: float = 0.0
    price_reliability: float = 0.0
    freshness: float = 0.0
    coverage: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            'data_quality': self.data_quality,
            'price_reliability': self.price_reliability,
            'freshness': self.freshness,
            'coverage': self.coverage,
        }


@dataclass
class ConsensusResult:
    """Terminal oracle output consumed once by the settlement collaborator"""
    request_id: str
    protocol_id: str
    kind: MetricKind
    value: float
    confidence: float
    flags: List[Flag] = field(default_factory=list)
    state: ConsensusState = ConsensusState.DONE
    recommendation: Recommendation = Recommendation.CANCEL
    scores: ComponentScores = field(default_factory=ComponentScores)
    interval: Optional[Tuple[float, float]] = None
    measurements_used: int = 0
    measurements_taken: int = 0
    produced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        return {
            'request_id': self.request_id,
            'protocol_id': self.protocol_id,
            'metric': self.kind.value,
            'value': self.value,
            'confidence': self.confidence,
            'flags': [f.value for f in self.flags],
            'state': self.state.value,
            'recommendation': self.recommendation.value,
            'scores': self.scores.as_dict(),
            'interval': list(self.interval) if self.interval else None,
            'measurements_used': self.measurements_used,
            'measurements_taken': self.measurements_taken,
            'produced_at': self.produced_at.isoformat(),
        }
