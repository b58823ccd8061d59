"""On-chain metrics oracle for Solana protocols"""

from .core.types import (
    MetricKind, MetricRequest, TimeWindow, Measurement,
    ConsensusResult, ConsensusState, Flag, Recommendation
)
from .oracle import MetricsOracle

__all__ = [
    'MetricsOracle',
    'MetricKind',
    'MetricRequest',
    'TimeWindow',
    'Measurement',
    'ConsensusResult',
    'ConsensusState',
    'Flag',
    'Recommendation',
]

__version__ = '0.1.0'
