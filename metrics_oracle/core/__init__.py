"""Core oracle types, consensus and scoring"""

from .types import (
    MetricKind, MetricRequest, TimeWindow, VaultAccount, PricePoint,
    Measurement, ComponentScores, ConsensusResult, ConsensusState,
    Flag, Recommendation
)
from .exceptions import (
    OracleError, RpcTransient, RpcFatal, DataUnavailable,
    InsufficientSample, Degraded, record_error
)
from .circuit_breaker import CircuitBreaker, CircuitState
from .confidence import ConfidenceScorer, interval_quality
from .consensus import ConsensusEngine

__all__ = [
    'MetricKind', 'MetricRequest', 'TimeWindow', 'VaultAccount', 'PricePoint',
    'Measurement', 'ComponentScores', 'ConsensusResult', 'ConsensusState',
    'Flag', 'Recommendation',
    'OracleError', 'RpcTransient', 'RpcFatal', 'DataUnavailable',
    'InsufficientSample', 'Degraded', 'record_error',
    'CircuitBreaker', 'CircuitState',
    'ConfidenceScorer', 'interval_quality',
    'ConsensusEngine',
]
