"""
Oracle configuration dataclasses

Pure parameters, no business logic: RPC endpoints and limits, sampling
sizes, price gates, consensus cadence, breaker thresholds and confidence
cut-offs.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from ..utils.rate_limiter import RateLimitConfig
from ..utils.retry import RetryPolicy

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


@dataclass
class EndpointConfig:
    """One JSON-RPC endpoint; lower priority value is tried first"""
    url: str
    priority: int = 0


@dataclass
class RpcConfig:
    """RPC gateway settings"""
    endpoints: List[EndpointConfig] = field(
        default_factory=lambda: [EndpointConfig(DEFAULT_RPC_URL, 0)]
    )
    timeout: float = 10.0
    commitment: str = "confirmed"
    account_batch_size: int = 100
    max_signatures_per_page: int = 1000
    general_limit: RateLimitConfig = field(default_factory=lambda: RateLimitConfig(100, 10.0, 8))
    scan_limit: RateLimitConfig = field(default_factory=lambda: RateLimitConfig(40, 10.0, 8))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    health_window: int = 50
    park_threshold: float = 0.5
    park_min_calls: int = 5
    park_cooldown: float = 30.0
    max_skipped_slots: int = 16


@dataclass
class SamplingConfig:
    """Volume and unique-user sampling settings"""
    buckets: int = 24
    signatures_per_bucket: int = 100
    transactions_per_bucket: int = 100
    min_sample: int = 30
    seed: int = 0
    hll_precision: int = 14
    user_page_size: int = 1000
    max_user_signatures: int = 200_000
    fan_out: int = 8
    slot_seconds: float = 0.4


@dataclass
class PriceConfig:
    """Price aggregation settings"""
    min_liquidity: float = 1_000.0
    full_weight_liquidity: float = 1_000_000.0
    twap_window: float = 900.0
    twap_max_swaps: int = 25
    twap_max_deviation: float = 0.20
    bootstrap_max_divergence: float = 0.05
    bootstrap_min_pools: int = 2
    max_pools: int = 5


@dataclass
class ConsensusConfig:
    """Consensus engine cadence and filtering"""
    samples: int = 5
    spacing: float = 120.0
    min_survivors: int = 3
    outlier_sigma: float = 2.0
    measurement_timeout: float = 90.0
    max_measurement_age: float = 900.0
    target_tolerance: float = 300.0
    stability_scale: float = 10.0


@dataclass
class BreakerConfig:
    """Circuit breaker thresholds"""
    window: float = 300.0
    failure_threshold: float = 0.5
    min_calls: int = 10
    stabilization: float = 60.0
    max_slot_stall: float = 120.0


@dataclass
class ConfidenceThresholds:
    """Confidence weights and recommendation cut-offs"""
    resolve: float = 0.90
    resolve_flagged: float = 0.80
    delay: float = 0.60
    weights: Dict[str, float] = field(default_factory=lambda: {
        'data_quality': 0.30,
        'price_reliability': 0.30,
        'freshness': 0.20,
        'coverage': 0.20,
    })


@dataclass
class OracleConfig:
    """Top-level oracle configuration"""
    rpc: RpcConfig = field(default_factory=RpcConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    price: PriceConfig = field(default_factory=PriceConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    confidence: ConfidenceThresholds = field(default_factory=ConfidenceThresholds)
    log_level: str = "INFO"
    log_json: bool = False
    protocols: Dict[str, dict] = field(default_factory=dict)
