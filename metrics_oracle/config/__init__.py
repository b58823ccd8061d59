"""
Configuration Management

Centralizes configuration types, loading and the protocol registry.
"""

from .settings import (
    OracleConfig, RpcConfig, EndpointConfig, SamplingConfig,
    PriceConfig, ConsensusConfig, BreakerConfig, ConfidenceThresholds
)
from .environment import EnvironmentManager
from .validators import validate_oracle_config
from .loader import ConfigLoader, ConfigError, load_config
from .protocols import ProtocolDescriptor, ProtocolRegistry, PROTOCOLS

__all__ = [
    'OracleConfig', 'RpcConfig', 'EndpointConfig', 'SamplingConfig',
    'PriceConfig', 'ConsensusConfig', 'BreakerConfig', 'ConfidenceThresholds',
    'EnvironmentManager', 'validate_oracle_config',
    'ConfigLoader', 'ConfigError', 'load_config',
    'ProtocolDescriptor', 'ProtocolRegistry', 'PROTOCOLS',
]
