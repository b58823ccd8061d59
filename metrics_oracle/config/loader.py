"""
Configuration Loader

Builds an OracleConfig from a YAML or JSON document, environment variables
and defaults, validating the document first.
"""

import json
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import yaml

from ..utils.rate_limiter import RateLimitConfig
from ..utils.retry import RetryPolicy
from .environment import EnvironmentManager
from .settings import (
    BreakerConfig,
    ConfidenceThresholds,
    ConsensusConfig,
    EndpointConfig,
    OracleConfig,
    PriceConfig,
    RpcConfig,
    SamplingConfig,
)
from .validators import validate_oracle_config

logger = logging.getLogger(__name__)

T = TypeVar('T')

class ConfigError(ValueError):
    """Raised when a configuration document is invalid"""

def _build(cls: Type[T], data: Optional[Dict[str, Any]], **extra: Any) -> T:
    """Instantiate a dataclass from the keys it declares"""
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in (data or {}).items() if k in names}
    kwargs.update(extra)
    return cls(**kwargs)

class ConfigLoader:
    """
    Configuration loader supporting YAML and JSON documents.

    Features:
    - Environment variable interpolation (${VAR})
    - JSON-schema validation
    - ORACLE_RPC_URLS / ORACLE_LOG_LEVEL / ORACLE_SAMPLING_SEED overrides
    - Default values fallback
    """

    def __init__(self, env_manager: Optional[EnvironmentManager] = None):
        self.env = env_manager or EnvironmentManager()

    def read_document(self, path: str) -> Dict[str, Any]:
        """Read a YAML or JSON file with environment interpolation

        Raises:
            ConfigError: If the file is missing or cannot be parsed
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {path}")

        config_str = self.env.interpolate_config(config_path.read_text())
        try:
            if config_path.suffix == ".json":
                return json.loads(config_str) or {}
            return yaml.safe_load(config_str) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e

    def load(self, path: Optional[str] = None) -> OracleConfig:
        """
        Load the oracle configuration

        Args:
            path: Config file; defaults to ORACLE_CONFIG, then built-in defaults

        Returns:
            Validated OracleConfig
        """
        path = path or self.env.get("ORACLE_CONFIG")
        document = self.read_document(path) if path else {}
        if path:
            logger.info(f"Loaded oracle configuration from {path}")
        return self.from_dict(document)

    def from_dict(self, document: Dict[str, Any]) -> OracleConfig:
        """Validate a parsed document and convert it into dataclasses"""
        errors = validate_oracle_config(document)
        if errors:
            for error in errors:
                logger.error(f"Config validation error: {error}")
            raise ConfigError("; ".join(errors))

        rpc_doc = dict(document.get("rpc", {}))
        limits = rpc_doc.pop("rate_limits", {})
        health = rpc_doc.pop("health", {})
        endpoints = [
            EndpointConfig(url=e["url"], priority=e.get("priority", i))
            for i, e in enumerate(rpc_doc.pop("endpoints", []))
        ]
        env_endpoints = self.env.rpc_endpoints()
        if env_endpoints:
            endpoints = [EndpointConfig(url, priority) for url, priority in env_endpoints]

        rpc_extra: Dict[str, Any] = {
            "general_limit": _build(RateLimitConfig, limits.get("general"))
            if "general" in limits else RateLimitConfig(100, 10.0, 8),
            "scan_limit": _build(RateLimitConfig, limits.get("scan"))
            if "scan" in limits else RateLimitConfig(40, 10.0, 8),
            "retry": _build(RetryPolicy, rpc_doc.pop("retry", None)),
        }
        if endpoints:
            rpc_extra["endpoints"] = endpoints
        if health:
            rpc_extra.update({
                "health_window": health.get("window", RpcConfig.health_window),
                "park_threshold": health.get("park_threshold", RpcConfig.park_threshold),
                "park_min_calls": health.get("park_min_calls", RpcConfig.park_min_calls),
                "park_cooldown": health.get("park_cooldown", RpcConfig.park_cooldown),
            })
        rpc = _build(RpcConfig, rpc_doc, **rpc_extra)

        overrides = self.env.overrides()
        sampling_doc = dict(document.get("sampling", {}))
        if "seed" in overrides:
            sampling_doc["seed"] = overrides["seed"]

        confidence_doc = dict(document.get("confidence", {}))
        thresholds = _build(ConfidenceThresholds, confidence_doc)
        if "weights" in confidence_doc:
            thresholds.weights = {**ConfidenceThresholds().weights, **confidence_doc["weights"]}

        logging_doc = document.get("logging", {})
        return OracleConfig(
            rpc=rpc,
            sampling=_build(SamplingConfig, sampling_doc),
            price=_build(PriceConfig, document.get("price")),
            consensus=_build(ConsensusConfig, document.get("consensus")),
            breaker=_build(BreakerConfig, document.get("breaker")),
            confidence=thresholds,
            log_level=overrides.get("log_level", logging_doc.get("level", "INFO")),
            log_json=logging_doc.get("json", False),
            protocols=document.get("protocols", {}),
        )

def load_config(path: Optional[str] = None, env_manager: Optional[EnvironmentManager] = None) -> OracleConfig:
    """Shortcut for ConfigLoader(env_manager).load(path)"""
    return ConfigLoader(env_manager).load(path)
