"""
Configuration Validators

Validate oracle configuration documents at load time rather than letting a
bad threshold surface mid-request.
"""

import logging
from typing import Any, Dict, List

import jsonschema

from .protocols import PROTOCOLS
from .settings import ConfidenceThresholds

logger = logging.getLogger(__name__)

_NUMBER = {"type": "number", "minimum": 0}
_POSITIVE_INT = {"type": "integer", "minimum": 1}
_UNIT = {"type": "number", "minimum": 0, "maximum": 1}

_LIMIT_SCHEMA = {
    "type": "object",
    "properties": {
        "max_ops": _POSITIVE_INT,
        "period": {"type": "number", "exclusiveMinimum": 0},
        "max_concurrent": _POSITIVE_INT,
    },
    "additionalProperties": False,
}

PROTOCOL_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "program_id": {"type": "string", "minLength": 32},
        "authority": {"type": "string"},
        "vaults": {"type": "array", "items": {"type": "string"}},
        "vault_seeds": {
            "type": "array",
            "items": {"type": "array", "items": {"type": "string"}},
        },
        "mints": {"type": "array", "items": {"type": "string"}},
        "expected_vaults": {"type": "integer", "minimum": 0},
        "state_account_size": {"type": "integer", "minimum": 1},
        "state_discriminator": {"type": "string"},
        "vault_offsets": {"type": "array", "items": {"type": "integer", "minimum": 0}},
        "activity_address": {"type": "string"},
    },
}

ORACLE_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "rpc": {
            "type": "object",
            "properties": {
                "endpoints": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "required": ["url"],
                        "properties": {
                            "url": {"type": "string", "minLength": 1},
                            "priority": {"type": "integer"},
                        },
                    },
                },
                "timeout": _NUMBER,
                "commitment": {"enum": ["processed", "confirmed", "finalized"]},
                "account_batch_size": {"type": "integer", "minimum": 1, "maximum": 100},
                "max_signatures_per_page": {"type": "integer", "minimum": 1, "maximum": 1000},
                "rate_limits": {
                    "type": "object",
                    "properties": {"general": _LIMIT_SCHEMA, "scan": _LIMIT_SCHEMA},
                },
                "retry": {
                    "type": "object",
                    "properties": {
                        "max_attempts": _POSITIVE_INT,
                        "initial_delay": _NUMBER,
                        "exponential_base": {"type": "number", "minimum": 1},
                        "max_delay": _NUMBER,
                    },
                },
                "health": {
                    "type": "object",
                    "properties": {
                        "window": _POSITIVE_INT,
                        "park_threshold": _UNIT,
                        "park_min_calls": _POSITIVE_INT,
                        "park_cooldown": _NUMBER,
                    },
                },
            },
        },
        "sampling": {
            "type": "object",
            "properties": {
                "buckets": {"type": "integer", "minimum": 2},
                "signatures_per_bucket": {"type": "integer", "minimum": 1, "maximum": 1000},
                "transactions_per_bucket": _POSITIVE_INT,
                "min_sample": _POSITIVE_INT,
                "seed": {"type": "integer"},
                "hll_precision": {"type": "integer", "minimum": 4, "maximum": 18},
                "user_page_size": {"type": "integer", "minimum": 1, "maximum": 1000},
                "max_user_signatures": _POSITIVE_INT,
                "fan_out": _POSITIVE_INT,
                "slot_seconds": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "price": {
            "type": "object",
            "properties": {
                "min_liquidity": _NUMBER,
                "full_weight_liquidity": _NUMBER,
                "twap_window": _NUMBER,
                "twap_max_swaps": _POSITIVE_INT,
                "twap_max_deviation": _UNIT,
                "bootstrap_max_divergence": _UNIT,
                "bootstrap_min_pools": _POSITIVE_INT,
                "max_pools": _POSITIVE_INT,
            },
        },
        "consensus": {
            "type": "object",
            "properties": {
                "samples": _POSITIVE_INT,
                "spacing": _NUMBER,
                "min_survivors": _POSITIVE_INT,
                "outlier_sigma": _NUMBER,
                "measurement_timeout": _NUMBER,
                "max_measurement_age": _NUMBER,
                "target_tolerance": _NUMBER,
                "stability_scale": _NUMBER,
            },
        },
        "breaker": {
            "type": "object",
            "properties": {
                "window": _NUMBER,
                "failure_threshold": _UNIT,
                "min_calls": _POSITIVE_INT,
                "stabilization": _NUMBER,
                "max_slot_stall": _NUMBER,
            },
        },
        "confidence": {
            "type": "object",
            "properties": {
                "resolve": _UNIT,
                "resolve_flagged": _UNIT,
                "delay": _UNIT,
                "weights": {
                    "type": "object",
                    "properties": {
                        "data_quality": _UNIT,
                        "price_reliability": _UNIT,
                        "freshness": _UNIT,
                        "coverage": _UNIT,
                    },
                    "additionalProperties": False,
                },
            },
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
                "json": {"type": "boolean"},
            },
        },
        "protocols": {"type": "object", "additionalProperties": PROTOCOL_SCHEMA},
    },
}

def validate_oracle_config(data: Dict[str, Any]) -> List[str]:
    """
    Validate a configuration document against the schema

    Args:
        data: Parsed configuration document

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = jsonschema.Draft7Validator(ORACLE_CONFIG_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(e.path)):
        location = ".".join(str(p) for p in error.path) or "<root>"
        errors.append(f"{location}: {error.message}")

    confidence = data.get("confidence", {})
    cutoffs = [confidence.get(k) for k in ("resolve", "resolve_flagged", "delay")]
    if all(c is not None for c in cutoffs) and not cutoffs[0] >= cutoffs[1] >= cutoffs[2]:
        errors.append("confidence: cut-offs must satisfy resolve >= resolve_flagged >= delay")

    weights = confidence.get("weights")
    if weights and abs(sum({**ConfidenceThresholds().weights, **weights}.values()) - 1.0) > 1e-6:
        errors.append("confidence.weights: weights must sum to 1.0")

    for protocol_id, entry in (data.get("protocols") or {}).items():
        # Overrides of built-in protocols may omit the program id
        if protocol_id not in PROTOCOLS and isinstance(entry, dict) and "program_id" not in entry:
            errors.append(f"protocols.{protocol_id}: program_id is required for new protocols")

    return errors
