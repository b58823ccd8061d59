"""
Oracle error taxonomy and error recording

Exceptions raised inside the pipeline. None of them reach the caller of
`MetricsOracle.resolve`: estimators turn RPC errors into coverage loss and
the consensus engine maps the rest to flags on a ConsensusResult.
"""

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from .types import Flag

logger = structlog.get_logger(__name__)


class OracleError(Exception):
    """Base class for oracle errors"""
    flag: Optional[Flag] = None


class RpcTransient(OracleError):
    """Timeout, rate limit or connection failure. Retried, then failed over."""

    def __init__(self, message: str, status: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint


class RpcFatal(OracleError):
    """Malformed response or unsupported account layout. Never retried."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class DataUnavailable(OracleError):
    """No vaults resolved or no price available"""
    flag = Flag.DATA_UNAVAILABLE


class InsufficientSample(OracleError):
    """Sample below the minimum viable size"""
    flag = Flag.INSUFFICIENT_SAMPLE

    def __init__(self, message: str, sample_size: int = 0):
        super().__init__(message)
        self.sample_size = sample_size


class Degraded(OracleError):
    """Circuit breaker tripped"""
    flag = Flag.ORACLE_DEGRADED


@dataclass
class ErrorContext:
    """Context of a swallowed error"""
    component: str
    operation: str
    error_type: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    stack_trace: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def record_error(
    component: str,
    operation: str,
    error: BaseException,
    metrics: Optional[Any] = None,
    **details: Any
) -> ErrorContext:
    """Log and count an error that is absorbed locally

    Args:
        component: Component name (e.g. 'tvl', 'gateway')
        operation: Operation that failed
        error: The absorbed exception
        metrics: Optional OracleMetrics instance to count the error on
        **details: Extra key/values for the log event

    Returns:
        The recorded ErrorContext
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        error_type=error.__class__.__name__,
        message=str(error),
        stack_trace=''.join(traceback.format_exception_only(type(error), error)).strip(),
        details=details,
    )
    if metrics is not None:
        metrics.record_error(component, context.error_type)
    logger.warning(
        "error absorbed",
        component=component,
        operation=operation,
        error_type=context.error_type,
        error=context.message,
        **details
    )
    return context
