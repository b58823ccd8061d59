"""
Metrics Module

Prometheus metrics for the oracle pipeline: RPC traffic per endpoint,
rate-limiter waits, endpoint health, circuit breaker state, measurement
outcomes and final confidence.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import time
from typing import Dict, List, Optional, Union

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    REGISTRY,
)

logger = logging.getLogger(__name__)

Metric = Union[Counter, Gauge, Histogram]

@dataclass
class MetricConfig:
    """Configuration for a metric"""
    name: str
    description: str
    type: str = "gauge"  # gauge, counter, histogram
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None

class OracleMetrics:
    """
    Centralized metrics for the oracle with an injectable registry
    """

    PREFIX = "metrics_oracle"

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Args:
            registry: Optional custom Prometheus registry (tests use a fresh one)
        """
        self._metrics: Dict[str, Metric] = {}
        self._registry = registry or REGISTRY
        self._initialize_metrics()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _initialize_metrics(self):
        """Initialize default metrics"""
        # RPC metrics
        self._add_metric(MetricConfig(
            name="rpc_requests_total",
            description="JSON-RPC calls by endpoint, method and outcome",
            type="counter",
            labels=["endpoint", "method", "outcome"]
        ))
        self._add_metric(MetricConfig(
            name="rpc_latency_seconds",
            description="JSON-RPC call latency",
            type="histogram",
            labels=["method"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
        ))
        self._add_metric(MetricConfig(
            name="rate_limit_wait_seconds",
            description="Time spent waiting for a rate-limit token",
            type="histogram",
            labels=["limiter"],
            buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 10.0]
        ))
        self._add_metric(MetricConfig(
            name="endpoint_health",
            description="Rolling success ratio per endpoint",
            type="gauge",
            labels=["endpoint"]
        ))

        # Pipeline metrics
        self._add_metric(MetricConfig(
            name="circuit_state",
            description="Circuit breaker state (0=healthy, 1=degraded)",
            type="gauge",
            labels=["name"]
        ))
        self._add_metric(MetricConfig(
            name="measurements_total",
            description="Estimator invocations by metric and outcome",
            type="counter",
            labels=["metric", "outcome"]
        ))
        self._add_metric(MetricConfig(
            name="confidence",
            description="Last confidence score per protocol and metric",
            type="gauge",
            labels=["protocol", "metric"]
        ))
        self._add_metric(MetricConfig(
            name="errors_total",
            description="Errors absorbed by component",
            type="counter",
            labels=["component", "error_type"]
        ))

    def _add_metric(self, config: MetricConfig):
        """Add a new metric"""
        name = f"{self.PREFIX}_{config.name}"

        if config.type == "gauge":
            metric: Metric = Gauge(
                name,
                config.description,
                config.labels,
                registry=self._registry
            )
        elif config.type == "counter":
            metric = Counter(
                name,
                config.description,
                config.labels,
                registry=self._registry
            )
        elif config.type == "histogram":
            metric = Histogram(
                name,
                config.description,
                config.labels,
                buckets=config.buckets or Histogram.DEFAULT_BUCKETS,
                registry=self._registry
            )
        else:
            raise ValueError(f"Unknown metric type: {config.type}")

        self._metrics[config.name] = metric

    def get_metric(self, name: str) -> Optional[Metric]:
        return self._metrics.get(name)

    @contextmanager
    def timer(self, name: str, **labels: str):
        """Context manager recording the block duration into a histogram"""
        start = time.monotonic()
        try:
            yield
        finally:
            metric = self._metrics[name]
            metric.labels(**labels).observe(time.monotonic() - start)

    def record_rpc(self, endpoint: str, method: str, outcome: str):
        self._metrics["rpc_requests_total"].labels(
            endpoint=endpoint, method=method, outcome=outcome
        ).inc()

    def record_rate_limit_wait(self, limiter: str, seconds: float):
        self._metrics["rate_limit_wait_seconds"].labels(limiter=limiter).observe(seconds)

    def set_endpoint_health(self, endpoint: str, score: float):
        self._metrics["endpoint_health"].labels(endpoint=endpoint).set(score)

    def set_circuit_state(self, name: str, degraded: bool):
        self._metrics["circuit_state"].labels(name=name).set(1 if degraded else 0)

    def record_measurement(self, metric: str, outcome: str):
        self._metrics["measurements_total"].labels(metric=metric, outcome=outcome).inc()

    def set_confidence(self, protocol: str, metric: str, value: float):
        self._metrics["confidence"].labels(protocol=protocol, metric=metric).set(value)

    def record_error(self, component: str, error_type: str):
        self._metrics["errors_total"].labels(
            component=component, error_type=error_type
        ).inc()

    def sample_value(self, name: str, /, **labels: str) -> float:
        """Current value of a labelled counter or gauge sample, 0.0 if absent"""
        metric = self._metrics.get(name)
        if metric is None:
            return 0.0
        for family in metric.collect():
            for sample in family.samples:
                if sample.name.endswith('_created'):
                    continue
                if all(sample.labels.get(k) == v for k, v in labels.items()):
                    return sample.value
        return 0.0
