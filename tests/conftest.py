"""Shared test fixtures that don't affect live code"""

from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from metrics_oracle.config.settings import (
    ConsensusConfig, EndpointConfig, OracleConfig, RpcConfig, SamplingConfig
)
from metrics_oracle.utils.metrics import OracleMetrics
from metrics_oracle.utils.retry import RetryPolicy
from tests.fakes import FakeAggregator, FakeClock, FakeGateway


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Fresh Prometheus registry per test"""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry) -> OracleMetrics:
    return OracleMetrics(registry=registry)


@pytest.fixture
def rpc_config() -> RpcConfig:
    """Two endpoints and no backoff delay"""
    return RpcConfig(
        endpoints=[
            EndpointConfig("https://primary.example", 0),
            EndpointConfig("https://fallback.example", 1),
        ],
        retry=RetryPolicy(max_attempts=3, initial_delay=0.0),
    )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_aggregator() -> FakeAggregator:
    return FakeAggregator()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def oracle_config() -> OracleConfig:
    """Fast consensus cadence for end-to-end tests"""
    config = OracleConfig(
        rpc=RpcConfig(
            endpoints=[EndpointConfig("https://rpc.example", 0)],
            retry=RetryPolicy(max_attempts=1, initial_delay=0.0),
        ),
        sampling=SamplingConfig(),
        consensus=ConsensusConfig(samples=5, spacing=120.0, measurement_timeout=5.0),
    )
    return config
