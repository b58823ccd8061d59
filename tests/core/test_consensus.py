"""Unit tests for the consensus engine"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from metrics_oracle.config.settings import ConsensusConfig
from metrics_oracle.core.circuit_breaker import CircuitBreaker
from metrics_oracle.core.consensus import ConsensusEngine, filter_outliers
from metrics_oracle.core.exceptions import DataUnavailable, InsufficientSample
from metrics_oracle.core.types import (
    ConsensusState, Flag, Measurement, MetricKind, MetricRequest, Recommendation, TimeWindow
)

def measurement(value, slot, **scores):
    return Measurement(
        value=value,
        slot=slot,
        data_quality=scores.get("data_quality", 1.0),
        price_reliability=scores.get("price_reliability", 1.0),
        coverage=scores.get("coverage", 1.0),
        interval=scores.get("interval"),
        flags=scores.get("flags", []),
    )

def measure_sequence(values):
    """Measurement factory yielding `values` with advancing slots"""
    items = []
    for i, value in enumerate(values):
        if isinstance(value, Exception):
            items.append(value)
        else:
            items.append(measurement(value, slot=1000 + i))
    return AsyncMock(side_effect=items)

@pytest.fixture
def breaker():
    return CircuitBreaker("rpc")

@pytest.fixture
def engine(breaker, metrics, no_sleep):
    return ConsensusEngine(breaker, ConsensusConfig(), metrics=metrics, sleep=no_sleep)

@pytest.fixture
def tvl_request():
    return MetricRequest("raydium", MetricKind.TVL)

def test_filter_outliers_drops_far_values():
    assert filter_outliers([100, 101, 99, 100, 1000], 2.0) == [0, 1, 2, 3]

def test_filter_outliers_keeps_identical_values():
    assert filter_outliers([5, 5, 5], 2.0) == [0, 1, 2]

@pytest.mark.asyncio
async def test_consistent_measurements_resolve(engine, tvl_request, no_sleep, metrics):
    measure = measure_sequence([100.0] * 5)

    result = await engine.resolve(tvl_request, measure)

    assert result.state == ConsensusState.DONE
    assert result.value == 100.0
    assert result.recommendation == Recommendation.RESOLVE
    assert result.confidence > 0.99
    assert result.measurements_used == 5
    assert measure.await_count == 5
    assert no_sleep.await_count == 4
    no_sleep.assert_awaited_with(120.0)
    assert metrics.sample_value("measurements_total", metric="tvl", outcome="ok") == 5.0
    assert metrics.sample_value("confidence", protocol="raydium", metric="tvl") == result.confidence

@pytest.mark.asyncio
async def test_outlier_discarded(engine, tvl_request):
    result = await engine.resolve(tvl_request, measure_sequence([100.0, 101.0, 99.0, 100.0, 1000.0]))

    assert result.value == 100.0
    assert result.measurements_used == 4
    assert result.measurements_taken == 5

@pytest.mark.asyncio
async def test_spread_lowers_freshness(engine, tvl_request):
    steady = await engine.resolve(tvl_request, measure_sequence([100.0] * 5))
    noisy = await engine.resolve(tvl_request, measure_sequence([90.0, 110.0, 95.0, 105.0, 100.0]))

    assert noisy.scores.freshness < steady.scores.freshness
    assert noisy.confidence < steady.confidence

@pytest.mark.asyncio
async def test_too_few_survivors_is_low_confidence(engine, tvl_request):
    measure = measure_sequence([
        100.0, DataUnavailable("no vaults"), DataUnavailable("no vaults"), 100.0, DataUnavailable("no vaults")
    ])

    result = await engine.resolve(tvl_request, measure)

    assert result.state == ConsensusState.LOW_CONFIDENCE
    assert Flag.LOW_CONFIDENCE in result.flags
    assert Flag.DATA_UNAVAILABLE in result.flags
    assert result.measurements_used == 2
    assert result.confidence <= 0.4 + 1e-9

@pytest.mark.asyncio
async def test_all_measurements_failing(engine, tvl_request):
    measure = AsyncMock(side_effect=InsufficientSample("tiny", sample_size=3))

    result = await engine.resolve(tvl_request, measure)

    assert result.value == 0.0
    assert result.confidence == 0.0
    assert result.recommendation == Recommendation.CANCEL
    assert Flag.INSUFFICIENT_SAMPLE in result.flags

@pytest.mark.asyncio
async def test_failed_measurement_flag_carried(engine):
    request = MetricRequest("jupiter", MetricKind.VOLUME, window=TimeWindow(0, 3600))
    measure = AsyncMock(return_value=Measurement.failed(Flag.INSUFFICIENT_SAMPLE, sample_size=12))

    result = await engine.resolve(request, measure)

    assert result.state == ConsensusState.LOW_CONFIDENCE
    assert Flag.INSUFFICIENT_SAMPLE in result.flags

@pytest.mark.asyncio
async def test_measurement_timeout_counts_as_failure(breaker, no_sleep, tvl_request):
    engine = ConsensusEngine(
        breaker, ConsensusConfig(samples=2, measurement_timeout=0.01), sleep=no_sleep
    )

    async def slow():
        await asyncio.sleep(1.0)

    result = await engine.resolve(tvl_request, slow)

    assert Flag.TIMEOUT in result.flags
    assert result.confidence == 0.0
    assert result.measurements_taken == 2

@pytest.mark.asyncio
async def test_deadline_stops_collection(breaker, no_sleep):
    engine = ConsensusEngine(breaker, ConsensusConfig(spacing=120.0), sleep=no_sleep)
    request = MetricRequest("raydium", MetricKind.TVL, deadline=time.time() + 60)
    measure = measure_sequence([100.0] * 5)

    result = await engine.resolve(request, measure)

    assert measure.await_count == 1
    assert result.measurements_taken == 1
    assert result.state == ConsensusState.LOW_CONFIDENCE

@pytest.mark.asyncio
async def test_degraded_breaker_short_circuits(engine, breaker, tvl_request):
    for _ in range(10):
        breaker.record_failure()
    measure = AsyncMock()

    result = await engine.resolve(tvl_request, measure)

    assert result.confidence == 0.0
    assert result.flags == [Flag.ORACLE_DEGRADED]
    assert result.state == ConsensusState.DEGRADED
    measure.assert_not_awaited()

@pytest.mark.asyncio
async def test_breaker_tripping_mid_request(engine, breaker, tvl_request):
    async def measure():
        for _ in range(10):
            breaker.record_failure()
        return measurement(100.0, slot=1)

    result = await engine.resolve(tvl_request, measure)

    assert result.confidence == 0.0
    assert Flag.ORACLE_DEGRADED in result.flags
    assert result.value >= 0.0

@pytest.mark.asyncio
async def test_stale_target_time_flagged(engine):
    request = MetricRequest("raydium", MetricKind.TVL, target_time=time.time() - 3600)

    result = await engine.resolve(request, measure_sequence([100.0] * 5))

    assert Flag.STALE in result.flags

@pytest.mark.asyncio
async def test_future_target_time_waited_for(engine, no_sleep):
    request = MetricRequest("raydium", MetricKind.TVL, target_time=time.time() + 30)

    await engine.resolve(request, measure_sequence([100.0] * 5))

    first_wait = no_sleep.await_args_list[0].args[0]
    assert 0 < first_wait <= 30

@pytest.mark.asyncio
async def test_non_advancing_slots_flag_stale(engine, tvl_request):
    measure = AsyncMock(side_effect=[measurement(100.0, slot=7) for _ in range(5)])

    result = await engine.resolve(tvl_request, measure)

    assert Flag.STALE in result.flags

@pytest.mark.asyncio
async def test_interval_and_subscores_are_medians(engine, tvl_request):
    items = [
        measurement(100.0, slot=i, coverage=c, interval=(90.0 + i, 110.0 + i))
        for i, c in enumerate([0.5, 0.9, 1.0, 0.8, 0.7])
    ]

    result = await engine.resolve(tvl_request, AsyncMock(side_effect=items))

    assert result.scores.coverage == 0.8
    assert result.interval == (92.0, 112.0)
