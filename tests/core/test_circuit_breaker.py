"""Unit tests for the circuit breaker"""

import pytest

from metrics_oracle.config.settings import BreakerConfig
from metrics_oracle.core.circuit_breaker import CircuitBreaker, CircuitState

@pytest.fixture
def breaker(clock, metrics):
    return CircuitBreaker("rpc", BreakerConfig(), clock=clock, metrics=metrics)

def record(breaker, failures, successes):
    for _ in range(failures):
        breaker.record_failure()
    for _ in range(successes):
        breaker.record_success()

def test_starts_healthy(breaker):
    assert breaker.state == CircuitState.HEALTHY
    assert not breaker.is_degraded()

def test_trips_on_majority_failures(breaker, metrics):
    """6 failures and 4 successes exceed the 50% threshold"""
    record(breaker, failures=6, successes=4)

    assert breaker.state == CircuitState.DEGRADED
    assert breaker.get_metrics()["failure_rate"] == 0.6
    assert metrics.sample_value("circuit_state", name="rpc") == 1.0

def test_exactly_half_does_not_trip(breaker):
    record(breaker, failures=5, successes=5)
    assert breaker.state == CircuitState.HEALTHY

def test_needs_minimum_calls(breaker):
    record(breaker, failures=9, successes=0)
    assert breaker.state == CircuitState.HEALTHY

    breaker.record_failure()
    assert breaker.state == CircuitState.DEGRADED

def test_failures_outside_window_ignored(breaker, clock):
    record(breaker, failures=6, successes=0)
    clock.advance(301)
    record(breaker, failures=0, successes=4)

    assert breaker.stats().total_calls == 4
    assert breaker.state == CircuitState.HEALTHY

def test_recovers_after_stabilization(breaker, clock):
    record(breaker, failures=6, successes=4)
    assert breaker.is_degraded()

    # Failure window still bad
    clock.advance(61)
    assert breaker.is_degraded()

    clock.advance(240)
    assert breaker.state == CircuitState.HEALTHY

def test_does_not_recover_before_stabilization(clock):
    breaker = CircuitBreaker("rpc", BreakerConfig(window=10, stabilization=60), clock=clock)
    record(breaker, failures=10, successes=0)

    clock.advance(11)
    assert breaker.stats().total_calls == 0
    assert breaker.is_degraded()

    clock.advance(50)
    assert not breaker.is_degraded()

def test_slot_stall_degrades(breaker, clock):
    breaker.record_slot(100)
    clock.advance(60)
    breaker.record_slot(100)
    assert not breaker.is_degraded()

    clock.advance(61)
    breaker.record_slot(100)
    assert breaker.is_degraded()
    assert breaker.get_metrics()["reason"] == "slot stalled"

def test_idle_time_is_not_a_stall(breaker, clock):
    """Only a slot read that fails to advance counts as staleness"""
    breaker.record_slot(100)
    clock.advance(600)
    breaker.record_success()
    assert not breaker.is_degraded()

    breaker.record_slot(101)
    assert not breaker.is_degraded()

def test_slot_stall_recovers_after_stabilization(breaker, clock):
    breaker.record_slot(100)
    clock.advance(121)
    breaker.record_slot(100)
    assert breaker.is_degraded()

    clock.advance(59)
    assert breaker.is_degraded()

    clock.advance(2)
    assert not breaker.is_degraded()

def test_repeated_stall_keeps_breaker_degraded(breaker, clock):
    breaker.record_slot(100)
    clock.advance(121)
    breaker.record_slot(100)
    clock.advance(50)
    breaker.record_slot(100)

    clock.advance(20)
    assert breaker.is_degraded()

def test_advancing_slots_keep_breaker_healthy(breaker, clock):
    for slot in range(100, 110):
        breaker.record_slot(slot)
        clock.advance(30)
    assert not breaker.is_degraded()

def test_reset(breaker):
    record(breaker, failures=10, successes=0)
    breaker.reset()

    assert breaker.state == CircuitState.HEALTHY
    assert breaker.stats().total_calls == 0
