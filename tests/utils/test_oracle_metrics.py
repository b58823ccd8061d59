"""Unit tests for the metrics module"""

from metrics_oracle.core.exceptions import RpcTransient, record_error

def test_initialization(metrics, registry):
    """All metrics are registered on the injected registry"""
    assert metrics.registry is registry
    for name in (
        "rpc_requests_total",
        "rpc_latency_seconds",
        "rate_limit_wait_seconds",
        "endpoint_health",
        "circuit_state",
        "measurements_total",
        "confidence",
        "errors_total",
    ):
        assert metrics.get_metric(name) is not None

def test_record_rpc(metrics):
    metrics.record_rpc("https://rpc.example", "getSlot", "success")
    metrics.record_rpc("https://rpc.example", "getSlot", "success")

    assert metrics.sample_value(
        "rpc_requests_total", endpoint="https://rpc.example", method="getSlot", outcome="success"
    ) == 2.0

def test_gauges(metrics):
    metrics.set_endpoint_health("https://rpc.example", 0.75)
    metrics.set_circuit_state("rpc", True)
    metrics.set_confidence("raydium", "tvl", 0.93)

    assert metrics.sample_value("endpoint_health", endpoint="https://rpc.example") == 0.75
    assert metrics.sample_value("circuit_state", name="rpc") == 1.0
    assert metrics.sample_value("confidence", protocol="raydium", metric="tvl") == 0.93

def test_timer_observes_histogram(metrics):
    with metrics.timer("rpc_latency_seconds", method="getBlock"):
        pass

    assert metrics.sample_value("rpc_latency_seconds", method="getBlock") >= 0.0
    count = 0.0
    for family in metrics.get_metric("rpc_latency_seconds").collect():
        for sample in family.samples:
            if sample.name.endswith("_count") and sample.labels.get("method") == "getBlock":
                count = sample.value
    assert count == 1.0

def test_record_error_counts_by_component(metrics):
    context = record_error("tvl", "fetch_accounts", RpcTransient("timeout"), metrics, batch=3)

    assert context.error_type == "RpcTransient"
    assert context.details == {"batch": 3}
    assert metrics.sample_value("errors_total", component="tvl", error_type="RpcTransient") == 1.0
