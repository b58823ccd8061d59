"""Unit tests for the HyperLogLog sketch"""

import pytest

from metrics_oracle.analysis.hyperloglog import HyperLogLog, hash64, merge


def addresses(start: int, stop: int):
    return (f"wallet-{i}" for i in range(start, stop))


def test_estimate_within_three_standard_errors():
    sketch = HyperLogLog(14)
    sketch.update(addresses(0, 1_000_000))

    error = abs(sketch.estimate() - 1_000_000) / 1_000_000
    assert error < 3 * sketch.standard_error


def test_small_cardinality_uses_linear_counting():
    sketch = HyperLogLog(14)
    sketch.update(addresses(0, 1_000))
    assert sketch.estimate() == pytest.approx(1_000, rel=0.02)


def test_duplicates_not_counted():
    sketch = HyperLogLog(12)
    for _ in range(5):
        sketch.update(addresses(0, 300))
    assert sketch.estimate() == pytest.approx(300, rel=0.05)


def test_empty_sketch():
    sketch = HyperLogLog()
    assert sketch.is_empty()
    assert sketch.estimate() == 0.0


def test_standard_error_for_precision_14():
    assert HyperLogLog(14).standard_error == pytest.approx(0.008125)


def test_invalid_precision():
    with pytest.raises(ValueError):
        HyperLogLog(3)


def test_merge_is_union_and_pure():
    left, right = HyperLogLog(14), HyperLogLog(14)
    left.update(addresses(0, 6_000))
    right.update(addresses(4_000, 10_000))
    before = bytes(left.registers)

    union = merge(left, right)

    assert union.estimate() == pytest.approx(10_000, rel=0.03)
    assert bytes(left.registers) == before
    assert union is not left


def test_merge_matches_single_sketch():
    whole, a, b = HyperLogLog(10), HyperLogLog(10), HyperLogLog(10)
    for i, item in enumerate(addresses(0, 2_000)):
        whole.add(item)
        (a if i % 2 else b).add(item)
    assert merge(a, b).registers == whole.registers


def test_merge_rejects_mixed_precision():
    with pytest.raises(ValueError):
        merge(HyperLogLog(12), HyperLogLog(14))


def test_hash_accepts_bytes_and_str():
    assert hash64("abc") == hash64(b"abc")
