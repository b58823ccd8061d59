"""
HyperLogLog cardinality sketch

Fixed register array of 2**precision bytes (16 KB at the default b=14).
Estimation and merging are pure functions of the registers.
"""

import hashlib
import math
from typing import Iterable, Union

import numpy as np

HASH_BITS = 64


def _alpha(m: int) -> float:
    if m == 16:
        return 0.673
    if m == 32:
        return 0.697
    if m == 64:
        return 0.709
    return 0.7213 / (1.0 + 1.079 / m)


def hash64(item: Union[str, bytes]) -> int:
    data = item.encode('utf-8') if isinstance(item, str) else item
    return int.from_bytes(hashlib.blake2b(data, digest_size=8).digest(), 'big')


class HyperLogLog:
    """Streaming distinct counter"""

    def __init__(self, precision: int = 14):
        if not 4 <= precision <= 18:
            raise ValueError(f"precision must be in [4, 18], got {precision}")
        self.precision = precision
        self.m = 1 << precision
        self.registers = bytearray(self.m)

    def add(self, item: Union[str, bytes]) -> None:
        h = hash64(item)
        index = h >> (HASH_BITS - self.precision)
        remainder_bits = HASH_BITS - self.precision
        remainder = h & ((1 << remainder_bits) - 1)
        rank = remainder_bits - remainder.bit_length() + 1
        if rank > self.registers[index]:
            self.registers[index] = rank

    def update(self, items: Iterable[Union[str, bytes]]) -> None:
        for item in items:
            self.add(item)

    @property
    def standard_error(self) -> float:
        return 1.04 / math.sqrt(self.m)

    def estimate(self) -> float:
        """Bias-corrected harmonic-mean estimate, linear counting for small ranges"""
        registers = np.frombuffer(bytes(self.registers), dtype=np.uint8)
        harmonic = float(np.sum(np.power(2.0, -registers.astype(np.float64))))
        raw = _alpha(self.m) * self.m * self.m / harmonic

        zeros = int(np.count_nonzero(registers == 0))
        if raw <= 2.5 * self.m and zeros:
            return self.m * math.log(self.m / zeros)
        return raw

    def is_empty(self) -> bool:
        return not any(self.registers)


def merge(*sketches: HyperLogLog) -> HyperLogLog:
    """Register-wise max of sketches of equal precision; inputs are untouched"""
    if not sketches:
        raise ValueError("merge requires at least one sketch")
    precision = sketches[0].precision
    if any(s.precision != precision for s in sketches):
        raise ValueError("cannot merge sketches of different precision")

    merged = np.zeros(1 << precision, dtype=np.uint8)
    for sketch in sketches:
        np.maximum(merged, np.frombuffer(bytes(sketch.registers), dtype=np.uint8), out=merged)

    result = HyperLogLog(precision)
    result.registers = bytearray(merged.tobytes())
    return result
