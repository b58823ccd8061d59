"""Metric estimators"""

from .hyperloglog import HyperLogLog, merge
from .sampling import SampleBucket, SlotClock
from .tvl import TvlEstimator
from .volume import VolumeEstimator
from .users import UniqueUserEstimator

__all__ = [
    'HyperLogLog', 'merge', 'SampleBucket', 'SlotClock',
    'TvlEstimator', 'VolumeEstimator', 'UniqueUserEstimator',
]
