"""On-chain pricing"""

from .price_aggregator import PriceAggregator
from .pools import POOL_LAYOUTS, PoolLayout, PoolState, PoolQuote

__all__ = ['PriceAggregator', 'POOL_LAYOUTS', 'PoolLayout', 'PoolState', 'PoolQuote']
