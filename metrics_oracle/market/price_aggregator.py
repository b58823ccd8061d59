"""
Price Aggregator

USD prices for SPL mints derived purely from on-chain AMM pool state:
- Stablecoins (USDC, USDT) are priced at $1 by peg
- Wrapped SOL is bootstrapped from stablecoin-denominated pools
- Other mints are priced against stablecoin or SOL pools
- Liquidity-weighted mean with small pools excluded or down-weighted
- Spot prices far from the pool's TWAP are replaced by the TWAP
"""

import asyncio
from dataclasses import dataclass, field
import math
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from ..config.protocols import STABLECOIN_MINTS, WSOL_MINT
from ..config.settings import PriceConfig
from ..core.exceptions import OracleError, record_error
from ..core.types import Flag, PricePoint
from ..rpc.gateway import RpcGateway
from ..rpc.parsing import parse_vault, account_data
from ..utils.metrics import OracleMetrics
from .pools import POOL_LAYOUTS, PoolLayout, PoolQuote, PoolState, decode_pool, spot_price
from .twap import pool_twap

logger = structlog.get_logger(__name__)

QUOTE_MINTS = STABLECOIN_MINTS | {WSOL_MINT}


@dataclass
class PoolContribution:
    """One pool's vote for a mint's USD price"""
    pool: str
    price: float
    liquidity: float
    flags: List[Flag] = field(default_factory=list)


class PriceAggregator:
    """
    Liquidity-weighted on-chain price oracle

    Prices are memoized for the lifetime of one measurement only; callers
    invoke `clear()` before each measurement.
    """

    def __init__(
        self,
        gateway: RpcGateway,
        config: Optional[PriceConfig] = None,
        layouts: Sequence[PoolLayout] = POOL_LAYOUTS,
        metrics: Optional[OracleMetrics] = None,
        clock: Callable[[], float] = time.time
    ):
        self.gateway = gateway
        self.config = config or PriceConfig()
        self.layouts = list(layouts)
        self.metrics = metrics
        self._clock = clock
        self._memo: Dict[str, asyncio.Future] = {}

    def clear(self) -> None:
        """Forget memoized prices"""
        self._memo = {}

    async def price_of(self, mint: str) -> Optional[PricePoint]:
        """USD price of `mint`, None when no qualifying pool exists"""
        future = self._memo.get(mint)
        if future is None:
            future = asyncio.ensure_future(self._resolve(mint))
            self._memo[mint] = future
        return await future

    async def _resolve(self, mint: str) -> Optional[PricePoint]:
        if mint in STABLECOIN_MINTS:
            return PricePoint(
                mint=mint,
                price=1.0,
                liquidity=self.config.full_weight_liquidity,
                reliability=1.0,
            )
        if mint == WSOL_MINT:
            return await self._bootstrap_native()
        return await self._price_from_pools(mint)

    # ------------------------------------------------------------------
    # Pool access
    # ------------------------------------------------------------------

    async def discover_pools(self, mint: str) -> List[PoolState]:
        """All pools of the known layouts holding `mint` on either side"""
        pools: Dict[str, PoolState] = {}
        for layout in self.layouts:
            for offset in layout.mint_offsets:
                filters = [
                    {"dataSize": layout.data_size},
                    {"memcmp": {"offset": offset, "bytes": mint}},
                ]
                try:
                    accounts = await self.gateway.scan_program_accounts(layout.program_id, filters)
                except OracleError as e:
                    record_error("price", "discover_pools", e, self.metrics, layout=layout.name)
                    continue
                for entry in accounts:
                    data = account_data(entry.get("account"))
                    if data is None:
                        continue
                    try:
                        pool = decode_pool(layout, entry["pubkey"], data)
                    except OracleError as e:
                        record_error("price", "decode_pool", e, self.metrics)
                        continue
                    pools[pool.address] = pool
        return list(pools.values())

    async def quote_pool(self, pool: PoolState, base_mint: str) -> Optional[PoolQuote]:
        """Current reserves and spot price of a pool from `base_mint`'s side"""
        batch = await self.gateway.fetch_accounts([pool.vault_a, pool.vault_b])
        reserves = {}
        for address, account in batch.present().items():
            vault = parse_vault(address, account)
            if vault is not None:
                reserves[address] = (vault.ui_balance, vault.decimals)

        price = spot_price(pool, base_mint, reserves)
        if price is None:
            return None
        base_vault, quote_vault = pool.vaults_for(base_mint)
        return PoolQuote(
            pool=pool,
            base_mint=base_mint,
            quote_mint=pool.other_mint(base_mint),
            price=price,
            base_reserve=reserves[base_vault][0],
            quote_reserve=reserves[quote_vault][0],
        )

    async def twap(self, pool: PoolState, base_mint: str) -> Optional[float]:
        return await pool_twap(
            self.gateway,
            pool,
            base_mint,
            window=self.config.twap_window,
            max_swaps=self.config.twap_max_swaps,
            now=self._clock()
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def liquidity_weight(self, liquidity: float) -> float:
        """Zero below the floor, sqrt-tapered up to full weight"""
        if liquidity < self.config.min_liquidity:
            return 0.0
        return liquidity * min(1.0, math.sqrt(liquidity / self.config.full_weight_liquidity))

    async def _contributions(self, mint: str, quote_mints: frozenset) -> List[PoolContribution]:
        pools = [p for p in await self.discover_pools(mint) if p.other_mint(mint) in quote_mints]
        if not pools:
            return []

        quote_prices: Dict[str, PricePoint] = {}
        for quote_mint in {p.other_mint(mint) for p in pools}:
            point = await self.price_of(quote_mint)
            if point is not None:
                quote_prices[quote_mint] = point

        async def evaluate(pool: PoolState) -> Optional[Tuple[PoolState, PoolContribution, float]]:
            quote_point = quote_prices.get(pool.other_mint(mint))
            if quote_point is None:
                return None
            try:
                quote = await self.quote_pool(pool, mint)
            except OracleError as e:
                record_error("price", "quote_pool", e, self.metrics, pool=pool.address)
                return None
            if quote is None:
                return None
            liquidity = quote.liquidity(quote_point.price)
            if liquidity < self.config.min_liquidity:
                return None
            contribution = PoolContribution(
                pool=pool.address,
                price=quote.price,
                liquidity=liquidity,
                flags=[f for f in quote_point.flags if f != Flag.LOW_LIQUIDITY],
            )
            return pool, contribution, quote_point.price

        evaluated = [r for r in await asyncio.gather(*(evaluate(p) for p in pools)) if r]
        # TWAP checks only for the deepest pools
        evaluated.sort(key=lambda r: r[1].liquidity, reverse=True)
        evaluated = evaluated[:self.config.max_pools]

        async def gate(
            pool: PoolState,
            contribution: PoolContribution,
            quote_usd: float
        ) -> PoolContribution:
            try:
                twap = await self.twap(pool, mint)
            except OracleError as e:
                record_error("price", "twap", e, self.metrics, pool=pool.address)
                twap = None
            if twap and abs(contribution.price - twap) / twap > self.config.twap_max_deviation:
                logger.warning(
                    "spot price rejected against twap",
                    mint=mint,
                    pool=pool.address,
                    spot=contribution.price,
                    twap=twap
                )
                contribution.price = twap
                contribution.flags.append(Flag.PRICE_DIVERGENCE)
            contribution.price *= quote_usd
            return contribution

        return list(await asyncio.gather(*(gate(*r) for r in evaluated)))

    def _point(
        self,
        mint: str,
        price: float,
        contributions: List[PoolContribution],
        flags: List[Flag]
    ) -> PricePoint:
        for contribution in contributions:
            flags.extend(contribution.flags)
        total_liquidity = sum(c.liquidity for c in contributions)
        if total_liquidity < self.config.full_weight_liquidity:
            flags.append(Flag.LOW_LIQUIDITY)

        reliability = min(1.0, math.sqrt(total_liquidity / self.config.full_weight_liquidity))
        if Flag.LOW_CONFIDENCE in flags:
            reliability *= 0.5
        if Flag.PRICE_DIVERGENCE in flags:
            reliability *= 0.75

        return PricePoint(
            mint=mint,
            price=price,
            liquidity=total_liquidity,
            pools=[c.pool for c in contributions],
            flags=list(dict.fromkeys(flags)),
            reliability=reliability,
        )

    def _weighted_mean(self, contributions: List[PoolContribution]) -> float:
        weights = [self.liquidity_weight(c.liquidity) for c in contributions]
        return sum(c.price * w for c, w in zip(contributions, weights)) / sum(weights)

    async def _price_from_pools(self, mint: str) -> Optional[PricePoint]:
        contributions = await self._contributions(mint, QUOTE_MINTS)
        if not contributions:
            logger.info("no priceable pool", mint=mint)
            return None
        return self._point(mint, self._weighted_mean(contributions), contributions, [])

    async def _bootstrap_native(self) -> Optional[PricePoint]:
        """SOL/USD from stablecoin pools"""
        contributions = await self._contributions(WSOL_MINT, STABLECOIN_MINTS)
        if not contributions:
            logger.warning("native price unavailable")
            return None

        flags: List[Flag] = []
        price = self._weighted_mean(contributions)
        if len(contributions) < self.config.bootstrap_min_pools:
            flags.append(Flag.LOW_CONFIDENCE)
        else:
            prices = [c.price for c in contributions]
            if max(prices) / min(prices) - 1.0 > self.config.bootstrap_max_divergence:
                price = math.exp(sum(math.log(p) for p in prices) / len(prices))
                flags.append(Flag.LOW_CONFIDENCE)
                logger.warning("native price pools diverge", low=min(prices), high=max(prices))

        return self._point(WSOL_MINT, price, contributions, flags)
