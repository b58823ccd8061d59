"""Unit tests for the on-chain price aggregator"""

import base64
import math
from unittest.mock import AsyncMock

import pytest

from metrics_oracle.config.protocols import USDC_MINT, USDT_MINT, WSOL_MINT
from metrics_oracle.config.settings import PriceConfig
from metrics_oracle.core.types import Flag
from metrics_oracle.market.pools import ORCA_WHIRLPOOL, RAYDIUM_AMM_V4, PoolQuote, PoolState
from metrics_oracle.market.price_aggregator import PriceAggregator
from tests.fakes import BASE_TIME, FakeGateway, token_account
from tests.market.test_pools import key, raydium_data

TOKEN = "TokenXMint"


def make_pool(address: str, base: str = TOKEN, quote: str = USDC_MINT) -> PoolState:
    return PoolState(address, RAYDIUM_AMM_V4, base, quote, f"{address}-a", f"{address}-b")


def make_quote(pool: PoolState, price: float, base_reserve: float, quote_reserve: float) -> PoolQuote:
    return PoolQuote(pool, pool.mint_a, pool.mint_b, price, base_reserve, quote_reserve)


def patched(pools, quotes, twaps=None) -> PriceAggregator:
    """Aggregator whose pool access is served from tables"""
    aggregator = PriceAggregator(FakeGateway(), PriceConfig(), clock=lambda: BASE_TIME)
    aggregator.discover_pools = AsyncMock(side_effect=lambda mint: pools.get(mint, []))
    aggregator.quote_pool = AsyncMock(side_effect=lambda pool, mint: quotes.get(pool.address))
    aggregator.twap = AsyncMock(side_effect=lambda pool, mint: (twaps or {}).get(pool.address))
    return aggregator


@pytest.mark.asyncio
async def test_stablecoins_priced_by_peg():
    aggregator = PriceAggregator(FakeGateway())
    for mint in (USDC_MINT, USDT_MINT):
        point = await aggregator.price_of(mint)
        assert point.price == 1.0
        assert point.reliability == 1.0
        assert point.flags == []


@pytest.mark.asyncio
async def test_spot_replaced_by_twap_when_diverging():
    pool = make_pool("pool-1")
    aggregator = patched(
        {TOKEN: [pool]},
        {"pool-1": make_quote(pool, 2.5, 1_000_000.0, 2_500_000.0)},
        {"pool-1": 2.0},
    )

    point = await aggregator.price_of(TOKEN)

    assert point.price == pytest.approx(2.0)
    assert Flag.PRICE_DIVERGENCE in point.flags
    assert point.reliability == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_spot_kept_within_tolerance():
    pool = make_pool("pool-1")
    aggregator = patched(
        {TOKEN: [pool]},
        {"pool-1": make_quote(pool, 2.1, 1_000_000.0, 2_100_000.0)},
        {"pool-1": 2.0},
    )

    point = await aggregator.price_of(TOKEN)

    assert point.price == pytest.approx(2.1)
    assert point.flags == []
    assert point.reliability == 1.0
    assert point.pools == ["pool-1"]


@pytest.mark.asyncio
async def test_pools_below_liquidity_floor_excluded():
    pool = make_pool("pool-1")
    # (100 * 2.5 + 250) USD
    aggregator = patched({TOKEN: [pool]}, {"pool-1": make_quote(pool, 2.5, 100.0, 250.0)})
    assert await aggregator.price_of(TOKEN) is None


@pytest.mark.asyncio
async def test_thin_liquidity_flagged():
    pool = make_pool("pool-1")
    aggregator = patched({TOKEN: [pool]}, {"pool-1": make_quote(pool, 1.0, 125_000.0, 125_000.0)})

    point = await aggregator.price_of(TOKEN)

    assert point.liquidity == pytest.approx(250_000.0)
    assert Flag.LOW_LIQUIDITY in point.flags
    assert point.reliability == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_liquidity_weighted_mean():
    deep, shallow = make_pool("deep"), make_pool("shallow")
    aggregator = patched(
        {TOKEN: [deep, shallow]},
        {
            "deep": make_quote(deep, 2.0, 2_000_000.0, 4_000_000.0),
            "shallow": make_quote(shallow, 2.2, 50_000.0, 140_000.0),
        },
    )

    point = await aggregator.price_of(TOKEN)

    w_deep = aggregator.liquidity_weight(8_000_000.0)
    w_shallow = aggregator.liquidity_weight(250_000.0)
    expected = (2.0 * w_deep + 2.2 * w_shallow) / (w_deep + w_shallow)
    assert point.price == pytest.approx(expected)
    assert 2.0 < point.price < 2.01


def test_liquidity_weight_taper():
    aggregator = PriceAggregator(FakeGateway())
    assert aggregator.liquidity_weight(500.0) == 0.0
    assert aggregator.liquidity_weight(250_000.0) == pytest.approx(125_000.0)
    assert aggregator.liquidity_weight(4_000_000.0) == pytest.approx(4_000_000.0)


@pytest.mark.asyncio
async def test_native_bootstrap_diverging_pools():
    low, high = make_pool("sol-1", WSOL_MINT), make_pool("sol-2", WSOL_MINT, USDT_MINT)
    aggregator = patched(
        {WSOL_MINT: [low, high]},
        {
            "sol-1": make_quote(low, 100.0, 10_000.0, 1_000_000.0),
            "sol-2": make_quote(high, 110.0, 10_000.0, 1_100_000.0),
        },
    )

    point = await aggregator.price_of(WSOL_MINT)

    assert point.price == pytest.approx(math.sqrt(100.0 * 110.0))
    assert Flag.LOW_CONFIDENCE in point.flags
    assert point.reliability == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_native_bootstrap_agreeing_pools():
    a, b = make_pool("sol-1", WSOL_MINT), make_pool("sol-2", WSOL_MINT)
    aggregator = patched(
        {WSOL_MINT: [a, b]},
        {
            "sol-1": make_quote(a, 150.0, 10_000.0, 1_500_000.0),
            "sol-2": make_quote(b, 151.0, 10_000.0, 1_510_000.0),
        },
    )

    point = await aggregator.price_of(WSOL_MINT)

    assert 150.0 < point.price < 151.0
    assert point.flags == []


@pytest.mark.asyncio
async def test_single_native_pool_is_low_confidence():
    pool = make_pool("sol-1", WSOL_MINT)
    aggregator = patched({WSOL_MINT: [pool]}, {"sol-1": make_quote(pool, 150.0, 10_000.0, 1_500_000.0)})

    point = await aggregator.price_of(WSOL_MINT)

    assert point.price == pytest.approx(150.0)
    assert Flag.LOW_CONFIDENCE in point.flags


@pytest.mark.asyncio
async def test_native_bootstrap_ignores_non_stable_pools():
    pool = make_pool("sol-token", WSOL_MINT, TOKEN)
    aggregator = patched({WSOL_MINT: [pool]}, {"sol-token": make_quote(pool, 3.0, 10_000.0, 30_000.0)})
    assert await aggregator.price_of(WSOL_MINT) is None


@pytest.mark.asyncio
async def test_token_priced_through_sol_inherits_flags():
    sol_pool = make_pool("sol-1", WSOL_MINT)
    token_pool = make_pool("token-sol", TOKEN, WSOL_MINT)
    aggregator = patched(
        {WSOL_MINT: [sol_pool], TOKEN: [token_pool]},
        {
            "sol-1": make_quote(sol_pool, 150.0, 10_000.0, 1_500_000.0),
            "token-sol": make_quote(token_pool, 0.01, 1_000_000.0, 10_000.0),
        },
    )

    point = await aggregator.price_of(TOKEN)

    assert point.price == pytest.approx(1.5)
    assert Flag.LOW_CONFIDENCE in point.flags


@pytest.mark.asyncio
async def test_prices_memoized_until_cleared():
    pool = make_pool("pool-1")
    aggregator = patched({TOKEN: [pool]}, {"pool-1": make_quote(pool, 2.0, 1_000_000.0, 2_000_000.0)})

    await aggregator.price_of(TOKEN)
    await aggregator.price_of(TOKEN)
    assert aggregator.discover_pools.await_count == 1

    aggregator.clear()
    await aggregator.price_of(TOKEN)
    assert aggregator.discover_pools.await_count == 2


@pytest.mark.asyncio
async def test_quote_pool_reads_vault_balances():
    pool = make_pool("pool-1")
    gateway = FakeGateway(accounts={
        "pool-1-a": token_account(TOKEN, 1_000_000_000),
        "pool-1-b": token_account(USDC_MINT, 2_000_000_000),
    })
    aggregator = PriceAggregator(gateway)

    quote = await aggregator.quote_pool(pool, TOKEN)

    assert quote.price == pytest.approx(2.0)
    assert quote.base_reserve == pytest.approx(1_000.0)
    assert quote.quote_reserve == pytest.approx(2_000.0)
    assert quote.liquidity(1.0) == pytest.approx(4_000.0)


@pytest.mark.asyncio
async def test_discover_pools_skips_failed_scans():
    data = base64.b64encode(raydium_data(key(1), key(2), key(3), key(4))).decode()
    gateway = FakeGateway()
    gateway.scan_results[RAYDIUM_AMM_V4.program_id] = [
        {"pubkey": "pool-ray", "account": {"data": [data, "base64"]}},
    ]
    aggregator = PriceAggregator(gateway, layouts=[RAYDIUM_AMM_V4, ORCA_WHIRLPOOL])

    pools = await aggregator.discover_pools(str(key(3)))

    assert [p.address for p in pools] == ["pool-ray"]
    assert pools[0].mint_a == str(key(3))
    assert gateway.calls["scan_program_accounts"] == 4
