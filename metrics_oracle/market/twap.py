"""
Pool TWAP from recent swap executions

Execution prices are read from the pool vaults' pre/post token balances of
the pool's most recent transactions, then time-weighted over the trailing
window. Nothing is cached between calls.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..core.exceptions import OracleError, record_error
from ..rpc.gateway import RpcGateway
from ..rpc.parsing import token_balance_changes, transaction_account_keys
from .pools import PoolState

logger = structlog.get_logger(__name__)


def execution_price(
    tx: Dict[str, Any],
    base_vault: str,
    quote_vault: str
) -> Optional[float]:
    """Quote-per-base price implied by a swap touching both vaults"""
    keys = transaction_account_keys(tx)
    deltas = {}
    for index, change in token_balance_changes(tx).items():
        if index >= len(keys) or keys[index] not in (base_vault, quote_vault):
            continue
        scale = 10 ** change["decimals"]
        deltas[keys[index]] = abs(change["post"] - change["pre"]) / scale

    base_moved = deltas.get(base_vault, 0.0)
    quote_moved = deltas.get(quote_vault, 0.0)
    if base_moved <= 0 or quote_moved <= 0:
        return None
    return quote_moved / base_moved


def time_weighted_average(
    executions: List[Tuple[float, float]],
    window_start: float,
    window_end: float
) -> Optional[float]:
    """
    Time-weighted average of (timestamp, price) points

    Each price holds until the next execution; the last one until
    `window_end`. Falls back to the plain mean when all points share a
    timestamp.
    """
    points = sorted(p for p in executions if window_start <= p[0] <= window_end)
    if not points:
        return None

    weighted = 0.0
    total = 0.0
    for i, (timestamp, price) in enumerate(points):
        until = points[i + 1][0] if i + 1 < len(points) else window_end
        weight = max(0.0, until - timestamp)
        weighted += price * weight
        total += weight

    if total <= 0:
        return sum(price for _, price in points) / len(points)
    return weighted / total


async def pool_twap(
    gateway: RpcGateway,
    pool: PoolState,
    base_mint: str,
    window: float,
    max_swaps: int,
    now: float
) -> Optional[float]:
    """Trailing TWAP of `base_mint` in the pool's quote units, None without swaps"""
    signatures = await gateway.fetch_signatures(pool.address, limit=max_swaps)
    recent = [
        s for s in signatures
        if s.ok and s.block_time is not None and s.block_time >= now - window
    ]
    if not recent:
        return None

    async def fetch(signature: str):
        try:
            return await gateway.fetch_transaction(signature)
        except OracleError as e:
            record_error("twap", "fetch_transaction", e, pool=pool.address)
            return None

    transactions = await asyncio.gather(*(fetch(s.signature) for s in recent))

    base_vault, quote_vault = pool.vaults_for(base_mint)
    executions = []
    for info, tx in zip(recent, transactions):
        if not tx:
            continue
        price = execution_price(tx, base_vault, quote_vault)
        if price is not None:
            executions.append((float(info.block_time), price))

    twap = time_weighted_average(executions, now - window, now)
    logger.debug("pool twap", pool=pool.address, swaps=len(executions), twap=twap)
    return twap
