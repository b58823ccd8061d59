"""
AMM pool layouts

Fixed binary layouts of the supported on-chain pools and their spot price
formulas:
- Raydium AMM v4 (constant product): price is the vault reserve ratio
- Orca Whirlpool (concentrated liquidity): price from the Q64.64 sqrt price
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from solders.pubkey import Pubkey

from ..core.exceptions import RpcFatal

CONSTANT_PRODUCT = "constant_product"
CONCENTRATED = "concentrated"

Q64 = 2 ** 64


@dataclass(frozen=True)
class PoolLayout:
    """Byte offsets of one pool account type"""
    name: str
    program_id: str
    kind: str
    data_size: int
    mint_a_offset: int
    mint_b_offset: int
    vault_a_offset: int
    vault_b_offset: int
    sqrt_price_offset: Optional[int] = None

    @property
    def mint_offsets(self) -> Tuple[int, int]:
        return self.mint_a_offset, self.mint_b_offset


RAYDIUM_AMM_V4 = PoolLayout(
    name="raydium_amm_v4",
    program_id="675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
    kind=CONSTANT_PRODUCT,
    data_size=752,
    vault_a_offset=336,
    vault_b_offset=368,
    mint_a_offset=400,
    mint_b_offset=432,
)

ORCA_WHIRLPOOL = PoolLayout(
    name="orca_whirlpool",
    program_id="whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
    kind=CONCENTRATED,
    data_size=653,
    sqrt_price_offset=65,
    mint_a_offset=101,
    vault_a_offset=133,
    mint_b_offset=181,
    vault_b_offset=213,
)

POOL_LAYOUTS: List[PoolLayout] = [RAYDIUM_AMM_V4, ORCA_WHIRLPOOL]


@dataclass(frozen=True)
class PoolState:
    """Decoded pool account"""
    address: str
    layout: PoolLayout
    mint_a: str
    mint_b: str
    vault_a: str
    vault_b: str
    sqrt_price_x64: Optional[int] = None

    def other_mint(self, mint: str) -> str:
        return self.mint_b if mint == self.mint_a else self.mint_a

    def vaults_for(self, base_mint: str) -> Tuple[str, str]:
        """(base vault, quote vault) when pricing `base_mint`"""
        if base_mint == self.mint_a:
            return self.vault_a, self.vault_b
        return self.vault_b, self.vault_a


@dataclass
class PoolQuote:
    """Spot view of a pool from the base mint's side, in ui units"""
    pool: PoolState
    base_mint: str
    quote_mint: str
    price: float          # quote per base
    base_reserve: float
    quote_reserve: float

    def liquidity(self, quote_usd: float) -> float:
        """USD value held by the pool"""
        return (self.base_reserve * self.price + self.quote_reserve) * quote_usd


def _pubkey_at(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset:offset + 32]))


def decode_pool(layout: PoolLayout, address: str, data: bytes) -> PoolState:
    """Decode a pool account

    Raises:
        RpcFatal: The data does not match the layout
    """
    if len(data) != layout.data_size:
        raise RpcFatal(
            f"{layout.name} account {address} has {len(data)} bytes, expected {layout.data_size}"
        )
    sqrt_price = None
    if layout.sqrt_price_offset is not None:
        offset = layout.sqrt_price_offset
        sqrt_price = int.from_bytes(data[offset:offset + 16], 'little')
    return PoolState(
        address=address,
        layout=layout,
        mint_a=_pubkey_at(data, layout.mint_a_offset),
        mint_b=_pubkey_at(data, layout.mint_b_offset),
        vault_a=_pubkey_at(data, layout.vault_a_offset),
        vault_b=_pubkey_at(data, layout.vault_b_offset),
        sqrt_price_x64=sqrt_price,
    )


def spot_price(
    pool: PoolState,
    base_mint: str,
    reserves: Dict[str, Tuple[float, int]]
) -> Optional[float]:
    """
    Spot price of `base_mint` in units of the pool's other mint

    Args:
        pool: Decoded pool
        base_mint: Mint being priced (either side of the pool)
        reserves: vault address -> (ui balance, decimals)

    Returns:
        Price or None when the pool is empty
    """
    if pool.vault_a not in reserves or pool.vault_b not in reserves:
        return None
    balance_a, decimals_a = reserves[pool.vault_a]
    balance_b, decimals_b = reserves[pool.vault_b]

    if pool.layout.kind == CONCENTRATED:
        if not pool.sqrt_price_x64:
            return None
        price_a_in_b = (pool.sqrt_price_x64 / Q64) ** 2 * 10 ** (decimals_a - decimals_b)
    else:
        if balance_a <= 0 or balance_b <= 0:
            return None
        price_a_in_b = balance_b / balance_a

    if price_a_in_b <= 0:
        return None
    return price_a_in_b if base_mint == pool.mint_a else 1.0 / price_a_in_b
