"""In-memory stand-ins for the RPC gateway and price aggregator"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional
from unittest.mock import MagicMock

from metrics_oracle.config.protocols import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, USDC_MINT
from metrics_oracle.core.exceptions import RpcTransient
from metrics_oracle.core.types import PricePoint
from metrics_oracle.rpc.gateway import AccountBatch, SignatureInfo

BASE_SLOT = 300_000_000
BASE_TIME = 1_700_000_000
SLOT_SECONDS = 0.4


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def token_account(mint: str, amount: int, decimals: int = 6, owner: str = "vault-authority") -> Dict[str, Any]:
    """jsonParsed SPL token account"""
    return {
        "owner": TOKEN_PROGRAM_ID,
        "lamports": 2_039_280,
        "data": {
            "program": "spl-token",
            "parsed": {
                "type": "account",
                "info": {
                    "mint": mint,
                    "owner": owner,
                    "tokenAmount": {"amount": str(amount), "decimals": decimals},
                },
            },
        },
    }


def system_account(lamports: int) -> Dict[str, Any]:
    return {"owner": SYSTEM_PROGRAM_ID, "lamports": lamports, "data": ["", "base64"]}


def swap_transaction(
    payer: str,
    spent_mint: str = USDC_MINT,
    spent_raw: int = 10_000_000,
    received_mint: str = "TokenXMint",
    received_raw: int = 5_000_000,
    decimals: int = 6,
    fee: int = 5_000
) -> Dict[str, Any]:
    """Swap where the fee payer sends `spent_mint` and receives `received_mint`"""
    def balance(index, mint, owner, amount):
        return {
            "accountIndex": index,
            "mint": mint,
            "owner": owner,
            "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
        }

    return {
        "transaction": {
            "message": {"accountKeys": [payer, f"{payer}-src", f"{payer}-dst", "pool-vault-a", "pool-vault-b"]},
            "signatures": [f"sig-{payer}"],
        },
        "meta": {
            "err": None,
            "fee": fee,
            "preBalances": [1_000_000_000, 0, 0, 0, 0],
            "postBalances": [1_000_000_000 - fee, 0, 0, 0, 0],
            "preTokenBalances": [
                balance(1, spent_mint, payer, spent_raw),
                balance(2, received_mint, payer, 0),
                balance(3, spent_mint, "pool-authority", 50_000_000_000),
                balance(4, received_mint, "pool-authority", 90_000_000_000),
            ],
            "postTokenBalances": [
                balance(1, spent_mint, payer, 0),
                balance(2, received_mint, payer, received_raw),
                balance(3, spent_mint, "pool-authority", 50_000_000_000 + spent_raw),
                balance(4, received_mint, "pool-authority", 90_000_000_000 - received_raw),
            ],
        },
    }


class FakeGateway:
    """
    Deterministic chain model

    Slots advance by one on every `current_slot` call; block times are a
    linear function of the slot. Signature cursors returned by
    `signature_near_slot` are of the form `cursor-<slot>`.
    """

    def __init__(
        self,
        accounts: Optional[Dict[str, Dict[str, Any]]] = None,
        signatures: Optional[Dict[str, List[SignatureInfo]]] = None,
        transactions: Optional[Dict[str, Dict[str, Any]]] = None,
        failing_accounts: Iterable[str] = (),
        slot: int = BASE_SLOT
    ):
        self.accounts = accounts or {}
        self.signatures = {
            address: sorted(items, key=lambda s: (s.block_time, s.signature), reverse=True)
            for address, items in (signatures or {}).items()
        }
        self.transactions = transactions or {}
        self.failing_accounts = set(failing_accounts)
        self.slot = slot
        self.calls: Dict[str, int] = defaultdict(int)
        self.scan_results: Dict[str, List[Dict[str, Any]]] = {}

    @staticmethod
    def time_of(slot: int) -> float:
        return BASE_TIME + (slot - BASE_SLOT) * SLOT_SECONDS

    async def current_slot(self) -> int:
        self.calls["current_slot"] += 1
        self.slot += 1
        return self.slot

    async def block_time(self, slot: int) -> Optional[int]:
        return self.time_of(slot)

    async def signature_near_slot(self, slot: int):
        return f"cursor-{slot}", slot, self.time_of(slot)

    async def fetch_signatures(self, address, before=None, until=None, limit=1000) -> List[SignatureInfo]:
        self.calls["fetch_signatures"] += 1
        history = self.signatures.get(address, [])
        if before is None:
            older = history
        elif before.startswith("cursor-"):
            cutoff = self.time_of(int(before.split("-", 1)[1]))
            older = [s for s in history if s.block_time < cutoff]
        else:
            index = next((i for i, s in enumerate(history) if s.signature == before), len(history))
            older = history[index + 1:]
        return older[:limit]

    async def fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        self.calls["fetch_transaction"] += 1
        return self.transactions.get(signature)

    async def fetch_accounts(self, addresses, encoding="jsonParsed") -> AccountBatch:
        self.calls["fetch_accounts"] += 1
        batch = AccountBatch()
        for address in dict.fromkeys(addresses):
            if address in self.failing_accounts:
                batch.missing.append(address)
            else:
                batch.accounts[address] = self.accounts.get(address)
        return batch

    async def scan_program_accounts(self, program_id, filters=None, encoding="base64", data_slice=None):
        self.calls["scan_program_accounts"] += 1
        if program_id not in self.scan_results:
            raise RpcTransient("scan unavailable")
        return self.scan_results[program_id]

    def health_snapshot(self):
        return []


class FakeAggregator:
    """Fixed price table"""

    def __init__(self, prices: Optional[Dict[str, PricePoint]] = None):
        self.prices = prices if prices is not None else {
            USDC_MINT: PricePoint(mint=USDC_MINT, price=1.0, liquidity=1_000_000.0),
        }
        self.clear = MagicMock()
        self.requested: List[str] = []

    async def price_of(self, mint: str) -> Optional[PricePoint]:
        self.requested.append(mint)
        return self.prices.get(mint)


def signature(name: str, block_time: int, err: Any = None, slot: Optional[int] = None) -> SignatureInfo:
    if slot is None:
        slot = BASE_SLOT + int((block_time - BASE_TIME) / SLOT_SECONDS)
    return SignatureInfo(signature=name, slot=slot, block_time=block_time, err=err)
