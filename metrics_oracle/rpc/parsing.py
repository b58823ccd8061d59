"""
Account and transaction parsing helpers

Decoders for the jsonParsed / base64 account encodings and for the
`json`-encoded transaction shape returned by getTransaction.
"""

import base64
from typing import Any, Dict, List, Optional

from ..config.protocols import SYSTEM_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID, WSOL_MINT
from ..core.types import VaultAccount

TOKEN_PROGRAMS = frozenset({TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID})
LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9


def account_data(account: Optional[Dict[str, Any]]) -> Optional[bytes]:
    """Raw bytes of a base64-encoded account, None for other encodings"""
    if not account:
        return None
    data = account.get("data")
    if isinstance(data, list) and len(data) == 2 and data[1] == "base64":
        return base64.b64decode(data[0])
    return None


def parse_vault(address: str, account: Optional[Dict[str, Any]]) -> Optional[VaultAccount]:
    """
    Decode a jsonParsed account into a VaultAccount

    SPL token accounts yield their mint balance; system-owned accounts are
    treated as native SOL reserves. Anything else is not a vault.
    """
    if not account:
        return None
    owner = account.get("owner")
    if owner == SYSTEM_PROGRAM_ID:
        return VaultAccount(
            address=address,
            mint=WSOL_MINT,
            raw_balance=int(account.get("lamports", 0)),
            decimals=SOL_DECIMALS,
            owner_program=owner,
        )
    if owner not in TOKEN_PROGRAMS:
        return None

    data = account.get("data")
    if not isinstance(data, dict):
        return None
    parsed = data.get("parsed") or {}
    if parsed.get("type") != "account":
        return None
    info = parsed.get("info") or {}
    amount = info.get("tokenAmount") or {}
    try:
        return VaultAccount(
            address=address,
            mint=info["mint"],
            raw_balance=int(amount["amount"]),
            decimals=int(amount["decimals"]),
            owner_program=owner,
        )
    except (KeyError, TypeError, ValueError):
        return None


def transaction_account_keys(tx: Dict[str, Any]) -> List[str]:
    """Static keys followed by lookup-table loaded keys, in index order"""
    message = (tx.get("transaction") or {}).get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        keys.append(key["pubkey"] if isinstance(key, dict) else key)
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys


def fee_payer(tx: Dict[str, Any]) -> Optional[str]:
    keys = transaction_account_keys(tx)
    return keys[0] if keys else None


def token_balance_changes(tx: Dict[str, Any]) -> Dict[int, Dict[str, Any]]:
    """
    Per token-account balance change of a transaction

    Returns:
        Mapping of account index to {'mint', 'owner', 'pre', 'post',
        'decimals'} with amounts in raw units
    """
    meta = tx.get("meta") or {}
    changes: Dict[int, Dict[str, Any]] = {}
    for side in ("pre", "post"):
        for entry in meta.get(f"{side}TokenBalances") or []:
            amount = entry.get("uiTokenAmount") or {}
            change = changes.setdefault(entry["accountIndex"], {
                "mint": entry.get("mint"),
                "owner": entry.get("owner"),
                "pre": 0,
                "post": 0,
                "decimals": int(amount.get("decimals", 0)),
            })
            change[side] = int(amount.get("amount", 0))
    return changes
