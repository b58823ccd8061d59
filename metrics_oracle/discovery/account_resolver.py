"""
Account Resolver

Maps a protocol descriptor to the token vault addresses holding its assets.
Strategies are tried in order and the first non-empty result wins:

1. seeds   - PDAs derived from the descriptor's seed patterns, plus static vaults
2. history - token accounts owned by the protocol authority, found in its
             recent transaction history
3. scan    - getProgramAccounts over the protocol's state accounts, reading
             vault pubkeys at the declared offsets
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import structlog
from solders.pubkey import Pubkey

from ..config.protocols import ProtocolDescriptor
from ..core.exceptions import OracleError, record_error
from ..rpc.gateway import RpcGateway
from ..rpc.parsing import account_data, token_balance_changes, transaction_account_keys
from ..utils.metrics import OracleMetrics

logger = structlog.get_logger(__name__)

_INT_WIDTHS = {'u8': 1, 'u16': 2, 'u32': 4, 'u64': 8}


@dataclass
class ResolvedVaults:
    """Vault addresses for one protocol and how they were found"""
    addresses: List[str] = field(default_factory=list)
    coverage: float = 0.0
    strategy: Optional[str] = None
    expected: Optional[int] = None


def encode_seed(component: str) -> bytes:
    """Encode one seed component

    Plain strings are utf-8, `@<pubkey>` is the key's 32 bytes and
    `u8:N`..`u64:N` are little-endian integers.
    """
    if component.startswith('@'):
        return bytes(Pubkey.from_string(component[1:]))
    prefix, _, number = component.partition(':')
    if prefix in _INT_WIDTHS and number:
        return int(number).to_bytes(_INT_WIDTHS[prefix], 'little')
    return component.encode('utf-8')


def expand_seed_patterns(patterns: Iterable[List[str]], mints: List[str]) -> List[List[str]]:
    """Expand `{mint}` placeholders once per configured mint"""
    expanded = []
    for pattern in patterns:
        if '{mint}' not in pattern:
            expanded.append(list(pattern))
            continue
        for mint in mints:
            expanded.append([f'@{mint}' if c == '{mint}' else c for c in pattern])
    return expanded


def derive_vaults(descriptor: ProtocolDescriptor) -> List[str]:
    """Static vaults followed by every derivable PDA"""
    program = Pubkey.from_string(descriptor.program_id)
    addresses = list(descriptor.vaults)
    for pattern in expand_seed_patterns(descriptor.vault_seeds, descriptor.mints):
        seeds = [encode_seed(c) for c in pattern]
        address, _bump = Pubkey.find_program_address(seeds, program)
        addresses.append(str(address))
    return list(dict.fromkeys(addresses))


def extract_pubkeys(data: bytes, offsets: Iterable[int]) -> List[str]:
    """Read 32-byte pubkeys at fixed offsets of an account's data"""
    keys = []
    for offset in offsets:
        chunk = data[offset:offset + 32]
        if len(chunk) != 32:
            continue
        key = Pubkey.from_bytes(chunk)
        if key != Pubkey.default():
            keys.append(str(key))
    return keys


class AccountResolver:
    """Resolves protocol vault addresses through the RPC gateway"""

    def __init__(
        self,
        gateway: RpcGateway,
        metrics: Optional[OracleMetrics] = None,
        history_limit: int = 50,
        fan_out: int = 8
    ):
        self.gateway = gateway
        self.metrics = metrics
        self.history_limit = history_limit
        self.fan_out = fan_out

    async def resolve_vaults(self, descriptor: ProtocolDescriptor) -> ResolvedVaults:
        strategies = (
            ('seeds', self._from_seeds),
            ('history', self._from_authority_history),
            ('scan', self._from_program_scan),
        )
        for name, strategy in strategies:
            try:
                addresses = await strategy(descriptor)
            except OracleError as e:
                record_error("resolver", name, e, self.metrics, protocol=descriptor.protocol_id)
                continue
            if addresses:
                resolved = ResolvedVaults(
                    addresses=addresses,
                    coverage=self._coverage(len(addresses), descriptor.expected_vaults),
                    strategy=name,
                    expected=descriptor.expected_vaults,
                )
                logger.info(
                    "vaults resolved",
                    protocol=descriptor.protocol_id,
                    strategy=name,
                    count=len(addresses),
                    coverage=resolved.coverage
                )
                return resolved

        logger.warning("no vaults resolved", protocol=descriptor.protocol_id)
        return ResolvedVaults(expected=descriptor.expected_vaults)

    @staticmethod
    def _coverage(resolved: int, expected: Optional[int]) -> float:
        if not expected:
            return 1.0
        return min(1.0, resolved / expected)

    async def _from_seeds(self, descriptor: ProtocolDescriptor) -> List[str]:
        if not descriptor.vaults and not descriptor.vault_seeds:
            return []
        try:
            return derive_vaults(descriptor)
        except ValueError as e:
            # Malformed pubkey or seed in the descriptor
            record_error("resolver", "seeds", e, self.metrics, protocol=descriptor.protocol_id)
            return []

    async def _from_authority_history(self, descriptor: ProtocolDescriptor) -> List[str]:
        authority = descriptor.authority
        if not authority:
            return []
        signatures = await self.gateway.fetch_signatures(authority, limit=self.history_limit)
        semaphore = asyncio.Semaphore(self.fan_out)

        async def fetch(signature: str):
            async with semaphore:
                try:
                    return await self.gateway.fetch_transaction(signature)
                except OracleError as e:
                    record_error("resolver", "history", e, self.metrics, signature=signature)
                    return None

        transactions = await asyncio.gather(*(
            fetch(s.signature) for s in signatures if s.ok
        ))

        vaults = []
        for tx in transactions:
            if not tx:
                continue
            keys = transaction_account_keys(tx)
            for index, change in token_balance_changes(tx).items():
                if change["owner"] == authority and index < len(keys):
                    vaults.append(keys[index])
        return list(dict.fromkeys(vaults))

    async def _from_program_scan(self, descriptor: ProtocolDescriptor) -> List[str]:
        if not descriptor.state_account_size or not descriptor.vault_offsets:
            return []
        filters = [{"dataSize": descriptor.state_account_size}]
        if descriptor.state_discriminator:
            filters.append({"memcmp": {"offset": 0, "bytes": descriptor.state_discriminator}})

        start = min(descriptor.vault_offsets)
        length = max(descriptor.vault_offsets) + 32 - start
        accounts = await self.gateway.scan_program_accounts(
            descriptor.program_id,
            filters=filters,
            data_slice=(start, length)
        )

        offsets = [o - start for o in descriptor.vault_offsets]
        vaults = []
        for entry in accounts:
            data = account_data(entry.get("account"))
            if data is None:
                continue
            vaults.extend(extract_pubkeys(data, offsets))
        return list(dict.fromkeys(vaults))
