"""
Protocol registry

Known Solana protocol descriptors: program ids, authority/fee accounts,
vault derivation patterns and the account-type filters used for
schema-guided discovery. Operators can add or override descriptors through
the `protocols` section of the configuration file.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

# Well-known mints
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
WSOL_MINT = "So11111111111111111111111111111111111111112"

STABLECOIN_MINTS = frozenset({USDC_MINT, USDT_MINT})

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


@dataclass(frozen=True)
class ProtocolDescriptor:
    """Everything the resolver and estimators need to know about a protocol

    `vault_seeds` entries are lists of seed components: a plain string is
    used as utf-8 bytes, `@<pubkey>` as the key's 32 bytes, `u8:N`, `u16:N`,
    `u32:N`, `u64:N` as little-endian integers and `{mint}` is expanded once
    per entry of `mints`.
    """
    protocol_id: str
    name: str
    program_id: str
    authority: Optional[str] = None
    vaults: List[str] = field(default_factory=list)
    vault_seeds: List[List[str]] = field(default_factory=list)
    mints: List[str] = field(default_factory=list)
    expected_vaults: Optional[int] = None
    state_account_size: Optional[int] = None
    state_discriminator: Optional[str] = None
    vault_offsets: List[int] = field(default_factory=list)
    activity_address: Optional[str] = None

    @property
    def activity_key(self) -> str:
        """Address whose signature history represents protocol activity"""
        return self.activity_address or self.program_id


PROTOCOLS: Dict[str, ProtocolDescriptor] = {
    'jupiter': ProtocolDescriptor(
        protocol_id='jupiter',
        name='Jupiter Aggregator',
        program_id='JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4',
        authority='JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN',
    ),
    'raydium': ProtocolDescriptor(
        protocol_id='raydium',
        name='Raydium AMM',
        program_id='675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8',
        authority='5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1',
        state_account_size=752,
        vault_offsets=[336, 368],
    ),
    'orca': ProtocolDescriptor(
        protocol_id='orca',
        name='Orca Whirlpool',
        program_id='whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc',
        state_account_size=653,
        vault_offsets=[133, 213],
    ),
    'marinade': ProtocolDescriptor(
        protocol_id='marinade',
        name='Marinade Finance',
        program_id='MarBmsSgKXdrN1egZf5sqe1TMai9K1rChYNDJgjq7aD',
        vault_seeds=[['@8szGkuLTAux9XMgZ2vtY39jVSowEcpBfFfD8hXSEqdGC', 'reserve']],
        expected_vaults=1,
    ),
    'drift': ProtocolDescriptor(
        protocol_id='drift',
        name='Drift Protocol',
        program_id='dRiftyHA39MWEi3m9aunc5MzRF1JYuBsbn6VPcn33UH',
        vault_seeds=[['spot_market_vault', f'u16:{index}'] for index in range(6)],
        expected_vaults=6,
    ),
    'mango': ProtocolDescriptor(
        protocol_id='mango',
        name='Mango Markets v4',
        program_id='4MangoMjqJ2firMokCjjGgoK8d4MXcrgL7XJaL3w6fVg',
    ),
    'kamino': ProtocolDescriptor(
        protocol_id='kamino',
        name='Kamino Finance',
        program_id='6LtLpnUFNByNXLyCoK9wA2MykKAmQNZKBdY8s47dehDc',
    ),
    'jito': ProtocolDescriptor(
        protocol_id='jito',
        name='Jito StakePool',
        program_id='Jito4APyf642JPZPx3hGc6WWJ8zPKtRbRs4P815Awbb',
    ),
    'marginfi': ProtocolDescriptor(
        protocol_id='marginfi',
        name='MarginFi',
        program_id='MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA',
    ),
    'phoenix': ProtocolDescriptor(
        protocol_id='phoenix',
        name='Phoenix DEX',
        program_id='PhoeNiXZ8ByJGLkxNfZRnkUfjvmuYqLR89jjFHGqdXY',
    ),
}


class ProtocolRegistry:
    """Built-in descriptors merged with configured overrides"""

    def __init__(self, overrides: Optional[Dict[str, dict]] = None):
        self._protocols: Dict[str, ProtocolDescriptor] = dict(PROTOCOLS)
        for protocol_id, data in (overrides or {}).items():
            self.register(protocol_id, data)

    def register(self, protocol_id: str, data: dict) -> ProtocolDescriptor:
        """Add a descriptor or override fields of a built-in one"""
        base = self._protocols.get(protocol_id)
        if base is not None:
            descriptor = replace(base, **data)
        else:
            descriptor = ProtocolDescriptor(
                protocol_id=protocol_id,
                name=data.get('name', protocol_id),
                **{k: v for k, v in data.items() if k != 'name'}
            )
        self._protocols[protocol_id] = descriptor
        return descriptor

    def get(self, protocol_id: str) -> Optional[ProtocolDescriptor]:
        return self._protocols.get(protocol_id)

    def all(self) -> List[ProtocolDescriptor]:
        return sorted(self._protocols.values(), key=lambda p: p.protocol_id)
