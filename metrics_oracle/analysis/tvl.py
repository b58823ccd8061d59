"""
TVL Estimator

Resolve a protocol's vaults, batch-fetch them, normalize balances by
decimals, price each mint and sum. Vaults that cannot be fetched, decoded
or priced are excluded and reduce coverage; they are never valued at zero.
"""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional

import structlog

from ..config.protocols import ProtocolDescriptor
from ..core.exceptions import DataUnavailable
from ..core.types import Flag, Measurement, PricePoint, VaultAccount
from ..discovery.account_resolver import AccountResolver
from ..market.price_aggregator import PriceAggregator
from ..rpc.gateway import RpcGateway
from ..rpc.parsing import parse_vault
from ..utils.metrics import OracleMetrics

logger = structlog.get_logger(__name__)


class TvlEstimator:
    """Total value locked from vault balances and on-chain prices"""

    def __init__(
        self,
        gateway: RpcGateway,
        resolver: AccountResolver,
        aggregator: PriceAggregator,
        metrics: Optional[OracleMetrics] = None
    ):
        self.gateway = gateway
        self.resolver = resolver
        self.aggregator = aggregator
        self.metrics = metrics

    async def estimate_tvl(self, descriptor: ProtocolDescriptor) -> Measurement:
        """
        One TVL measurement

        Raises:
            DataUnavailable: No vault resolved, or none of them priceable
        """
        self.aggregator.clear()
        resolved = await self.resolver.resolve_vaults(descriptor)
        if not resolved.addresses:
            raise DataUnavailable(f"No vaults resolved for {descriptor.protocol_id}")

        slot = await self.gateway.current_slot()
        batch = await self.gateway.fetch_accounts(resolved.addresses)

        present = batch.present()
        vaults: List[VaultAccount] = []
        for address, account in present.items():
            vault = parse_vault(address, account)
            if vault is not None:
                vaults.append(vault)

        # Raw amounts are summed exactly per mint before scaling
        raw_totals: Dict[str, int] = defaultdict(int)
        decimals: Dict[str, int] = {}
        for vault in vaults:
            raw_totals[vault.mint] += vault.raw_balance
            decimals[vault.mint] = vault.decimals

        mints = list(raw_totals)
        prices = await asyncio.gather(*(self.aggregator.price_of(m) for m in mints))
        priced: Dict[str, PricePoint] = {m: p for m, p in zip(mints, prices) if p is not None}

        priced_vaults = sum(1 for v in vaults if v.mint in priced)
        expected = max(descriptor.expected_vaults or 0, len(resolved.addresses))
        coverage = priced_vaults / expected

        details = {
            'vaults_resolved': float(len(resolved.addresses)),
            'vaults_fetched': float(len(present)),
            'vaults_missing': float(len(batch.missing)),
            'vaults_priced': float(priced_vaults),
        }

        if not priced:
            logger.warning(
                "no priceable vaults",
                protocol=descriptor.protocol_id,
                vaults=len(vaults),
                mints=len(mints)
            )
            raise DataUnavailable(
                f"None of {len(vaults)} vaults of {descriptor.protocol_id} could be priced"
            )

        values: Dict[str, float] = {}
        for mint, point in priced.items():
            values[mint] = raw_totals[mint] / (10 ** decimals[mint]) * point.price
        total = sum(values.values())

        if total > 0:
            reliability = sum(priced[m].reliability * v for m, v in values.items()) / total
        else:
            reliability = sum(p.reliability for p in priced.values()) / len(priced)

        flags: List[Flag] = []
        for point in priced.values():
            flags.extend(point.flags)
        if coverage < 1.0:
            flags.append(Flag.PARTIAL_COVERAGE)

        measurement = Measurement(
            value=total,
            slot=slot,
            data_quality=len(vaults) / len(present) if present else 0.0,
            price_reliability=reliability,
            coverage=coverage,
            flags=list(dict.fromkeys(flags)),
            details=details,
        )
        logger.info(
            "tvl measured",
            protocol=descriptor.protocol_id,
            tvl=total,
            coverage=coverage,
            strategy=resolved.strategy
        )
        return measurement
