"""
Volume Estimator

Stratified sampling estimate of the USD value traded through a protocol
over a time window:
- The window is split into equal buckets
- Each bucket is positioned with a block-signature cursor and up to
  `signatures_per_bucket` signatures are listed
- A seeded subsample of successful transactions is fetched and valued by
  the fee payer's own net token/SOL movement (outer-only attribution)
- Sample mean x estimated transaction count, with a 95% interval
"""

import asyncio
from dataclasses import dataclass, field
import math
import random
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from ..config.protocols import ProtocolDescriptor, WSOL_MINT
from ..config.settings import SamplingConfig
from ..core.confidence import interval_quality
from ..core.exceptions import DataUnavailable, InsufficientSample, OracleError, record_error
from ..core.types import Flag, Measurement, PricePoint, TimeWindow
from ..market.price_aggregator import PriceAggregator
from ..rpc.gateway import RpcGateway, SignatureInfo
from ..rpc.parsing import LAMPORTS_PER_SOL, fee_payer, token_balance_changes
from ..utils.metrics import OracleMetrics
from .sampling import SampleBucket, SlotClock, pooled

logger = structlog.get_logger(__name__)

Z_95 = 1.96


def fee_payer_movements(tx: Dict[str, Any]) -> Dict[str, float]:
    """Net ui-amount change per mint of the fee payer's own accounts

    Native SOL is reported under the wrapped SOL mint, with the transaction
    fee added back.
    """
    payer = fee_payer(tx)
    if payer is None:
        return {}
    movements: Dict[str, float] = defaultdict(float)
    for change in token_balance_changes(tx).values():
        if change["owner"] == payer and change["mint"]:
            movements[change["mint"]] += (change["post"] - change["pre"]) / 10 ** change["decimals"]

    meta = tx.get("meta") or {}
    pre, post = meta.get("preBalances") or [], meta.get("postBalances") or []
    if pre and post:
        lamports = post[0] - pre[0] + int(meta.get("fee") or 0)
        if lamports:
            movements[WSOL_MINT] += lamports / LAMPORTS_PER_SOL

    return {mint: delta for mint, delta in movements.items() if delta}


def swap_value(
    movements: Dict[str, float],
    prices: Dict[str, PricePoint]
) -> Optional[Tuple[float, float]]:
    """
    USD value of one transaction

    The largest priced outflow leg is used, else the largest priced inflow.

    Returns:
        (value, price reliability), (0, 1) for no movement, None when the
        movement cannot be priced
    """
    if not movements:
        return 0.0, 1.0
    outflows = []
    inflows = []
    for mint, delta in movements.items():
        point = prices.get(mint)
        if point is None:
            continue
        leg = (abs(delta) * point.price, point.reliability)
        (outflows if delta < 0 else inflows).append(leg)
    legs = outflows or inflows
    if not legs:
        return None
    return max(legs)


@dataclass
class BucketDraw:
    """Signatures and fetched transactions of one bucket"""
    bucket: SampleBucket
    attempted: int = 0
    transactions: List[Dict[str, Any]] = field(default_factory=list)


class VolumeEstimator:
    """Trailing-window traded value from sampled transactions"""

    def __init__(
        self,
        gateway: RpcGateway,
        aggregator: PriceAggregator,
        config: Optional[SamplingConfig] = None,
        metrics: Optional[OracleMetrics] = None,
        clock: Callable[[], float] = time.time
    ):
        self.gateway = gateway
        self.aggregator = aggregator
        self.config = config or SamplingConfig()
        self.metrics = metrics
        self._clock = clock

    async def estimate_volume(self, descriptor: ProtocolDescriptor, window: TimeWindow) -> Measurement:
        """
        One volume measurement over `window`

        Raises:
            InsufficientSample: Fewer than `min_sample` valued transactions
            DataUnavailable: The transaction count cannot be extrapolated
        """
        self.aggregator.clear()
        slot_clock = await SlotClock.calibrate(
            self.gateway, self.config.slot_seconds, clock=self._clock
        )
        sub_windows = window.split(self.config.buckets)
        draws = await asyncio.gather(*(
            self._draw_bucket(descriptor, index, sub_window, slot_clock)
            for index, sub_window in enumerate(sub_windows)
        ))
        sampled = [d for d in draws if d is not None]

        movements = [
            [fee_payer_movements(tx) for tx in draw.transactions] for draw in sampled
        ]
        prices = await self._price_mints({m for per_draw in movements for mv in per_draw for m in mv})

        value_sum = 0.0
        weighted_reliability = 0.0
        fetched = 0
        valued = 0
        flags: List[Flag] = []
        for draw, per_draw in zip(sampled, movements):
            fetched += len(per_draw)
            for movement in per_draw:
                result = swap_value(movement, prices)
                if result is None:
                    continue
                value, reliability = result
                draw.bucket.add(value)
                valued += 1
                value_sum += value
                weighted_reliability += value * reliability

        total = pooled(d.bucket for d in sampled)
        sample_size = total.count if total else 0
        slot = slot_clock.anchor_slot
        if sample_size < self.config.min_sample:
            logger.warning(
                "volume sample too small",
                protocol=descriptor.protocol_id,
                sample_size=sample_size,
                minimum=self.config.min_sample
            )
            raise InsufficientSample(
                f"{sample_size} valued transactions, need {self.config.min_sample}",
                sample_size=sample_size
            )

        tx_count = self._transaction_count(draws, window)
        if tx_count is None:
            raise DataUnavailable(f"No bucket yielded a signature density for {descriptor.protocol_id}")

        estimate = total.mean * tx_count
        half_width = Z_95 * total.std / math.sqrt(sample_size) * tx_count

        attempted = sum(d.attempted for d in sampled)
        coverage = (len(sampled) / len(sub_windows)) * (fetched / attempted if attempted else 0.0)
        data_quality = interval_quality(estimate, half_width) * (valued / fetched if fetched else 0.0)
        reliability = weighted_reliability / value_sum if value_sum > 0 else 1.0

        for point in prices.values():
            flags.extend(point.flags)
        if coverage < 1.0:
            flags.append(Flag.PARTIAL_COVERAGE)

        logger.info(
            "volume measured",
            protocol=descriptor.protocol_id,
            volume=estimate,
            half_width=half_width,
            sample_size=sample_size,
            transactions=tx_count
        )
        return Measurement(
            value=estimate,
            slot=slot,
            data_quality=data_quality,
            price_reliability=reliability,
            coverage=coverage,
            interval=(max(0.0, estimate - half_width), estimate + half_width),
            flags=list(dict.fromkeys(flags)),
            details={
                'sample_size': float(sample_size),
                'sample_mean': total.mean,
                'transaction_count': tx_count,
                'half_width': half_width,
                'buckets_sampled': float(len(sampled)),
            },
        )

    async def _draw_bucket(
        self,
        descriptor: ProtocolDescriptor,
        index: int,
        window: TimeWindow,
        slot_clock: SlotClock
    ) -> Optional[BucketDraw]:
        now = self._clock()
        limit = self.config.signatures_per_bucket
        try:
            cursor = None
            if window.end < now:
                near = await self.gateway.signature_near_slot(slot_clock.slot_for(window.end))
                if near is None:
                    logger.debug("no cursor for bucket", bucket=index)
                    return None
                cursor = near[0]
            signatures = await self.gateway.fetch_signatures(
                descriptor.activity_key, before=cursor, limit=limit
            )
        except OracleError as e:
            record_error("volume", "draw_bucket", e, self.metrics, bucket=index)
            return None

        in_bucket = [s for s in signatures if s.block_time is not None and window.contains(s.block_time)]
        successful = sorted((s for s in in_bucket if s.ok), key=lambda s: (s.slot, s.signature))

        bucket = SampleBucket(
            index=index,
            start=window.start,
            end=window.end,
            signatures=len(successful),
            density=self._density(signatures, in_bucket, successful, window, limit, now),
        )

        chosen = successful
        if len(chosen) > self.config.transactions_per_bucket:
            rng = random.Random(self.config.seed + index)
            chosen = rng.sample(chosen, self.config.transactions_per_bucket)

        transactions = await asyncio.gather(*(self._fetch(s) for s in chosen))
        return BucketDraw(
            bucket=bucket,
            attempted=len(chosen),
            transactions=[tx for tx in transactions if tx is not None],
        )

    @staticmethod
    def _density(
        signatures: List[SignatureInfo],
        in_bucket: List[SignatureInfo],
        successful: List[SignatureInfo],
        window: TimeWindow,
        limit: int,
        now: float
    ) -> Optional[float]:
        """Successful signatures per second observed in the bucket"""
        end = min(window.end, now)
        reached_start = len(signatures) < limit or any(
            s.block_time is not None and s.block_time < window.start for s in signatures
        )
        if reached_start:
            span = end - window.start
        elif in_bucket:
            span = end - min(s.block_time for s in in_bucket)
        else:
            return None
        if span <= 0:
            return None
        return len(successful) / span

    def _transaction_count(self, draws: List[Optional[BucketDraw]], window: TimeWindow) -> Optional[float]:
        """Boundary-bucket signature density extrapolated over the window"""
        def density(draw: Optional[BucketDraw]) -> Optional[float]:
            return draw.bucket.density if draw is not None else None

        densities = [d for d in (density(draws[0]), density(draws[-1])) if d is not None]
        if not densities:
            densities = [d for d in map(density, draws) if d is not None]
        if not densities:
            return None
        return sum(densities) / len(densities) * window.duration

    async def _fetch(self, signature: SignatureInfo) -> Optional[Dict[str, Any]]:
        try:
            return await self.gateway.fetch_transaction(signature.signature)
        except OracleError as e:
            record_error("volume", "fetch_transaction", e, self.metrics, signature=signature.signature)
            return None

    async def _price_mints(self, mints) -> Dict[str, PricePoint]:
        mints = sorted(mints)
        points = await asyncio.gather(*(self.aggregator.price_of(m) for m in mints))
        return {m: p for m, p in zip(mints, points) if p is not None}
