"""
Unique-User Estimator

Streams the protocol's signature history backwards from the window end,
fetches transactions with bounded fan-out and counts distinct fee payers
in HyperLogLog sketches (one per worker, merged at the end).
"""

import asyncio
import time
from typing import Callable, Optional

import structlog

from ..config.protocols import ProtocolDescriptor
from ..config.settings import SamplingConfig
from ..core.confidence import clamp, interval_quality
from ..core.exceptions import InsufficientSample, OracleError, record_error
from ..core.types import Flag, Measurement, TimeWindow
from ..rpc.gateway import RpcGateway
from ..rpc.parsing import fee_payer
from ..utils.metrics import OracleMetrics
from .hyperloglog import HyperLogLog, merge
from .sampling import SlotClock

logger = structlog.get_logger(__name__)

Z_95 = 1.96


class _Progress:
    """Mutable counters shared by the producer and the workers"""

    def __init__(self):
        self.attempted = 0
        self.fetched = 0
        self.oldest_seen: Optional[float] = None
        self.reached_start = False
        self.capped = False


class UniqueUserEstimator:
    """Distinct active signers over a time window"""

    def __init__(
        self,
        gateway: RpcGateway,
        config: Optional[SamplingConfig] = None,
        metrics: Optional[OracleMetrics] = None,
        clock: Callable[[], float] = time.time
    ):
        self.gateway = gateway
        self.config = config or SamplingConfig()
        self.metrics = metrics
        self._clock = clock

    async def estimate_unique_users(self, descriptor: ProtocolDescriptor, window: TimeWindow) -> Measurement:
        """
        Distinct fee payers of the protocol over `window`

        Raises:
            InsufficientSample: No transaction fetched, or fewer than `min_sample`
                from a window that was not read to its start
        """
        slot_clock = await SlotClock.calibrate(
            self.gateway, self.config.slot_seconds, clock=self._clock
        )
        progress = _Progress()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.user_page_size * 2)
        sketches = [HyperLogLog(self.config.hll_precision) for _ in range(self.config.fan_out)]
        workers = [
            asyncio.create_task(self._worker(queue, sketch, progress))
            for sketch in sketches
        ]
        try:
            await self._produce(descriptor, window, slot_clock, queue, progress)
            await queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        slot = slot_clock.anchor_slot
        if progress.attempted and not progress.fetched:
            raise InsufficientSample(
                f"None of {progress.attempted} sampled transactions could be fetched"
            )
        # Only a truncated window is held to the minimum sample
        if not progress.reached_start and progress.fetched < self.config.min_sample:
            logger.warning(
                "user sample too small",
                protocol=descriptor.protocol_id,
                fetched=progress.fetched,
                minimum=self.config.min_sample
            )
            raise InsufficientSample(
                f"{progress.fetched} transactions from a truncated window, need {self.config.min_sample}",
                sample_size=progress.fetched
            )

        sketch = merge(*sketches)
        estimate = 0.0 if sketch.is_empty() else sketch.estimate()
        half_width = Z_95 * sketch.standard_error * estimate

        if progress.reached_start:
            window_fraction = 1.0
        elif progress.oldest_seen is not None:
            window_fraction = clamp((window.end - progress.oldest_seen) / window.duration)
        else:
            window_fraction = 0.0
        fetch_ratio = progress.fetched / progress.attempted if progress.attempted else 1.0
        coverage = fetch_ratio * window_fraction

        flags = []
        if coverage < 1.0:
            flags.append(Flag.PARTIAL_COVERAGE)

        logger.info(
            "unique users measured",
            protocol=descriptor.protocol_id,
            users=estimate,
            signatures=progress.attempted,
            coverage=coverage,
            capped=progress.capped
        )
        return Measurement(
            value=estimate,
            slot=slot,
            data_quality=interval_quality(estimate, half_width),
            price_reliability=1.0,
            coverage=coverage,
            interval=(max(0.0, estimate - half_width), estimate + half_width),
            flags=flags,
            details={
                'signatures': float(progress.attempted),
                'transactions': float(progress.fetched),
                'window_fraction': window_fraction,
            },
        )

    async def _produce(
        self,
        descriptor: ProtocolDescriptor,
        window: TimeWindow,
        slot_clock: SlotClock,
        queue: asyncio.Queue,
        progress: _Progress
    ) -> None:
        """Page signatures from the window end back past its start"""
        cursor = None
        try:
            if window.end < self._clock():
                near = await self.gateway.signature_near_slot(slot_clock.slot_for(window.end))
                cursor = near[0] if near else None
            while True:
                page = await self.gateway.fetch_signatures(
                    descriptor.activity_key, before=cursor, limit=self.config.user_page_size
                )
                for info in page:
                    if info.block_time is not None:
                        if info.block_time >= window.end:
                            continue
                        if info.block_time < window.start:
                            progress.reached_start = True
                            return
                        progress.oldest_seen = float(info.block_time)
                    if not info.ok:
                        continue
                    if progress.attempted >= self.config.max_user_signatures:
                        progress.capped = True
                        return
                    progress.attempted += 1
                    await queue.put(info.signature)
                if len(page) < self.config.user_page_size:
                    progress.reached_start = True
                    return
                cursor = page[-1].signature
        except OracleError as e:
            # Coverage reflects how far back the stream got
            record_error("users", "signatures", e, self.metrics, protocol=descriptor.protocol_id)

    async def _worker(self, queue: asyncio.Queue, sketch: HyperLogLog, progress: _Progress) -> None:
        while True:
            signature = await queue.get()
            try:
                tx = await self.gateway.fetch_transaction(signature)
                payer = fee_payer(tx) if tx else None
                if payer is not None:
                    sketch.add(payer)
                    progress.fetched += 1
            except OracleError as e:
                record_error("users", "fetch_transaction", e, self.metrics, signature=signature)
            finally:
                queue.task_done()
