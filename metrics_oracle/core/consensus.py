"""
Consensus Engine

Runs an estimator repeatedly, filters outliers and composes the terminal
ConsensusResult:

COLLECTING -> FILTERING -> DONE
                        -> LOW_CONFIDENCE (too few survivors)
any state  -> DEGRADED  (circuit breaker tripped)
"""

import asyncio
import statistics
import time
from typing import Awaitable, Callable, List, Optional

import structlog

from ..config.settings import ConsensusConfig
from ..utils.metrics import OracleMetrics
from .circuit_breaker import CircuitBreaker
from .confidence import ConfidenceScorer, clamp
from .exceptions import OracleError, record_error
from .types import (
    ComponentScores, ConsensusResult, ConsensusState, Flag, Measurement,
    MetricKind, MetricRequest, Recommendation
)

logger = structlog.get_logger(__name__)

MeasureFn = Callable[[], Awaitable[Measurement]]


def filter_outliers(values: List[float], sigma: float) -> List[int]:
    """Indices of values within `sigma` standard deviations of the median"""
    if len(values) < 2:
        return list(range(len(values)))
    center = statistics.median(values)
    spread = statistics.pstdev(values)
    if spread == 0:
        return list(range(len(values)))
    return [i for i, v in enumerate(values) if abs(v - center) <= sigma * spread]


def ordered_flags(flags) -> List[Flag]:
    present = set(flags)
    return [f for f in Flag if f in present]


class ConsensusEngine:
    """Multi-sample measurement with outlier filtering"""

    def __init__(
        self,
        breaker: CircuitBreaker,
        config: Optional[ConsensusConfig] = None,
        scorer: Optional[ConfidenceScorer] = None,
        metrics: Optional[OracleMetrics] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.breaker = breaker
        self.config = config or ConsensusConfig()
        self.scorer = scorer or ConfidenceScorer()
        self.metrics = metrics
        self._clock = clock
        self._sleep = sleep

    def terminal(
        self,
        request: MetricRequest,
        flags: List[Flag],
        state: ConsensusState,
        value: float = 0.0,
        taken: int = 0
    ) -> ConsensusResult:
        """A zero-confidence result"""
        result = ConsensusResult(
            request_id=request.request_id,
            protocol_id=request.protocol_id,
            kind=request.kind,
            value=max(0.0, value),
            confidence=0.0,
            flags=ordered_flags(flags),
            state=state,
            recommendation=Recommendation.CANCEL,
            measurements_taken=taken,
        )
        self._publish(result)
        return result

    def degraded(self, request: MetricRequest, value: float = 0.0, taken: int = 0) -> ConsensusResult:
        logger.warning("request refused, oracle degraded", breaker=self.breaker.get_metrics())
        return self.terminal(request, [Flag.ORACLE_DEGRADED], ConsensusState.DEGRADED, value, taken)

    async def resolve(self, request: MetricRequest, measure: MeasureFn) -> ConsensusResult:
        if self.breaker.is_degraded():
            return self.degraded(request)

        extra_flags: List[Flag] = []
        if request.kind == MetricKind.TVL and request.target_time is not None:
            extra_flags.extend(await self._await_target(request))

        state = ConsensusState.COLLECTING
        logger.debug("collecting measurements", state=state.value, samples=self.config.samples)
        measurements: List[Measurement] = []
        for index in range(self.config.samples):
            if index > 0:
                remaining = request.remaining(self._clock())
                if remaining is not None and remaining <= self.config.spacing:
                    logger.info("deadline reached, stopping collection", taken=len(measurements))
                    break
                await self._sleep(self.config.spacing)

            measurement = await self._measure_once(request, measure)
            if measurement is None:
                break
            measurements.append(measurement)

            if self.breaker.is_degraded():
                return self.degraded(request, taken=len(measurements))

        state = ConsensusState.FILTERING
        logger.debug("filtering measurements", state=state.value, taken=len(measurements))
        return self._compose(request, measurements, extra_flags)

    async def _await_target(self, request: MetricRequest) -> List[Flag]:
        """Wait for a future target time within the deadline; flag stale targets"""
        now = self._clock()
        if request.target_time > now:
            wait = request.target_time - now
            remaining = request.remaining(now)
            if remaining is not None:
                wait = min(wait, remaining)
            await self._sleep(wait)
            return []
        if now - request.target_time > self.config.target_tolerance:
            return [Flag.STALE]
        return []

    async def _measure_once(self, request: MetricRequest, measure: MeasureFn) -> Optional[Measurement]:
        """One time-boxed estimator invocation; None when no budget is left"""
        budget = self.config.measurement_timeout
        remaining = request.remaining(self._clock())
        if remaining is not None:
            if remaining <= 0:
                return None
            budget = min(budget, remaining)

        try:
            async with asyncio.timeout(budget):
                measurement = await measure()
        except TimeoutError:
            logger.warning("measurement timed out", budget=budget)
            measurement = Measurement.failed(Flag.TIMEOUT)
        except OracleError as e:
            record_error("consensus", "measure", e, self.metrics, metric=request.kind.value)
            measurement = Measurement.failed(e.flag or Flag.DATA_UNAVAILABLE)

        if self.metrics is not None:
            outcome = "ok" if measurement.ok else measurement.flags[0].value.lower()
            self.metrics.record_measurement(request.kind.value, outcome)
        return measurement

    def _compose(
        self,
        request: MetricRequest,
        measurements: List[Measurement],
        extra_flags: List[Flag]
    ) -> ConsensusResult:
        taken = len(measurements)
        successful = [m for m in measurements if m.ok]
        failure_flags = [f for m in measurements if not m.ok for f in m.flags]

        if not successful:
            logger.warning("no successful measurement", taken=taken)
            flags = failure_flags + extra_flags + [Flag.LOW_CONFIDENCE]
            return self.terminal(request, flags, ConsensusState.LOW_CONFIDENCE, taken=taken)

        values = [m.value for m in successful]
        survivors = [successful[i] for i in filter_outliers(values, self.config.outlier_sigma)]
        survivor_values = [m.value for m in survivors]
        value = max(0.0, statistics.median(survivor_values))

        flags: List[Flag] = list(extra_flags) + failure_flags
        for m in survivors:
            flags.extend(m.flags)

        freshness, stale = self._freshness(survivors)
        if stale or Flag.STALE in flags:
            flags.append(Flag.STALE)
            freshness *= 0.5

        scores = ComponentScores(
            data_quality=statistics.median(m.data_quality for m in survivors),
            price_reliability=statistics.median(m.price_reliability for m in survivors),
            freshness=freshness,
            coverage=statistics.median(m.coverage for m in survivors),
        )
        confidence = self.scorer.confidence(scores)

        state = ConsensusState.DONE
        if len(survivors) < self.config.min_survivors:
            state = ConsensusState.LOW_CONFIDENCE
            flags.append(Flag.LOW_CONFIDENCE)
            confidence *= len(survivors) / self.config.samples

        if self.breaker.is_degraded():
            return self.degraded(request, value=value, taken=taken)

        intervals = [m.interval for m in survivors if m.interval is not None]
        interval = None
        if intervals:
            interval = (
                statistics.median(low for low, _ in intervals),
                statistics.median(high for _, high in intervals),
            )

        confidence = clamp(confidence)
        result = ConsensusResult(
            request_id=request.request_id,
            protocol_id=request.protocol_id,
            kind=request.kind,
            value=value,
            confidence=confidence,
            flags=ordered_flags(flags),
            state=state,
            recommendation=self.scorer.recommend(confidence),
            scores=scores,
            interval=interval,
            measurements_used=len(survivors),
            measurements_taken=taken,
        )
        self._publish(result)
        return result

    def _freshness(self, survivors: List[Measurement]):
        """Stability of the survivors scaled by the age of the newest one"""
        values = [m.value for m in survivors]
        mean = statistics.fmean(values)
        cv = statistics.pstdev(values) / mean if mean > 0 and len(values) > 1 else 0.0
        stability = max(0.0, 1.0 - cv * self.config.stability_scale)

        age = self._clock() - max(m.timestamp for m in survivors)
        staleness = clamp(1.0 - age / self.config.max_measurement_age)

        slots = {m.slot for m in survivors}
        stale = (len(survivors) > 1 and len(slots) == 1) or age > self.config.max_measurement_age
        return stability * staleness, stale

    def _publish(self, result: ConsensusResult) -> None:
        if self.metrics is not None:
            self.metrics.set_confidence(result.protocol_id, result.kind.value, result.confidence)
        logger.info(
            "consensus result",
            metric=result.kind.value,
            value=result.value,
            confidence=round(result.confidence, 4),
            state=result.state.value,
            recommendation=result.recommendation.value,
            flags=[f.value for f in result.flags],
            used=result.measurements_used,
            taken=result.measurements_taken
        )
