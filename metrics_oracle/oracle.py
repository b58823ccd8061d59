"""
Metrics Oracle

Facade wiring the RPC gateway, vault resolver, price aggregator,
estimators, consensus engine and circuit breaker from an OracleConfig.

Usage:
    async with MetricsOracle(config) as oracle:
        result = await oracle.resolve(MetricRequest('raydium', MetricKind.TVL))
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import structlog

from .analysis.tvl import TvlEstimator
from .analysis.users import UniqueUserEstimator
from .analysis.volume import VolumeEstimator
from .config.protocols import ProtocolDescriptor, ProtocolRegistry
from .config.settings import OracleConfig
from .core.circuit_breaker import CircuitBreaker
from .core.confidence import ConfidenceScorer
from .core.consensus import ConsensusEngine
from .core.exceptions import DataUnavailable, Degraded, OracleError, record_error
from .core.types import ConsensusResult, ConsensusState, Flag, Measurement, MetricKind, MetricRequest
from .discovery.account_resolver import AccountResolver
from .market.price_aggregator import PriceAggregator
from .monitoring.observability import bind_request, clear_request
from .rpc.endpoint_health import EndpointHealthStore
from .rpc.gateway import RpcGateway
from .utils.metrics import OracleMetrics

logger = structlog.get_logger(__name__)


class MetricsOracle:
    """Entry point for metric requests. `resolve` never raises."""

    def __init__(
        self,
        config: Optional[OracleConfig] = None,
        protocols: Optional[ProtocolRegistry] = None,
        metrics: Optional[OracleMetrics] = None,
        health: Optional[EndpointHealthStore] = None,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config or OracleConfig()
        self.protocols = protocols or ProtocolRegistry(self.config.protocols)
        self.metrics = metrics
        self.breaker = breaker or CircuitBreaker("rpc", self.config.breaker, metrics=metrics)
        self.gateway = RpcGateway(self.config.rpc, health, self.breaker, metrics, session)
        self.resolver = AccountResolver(self.gateway, metrics, fan_out=self.config.sampling.fan_out)
        self.consensus = ConsensusEngine(
            self.breaker,
            self.config.consensus,
            ConfidenceScorer(self.config.confidence),
            metrics,
            clock=clock,
            sleep=sleep
        )
        self._clock = clock

    async def __aenter__(self):
        await self.gateway.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.gateway.close()

    def new_aggregator(self) -> PriceAggregator:
        """Fresh price aggregator; one per request"""
        return PriceAggregator(self.gateway, self.config.price, metrics=self.metrics, clock=self._clock)

    def _measure_fn(
        self,
        request: MetricRequest,
        descriptor: ProtocolDescriptor
    ) -> Callable[[], Awaitable[Measurement]]:
        aggregator = self.new_aggregator()
        if request.kind == MetricKind.TVL:
            estimator = TvlEstimator(self.gateway, self.resolver, aggregator, self.metrics)
            return lambda: estimator.estimate_tvl(descriptor)
        if request.kind == MetricKind.VOLUME:
            volume = VolumeEstimator(
                self.gateway, aggregator, self.config.sampling, self.metrics, self._clock
            )
            return lambda: volume.estimate_volume(descriptor, request.window)
        users = UniqueUserEstimator(self.gateway, self.config.sampling, self.metrics, self._clock)
        return lambda: users.estimate_unique_users(descriptor, request.window)

    async def measure(self, request: MetricRequest) -> Measurement:
        """
        A single estimator run without consensus

        Raises:
            DataUnavailable: Unknown protocol
            Degraded: The RPC circuit breaker is open
        """
        descriptor = self.protocols.get(request.protocol_id)
        if descriptor is None:
            raise DataUnavailable(f"Unknown protocol {request.protocol_id}")
        if self.breaker.is_degraded():
            raise Degraded(f"RPC circuit {self.breaker.name} is {self.breaker.state.value}")
        return await self._measure_fn(request, descriptor)()

    async def resolve(self, request: MetricRequest) -> ConsensusResult:
        bind_request(request.request_id, request.protocol_id, request.kind.value)
        try:
            descriptor = self.protocols.get(request.protocol_id)
            if descriptor is None:
                logger.warning("unknown protocol")
                return self.consensus.terminal(
                    request, [Flag.DATA_UNAVAILABLE], ConsensusState.LOW_CONFIDENCE
                )
            return await self.consensus.resolve(request, self._measure_fn(request, descriptor))
        except Exception as e:
            record_error("oracle", "resolve", e, self.metrics)
            flag = e.flag if isinstance(e, OracleError) and e.flag else Flag.DATA_UNAVAILABLE
            return self.consensus.terminal(request, [flag], ConsensusState.LOW_CONFIDENCE)
        finally:
            clear_request(['request_id', 'protocol', 'metric'])

    def health_snapshot(self) -> Dict[str, Any]:
        return {
            'endpoints': self.gateway.health_snapshot(),
            'breaker': self.breaker.get_metrics(),
        }
