"""
RPC Gateway

Rate-limited, retrying, multi-endpoint Solana JSON-RPC client exposing the
read primitives the estimators are built on:
- Batched account reads (getMultipleAccounts, <=100 per call) with explicit
  missing-address markers
- Paginated signature listing and transaction fetch
- Slot, block-time and block-signature queries used as time cursors
- Filtered program-account scans on a separate, tighter rate limit
"""

import asyncio
from dataclasses import dataclass, field
import itertools
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp
import structlog

from ..config.settings import RpcConfig
from ..core.circuit_breaker import CircuitBreaker
from ..core.exceptions import OracleError, RpcFatal, RpcTransient, record_error
from ..utils.metrics import OracleMetrics
from ..utils.rate_limiter import RateLimiterRegistry
from ..utils.retry import call_with_retry
from .endpoint_health import EndpointHealthStore, RpcEndpoint

logger = structlog.get_logger(__name__)

# JSON-RPC error codes
TRANSIENT_CODES = frozenset({-32005, -32014, -32016, -32429})   # node behind / min context slot / rate limit
SKIPPED_SLOT_CODES = frozenset({-32004, -32007, -32009})        # block not available / slot skipped

SCAN_METHODS = frozenset({"getProgramAccounts"})

class SlotSkipped(RpcFatal):
    """The requested slot has no block. A valid, empty answer."""

@dataclass
class SignatureInfo:
    """One entry of getSignaturesForAddress"""
    signature: str
    slot: int
    block_time: Optional[int] = None
    err: Any = None

    @property
    def ok(self) -> bool:
        return self.err is None

    @classmethod
    def from_rpc(cls, entry: Dict[str, Any]) -> "SignatureInfo":
        return cls(
            signature=entry["signature"],
            slot=entry.get("slot", 0),
            block_time=entry.get("blockTime"),
            err=entry.get("err"),
        )

@dataclass
class AccountBatch:
    """Result of a batched account read

    `accounts` maps every answered address to its account (None when the
    account does not exist); `missing` lists addresses whose sub-batch
    failed. Both reduce coverage, neither fails the batch.
    """
    accounts: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.accounts) + len(self.missing)

    def present(self) -> Dict[str, Dict[str, Any]]:
        return {k: v for k, v in self.accounts.items() if v is not None}

def _chunks(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]

class RpcGateway:
    """Multi-endpoint JSON-RPC client with health-aware failover"""

    def __init__(
        self,
        config: RpcConfig,
        health: Optional[EndpointHealthStore] = None,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[OracleMetrics] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config
        self.health = health or EndpointHealthStore(
            window=config.health_window,
            park_threshold=config.park_threshold,
            park_min_calls=config.park_min_calls,
            park_cooldown=config.park_cooldown,
        )
        for endpoint in config.endpoints:
            self.health.register(endpoint.url, endpoint.priority)
        self.breaker = breaker
        self.metrics = metrics
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._limiters = RateLimiterRegistry(
            on_wait=metrics.record_rate_limit_wait if metrics else None
        )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={'Content-Type': 'application/json'}
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one JSON-RPC payload and return the decoded body"""
        session = self._ensure_session()
        try:
            async with session.post(url, json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise RpcTransient(
                        f"HTTP {response.status} from {url}",
                        status=response.status,
                        endpoint=url
                    )
                if response.status != 200:
                    raise RpcFatal(f"HTTP {response.status} from {url}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise RpcFatal(f"Malformed JSON from {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise RpcTransient(f"Timeout calling {url}", endpoint=url) from e
        except aiohttp.ClientError as e:
            raise RpcTransient(f"Connection error calling {url}: {e}", endpoint=url) from e

    def _limiter_for(self, endpoint: RpcEndpoint, method: str):
        if method in SCAN_METHODS:
            return self._limiters.get_limiter(f"{endpoint.url}#scan", self.config.scan_limit)
        return self._limiters.get_limiter(f"{endpoint.url}#general", self.config.general_limit)

    async def _call_endpoint(self, endpoint: RpcEndpoint, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with self._limiter_for(endpoint, method):
            if self.metrics:
                with self.metrics.timer("rpc_latency_seconds", method=method):
                    body = await self._post(endpoint.url, payload)
            else:
                body = await self._post(endpoint.url, payload)

        if not isinstance(body, dict):
            raise RpcFatal(f"Malformed response for {method}: {type(body).__name__}")
        if "error" in body:
            error = body["error"] or {}
            code = error.get("code")
            message = error.get("message", "unknown error")
            if code in TRANSIENT_CODES:
                raise RpcTransient(f"{method}: {message}", status=code, endpoint=endpoint.url)
            if code in SKIPPED_SLOT_CODES:
                raise SlotSkipped(f"{method}: {message}", code=code)
            raise RpcFatal(f"{method}: {message}", code=code)
        if "result" not in body:
            raise RpcFatal(f"Malformed response for {method}: no result")
        return body["result"]

    def _observe(self, endpoint: Optional[RpcEndpoint], method: str, outcome: str) -> None:
        if self.metrics is None or endpoint is None:
            return
        self.metrics.record_rpc(endpoint.url, method, outcome)
        self.metrics.set_endpoint_health(endpoint.url, endpoint.health)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Issue one logical JSON-RPC call

        Each healthy endpoint is tried in routing order with bounded
        exponential-backoff retries before failing over to the next.

        Raises:
            RpcTransient: Every endpoint failed or none is available
            RpcFatal: The request itself is bad or the response malformed
        """
        params = params or []
        last_error: Optional[OracleError] = None
        endpoints = self.health.routing_order()

        for endpoint in endpoints:
            try:
                result = await call_with_retry(
                    lambda: self._call_endpoint(endpoint, method, params),
                    self.config.retry,
                    (RpcTransient,),
                    description=method
                )
            except SlotSkipped:
                self.health.record_success(endpoint.url)
                self._record_breaker(True)
                self._observe(endpoint, method, "skipped")
                raise
            except RpcTransient as e:
                last_error = e
                self.health.record_failure(endpoint.url)
                self._observe(endpoint, method, "transient")
                logger.warning(
                    "endpoint failed, failing over",
                    endpoint=endpoint.url,
                    method=method,
                    error=str(e)
                )
                continue
            except RpcFatal:
                self._record_breaker(False)
                self._observe(endpoint, method, "fatal")
                raise

            self.health.record_success(endpoint.url)
            self._record_breaker(True)
            self._observe(endpoint, method, "success")
            return result

        self._record_breaker(False)
        if last_error is None:
            raise RpcTransient(f"No healthy endpoint available for {method}")
        raise RpcTransient(f"All endpoints failed for {method}: {last_error}")

    def _record_breaker(self, ok: bool) -> None:
        if self.breaker is None:
            return
        if ok:
            self.breaker.record_success()
        else:
            self.breaker.record_failure()

    # ------------------------------------------------------------------
    # Read primitives
    # ------------------------------------------------------------------

    async def fetch_accounts(
        self,
        addresses: Sequence[str],
        encoding: str = "jsonParsed"
    ) -> AccountBatch:
        """Batch-fetch accounts; failed sub-batches become missing markers"""
        unique = list(dict.fromkeys(addresses))
        batch = AccountBatch()

        async def fetch_chunk(chunk: Sequence[str]) -> None:
            try:
                result = await self.call(
                    "getMultipleAccounts",
                    [list(chunk), {"encoding": encoding, "commitment": self.config.commitment}]
                )
                values = (result or {}).get("value")
                if not isinstance(values, list) or len(values) != len(chunk):
                    raise RpcFatal("getMultipleAccounts returned a misaligned value list")
            except OracleError as e:
                record_error("gateway", "fetch_accounts", e, self.metrics, batch_size=len(chunk))
                batch.missing.extend(chunk)
                return
            for address, value in zip(chunk, values):
                batch.accounts[address] = value

        await asyncio.gather(*(
            fetch_chunk(chunk) for chunk in _chunks(unique, self.config.account_batch_size)
        ))
        return batch

    async def fetch_signatures(
        self,
        address: str,
        before: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 1000
    ) -> List[SignatureInfo]:
        """One page of signatures for `address`, newest first"""
        options: Dict[str, Any] = {
            "limit": max(1, min(limit, self.config.max_signatures_per_page)),
            "commitment": self.config.commitment,
        }
        if before:
            options["before"] = before
        if until:
            options["until"] = until
        result = await self.call("getSignaturesForAddress", [address, options])
        return [SignatureInfo.from_rpc(entry) for entry in (result or [])]

    async def fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Transaction by signature, None when the node does not have it"""
        return await self.call(
            "getTransaction",
            [signature, {
                "encoding": "json",
                "maxSupportedTransactionVersion": 0,
                "commitment": self.config.commitment,
            }]
        )

    async def current_slot(self) -> int:
        slot = await self.call("getSlot", [{"commitment": self.config.commitment}])
        if not isinstance(slot, int):
            raise RpcFatal(f"getSlot returned {slot!r}")
        if self.breaker is not None:
            self.breaker.record_slot(slot)
        return slot

    async def block_time(self, slot: int) -> Optional[int]:
        try:
            return await self.call("getBlockTime", [slot])
        except SlotSkipped:
            return None

    async def signature_near_slot(self, slot: int) -> Optional[Tuple[str, int, Optional[int]]]:
        """
        A signature usable as a `before` cursor for the given slot

        Walks forward over skipped or empty slots.

        Returns:
            (signature, slot, block_time) of the last transaction in the
            first non-empty block at or after `slot`, or None
        """
        for candidate in range(slot, slot + self.config.max_skipped_slots):
            try:
                block = await self.call(
                    "getBlock",
                    [candidate, {
                        "transactionDetails": "signatures",
                        "rewards": False,
                        "maxSupportedTransactionVersion": 0,
                        "commitment": self.config.commitment,
                    }]
                )
            except SlotSkipped:
                continue
            signatures = (block or {}).get("signatures") or []
            if signatures:
                return signatures[-1], candidate, (block or {}).get("blockTime")
        return None

    async def scan_program_accounts(
        self,
        program_id: str,
        filters: Optional[List[Dict[str, Any]]] = None,
        encoding: str = "base64",
        data_slice: Optional[Tuple[int, int]] = None
    ) -> List[Dict[str, Any]]:
        """Filtered getProgramAccounts, on the scan rate limit

        Args:
            program_id: Owning program
            filters: dataSize / memcmp filters
            encoding: Account data encoding
            data_slice: Optional (offset, length) to trim returned data
        """
        options: Dict[str, Any] = {
            "encoding": encoding,
            "filters": filters or [],
            "commitment": self.config.commitment,
        }
        if data_slice is not None:
            options["dataSlice"] = {"offset": data_slice[0], "length": data_slice[1]}
        result = await self.call("getProgramAccounts", [program_id, options])
        if isinstance(result, dict):  # withContext responses
            result = result.get("value")
        return list(result or [])

    def health_snapshot(self) -> List[Dict[str, object]]:
        return self.health.snapshot()
