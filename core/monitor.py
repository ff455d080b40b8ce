"""
Liquidation Sentinel Core: Discovery & Verification Monitor

One cycle:
1. Refresh prices and gas (MarketSnapshot)
2. Pull candidates from every index source
3. Verify each candidate on-chain through its protocol adapter
   (bounded concurrency, fixed inter-item delay)
4. Risk-validate confirmed liquidatable candidates
5. Execute approved ones when execution is enabled, otherwise observe

Per-position state is rebuilt from the index every cycle; nothing about
healthy positions carries over between cycles.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from core.exceptions import DataIntegrityMismatch, MarketUnavailable, TransientRpcError
from core.models import (
    CandidateState,
    IndexedPosition,
    LiquidationCandidate,
    LiquidationResult,
    MarketSnapshot,
    utc_now,
)
from infra.metrics import CycleStats
from infra.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class MarketMetadataCache:
    """
    Lazily loaded static market metadata keyed by (protocol, market).

    Loads retry with backoff; a market that still fails is skipped for the
    rest of the cycle and retried next cycle.
    """

    def __init__(self, policy: RetryPolicy, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.policy = policy
        self._sleep = sleep
        self._cache: Dict[Tuple[str, str], Any] = {}
        self._failed: Dict[Tuple[str, str], str] = {}

    def start_cycle(self) -> None:
        self._failed.clear()

    async def get(self, adapter, market: str) -> Any:
        key = (adapter.name, market.lower())
        if key in self._cache:
            return self._cache[key]
        if key in self._failed:
            raise MarketUnavailable(market, RuntimeError(self._failed[key]))

        try:
            info = await retry_async(
                lambda: adapter.load_market(market),
                self.policy,
                label=f"{adapter.name} market {market}",
                sleep=self._sleep,
            )
        except TransientRpcError as e:
            self._failed[key] = str(e)
            raise MarketUnavailable(market, e) from e
        except MarketUnavailable as e:
            self._failed[key] = str(e)
            raise

        self._cache[key] = info
        return info

    def __len__(self) -> int:
        return len(self._cache)


@dataclass
class CycleReport:
    status: str = "ok"  # ok | error
    started_at: datetime = None
    duration_seconds: float = 0.0
    indexed: int = 0
    states: Counter = field(default_factory=Counter)
    results: List[LiquidationResult] = field(default_factory=list)
    error: Optional[str] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = utc_now()

    def count(self, state: CandidateState) -> int:
        return self.states.get(state, 0)

    def summary(self) -> str:
        parts = [f"{state.value}={count}" for state, count in sorted(self.states.items(), key=lambda x: x[0].value)]
        return f"status={self.status} indexed={self.indexed} " + " ".join(parts) + f" ({self.duration_seconds:.2f}s)"


class DiscoveryMonitor:
    def __init__(
        self,
        chain,
        price_cache,
        sources: Sequence,
        adapters,
        risk_manager,
        executor,
        monitor_config,
        native_price_token: str,
        execution_enabled: bool = False,
        metrics=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.chain = chain
        self.price_cache = price_cache
        self.sources = list(sources)
        self.adapters = adapters
        self.risk_manager = risk_manager
        self.executor = executor
        self.config = monitor_config
        self.native_price_token = native_price_token
        self.execution_enabled = execution_enabled
        self.metrics = metrics
        self._sleep = sleep
        self.markets = MarketMetadataCache(monitor_config.market_retry.to_policy(), sleep=sleep)

        if not execution_enabled:
            logger.warning("Execution disabled: liquidatable candidates will be logged only (observation mode)")

    # ----- cycle -----

    async def run_cycle(self) -> CycleReport:
        started = time.monotonic()
        report = CycleReport()
        self.markets.start_cycle()

        try:
            snapshot = await self.snapshot()
        except (TransientRpcError, KeyError) as e:
            # Cannot price anything: end the cycle, the scheduler retries next tick.
            report.status = "error"
            report.error = f"market snapshot failed: {e}"
            logger.error(report.error)
            return self._finish(report, started)

        indexed = await self._collect()
        report.indexed = len(indexed)
        report.states[CandidateState.INDEXED] += len(indexed)

        await self._process(indexed, snapshot, report)
        return self._finish(report, started)

    async def bulk_scan(self, accounts: Sequence[str], protocol: Optional[str] = None) -> CycleReport:
        """
        Full-universe discovery: batched on-chain reads over ``accounts``.

        Hits below ``bulk_scan_health_threshold`` go through the same
        verification and risk path as index candidates.
        """
        started = time.monotonic()
        report = CycleReport()
        self.markets.start_cycle()

        try:
            snapshot = await self.snapshot()
        except (TransientRpcError, KeyError) as e:
            report.status = "error"
            report.error = f"market snapshot failed: {e}"
            logger.error(report.error)
            return self._finish(report, started)

        threshold = Decimal(str(self.config.bulk_scan_health_threshold))
        batch_size = self.config.bulk_scan_batch_size
        adapters = [self.adapters.get(protocol)] if protocol else list(self.adapters)

        hits: List[IndexedPosition] = []
        for adapter in adapters:
            for start in range(0, len(accounts), batch_size):
                chunk = list(accounts[start:start + batch_size])
                try:
                    found = await adapter.bulk_scan(chunk, snapshot, threshold)
                except TransientRpcError as e:
                    logger.warning(f"{adapter.name} bulk scan batch {start}-{start + len(chunk)} failed: {e}")
                    self._record_rpc_error(f"{adapter.name}_bulk_scan")
                    continue
                hits.extend(found)
                logger.info(
                    f"{adapter.name} bulk scan {start + len(chunk)}/{len(accounts)} accounts, "
                    f"{len(found)} below hf {threshold}"
                )
                if self.config.inter_item_delay_seconds:
                    await self._sleep(self.config.inter_item_delay_seconds)

        report.indexed = len(hits)
        report.states[CandidateState.INDEXED] += len(hits)
        await self._process(hits, snapshot, report)
        return self._finish(report, started)

    async def snapshot(self) -> MarketSnapshot:
        prices = await self.price_cache.refresh()
        gas_price = await self.chain.gas_price_wei()
        native_price = self.price_cache.usd_price(self.native_price_token, 18)
        snapshot = MarketSnapshot(
            prices=prices,
            gas_price_wei=gas_price,
            native_price_usd=native_price,
            taken_at=utc_now(),
        )
        self.executor.update_market(snapshot)
        return snapshot

    async def _collect(self) -> List[IndexedPosition]:
        positions: List[IndexedPosition] = []
        for source in self.sources:
            if source.protocol not in self.adapters:
                continue
            try:
                positions.extend(await source.fetch())
            except TransientRpcError as e:
                logger.warning(f"{source.protocol} index source unavailable this cycle: {e}")
                self._record_rpc_error(f"{source.protocol}_index")
        return positions

    async def _process(self, indexed: List[IndexedPosition], snapshot: MarketSnapshot, report: CycleReport) -> None:
        semaphore = asyncio.Semaphore(self.config.batch_size)

        async def worker(position: IndexedPosition) -> Optional[LiquidationCandidate]:
            async with semaphore:
                candidate = await self._verify_one(position, snapshot, report)
                if self.config.inter_item_delay_seconds:
                    await self._sleep(self.config.inter_item_delay_seconds)
                return candidate

        verified = await asyncio.gather(*(worker(position) for position in indexed))
        liquidatable = [c for c in verified if c is not None]
        if not liquidatable:
            return

        liquidatable.sort(key=lambda c: c.estimated_profit_usd, reverse=True)
        logger.info(f"{len(liquidatable)} liquidatable position(s) confirmed on-chain")

        approved: List[LiquidationCandidate] = []
        for candidate in liquidatable:
            try:
                validation = await self.risk_manager.validate(candidate)
            except Exception:
                logger.exception(f"Risk validation crashed for {candidate.retry_key}")
                report.states[CandidateState.SKIPPED] += 1
                continue
            if not validation.can_proceed:
                report.states[CandidateState.REJECTED] += 1
                continue
            if not self.execution_enabled:
                report.states[CandidateState.OBSERVED] += 1
                logger.info(
                    f"[OBSERVE] {candidate.protocol} {candidate.account} hf={candidate.health_factor:.4f} "
                    f"size=${candidate.size_usd:,.2f} est. profit=${candidate.estimated_profit_usd:,.2f}"
                )
                continue
            approved.append(candidate)

        if not approved:
            return

        results = await self.executor.execute_batch(approved)
        report.results.extend(results)
        for result in results:
            if result.attempted:
                report.states[CandidateState.EXECUTION_ATTEMPTED] += 1
                report.states[CandidateState.SUCCEEDED if result.success else CandidateState.FAILED] += 1
            elif result.channel == "dry_run":
                report.states[CandidateState.OBSERVED] += 1
            else:
                report.states[CandidateState.REJECTED] += 1

    async def _verify_one(self, position: IndexedPosition, snapshot: MarketSnapshot,
                          report: CycleReport) -> Optional[LiquidationCandidate]:
        """Candidate boundary: nothing raised here may abort the cycle."""
        label = f"{position.protocol}:{position.account}@{position.market}"
        try:
            adapter = self.adapters.get(position.protocol)
            market_info = await self.markets.get(adapter, position.market)
            verification = await adapter.verify(position, market_info, snapshot)
        except MarketUnavailable as e:
            logger.warning(f"Skipping {label}: {e}")
            report.states[CandidateState.SKIPPED] += 1
            return None
        except TransientRpcError as e:
            logger.warning(f"Skipping {label} this cycle: {e}")
            self._record_rpc_error(position.protocol)
            report.states[CandidateState.SKIPPED] += 1
            return None
        except DataIntegrityMismatch as e:
            logger.info(f"Index mismatch for {label}: {e.reason}")
            report.states[CandidateState.DATA_MISMATCH] += 1
            return None
        except Exception:
            logger.exception(f"Verification failed for {label}")
            report.states[CandidateState.SKIPPED] += 1
            return None

        report.states[verification.state] += 1
        if verification.state == CandidateState.DATA_MISMATCH:
            logger.info(f"Index mismatch for {label}: {verification.reason}")
        elif verification.state == CandidateState.SKIPPED:
            logger.debug(f"Skipped {label}: {verification.reason}")
        elif verification.is_liquidatable:
            candidate = verification.candidate
            logger.info(
                f"LIQUIDATABLE {label} hf={candidate.health_factor:.4f} size=${candidate.size_usd:,.2f} "
                f"reward=${candidate.gross_reward_usd:,.2f} gas=${candidate.estimated_gas_usd:,.2f}"
            )
            return candidate
        return None

    def _finish(self, report: CycleReport, started: float) -> CycleReport:
        report.duration_seconds = time.monotonic() - started
        if self.metrics is not None:
            for state, count in report.states.items():
                self.metrics.record_candidate_state(state.value, count)
            self.metrics.observe_cycle(CycleStats(
                status=report.status,
                indexed=report.indexed,
                liquidatable=report.count(CandidateState.VERIFIED_LIQUIDATABLE),
                executed=report.count(CandidateState.EXECUTION_ATTEMPTED),
                duration_seconds=report.duration_seconds,
            ))
        log = logger.error if report.status == "error" else logger.info
        log(f"Cycle complete: {report.summary()}")
        return report

    def _record_rpc_error(self, source: str) -> None:
        if self.metrics is not None:
            self.metrics.record_rpc_error(source)


__all__ = ["DiscoveryMonitor", "MarketMetadataCache", "CycleReport"]
