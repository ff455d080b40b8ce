"""
Tests for the discovery monitor cycle: index -> verify -> risk -> execute/observe.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

from core.config import MonitorConfig
from core.exceptions import DataIntegrityMismatch, TransientRpcError
from core.models import (
    CandidateState,
    IndexedPosition,
    LiquidationCandidate,
    LiquidationResult,
    RiskCheckResult,
    RiskCheckType,
    RiskValidationResult,
)
from core.monitor import DiscoveryMonitor
from infra.metrics import MetricsRecorder
from protocols.base import Verification
from protocols.registry import AdapterRegistry
from tests.helpers import GMX_MARKET, WETH, FakeAdapter, make_candidate, make_fake_chain, make_snapshot


def _indexed(account: str, market: str = GMX_MARKET) -> IndexedPosition:
    return IndexedPosition(protocol="gmx", account=account, market=market)


def _source(*positions, protocol="gmx", error=None):
    source = Mock()
    source.protocol = protocol
    source.fetch = AsyncMock(return_value=list(positions), side_effect=error)
    return source


def _verifier(outcomes):
    """Map account -> candidate | CandidateState | exception."""

    async def verify(position, market_info, snapshot):
        outcome = outcomes[position.account]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, LiquidationCandidate):
            return Verification(CandidateState.VERIFIED_LIQUIDATABLE, position, candidate=outcome)
        return Verification(outcome, position, reason=outcome.value)

    return verify


def _price_cache():
    cache = Mock()
    cache.refresh = AsyncMock(return_value=make_snapshot().prices)
    cache.usd_price = Mock(return_value=Decimal(3000))
    return cache


def _monitor(sources, outcomes=None, adapter=None, risk_manager=None, executor=None, execution_enabled=False,
             price_cache=None, metrics=None, **config):
    adapter = adapter or FakeAdapter()
    if outcomes is not None:
        adapter.verify.side_effect = _verifier(outcomes)
    registry = AdapterRegistry()
    registry.register(adapter)

    if risk_manager is None:
        risk_manager = Mock()
        risk_manager.validate = AsyncMock(return_value=RiskValidationResult())
    if executor is None:
        executor = Mock()
        executor.execute_batch = AsyncMock(side_effect=lambda cs: [
            LiquidationResult(success=True, tx_hash="0x01", candidate_key=c.retry_key) for c in cs
        ])

    settings = {"inter_item_delay_seconds": 0}
    settings.update(config)
    return DiscoveryMonitor(
        make_fake_chain(),
        price_cache or _price_cache(),
        sources,
        registry,
        risk_manager,
        executor,
        MonitorConfig(**settings),
        native_price_token=WETH,
        execution_enabled=execution_enabled,
        metrics=metrics,
        sleep=AsyncMock(),
    )


class TestCycle:
    def test_observation_mode_logs_only(self):
        outcomes = {"0xA": make_candidate(account="0xA"), "0xB": CandidateState.VERIFIED_HEALTHY}
        monitor = _monitor([_source(_indexed("0xA"), _indexed("0xB"))], outcomes)

        report = asyncio.run(monitor.run_cycle())

        assert report.status == "ok"
        assert report.indexed == 2
        assert report.count(CandidateState.VERIFIED_LIQUIDATABLE) == 1
        assert report.count(CandidateState.VERIFIED_HEALTHY) == 1
        assert report.count(CandidateState.OBSERVED) == 1
        monitor.executor.execute_batch.assert_not_awaited()
        monitor.executor.update_market.assert_called_once()

    def test_approved_candidates_execute_most_profitable_first(self):
        small = make_candidate(account="0xA", gross_reward_usd="10")
        large = make_candidate(account="0xB", gross_reward_usd="40")
        monitor = _monitor([_source(_indexed("0xA"), _indexed("0xB"))], {"0xA": small, "0xB": large},
                           execution_enabled=True)

        report = asyncio.run(monitor.run_cycle())

        batch = monitor.executor.execute_batch.await_args.args[0]
        assert [c.account for c in batch] == ["0xB", "0xA"]
        assert report.count(CandidateState.EXECUTION_ATTEMPTED) == 2
        assert report.count(CandidateState.SUCCEEDED) == 2
        assert len(report.results) == 2

    def test_risk_rejection_is_not_executed(self):
        rejected = RiskValidationResult(checks=[
            RiskCheckResult(passed=False, check_type=RiskCheckType.GAS_PRICE_SPIKE, reason="gas")
        ])
        risk_manager = Mock()
        risk_manager.validate = AsyncMock(return_value=rejected)
        monitor = _monitor([_source(_indexed("0xA"))], {"0xA": make_candidate(account="0xA")},
                           risk_manager=risk_manager, execution_enabled=True)

        report = asyncio.run(monitor.run_cycle())

        assert report.count(CandidateState.REJECTED) == 1
        monitor.executor.execute_batch.assert_not_awaited()

    def test_not_attempted_results_count_as_rejected(self):
        executor = Mock()
        executor.execute_batch = AsyncMock(return_value=[
            LiquidationResult(success=False, attempted=False, error="preflight"),
        ])
        monitor = _monitor([_source(_indexed("0xA"))], {"0xA": make_candidate(account="0xA")},
                           executor=executor, execution_enabled=True)

        report = asyncio.run(monitor.run_cycle())

        assert report.count(CandidateState.REJECTED) == 1
        assert report.count(CandidateState.EXECUTION_ATTEMPTED) == 0

    def test_candidate_errors_never_abort_the_cycle(self):
        outcomes = {
            "0x1": TransientRpcError("getPositionInfo"),
            "0x2": DataIntegrityMismatch("0x2", "position closed"),
            "0x3": RuntimeError("decoder bug"),
            "0x4": make_candidate(account="0x4"),
            "0x5": CandidateState.DATA_MISMATCH,
        }
        monitor = _monitor([_source(*(_indexed(a) for a in outcomes))], outcomes)

        report = asyncio.run(monitor.run_cycle())

        assert report.status == "ok"
        assert report.count(CandidateState.SKIPPED) == 2
        assert report.count(CandidateState.DATA_MISMATCH) == 2
        assert report.count(CandidateState.OBSERVED) == 1

    def test_snapshot_failure_ends_cycle(self):
        cache = _price_cache()
        cache.refresh.side_effect = TransientRpcError("price feed")
        source = _source(_indexed("0xA"))
        monitor = _monitor([source], price_cache=cache)

        report = asyncio.run(monitor.run_cycle())

        assert report.status == "error"
        assert "snapshot" in report.error
        source.fetch.assert_not_awaited()

    def test_unavailable_index_source_is_skipped(self):
        broken = _source(error=TransientRpcError("subgraph HTTP 502"))
        healthy = _source(_indexed("0xA"))
        other_protocol = _source(_indexed("0xC"), protocol="aave")
        monitor = _monitor([broken, healthy, other_protocol], {"0xA": CandidateState.VERIFIED_HEALTHY})

        report = asyncio.run(monitor.run_cycle())

        assert report.indexed == 1
        other_protocol.fetch.assert_not_awaited()

    def test_cycle_stats_reach_metrics(self):
        metrics = MetricsRecorder(enabled=False)
        monitor = _monitor([_source(_indexed("0xA"))], {"0xA": make_candidate(account="0xA")}, metrics=metrics)

        asyncio.run(monitor.run_cycle())

        assert metrics.last_cycle.status == "ok"
        assert metrics.last_cycle.indexed == 1
        assert metrics.last_cycle.liquidatable == 1


class TestMarketMetadata:
    def test_failed_market_skipped_for_rest_of_cycle(self):
        adapter = FakeAdapter()
        adapter.load_market.side_effect = TransientRpcError("getMarket")
        monitor = _monitor(
            [_source(_indexed("0xA"), _indexed("0xB"))],
            {"0xA": CandidateState.VERIFIED_HEALTHY, "0xB": CandidateState.VERIFIED_HEALTHY},
            adapter=adapter,
            market_retry={"base_delay_seconds": 0.1, "max_delay_seconds": 0.1, "max_attempts": 2, "jitter": False},
        )

        report = asyncio.run(monitor.run_cycle())

        assert report.count(CandidateState.SKIPPED) == 2
        assert adapter.load_market.await_count == 2
        adapter.verify.assert_not_awaited()

        asyncio.run(monitor.run_cycle())
        assert adapter.load_market.await_count == 4

    def test_loaded_market_is_cached_across_cycles(self):
        adapter = FakeAdapter()
        monitor = _monitor([_source(_indexed("0xA"), _indexed("0xB"))],
                           {"0xA": CandidateState.VERIFIED_HEALTHY, "0xB": CandidateState.VERIFIED_HEALTHY},
                           adapter=adapter)

        asyncio.run(monitor.run_cycle())
        asyncio.run(monitor.run_cycle())

        adapter.load_market.assert_awaited_once_with(GMX_MARKET)
        assert len(monitor.markets) == 1


class TestBulkScan:
    def test_batches_accounts_and_verifies_hits(self):
        adapter = FakeAdapter()
        adapter.bulk_scan.side_effect = [
            [_indexed("0xA")],
            TransientRpcError("multicall"),
            [],
        ]
        monitor = _monitor([], {"0xA": make_candidate(account="0xA")}, adapter=adapter, bulk_scan_batch_size=2)

        report = asyncio.run(monitor.bulk_scan(["0xA", "0xB", "0xC", "0xD", "0xE"], protocol="gmx"))

        assert adapter.bulk_scan.await_count == 3
        assert adapter.bulk_scan.await_args_list[0].args[0] == ["0xA", "0xB"]
        assert adapter.bulk_scan.await_args_list[2].args[0] == ["0xE"]
        assert adapter.bulk_scan.await_args_list[0].args[2] == Decimal("1.05")
        assert report.indexed == 1
        assert report.count(CandidateState.OBSERVED) == 1
