"""Tests for the Aave v3 adapter (debt model)."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from eth_abi import encode
from web3 import Web3

from core.config import AaveConfig
from core.exceptions import TransientRpcError
from core.models import CandidateState, ExecutionMode, IndexedPosition
from protocols.aave import AaveAdapter, LendingMarket, ReserveInfo, close_factor_bps
from protocols.abis import AAVE_ACCOUNT_DATA_TYPES, FLASH_LIQUIDATOR_ABI
from tests.helpers import BORROWER, USDC, WETH, ReadStub, make_chain, make_snapshot

POOL = "0x794a61358D6845594F94dc1DB02A252b5b4814aD"
LIQUIDATOR = "0x3333333333333333333333333333333333333333"
BASE = 10 ** 8
WAD = 10 ** 18

MARKET = LendingMarket(pool=POOL, reserves={
    WETH.lower(): ReserveInfo(WETH, 18, 8000, 500),
    USDC.lower(): ReserveInfo(USDC, 6, 8500, 450),
})


def _settings(**overrides):
    values = {
        "enabled": True,
        "pool": POOL,
        "oracle": "0xb56c2F0B653B2e0b10C9b928C8580Ac5Df02C7C7",
        "data_provider": "0x69FA688f1Dc47d4B5d8029D5a35FB7a548310654",
        "reserves": [WETH, USDC],
        "flash_liquidator": LIQUIDATOR,
    }
    values.update(overrides)
    return AaveConfig(**values)


def _account_data(health_factor, debt_usd=2500):
    return (3000 * BASE, debt_usd * BASE, 0, 8000, 7500, int(Decimal(str(health_factor)) * WAD))


def _reserve_row(a_token=0, variable_debt=0, collateral_enabled=False):
    return (a_token, 0, variable_debt, 0, 0, 0, 0, 0, collateral_enabled)


def _adapter(responses, mode=ExecutionMode.FLASH_LOAN, **settings):
    chain = make_chain()
    chain.read = ReadStub(responses)
    return AaveAdapter(chain, _settings(**settings), execution_mode=mode)


def _liquidatable_reads(health_factor):
    return {
        "getUserAccountData(": _account_data(health_factor),
        f"getUserReserveData({Web3.to_checksum_address(WETH)})": _reserve_row(a_token=WAD, collateral_enabled=True),
        f"getUserReserveData({Web3.to_checksum_address(USDC)})": _reserve_row(variable_debt=2500 * 10 ** 6),
        "getAssetsPrices": [3000 * BASE, 1 * BASE],
    }


def _indexed():
    return IndexedPosition(protocol="aave", account=BORROWER, market=POOL)


def test_close_factor():
    assert close_factor_bps(Decimal("0.96")) == 5000
    assert close_factor_bps(Decimal("0.95")) == 5000
    assert close_factor_bps(Decimal("0.9499")) == 10000


class TestVerify:
    def test_flash_loan_candidate_nets_out_premium(self):
        adapter = _adapter(_liquidatable_reads("0.96"))

        verification = asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot()))

        assert verification.is_liquidatable
        candidate = verification.candidate
        assert candidate.health_factor == Decimal("0.96")
        assert candidate.repay_token == Web3.to_checksum_address(USDC)
        assert candidate.seize_token == Web3.to_checksum_address(WETH)
        # 50% close factor of 2500 USDC
        assert candidate.repay_amount == 1250 * 10 ** 6
        # 5% bonus on $1250 minus 9 bps flash premium
        assert candidate.gross_reward_usd == Decimal("62.5") - Decimal("1.125")
        assert candidate.details["close_factor_bps"] == 5000
        assert candidate.metrics.health_factor == Decimal(2400) / Decimal(2500)
        # $1250 plus the 5% bonus, paid in WETH at $3000
        assert candidate.details["swap"].amount_in == 4375 * 10 ** 14
        assert candidate.details["swap"].token_out == Web3.to_checksum_address(USDC)

    def test_deep_underwater_uses_full_close_factor_in_wallet_mode(self):
        adapter = _adapter(_liquidatable_reads("0.90"), mode=ExecutionMode.WALLET)

        candidate = asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot())).candidate

        assert candidate.repay_amount == 2500 * 10 ** 6
        assert candidate.gross_reward_usd == Decimal(125)

    def test_healthy_account_stops_after_one_read(self):
        adapter = _adapter({"getUserAccountData(": _account_data("1.2")})

        verification = asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot()))

        assert verification.state == CandidateState.VERIFIED_HEALTHY
        assert adapter.chain.read.labels == [f"getUserAccountData({BORROWER})"]

    def test_no_debt_is_index_mismatch(self):
        adapter = _adapter({"getUserAccountData(": (0, 0, 0, 0, 0, 2 ** 256 - 1)})

        verification = asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot()))

        assert verification.state == CandidateState.DATA_MISMATCH

    def test_collateral_outside_configured_reserves_is_skipped(self):
        reads = _liquidatable_reads("0.9")
        reads[f"getUserReserveData({Web3.to_checksum_address(WETH)})"] = _reserve_row(a_token=WAD)
        adapter = _adapter(reads)

        verification = asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot()))

        assert verification.state == CandidateState.SKIPPED

    def test_current_health_factor(self):
        adapter = _adapter({"getUserAccountData(": _account_data("1.01")})
        candidate = asyncio.run(_adapter(_liquidatable_reads("0.96")).verify(
            _indexed(), MARKET, make_snapshot())).candidate

        assert asyncio.run(adapter.current_health_factor(candidate)) == Decimal("1.01")


class TestLoadMarket:
    def test_reserve_configuration(self):
        adapter = _adapter({
            f"getReserveConfigurationData({Web3.to_checksum_address(WETH)})": (18, 8000, 8250, 10500, 1500, True),
            f"getReserveConfigurationData({Web3.to_checksum_address(USDC)})": (6, 7500, 7800, 0, 1000, True),
        })

        market = asyncio.run(adapter.load_market(POOL))

        assert market.reserve(WETH).liquidation_threshold_bps == 8250
        assert market.reserve(WETH).liquidation_bonus_bps == 500
        # Unreadable bonus falls back to the configured value
        assert market.reserve(USDC).liquidation_bonus_bps == 1000
        assert market.reserve(USDC).decimals == 6

    def test_read_failure_propagates(self):
        adapter = _adapter({"getReserveConfigurationData(": TransientRpcError("getReserveConfigurationData")})

        with pytest.raises(TransientRpcError):
            asyncio.run(adapter.load_market(POOL))


class TestBuildCall:
    def _candidate(self, mode):
        adapter = _adapter(_liquidatable_reads("0.96"), mode=mode)
        return adapter, asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot())).candidate

    def test_wallet_mode_calls_pool_directly(self):
        adapter, candidate = self._candidate(ExecutionMode.WALLET)

        call = asyncio.run(adapter.build_liquidation_call(candidate))

        assert call.to == Web3.to_checksum_address(POOL)
        assert call.value == 0
        func, params = adapter.pool.decode_function_input(call.data)
        assert func.fn_name == "liquidationCall"
        assert params["collateralAsset"] == Web3.to_checksum_address(WETH)
        assert params["debtAsset"] == Web3.to_checksum_address(USDC)
        assert params["user"] == BORROWER
        assert params["debtToCover"] == 1250 * 10 ** 6
        assert params["receiveAToken"] is False

    def test_flash_loan_mode_calls_liquidator_contract(self):
        adapter, candidate = self._candidate(ExecutionMode.FLASH_LOAN)

        call = asyncio.run(adapter.build_liquidation_call(candidate))

        assert call.to == LIQUIDATOR
        liquidator = adapter.chain.contract(LIQUIDATOR, FLASH_LIQUIDATOR_ABI)
        func, params = liquidator.decode_function_input(call.data)
        assert func.fn_name == "executeLiquidation"
        assert params["poolFee"] == 3000
        assert params["debtToCover"] == 1250 * 10 ** 6

    def test_flash_loan_uses_quoted_fee_tier(self):
        adapter, candidate = self._candidate(ExecutionMode.FLASH_LOAN)
        candidate.details["swap_fee_tier"] = 500

        call = asyncio.run(adapter.build_liquidation_call(candidate))

        liquidator = adapter.chain.contract(LIQUIDATOR, FLASH_LIQUIDATOR_ABI)
        _, params = liquidator.decode_function_input(call.data)
        assert params["poolFee"] == 500

    def test_flash_loan_mode_requires_liquidator(self):
        chain = make_chain()
        chain.read = ReadStub(_liquidatable_reads("0.96"))
        adapter = AaveAdapter(chain, _settings(flash_liquidator=None))
        candidate = asyncio.run(adapter.verify(_indexed(), MARKET, make_snapshot())).candidate

        with pytest.raises(ValueError, match="flash_liquidator"):
            asyncio.run(adapter.build_liquidation_call(candidate))


class TestBulkScan:
    def test_filters_by_threshold_and_debt(self):
        def account_data(health_factor, debt_usd):
            return encode(AAVE_ACCOUNT_DATA_TYPES, list(_account_data(health_factor, debt_usd)))

        accounts = ["0x" + c * 40 for c in "1234"]
        adapter = _adapter({})
        adapter.chain.multicall = AsyncMock(return_value=[
            (True, account_data("1.02", 2500)),
            (True, account_data("2.0", 2500)),
            (True, encode(AAVE_ACCOUNT_DATA_TYPES, [0, 0, 0, 0, 0, 2 ** 256 - 1])),
            (False, b""),
        ])

        hits = asyncio.run(adapter.bulk_scan(accounts, make_snapshot(), Decimal("1.05")))

        assert [h.account for h in hits] == [accounts[0]]
        assert hits[0].indexed_size_usd == 2500.0
        assert hits[0].market == Web3.to_checksum_address(POOL)
        assert hits[0].meta("bulk_scan_hf") == "1.02"
