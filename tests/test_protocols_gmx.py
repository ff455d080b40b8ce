"""
Tests for the GMX v2 adapter.

Chain reads are answered by label through ReadStub; contract encoding uses
real web3 contract objects (no network needed).
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest
from eth_abi import encode
from web3 import Web3
from web3.exceptions import ContractLogicError

from core.config import GmxConfig
from core.exceptions import MarketUnavailable, TransientRpcError
from core.models import CandidateState, IndexedPosition, ProtocolParams
from protocols.abis import GMX_POSITION_PROPS_TYPE
from protocols.gmx import (
    LIQUIDATABLE_HF_CAP,
    GmxAdapter,
    MarketInfo,
    authoritative_health_factor,
    pending_fee_amount,
    position_key,
)
from tests.helpers import BORROWER, GMX_MARKET, USDC, WETH, ReadStub, make_chain, make_snapshot

USD = 10 ** 30
GMX_SETTINGS = {
    "data_store": "0xFD70de6b91282D8017aA4E741e9Ae325CAb992d8",
    "reader": "0xf60becbba223EEA9495Da3f606753867eC10d139",
    "exchange_router": "0x7C68C7866A64FA2160F78EEaE12217FFbf871fa8",
    "order_vault": "0x31eF83a530Fde1B38EE9A18093A333D8Bbbc40D5",
    "referral_storage": "0xe6fab3F0c7199b0d34d7FbE83394fc0e0D06e99d",
}
MARKET_INFO = MarketInfo(market_token=GMX_MARKET, index_token=WETH, long_token=WETH, short_token=USDC)


def _raw_position(size_usd=100_000, collateral_usdc=1000, is_long=True, account=BORROWER,
                  borrowing_factor=0, funding_per_size=0):
    numbers = (size_usd * USD, 33 * 10 ** 18, collateral_usdc * 10 ** 6, borrowing_factor, funding_per_size,
               0, 0, 0, 0)
    return ((account.lower(), GMX_MARKET.lower(), USDC.lower()), numbers, (is_long,))


def _liquidation_info(liquidatable, min_usd=1000, collateral_usd=950, factor=10 ** 28):
    return (liquidatable, "min collateral" if liquidatable else "", (min_usd * USD, collateral_usd * USD, factor, 0))


def _adapter(responses, price_cache=None):
    chain = make_chain()
    # No fees accrued unless a test says otherwise
    chain.read = ReadStub({"cumulativeBorrowingFactor(": 0, "fundingFeeAmountPerSize(": 0, **responses})
    return GmxAdapter(chain, GmxConfig(**GMX_SETTINGS), price_cache or Mock())


def _indexed(**overrides):
    values = {"protocol": "gmx", "account": BORROWER, "market": GMX_MARKET, "collateral_token": USDC,
              "is_long": True}
    values.update(overrides)
    return IndexedPosition(**values)


class TestHelpers:
    def test_position_key_is_case_insensitive_and_direction_specific(self):
        key = position_key(BORROWER, GMX_MARKET, USDC, True)

        assert len(key) == 32
        assert key == position_key(BORROWER.lower(), GMX_MARKET.lower(), USDC.lower(), True)
        assert key != position_key(BORROWER, GMX_MARKET, USDC, False)

    @pytest.mark.parametrize(
        "liquidatable, min_usd, collateral_usd, expected",
        [
            (True, 1000, 950, Decimal("0.95")),
            (False, 1000, 2000, Decimal(2)),
            (True, 1000, 1200, LIQUIDATABLE_HF_CAP),
            (False, 1000, 900, Decimal(1)),
            (False, 0, 500, Decimal("Infinity")),
            (True, 1000, -50, Decimal(0)),
        ],
    )
    def test_health_factor_agrees_with_contract_verdict(self, liquidatable, min_usd, collateral_usd, expected):
        assert authoritative_health_factor(liquidatable, min_usd, collateral_usd) == expected

    def test_pending_fees_in_collateral_units(self):
        usdc_unit_price = 10 ** 24

        # 0.05% cumulative borrowing on 100k = $50
        assert pending_fee_amount(100_000 * USD, 5 * 10 ** 26, 0, usdc_unit_price) == 50 * 10 ** 6
        # funding per size carries 1e45 precision
        assert pending_fee_amount(100_000 * USD, 0, 10 ** 17, usdc_unit_price) == 10 * 10 ** 6
        assert pending_fee_amount(100_000 * USD, -1, -1, usdc_unit_price) == 0


class TestVerify:
    def test_liquidatable_position_becomes_candidate(self):
        adapter = _adapter({
            "getPosition(": _raw_position(),
            "isPositionLiquidatable": _liquidation_info(True),
        })

        verification = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot()))

        assert verification.is_liquidatable
        candidate = verification.candidate
        assert candidate.health_factor == Decimal("0.95")
        assert candidate.repay_token == WETH
        assert candidate.seize_token == Web3.to_checksum_address(USDC)
        assert candidate.size_usd == Decimal(100_000)
        # 5% of notional
        assert candidate.gross_reward_usd == Decimal(5000)
        # 300k gas * 0.1 gwei * $3000
        assert candidate.estimated_gas_usd == Decimal("0.09")
        assert candidate.position_key == Web3.to_hex(position_key(BORROWER, GMX_MARKET, USDC, True))
        assert candidate.details["params_source"] == "live"

    def test_accrued_fees_lower_local_health(self):
        adapter = _adapter({
            "getPosition(": _raw_position(borrowing_factor=10 ** 27),
            "cumulativeBorrowingFactor(": 15 * 10 ** 26,
            "isPositionLiquidatable": _liquidation_info(True),
        })

        candidate = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot())).candidate

        assert candidate.position.fees_owed == 50 * 10 ** 6
        # (1000 - 50) / (100,000 * 1%)
        assert candidate.metrics.health_factor == Decimal("0.95")
        assert candidate.metrics.collateral_value_usd == Decimal(950)

    def test_fee_read_failure_assumes_no_fees(self):
        adapter = _adapter({
            "getPosition(": _raw_position(borrowing_factor=10 ** 27),
            "cumulativeBorrowingFactor(": TransientRpcError("getUint"),
            "isPositionLiquidatable": _liquidation_info(True),
        })

        candidate = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot())).candidate

        assert candidate.position.fees_owed == 0
        assert candidate.metrics.health_factor == Decimal(1)

    def test_healthy_position(self):
        adapter = _adapter({
            "getPosition(": _raw_position(collateral_usdc=5000),
            "isPositionLiquidatable": _liquidation_info(False, collateral_usd=5000),
        })

        verification = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot()))

        assert verification.state == CandidateState.VERIFIED_HEALTHY
        assert verification.candidate is None

    def test_closed_position_is_index_mismatch(self):
        adapter = _adapter({"getPosition(": _raw_position(size_usd=0)})

        verification = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot()))

        assert verification.state == CandidateState.DATA_MISMATCH
        assert adapter.chain.read.count("isPositionLiquidatable") == 0

    def test_row_without_direction_is_skipped(self):
        adapter = _adapter({})

        verification = asyncio.run(adapter.verify(_indexed(is_long=None), MARKET_INFO, make_snapshot()))

        assert verification.state == CandidateState.SKIPPED
        assert adapter.chain.read.labels == []

    def test_missing_market_price_is_skipped(self):
        adapter = _adapter({"getPosition(": _raw_position()})
        snapshot = make_snapshot(prices={WETH.lower(): make_snapshot().prices[WETH.lower()]})

        verification = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, snapshot))

        assert verification.state == CandidateState.SKIPPED

    def test_transient_read_failure_propagates(self):
        adapter = _adapter({"getPosition(": TransientRpcError("getPosition")})

        with pytest.raises(TransientRpcError):
            asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot()))

    def test_current_health_factor_rereads_contract(self):
        adapter = _adapter({
            "getPosition(": _raw_position(),
            "isPositionLiquidatable": _liquidation_info(True),
        })
        candidate = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot())).candidate
        adapter.price_cache.refresh = AsyncMock(return_value=make_snapshot().prices)
        adapter.chain.read.responses["isPositionLiquidatable"] = _liquidation_info(False, collateral_usd=1100)

        assert asyncio.run(adapter.current_health_factor(candidate)) == Decimal("1.1")
        adapter.price_cache.refresh.assert_awaited_once()


class TestMarketAndParams:
    def test_load_market(self):
        adapter = _adapter({
            "getMarket(": (GMX_MARKET.lower(), WETH.lower(), WETH.lower(), USDC.lower()),
            "decimals(": 18,
        })

        info = asyncio.run(adapter.load_market(GMX_MARKET))

        checksum = Web3.to_checksum_address
        assert info == MarketInfo(checksum(GMX_MARKET), checksum(WETH), checksum(WETH), checksum(USDC), 18)

    def test_synthetic_index_token_defaults_to_18_decimals(self):
        adapter = _adapter({
            "getMarket(": (GMX_MARKET, "0x47904963fc8b2340414262125aF798B9655E58Cd", WETH, USDC),
            "decimals(": ContractLogicError("execution reverted"),
        })

        assert asyncio.run(adapter.load_market(GMX_MARKET)).index_decimals == 18

    def test_unknown_market_is_unavailable(self):
        adapter = _adapter({"getMarket(": ("0x" + "0" * 40,) * 4})

        with pytest.raises(MarketUnavailable):
            asyncio.run(adapter.load_market(GMX_MARKET))

    def test_live_min_collateral_factor_is_cached(self):
        adapter = _adapter({"minCollateralFactor(": 5 * 10 ** 27})

        first = asyncio.run(adapter.read_params(GMX_MARKET))
        second = asyncio.run(adapter.read_params(GMX_MARKET.lower()))

        assert first == ProtocolParams(min_collateral_factor=5 * 10 ** 27, source="live")
        assert second is first
        assert adapter.chain.read.count("minCollateralFactor(") == 1

    def test_unset_factor_uses_configured_fallback(self):
        adapter = _adapter({"minCollateralFactor(": 0})

        params = asyncio.run(adapter.read_params(GMX_MARKET))

        assert params.min_collateral_factor == 10 ** 28
        assert params.source == "configured"

    def test_failed_read_falls_back_without_caching(self):
        adapter = _adapter({"minCollateralFactor(": TransientRpcError("getUint")})

        asyncio.run(adapter.read_params(GMX_MARKET))
        params = asyncio.run(adapter.read_params(GMX_MARKET))

        assert params.source == "configured"
        assert adapter.chain.read.count("minCollateralFactor(") == 2


class TestBuildCall:
    def test_liquidation_order_is_multicall_through_router(self):
        adapter = _adapter({
            "getPosition(": _raw_position(),
            "isPositionLiquidatable": _liquidation_info(True),
        })
        candidate = asyncio.run(adapter.verify(_indexed(), MARKET_INFO, make_snapshot())).candidate
        fee = 300_000 * 10 ** 8

        call = asyncio.run(adapter.build_liquidation_call(candidate, fee))

        assert call.to == Web3.to_checksum_address(GMX_SETTINGS["exchange_router"])
        assert call.value == fee
        func, params = adapter.router.decode_function_input(call.data)
        assert func.fn_name == "multicall"
        send_wnt, create_order = params["data"]
        wnt_func, wnt_params = adapter.router.decode_function_input(send_wnt)
        assert wnt_func.fn_name == "sendWnt"
        assert wnt_params["receiver"] == Web3.to_checksum_address(GMX_SETTINGS["order_vault"])
        assert wnt_params["amount"] == fee
        order_func, _ = adapter.router.decode_function_input(create_order)
        assert order_func.fn_name == "createOrder"


class TestBulkScan:
    def test_hits_below_threshold(self):
        near = _raw_position(collateral_usdc=1000)
        safe = _raw_position(collateral_usdc=3000, is_long=False)
        closed = _raw_position(size_usd=0)
        payload = encode([f"{GMX_POSITION_PROPS_TYPE}[]"], [[near, safe, closed]])

        adapter = _adapter({"minCollateralFactor(": 10 ** 28})
        adapter.chain.multicall = AsyncMock(return_value=[(True, payload), (False, b"")])
        other = "0x2222222222222222222222222222222222222222"

        hits = asyncio.run(adapter.bulk_scan([BORROWER, other], make_snapshot(), Decimal("1.05")))

        assert len(hits) == 1
        assert hits[0].account == BORROWER
        assert hits[0].is_long is True
        assert hits[0].collateral_token == Web3.to_checksum_address(USDC)
        assert hits[0].meta("bulk_scan_hf") == "1"
        assert len(adapter.chain.multicall.await_args.args[0]) == 2

    def test_fees_push_position_under_threshold(self):
        near = _raw_position(collateral_usdc=1050)
        other = _raw_position(collateral_usdc=5000, account="0x2222222222222222222222222222222222222222")
        payload = encode([f"{GMX_POSITION_PROPS_TYPE}[]"], [[near, other]])

        adapter = _adapter({"minCollateralFactor(": 10 ** 28, "cumulativeBorrowingFactor(": 5 * 10 ** 26})
        adapter.chain.multicall = AsyncMock(return_value=[(True, payload)])

        hits = asyncio.run(adapter.bulk_scan([BORROWER], make_snapshot(), Decimal("1.05")))

        # 1050 collateral alone would sit exactly on the threshold; $50 of fees drops it to 1.0
        assert [hit.account for hit in hits] == [BORROWER]
        assert hits[0].meta("bulk_scan_hf") == "1"
        assert adapter.chain.read.count("cumulativeBorrowingFactor(") == 1
