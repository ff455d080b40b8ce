"""
GMX v2 (synthetics) adapter - margin/perpetual model.

Ground truth comes from Reader.isPositionLiquidatable, evaluated with the
keeper price feed. The live maintenance margin (minCollateralFactor) is taken
from that call, or from the DataStore MIN_COLLATERAL_FACTOR key; the configured
bps value is only a fallback when both reads fail.

Fees owed (borrowing plus funding) are the market cumulative factors in the
DataStore minus the checkpoints stored on the position.
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from core.chain import ChainContext
from core.exceptions import MarketUnavailable, TransientRpcError
from core.health import evaluate
from core.models import (
    BPS,
    INFINITY,
    CandidateState,
    ExecutionMode,
    IndexedPosition,
    LiquidationCandidate,
    MarginPosition,
    MarketSnapshot,
    PriceMap,
    ProtocolParams,
)
from core.prices import PriceCache
from protocols.abis import (
    ERC20_ABI,
    GMX_DATASTORE_ABI,
    GMX_EXCHANGE_ROUTER_ABI,
    GMX_POSITION_PROPS_TYPE,
    GMX_READER_ABI,
)
from protocols.base import LiquidationCall, ProtocolAdapter, Verification

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = b"\x00" * 32
ORDER_TYPE_LIQUIDATION = 7
DECREASE_SWAP_NO_SWAP = 0
MAX_POSITIONS_PER_ACCOUNT = 100
# Contract says liquidatable but collateral/min ratio is >= 1 (min collateral USD rule).
LIQUIDATABLE_HF_CAP = Decimal("0.9999")

_MIN_COLLATERAL_FACTOR = Web3.keccak(encode(["string"], ["MIN_COLLATERAL_FACTOR"]))
_CUMULATIVE_BORROWING_FACTOR = Web3.keccak(encode(["string"], ["CUMULATIVE_BORROWING_FACTOR"]))
_FUNDING_FEE_AMOUNT_PER_SIZE = Web3.keccak(encode(["string"], ["FUNDING_FEE_AMOUNT_PER_SIZE"]))

FLOAT_PRECISION = 10 ** 30
# Funding amounts per size carry an extra 1e15 (FLOAT_PRECISION_SQRT).
FUNDING_AMOUNT_DIVISOR = FLOAT_PRECISION * 10 ** 15


def position_key(account: str, market: str, collateral_token: str, is_long: bool) -> bytes:
    """keccak256(abi.encode(account, market, collateralToken, isLong))"""
    return bytes(Web3.keccak(encode(
        ["address", "address", "address", "bool"],
        [
            Web3.to_checksum_address(account),
            Web3.to_checksum_address(market),
            Web3.to_checksum_address(collateral_token),
            bool(is_long),
        ],
    )))


def min_collateral_factor_key(market: str) -> bytes:
    return bytes(Web3.keccak(encode(["bytes32", "address"], [_MIN_COLLATERAL_FACTOR, Web3.to_checksum_address(market)])))


def cumulative_borrowing_factor_key(market: str, is_long: bool) -> bytes:
    return bytes(Web3.keccak(encode(
        ["bytes32", "address", "bool"],
        [_CUMULATIVE_BORROWING_FACTOR, Web3.to_checksum_address(market), bool(is_long)],
    )))


def funding_fee_amount_per_size_key(market: str, collateral_token: str, is_long: bool) -> bytes:
    return bytes(Web3.keccak(encode(
        ["bytes32", "address", "address", "bool"],
        [
            _FUNDING_FEE_AMOUNT_PER_SIZE,
            Web3.to_checksum_address(market),
            Web3.to_checksum_address(collateral_token),
            bool(is_long),
        ],
    )))


def pending_fee_amount(size_in_usd: int, borrowing_factor_delta: int, funding_per_size_delta: int,
                       collateral_price_min: int) -> int:
    """
    Borrowing plus funding fees owed, in collateral token base units.

    Deltas are the market's cumulative values minus the checkpoints stored on
    the position; negative deltas (stale reads) count as zero.
    """
    borrowing_usd = size_in_usd * max(borrowing_factor_delta, 0) // FLOAT_PRECISION
    # Rounded up, like the contract charges it.
    borrowing_amount = -(-borrowing_usd // collateral_price_min) if collateral_price_min > 0 else 0
    funding_amount = size_in_usd * max(funding_per_size_delta, 0) // FUNDING_AMOUNT_DIVISOR
    return borrowing_amount + funding_amount


def authoritative_health_factor(is_liquidatable: bool, min_collateral_usd: int, collateral_usd: int) -> Decimal:
    """
    Health factor from the Reader's liquidation info, reconciled with its verdict.

    The boolean is authoritative; the ratio is clamped so that HF < 1 iff
    the contract says the position is liquidatable.
    """
    if min_collateral_usd <= 0:
        hf = INFINITY
    else:
        hf = Decimal(max(collateral_usd, 0)) / Decimal(min_collateral_usd)
    if is_liquidatable and hf >= 1:
        return LIQUIDATABLE_HF_CAP
    if not is_liquidatable and hf < 1:
        return Decimal(1)
    return hf


@dataclass(frozen=True)
class MarketInfo:
    market_token: str
    index_token: str
    long_token: str
    short_token: str
    index_decimals: int = 18

    def as_props(self) -> Tuple[str, str, str, str]:
        return (self.market_token, self.index_token, self.long_token, self.short_token)


class GmxAdapter(ProtocolAdapter):
    name = "gmx"
    model = "margin"

    def __init__(self, chain: ChainContext, config: Any, price_cache: PriceCache,
                 execution_mode: ExecutionMode = ExecutionMode.FLASH_LOAN):
        super().__init__(chain, config, execution_mode)
        self.price_cache = price_cache
        self.reader = chain.contract(config.reader, GMX_READER_ABI)
        self.data_store = chain.contract(config.data_store, GMX_DATASTORE_ABI)
        self.router = chain.contract(config.exchange_router, GMX_EXCHANGE_ROUTER_ABI)
        self._params: Dict[str, ProtocolParams] = {}

    # ----- metadata / params -----

    async def load_market(self, market: str) -> MarketInfo:
        market = Web3.to_checksum_address(market)
        props = await self.chain.read(
            lambda: self.reader.functions.getMarket(self.config.data_store, market).call(),
            f"getMarket({market})",
        )
        market_token, index_token, long_token, short_token = props
        if int(market_token, 16) == 0:
            raise MarketUnavailable(market, ValueError("market not registered"))
        return MarketInfo(
            market_token=Web3.to_checksum_address(market_token),
            index_token=Web3.to_checksum_address(index_token),
            long_token=Web3.to_checksum_address(long_token),
            short_token=Web3.to_checksum_address(short_token),
            index_decimals=await self._token_decimals(index_token),
        )

    async def _token_decimals(self, token: str) -> int:
        erc20 = self.chain.contract(token, ERC20_ABI)
        try:
            return int(await self.chain.read(lambda: erc20.functions.decimals().call(), f"decimals({token})"))
        except (BadFunctionCallOutput, ContractLogicError):
            # Synthetic index tokens have no contract behind them.
            return 18

    async def read_params(self, market: str) -> ProtocolParams:
        key = market.lower()
        cached = self._params.get(key)
        if cached is not None:
            return cached

        slot = min_collateral_factor_key(market)
        try:
            value = int(await self.chain.read(
                lambda: self.data_store.functions.getUint(slot).call(), f"minCollateralFactor({market})"
            ))
        except (TransientRpcError, ContractLogicError) as e:
            logger.warning(f"MIN_COLLATERAL_FACTOR read failed for {market}, using configured fallback: {e}")
            return ProtocolParams.from_bps(self.config.min_collateral_factor_bps)

        if value <= 0:
            logger.warning(f"MIN_COLLATERAL_FACTOR unset for {market}, using configured fallback")
            params = ProtocolParams.from_bps(self.config.min_collateral_factor_bps)
        else:
            params = ProtocolParams(min_collateral_factor=value, source="live")
        self._params[key] = params
        return params

    # ----- reads -----

    @staticmethod
    def _market_prices(info: MarketInfo, prices: PriceMap):
        def band(token: str):
            price = prices.get(token.lower())
            if price is None:
                raise KeyError(f"no price for {token}")
            return (price.min, price.max)
        return (band(info.index_token), band(info.long_token), band(info.short_token))

    @staticmethod
    def _decode_position(raw: Sequence[Any], index_token: str = "", index_decimals: int = 18) -> MarginPosition:
        addresses, numbers, flags = raw
        return MarginPosition(
            account=Web3.to_checksum_address(addresses[0]),
            market=Web3.to_checksum_address(addresses[1]),
            collateral_token=Web3.to_checksum_address(addresses[2]),
            index_token=index_token,
            is_long=bool(flags[0]),
            size_in_usd=int(numbers[0]),
            size_in_tokens=int(numbers[1]),
            collateral_amount=int(numbers[2]),
            index_decimals=index_decimals,
        )

    async def _with_fees(self, position: MarginPosition, numbers: Sequence[Any], prices: PriceMap,
                         cache: Optional[Dict[bytes, int]] = None) -> MarginPosition:
        """Fill ``fees_owed`` from the market's cumulative borrowing and funding state."""
        collateral_price = prices.get(position.collateral_token.lower())
        if collateral_price is None:
            return position
        cache = {} if cache is None else cache
        try:
            cumulative_borrowing = await self._data_store_uint(
                cumulative_borrowing_factor_key(position.market, position.is_long),
                f"cumulativeBorrowingFactor({position.market})",
                cache,
            )
            funding_per_size = await self._data_store_uint(
                funding_fee_amount_per_size_key(position.market, position.collateral_token, position.is_long),
                f"fundingFeeAmountPerSize({position.market})",
                cache,
            )
        except (TransientRpcError, ContractLogicError) as e:
            logger.warning(f"Fee state read failed for {position.market}, assuming no fees owed: {e}")
            return position

        fees = pending_fee_amount(
            position.size_in_usd,
            cumulative_borrowing - int(numbers[3]),
            funding_per_size - int(numbers[4]),
            collateral_price.min,
        )
        return replace(position, fees_owed=fees)

    async def _data_store_uint(self, slot: bytes, label: str, cache: Dict[bytes, int]) -> int:
        if slot not in cache:
            cache[slot] = int(await self.chain.read(lambda: self.data_store.functions.getUint(slot).call(), label))
        return cache[slot]

    async def _liquidation_check(self, key: bytes, info: MarketInfo, prices: PriceMap):
        market_prices = self._market_prices(info, prices)
        liquidatable, reason, details = await self.chain.read(
            lambda: self.reader.functions.isPositionLiquidatable(
                self.config.data_store,
                self.config.referral_storage,
                key,
                info.as_props(),
                market_prices,
                True,
            ).call(),
            "isPositionLiquidatable",
        )
        min_collateral_usd, collateral_usd, min_collateral_factor, _ = details
        return bool(liquidatable), reason, int(min_collateral_usd), int(collateral_usd), int(min_collateral_factor)

    async def verify(self, indexed: IndexedPosition, market_info: MarketInfo, snapshot: MarketSnapshot) -> Verification:
        if indexed.collateral_token is None or indexed.is_long is None:
            return Verification(CandidateState.SKIPPED, indexed, reason="index row lacks collateral token/direction")

        key = position_key(indexed.account, indexed.market, indexed.collateral_token, indexed.is_long)
        raw = await self.chain.read(
            lambda: self.reader.functions.getPosition(self.config.data_store, key).call(),
            f"getPosition({indexed.account})",
        )
        position = self._decode_position(raw, market_info.index_token, market_info.index_decimals)
        if position.size_in_usd == 0:
            return Verification(CandidateState.DATA_MISMATCH, indexed,
                                reason="position not found on-chain (closed or already liquidated)")
        position = await self._with_fees(position, raw[1], snapshot.prices)

        try:
            liquidatable, reason, min_usd, collateral_usd, factor = await self._liquidation_check(
                key, market_info, snapshot.prices
            )
        except KeyError as e:
            return Verification(CandidateState.SKIPPED, indexed, reason=str(e))

        params = (
            ProtocolParams(min_collateral_factor=factor, source="live")
            if factor > 0 else await self.read_params(position.market)
        )
        metrics = evaluate(position, snapshot.prices, params)
        health_factor = authoritative_health_factor(liquidatable, min_usd, collateral_usd)

        if not liquidatable:
            return Verification(CandidateState.VERIFIED_HEALTHY, indexed,
                                reason=f"healthy (hf={health_factor:.4f})")

        gas = self.estimated_gas()
        candidate = LiquidationCandidate(
            protocol=self.name,
            position=position,
            metrics=metrics,
            health_factor=health_factor,
            repay_token=market_info.index_token,
            seize_token=position.collateral_token,
            repay_amount=0,
            estimated_gas=gas,
            gross_reward_usd=metrics.size_value_usd * Decimal(self.config.liquidation_reward_bps) / Decimal(BPS),
            estimated_gas_usd=snapshot.gas_cost_usd(gas),
            position_key=Web3.to_hex(key),
            details={"market_info": market_info, "reason": reason, "params_source": params.source},
        )
        return Verification(CandidateState.VERIFIED_LIQUIDATABLE, indexed, candidate=candidate, reason=reason)

    async def current_health_factor(self, candidate: LiquidationCandidate) -> Decimal:
        info: MarketInfo = candidate.details["market_info"]
        prices = await self.price_cache.refresh()
        key = Web3.to_bytes(hexstr=candidate.position_key)
        liquidatable, _, min_usd, collateral_usd, _ = await self._liquidation_check(key, info, prices)
        return authoritative_health_factor(liquidatable, min_usd, collateral_usd)

    # ----- writes -----

    async def build_liquidation_call(self, candidate: LiquidationCandidate, execution_fee_wei: int) -> LiquidationCall:
        position: MarginPosition = candidate.position
        order = (
            (
                self.chain.address,
                ZERO_ADDRESS,
                ZERO_ADDRESS,
                position.market,
                position.collateral_token,
                [],
            ),
            (position.size_in_usd, 0, 0, 0, execution_fee_wei, 0, 0),
            ORDER_TYPE_LIQUIDATION,
            DECREASE_SWAP_NO_SWAP,
            position.is_long,
            False,
            ZERO_BYTES32,
        )
        send_wnt = self.router.encode_abi("sendWnt", args=[self.config.order_vault, execution_fee_wei])
        create_order = self.router.encode_abi("createOrder", args=[order])
        data = self.router.encode_abi("multicall", args=[[send_wnt, create_order]])
        return LiquidationCall(
            to=self.router.address,
            data=Web3.to_bytes(hexstr=data),
            value=execution_fee_wei,
            description=f"gmx liquidation order {candidate.position_key}",
        )

    # ----- discovery -----

    async def bulk_scan(self, accounts: Sequence[str], snapshot: MarketSnapshot,
                        health_threshold: Decimal) -> List[IndexedPosition]:
        calls = [
            (
                self.reader.address,
                Web3.to_bytes(hexstr=self.reader.encode_abi(
                    "getAccountPositions",
                    args=[self.config.data_store, Web3.to_checksum_address(account), 0, MAX_POSITIONS_PER_ACCOUNT],
                )),
            )
            for account in accounts
        ]
        results = await self.chain.multicall(calls)

        hits: List[IndexedPosition] = []
        fee_state: Dict[bytes, int] = {}
        for account, (ok, data) in zip(accounts, results):
            if not ok:
                logger.debug(f"getAccountPositions failed for {account}")
                continue
            (rows,) = decode([f"{GMX_POSITION_PROPS_TYPE}[]"], data)
            for row in rows:
                position = self._decode_position(row)
                if position.size_in_usd == 0:
                    continue
                position = await self._with_fees(position, row[1], snapshot.prices, fee_state)
                params = await self.read_params(position.market)
                try:
                    metrics = evaluate(position, snapshot.prices, params)
                except KeyError:
                    continue
                if metrics.health_factor < health_threshold:
                    hits.append(IndexedPosition(
                        protocol=self.name,
                        account=position.account,
                        market=position.market,
                        collateral_token=position.collateral_token,
                        is_long=position.is_long,
                        indexed_size_usd=float(metrics.size_value_usd),
                        metadata=(("bulk_scan_hf", str(metrics.health_factor)),),
                    ))
        return hits


__all__ = ["GmxAdapter", "MarketInfo", "position_key", "authoritative_health_factor", "pending_fee_amount"]
