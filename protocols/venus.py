"""
Venus adapter - Compound-style comptroller, multi-asset debt model.

Comptroller.getAccountLiquidity is the authoritative solvency read: a
non-zero shortfall means the account can be liquidated. vToken snapshots and
oracle prices only pick the repay/seize legs and size the reward.

Scales:
- oracle prices: 1e(36 - underlying decimals), converted to the 1e8 base
  currency the debt model evaluates in
- account liquidity / shortfall and borrow values: USD 1e18
- close factor, incentive, exchange rate, collateral factor: 1e18 mantissas

Liquidations are wallet funded: the bot repays from its own balance (the
repay token must be approved to the vToken or Liquidator contract) and
receives vTokens of the seized market.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import decode
from web3 import Web3
from web3.exceptions import ContractLogicError

from core.chain import ChainContext
from core.health import evaluate, to_decimal
from core.models import (
    BASE_CURRENCY_SCALE,
    BPS,
    INFINITY,
    AssetBalance,
    CandidateState,
    DebtPosition,
    ExecutionMode,
    IndexedPosition,
    LiquidationCandidate,
    MarketSnapshot,
    PriceTuple,
)
from core.profitability import collateral_swap_leg
from protocols.abis import (
    ERC20_ABI,
    VENUS_ACCOUNT_LIQUIDITY_TYPES,
    VENUS_COMPTROLLER_ABI,
    VENUS_LIQUIDATOR_ABI,
    VENUS_ORACLE_ABI,
    VNATIVE_ABI,
    VTOKEN_ABI,
)
from protocols.base import LiquidationCall, ProtocolAdapter, Verification

logger = logging.getLogger(__name__)

MANTISSA = 10 ** 18
USD_1E18 = 10 ** 18


def health_factor_from_liquidity(borrow_value: int, liquidity: int, shortfall: int) -> Decimal:
    """
    Weighted collateral over debt, rebuilt from getAccountLiquidity.

    The comptroller reports ``liquidity = collateral - debt`` or
    ``shortfall = debt - collateral``, so the ratio is below 1 exactly when
    there is a shortfall.
    """
    if borrow_value <= 0 and shortfall == 0:
        return INFINITY
    borrow_value = max(borrow_value, shortfall)
    return Decimal(borrow_value + liquidity - shortfall) / Decimal(borrow_value)


def base_price(oracle_price: int, decimals: int) -> int:
    """Oracle price (1e(36-decimals)) to base currency per whole token (1e8)."""
    return oracle_price * 10 ** decimals // 10 ** 28


@dataclass(frozen=True)
class VenusMarket:
    vtoken: str
    underlying: str
    decimals: int
    collateral_factor_bps: int
    is_native: bool = False


@dataclass
class VenusMarkets:
    comptroller: str
    close_factor_mantissa: int
    liquidation_incentive_mantissa: int
    markets: Dict[str, VenusMarket] = field(default_factory=dict)

    def market(self, vtoken: str) -> VenusMarket:
        return self.markets[vtoken.lower()]

    @property
    def liquidation_bonus_bps(self) -> int:
        return max(self.liquidation_incentive_mantissa - MANTISSA, 0) * BPS // MANTISSA


@dataclass(frozen=True)
class _Leg:
    market: VenusMarket
    balance: AssetBalance
    price: int       # base currency per whole token
    value: int       # base currency


class VenusAdapter(ProtocolAdapter):
    name = "venus"
    model = "debt"

    def __init__(self, chain: ChainContext, config: Any, price_cache: Any = None,
                 execution_mode: ExecutionMode = ExecutionMode.WALLET):
        super().__init__(chain, config, execution_mode)
        self.comptroller = chain.contract(config.comptroller, VENUS_COMPTROLLER_ABI)
        self.oracle = chain.contract(config.oracle, VENUS_ORACLE_ABI) if config.oracle else None

    async def _oracle(self):
        if self.oracle is None:
            address = await self.chain.read(lambda: self.comptroller.functions.oracle().call(), "oracle")
            self.oracle = self.chain.contract(address, VENUS_ORACLE_ABI)
            logger.info(f"Venus oracle resolved from comptroller: {self.oracle.address}")
        return self.oracle

    # ----- market metadata -----

    async def _load_vtoken(self, vtoken: str) -> VenusMarket:
        contract = self.chain.contract(vtoken, VTOKEN_ABI)
        try:
            underlying = await self.chain.read(
                lambda: contract.functions.underlying().call(), f"underlying({vtoken})"
            )
        except ContractLogicError:
            # vBNB has no underlying(); it is priced and swapped as the wrapped token
            underlying, decimals, is_native = self.config.wrapped_native, 18, True
        else:
            token = self.chain.contract(underlying, ERC20_ABI)
            decimals = await self.chain.read(lambda: token.functions.decimals().call(), f"decimals({underlying})")
            is_native = False

        listing = await self.chain.read(
            lambda: self.comptroller.functions.markets(contract.address).call(), f"markets({vtoken})"
        )
        return VenusMarket(
            vtoken=contract.address,
            underlying=Web3.to_checksum_address(underlying),
            decimals=int(decimals),
            collateral_factor_bps=int(listing[1]) * BPS // MANTISSA,
            is_native=is_native,
        )

    async def load_market(self, market: str) -> VenusMarkets:
        vtokens = list(self.config.markets) or await self.chain.read(
            lambda: self.comptroller.functions.getAllMarkets().call(), "getAllMarkets"
        )
        close_factor = await self.chain.read(
            lambda: self.comptroller.functions.closeFactorMantissa().call(), "closeFactorMantissa"
        )
        try:
            incentive = await self.chain.read(
                lambda: self.comptroller.functions.liquidationIncentiveMantissa().call(),
                "liquidationIncentiveMantissa",
            )
        except ContractLogicError:
            incentive = MANTISSA + self.config.liquidation_incentive_bps * MANTISSA // BPS
            logger.warning(f"liquidationIncentiveMantissa unreadable; using configured "
                           f"{self.config.liquidation_incentive_bps} bps")

        loaded = VenusMarkets(
            comptroller=Web3.to_checksum_address(market),
            close_factor_mantissa=int(close_factor),
            liquidation_incentive_mantissa=int(incentive),
        )
        for info in await asyncio.gather(*[self._load_vtoken(vtoken) for vtoken in vtokens]):
            loaded.markets[info.vtoken.lower()] = info
        logger.debug(f"Loaded {len(loaded.markets)} Venus markets for comptroller {market}")
        return loaded

    # ----- account reads -----

    async def _account_liquidity(self, account: str) -> Tuple[int, int, int]:
        error, liquidity, shortfall = await self.chain.read(
            lambda: self.comptroller.functions.getAccountLiquidity(account).call(),
            f"getAccountLiquidity({account})",
        )
        return int(error), int(liquidity), int(shortfall)

    async def _legs(self, account: str, market_info: VenusMarkets) -> Tuple[List[_Leg], List[_Leg], int]:
        """Collateral legs, debt legs and total borrow value (USD 1e18)."""
        entered = await self.chain.read(
            lambda: self.comptroller.functions.getAssetsIn(account).call(), f"getAssetsIn({account})"
        )
        markets = [market_info.markets[v.lower()] for v in entered if v.lower() in market_info.markets]
        if len(markets) < len(entered):
            logger.debug(f"{account}: {len(entered) - len(markets)} entered market(s) not loaded")
        oracle = await self._oracle()

        async def read_market(info: VenusMarket):
            contract = self.chain.contract(info.vtoken, VTOKEN_ABI)
            snapshot = await self.chain.read(
                lambda: contract.functions.getAccountSnapshot(account).call(),
                f"getAccountSnapshot({info.vtoken})",
            )
            price = await self.chain.read(
                lambda: oracle.functions.getUnderlyingPrice(info.vtoken).call(),
                f"getUnderlyingPrice({info.vtoken})",
            )
            return info, snapshot, int(price)

        collaterals: List[_Leg] = []
        debts: List[_Leg] = []
        borrow_value = 0
        for info, snapshot, oracle_price in await asyncio.gather(*[read_market(m) for m in markets]):
            error, vtoken_balance, borrow_balance, exchange_rate = (int(v) for v in snapshot)
            if error:
                logger.warning(f"getAccountSnapshot({info.vtoken}) returned error {error}; leg ignored")
                continue
            price = base_price(oracle_price, info.decimals)
            supplied = vtoken_balance * exchange_rate // MANTISSA
            if supplied > 0:
                balance = AssetBalance(info.underlying, supplied, info.decimals, info.collateral_factor_bps)
                collaterals.append(_Leg(info, balance, price, supplied * price // 10 ** info.decimals))
            if borrow_balance > 0:
                balance = AssetBalance(info.underlying, borrow_balance, info.decimals)
                debts.append(_Leg(info, balance, price, borrow_balance * price // 10 ** info.decimals))
                borrow_value += borrow_balance * oracle_price // MANTISSA
        return collaterals, debts, borrow_value

    async def verify(self, indexed: IndexedPosition, market_info: VenusMarkets, snapshot: MarketSnapshot) -> Verification:
        account = Web3.to_checksum_address(indexed.account)
        error, liquidity, shortfall = await self._account_liquidity(account)
        if error:
            return Verification(CandidateState.SKIPPED, indexed, reason=f"comptroller error {error}")
        if shortfall == 0:
            return Verification(CandidateState.VERIFIED_HEALTHY, indexed,
                                reason=f"healthy (liquidity ${to_decimal(liquidity, USD_1E18):.2f})")

        collaterals, debts, borrow_value = await self._legs(account, market_info)
        if not debts:
            return Verification(CandidateState.DATA_MISMATCH, indexed,
                                reason="shortfall reported but no borrow in loaded markets")
        if not collaterals:
            return Verification(CandidateState.SKIPPED, indexed,
                                reason="liquidatable but no loaded market holds its collateral")

        position = DebtPosition(
            account=account,
            market=market_info.comptroller,
            collaterals=tuple(leg.balance for leg in collaterals),
            debts=tuple(leg.balance for leg in debts),
        )
        prices = {leg.balance.asset.lower(): PriceTuple.flat(leg.price) for leg in collaterals + debts}
        metrics = evaluate(position, prices)
        health_factor = health_factor_from_liquidity(borrow_value, liquidity, shortfall)

        repay = max(debts, key=lambda leg: leg.value)
        seize = max(collaterals, key=lambda leg: leg.value)

        repay_amount = repay.balance.amount * market_info.close_factor_mantissa // MANTISSA
        repay_value = repay_amount * repay.price // 10 ** repay.balance.decimals
        # Seized collateral (repay value times the incentive) cannot exceed what the borrower holds
        max_repay_value = seize.value * MANTISSA // market_info.liquidation_incentive_mantissa
        if repay_value > max_repay_value:
            repay_amount = repay_amount * max_repay_value // repay_value
            repay_value = repay_amount * repay.price // 10 ** repay.balance.decimals

        cover_usd = to_decimal(repay_value, BASE_CURRENCY_SCALE)
        bonus_bps = market_info.liquidation_bonus_bps
        gross = cover_usd * Decimal(bonus_bps) / Decimal(BPS)

        gas = self.estimated_gas()
        candidate = LiquidationCandidate(
            protocol=self.name,
            position=position,
            metrics=metrics,
            health_factor=health_factor,
            repay_token=repay.balance.asset,
            seize_token=seize.balance.asset,
            repay_amount=repay_amount,
            repay_is_native=repay.market.is_native,
            estimated_gas=gas,
            gross_reward_usd=gross,
            estimated_gas_usd=snapshot.gas_cost_usd(gas),
            position_key=f"{account}:{repay.market.vtoken}:{seize.market.vtoken}",
            details={
                "repay_vtoken": repay.market.vtoken,
                "seize_vtoken": seize.market.vtoken,
                "liquidation_bonus_bps": bonus_bps,
                "debt_to_cover_usd": cover_usd,
                "shortfall_usd": to_decimal(shortfall, USD_1E18),
                "borrow_value": borrow_value,
                "swap": collateral_swap_leg(
                    replace(repay.balance, amount=repay_amount), repay.price,
                    seize.balance, seize.price, bonus_bps,
                ),
            },
        )
        return Verification(CandidateState.VERIFIED_LIQUIDATABLE, indexed, candidate=candidate,
                            reason=f"hf={health_factor:.4f} shortfall=${candidate.details['shortfall_usd']:.2f}")

    async def current_health_factor(self, candidate: LiquidationCandidate) -> Decimal:
        error, liquidity, shortfall = await self._account_liquidity(Web3.to_checksum_address(candidate.account))
        if error:
            raise ValueError(f"comptroller error {error}")
        return health_factor_from_liquidity(int(candidate.details.get("borrow_value", 0)), liquidity, shortfall)

    async def build_liquidation_call(self, candidate: LiquidationCandidate, execution_fee_wei: int = 0) -> LiquidationCall:
        if self.execution_mode == ExecutionMode.FLASH_LOAN:
            raise ValueError("venus liquidations are wallet funded; set execution.mode to wallet")
        borrower = Web3.to_checksum_address(candidate.account)
        repay_vtoken = Web3.to_checksum_address(candidate.details["repay_vtoken"])
        seize_vtoken = Web3.to_checksum_address(candidate.details["seize_vtoken"])
        value = candidate.repay_amount if candidate.repay_is_native else 0

        if self.config.liquidator:
            contract = self.chain.contract(self.config.liquidator, VENUS_LIQUIDATOR_ABI)
            data = contract.encode_abi("liquidateBorrow", args=[
                repay_vtoken, borrower, candidate.repay_amount, seize_vtoken,
            ])
        elif candidate.repay_is_native:
            contract = self.chain.contract(repay_vtoken, VNATIVE_ABI)
            data = contract.encode_abi("liquidateBorrow", args=[borrower, seize_vtoken])
        else:
            contract = self.chain.contract(repay_vtoken, VTOKEN_ABI)
            data = contract.encode_abi("liquidateBorrow", args=[borrower, candidate.repay_amount, seize_vtoken])
        return LiquidationCall(
            to=contract.address,
            data=Web3.to_bytes(hexstr=data),
            value=value,
            description=f"venus liquidation {borrower} repay {repay_vtoken} seize {seize_vtoken}",
        )

    async def bulk_scan(self, accounts: Sequence[str], snapshot: MarketSnapshot,
                        health_threshold: Decimal) -> List[IndexedPosition]:
        """
        Accounts in shortfall. getAccountLiquidity carries no debt total, so
        ``health_threshold`` is not applied: near-threshold accounts above 1
        cannot be ranked without per-market reads.
        """
        checksummed = [Web3.to_checksum_address(a) for a in accounts]
        calls = [
            (self.comptroller.address,
             Web3.to_bytes(hexstr=self.comptroller.encode_abi("getAccountLiquidity", args=[account])))
            for account in checksummed
        ]
        results = await self.chain.multicall(calls)

        hits: List[IndexedPosition] = []
        for account, (ok, data) in zip(checksummed, results):
            if not ok:
                continue
            error, _, shortfall = (int(v) for v in decode(VENUS_ACCOUNT_LIQUIDITY_TYPES, data))
            if error or shortfall == 0:
                continue
            hits.append(IndexedPosition(
                protocol=self.name,
                account=account,
                market=self.comptroller.address,
                metadata=(("shortfall_usd", str(to_decimal(shortfall, USD_1E18))),),
            ))
        return hits


__all__ = ["VenusAdapter", "VenusMarket", "VenusMarkets", "base_price", "health_factor_from_liquidity"]
