"""
Aave v3 adapter - multi-asset debt model.

Pool.getUserAccountData is the authoritative health factor. Per-reserve
balances from the data provider and oracle prices are only used to pick the
repay/seize legs and size the reward estimate.

The flash liquidator swaps through the fee tier the profitability gate quoted
best (direct routes only), falling back to ``swap_pool_fee``.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import decode
from web3 import Web3

from core.chain import ChainContext
from core.health import evaluate, health_factor_from_ratio, to_decimal
from core.models import (
    BASE_CURRENCY_SCALE,
    BPS,
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
    AAVE_ACCOUNT_DATA_TYPES,
    AAVE_DATA_PROVIDER_ABI,
    AAVE_ORACLE_ABI,
    AAVE_POOL_ABI,
    FLASH_LIQUIDATOR_ABI,
)
from protocols.base import LiquidationCall, ProtocolAdapter, Verification

logger = logging.getLogger(__name__)

# Below this HF the whole debt leg may be repaid in one call.
CLOSE_FACTOR_HF_THRESHOLD = Decimal("0.95")
DEFAULT_CLOSE_FACTOR_BPS = 5_000
MAX_CLOSE_FACTOR_BPS = 10_000


def close_factor_bps(health_factor: Decimal) -> int:
    return MAX_CLOSE_FACTOR_BPS if health_factor < CLOSE_FACTOR_HF_THRESHOLD else DEFAULT_CLOSE_FACTOR_BPS


@dataclass(frozen=True)
class ReserveInfo:
    asset: str
    decimals: int
    liquidation_threshold_bps: int
    liquidation_bonus_bps: int


@dataclass
class LendingMarket:
    pool: str
    reserves: Dict[str, ReserveInfo] = field(default_factory=dict)

    def reserve(self, asset: str) -> ReserveInfo:
        return self.reserves[asset.lower()]


class AaveAdapter(ProtocolAdapter):
    name = "aave"
    model = "debt"

    def __init__(self, chain: ChainContext, config: Any, price_cache: Any = None,
                 execution_mode: ExecutionMode = ExecutionMode.FLASH_LOAN):
        super().__init__(chain, config, execution_mode)
        self.pool = chain.contract(config.pool, AAVE_POOL_ABI)
        self.oracle = chain.contract(config.oracle, AAVE_ORACLE_ABI)
        self.data_provider = chain.contract(config.data_provider, AAVE_DATA_PROVIDER_ABI)

    async def load_market(self, market: str) -> LendingMarket:
        lending = LendingMarket(pool=Web3.to_checksum_address(market))
        for asset in self.config.reserves:
            row = await self.chain.read(
                lambda asset=asset: self.data_provider.functions.getReserveConfigurationData(asset).call(),
                f"getReserveConfigurationData({asset})",
            )
            decimals, _, threshold, bonus = (int(v) for v in row[:4])
            # liquidationBonus is 10000 + bonus (e.g. 10500 = 5%)
            bonus_bps = bonus - BPS if bonus > BPS else self.config.liquidation_bonus_bps
            lending.reserves[asset.lower()] = ReserveInfo(
                asset=asset,
                decimals=decimals,
                liquidation_threshold_bps=threshold,
                liquidation_bonus_bps=bonus_bps,
            )
        logger.debug(f"Loaded {len(lending.reserves)} reserve configs for pool {market}")
        return lending

    async def _account_health(self, account: str) -> Tuple[Decimal, int]:
        data = await self.chain.read(
            lambda: self.pool.functions.getUserAccountData(account).call(),
            f"getUserAccountData({account})",
        )
        return health_factor_from_ratio(int(data[5])), int(data[1])

    async def _reserve_rows(self, account: str, market: LendingMarket):
        assets = [info.asset for info in market.reserves.values()]
        rows = await asyncio.gather(*[
            self.chain.read(
                lambda asset=asset: self.data_provider.functions.getUserReserveData(asset, account).call(),
                f"getUserReserveData({asset})",
            )
            for asset in assets
        ])
        prices = await self.chain.read(
            lambda: self.oracle.functions.getAssetsPrices(assets).call(), "getAssetsPrices"
        )
        return list(zip(assets, rows)), {
            asset.lower(): PriceTuple.flat(int(price)) for asset, price in zip(assets, prices)
        }

    async def verify(self, indexed: IndexedPosition, market_info: LendingMarket, snapshot: MarketSnapshot) -> Verification:
        account = Web3.to_checksum_address(indexed.account)
        health_factor, total_debt_base = await self._account_health(account)
        if total_debt_base == 0:
            return Verification(CandidateState.DATA_MISMATCH, indexed, reason="no debt on-chain")
        if health_factor >= 1:
            return Verification(CandidateState.VERIFIED_HEALTHY, indexed,
                                reason=f"healthy (hf={health_factor:.4f})")

        rows, prices = await self._reserve_rows(account, market_info)
        collaterals: List[AssetBalance] = []
        debts: List[AssetBalance] = []
        for asset, row in rows:
            reserve = market_info.reserve(asset)
            a_token_balance, stable_debt, variable_debt = int(row[0]), int(row[1]), int(row[2])
            if a_token_balance > 0 and row[8]:
                collaterals.append(AssetBalance(asset, a_token_balance, reserve.decimals,
                                                reserve.liquidation_threshold_bps))
            if stable_debt + variable_debt > 0:
                debts.append(AssetBalance(asset, stable_debt + variable_debt, reserve.decimals))

        if not collaterals or not debts:
            return Verification(CandidateState.SKIPPED, indexed,
                                reason="liquidatable but no configured reserve holds its collateral/debt")

        position = DebtPosition(
            account=account,
            market=market_info.pool,
            collaterals=tuple(collaterals),
            debts=tuple(debts),
        )
        metrics = evaluate(position, prices)

        def leg_value(leg: AssetBalance, use_max: bool) -> int:
            price = prices[leg.asset.lower()]
            return leg.amount * (price.max if use_max else price.min) // 10 ** leg.decimals

        repay = max(debts, key=lambda leg: leg_value(leg, True))
        seize = max(collaterals, key=lambda leg: leg_value(leg, False))

        close_factor = close_factor_bps(health_factor)
        debt_to_cover = repay.amount * close_factor // BPS
        cover_usd = to_decimal(
            debt_to_cover * prices[repay.asset.lower()].max // 10 ** repay.decimals, BASE_CURRENCY_SCALE
        )
        bonus_bps = market_info.reserve(seize.asset).liquidation_bonus_bps
        gross = cover_usd * Decimal(bonus_bps) / Decimal(BPS)
        if self.execution_mode == ExecutionMode.FLASH_LOAN:
            gross -= cover_usd * Decimal(self.config.flash_loan_fee_bps) / Decimal(BPS)

        gas = self.estimated_gas()
        candidate = LiquidationCandidate(
            protocol=self.name,
            position=position,
            metrics=metrics,
            health_factor=health_factor,
            repay_token=repay.asset,
            seize_token=seize.asset,
            repay_amount=debt_to_cover,
            estimated_gas=gas,
            gross_reward_usd=gross,
            estimated_gas_usd=snapshot.gas_cost_usd(gas),
            position_key=f"{account}:{repay.asset}:{seize.asset}",
            details={
                "close_factor_bps": close_factor,
                "liquidation_bonus_bps": bonus_bps,
                "debt_to_cover_usd": cover_usd,
                "swap": collateral_swap_leg(
                    replace(repay, amount=debt_to_cover), prices[repay.asset.lower()].max,
                    seize, prices[seize.asset.lower()].min, bonus_bps,
                ),
            },
        )
        return Verification(CandidateState.VERIFIED_LIQUIDATABLE, indexed, candidate=candidate,
                            reason=f"hf={health_factor:.4f}")

    async def current_health_factor(self, candidate: LiquidationCandidate) -> Decimal:
        health_factor, _ = await self._account_health(Web3.to_checksum_address(candidate.account))
        return health_factor

    async def build_liquidation_call(self, candidate: LiquidationCandidate, execution_fee_wei: int = 0) -> LiquidationCall:
        user = Web3.to_checksum_address(candidate.account)
        debt_asset = Web3.to_checksum_address(candidate.repay_token)
        collateral_asset = Web3.to_checksum_address(candidate.seize_token)
        if self.execution_mode == ExecutionMode.FLASH_LOAN:
            if not self.config.flash_liquidator:
                raise ValueError("flash_loan mode requires protocols.aave.flash_liquidator")
            liquidator = self.chain.contract(self.config.flash_liquidator, FLASH_LIQUIDATOR_ABI)
            data = liquidator.encode_abi("executeLiquidation", args=[
                user, debt_asset, collateral_asset, candidate.repay_amount,
                candidate.details.get("swap_fee_tier", self.config.swap_pool_fee),
            ])
            to = liquidator.address
        else:
            data = self.pool.encode_abi("liquidationCall", args=[
                collateral_asset, debt_asset, user, candidate.repay_amount,
                self.config.receive_a_token,
            ])
            to = self.pool.address
        return LiquidationCall(
            to=to,
            data=Web3.to_bytes(hexstr=data),
            description=f"aave liquidation {user} ({self.execution_mode.value})",
        )

    async def bulk_scan(self, accounts: Sequence[str], snapshot: MarketSnapshot,
                        health_threshold: Decimal) -> List[IndexedPosition]:
        checksummed = [Web3.to_checksum_address(a) for a in accounts]
        calls = [
            (self.pool.address, Web3.to_bytes(hexstr=self.pool.encode_abi("getUserAccountData", args=[account])))
            for account in checksummed
        ]
        results = await self.chain.multicall(calls)

        hits: List[IndexedPosition] = []
        for account, (ok, data) in zip(checksummed, results):
            if not ok:
                continue
            values = decode(AAVE_ACCOUNT_DATA_TYPES, data)
            total_debt_base = int(values[1])
            health_factor = health_factor_from_ratio(int(values[5]))
            if total_debt_base > 0 and health_factor < health_threshold:
                hits.append(IndexedPosition(
                    protocol=self.name,
                    account=account,
                    market=self.pool.address,
                    indexed_size_usd=float(to_decimal(total_debt_base, BASE_CURRENCY_SCALE)),
                    debt_amount=total_debt_base,
                    metadata=(("bulk_scan_hf", str(health_factor)),),
                ))
        return hits


__all__ = ["AaveAdapter", "LendingMarket", "ReserveInfo", "close_factor_bps"]
