"""
Liquidation Sentinel Core: Swap-Aware Profitability

A liquidation only pays once the seized collateral is sold back into the
repaid asset. Before sending, the gate quotes that swap on a V3 quoter,
picks the best direct or two-hop route, and rejects the candidate when the
price impact exceeds the policy ceiling or the swap loss eats the reward.

    net = gross reward - gas - swap loss
    price impact = (oracle value in - quoted value out) / oracle value in

GMX closes need no swap (no ``details["swap"]``) and always pass.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from itertools import product
from typing import List, Optional, Sequence, Tuple

from eth_abi.packed import encode_packed
from web3 import Web3
from web3.exceptions import ContractLogicError

from core.chain import ChainContext
from core.health import to_decimal
from core.models import BASE_CURRENCY_SCALE, BPS, ZERO, AssetBalance, LiquidationCandidate, SwapLeg
from protocols.abis import QUOTER_V2_ABI

logger = logging.getLogger(__name__)


def price_impact_bps(value_in_usd: Decimal, value_out_usd: Decimal) -> Decimal:
    """Share of the input value lost on the swap, in bps (negative when the pool pays above oracle)."""
    if value_in_usd <= 0:
        return ZERO
    return (value_in_usd - value_out_usd) / value_in_usd * BPS


def collateral_swap_leg(repay: AssetBalance, repay_price: int, seize: AssetBalance, seize_price: int,
                        bonus_bps: int) -> SwapLeg:
    """
    Collateral seized for repaying ``repay.amount``, to be sold into the repay asset.

    Prices are base-currency (1e8) per whole token; the seized amount is
    capped at the borrower's ``seize.amount`` balance.
    """
    seize_value = repay.amount * repay_price * (BPS + bonus_bps) // (10 ** repay.decimals * BPS)
    amount_in = seize_value * 10 ** seize.decimals // seize_price if seize_price else 0
    amount_in = min(amount_in, seize.amount)
    return SwapLeg(
        token_in=seize.asset,
        token_out=repay.asset,
        amount_in=amount_in,
        value_in_usd=to_decimal(amount_in * seize_price // 10 ** seize.decimals, BASE_CURRENCY_SCALE),
        out_decimals=repay.decimals,
        out_price_usd=to_decimal(repay_price, BASE_CURRENCY_SCALE),
    )


def encode_path(tokens: Sequence[str], fees: Sequence[int]) -> bytes:
    """V3 multi-hop path: token (20 bytes) | fee (3 bytes) | token | ..."""
    if len(tokens) != len(fees) + 1:
        raise ValueError(f"path needs one fee per hop: {len(tokens)} tokens, {len(fees)} fees")
    types: List[str] = []
    values: List = []
    for index, token in enumerate(tokens):
        types.append("address")
        values.append(Web3.to_checksum_address(token))
        if index < len(fees):
            types.append("uint24")
            values.append(fees[index])
    return encode_packed(types, values)


@dataclass(frozen=True)
class SwapRoute:
    path: Tuple[str, ...]
    fees: Tuple[int, ...]
    amount_out: int

    @property
    def is_direct(self) -> bool:
        return len(self.fees) == 1

    def describe(self) -> str:
        hops = [self.path[0]]
        for fee, token in zip(self.fees, self.path[1:]):
            hops.append(f"({fee}) {token}")
        return " -> ".join(hops)


class RouteQuoter:
    """Best-output route search over a QuoterV2: every direct fee tier plus two-hop routes."""

    def __init__(self, chain: ChainContext, config):
        self.chain = chain
        self.config = config
        self.quoter = chain.contract(config.quoter, QUOTER_V2_ABI)

    async def quote_single(self, token_in: str, token_out: str, amount_in: int, fee: int) -> Optional[int]:
        params = (Web3.to_checksum_address(token_in), Web3.to_checksum_address(token_out), amount_in, fee, 0)
        try:
            result = await self.chain.read(
                lambda: self.quoter.functions.quoteExactInputSingle(params).call(),
                f"quoteExactInputSingle({token_in}->{token_out}@{fee})",
            )
        except ContractLogicError:
            # No pool at this tier
            return None
        return int(result[0])

    async def quote_path(self, tokens: Sequence[str], fees: Sequence[int], amount_in: int) -> Optional[int]:
        path = encode_path(tokens, fees)
        try:
            result = await self.chain.read(
                lambda: self.quoter.functions.quoteExactInput(path, amount_in).call(),
                f"quoteExactInput({'->'.join(tokens)})",
            )
        except ContractLogicError:
            return None
        return int(result[0])

    async def best_route(self, token_in: str, token_out: str, amount_in: int) -> Optional[SwapRoute]:
        candidates: List[Tuple[Tuple[str, ...], Tuple[int, ...]]] = [
            ((token_in, token_out), (fee,)) for fee in self.config.fee_tiers
        ]
        skip = {token_in.lower(), token_out.lower()}
        for middle in self.config.intermediaries:
            if middle.lower() in skip:
                continue
            for first, second in product(self.config.hop_fee_tiers, repeat=2):
                candidates.append(((token_in, middle, token_out), (first, second)))

        async def quote(path, fees):
            if len(fees) == 1:
                return await self.quote_single(path[0], path[1], amount_in, fees[0])
            return await self.quote_path(path, fees, amount_in)

        amounts = await asyncio.gather(*[quote(path, fees) for path, fees in candidates])
        best: Optional[SwapRoute] = None
        for (path, fees), amount_out in zip(candidates, amounts):
            if amount_out and (best is None or amount_out > best.amount_out):
                best = SwapRoute(path=tuple(path), fees=tuple(fees), amount_out=amount_out)
        if best is None:
            logger.debug(f"No route {token_in} -> {token_out} for {amount_in}")
        return best


@dataclass
class ProfitabilityAnalysis:
    gross_reward_usd: Decimal
    gas_cost_usd: Decimal
    swap_loss_usd: Decimal = ZERO
    price_impact_bps: Decimal = ZERO
    route: Optional[SwapRoute] = None
    acceptable: bool = True
    reason: Optional[str] = None

    @property
    def net_profit_usd(self) -> Decimal:
        return self.gross_reward_usd - self.gas_cost_usd - self.swap_loss_usd


class ProfitabilityGate:
    """
    Final profit check with the collateral swap priced in.

    Rejects when no route exists, when the quoted price impact exceeds
    ``max_price_impact_bps``, or when net profit after the swap loss drops
    below ``min_profit_usd``.
    """

    def __init__(self, quoter: RouteQuoter, max_price_impact_bps: int, min_profit_usd: float):
        self.quoter = quoter
        self.max_price_impact_bps = Decimal(max_price_impact_bps)
        self.min_profit_usd = Decimal(str(min_profit_usd))

    async def assess(self, candidate: LiquidationCandidate) -> ProfitabilityAnalysis:
        analysis = ProfitabilityAnalysis(
            gross_reward_usd=candidate.gross_reward_usd,
            gas_cost_usd=candidate.estimated_gas_usd,
        )
        swap: Optional[SwapLeg] = candidate.details.get("swap")
        if swap is not None and swap.needs_swap and swap.amount_in > 0:
            route = await self.quoter.best_route(swap.token_in, swap.token_out, swap.amount_in)
            if route is None:
                analysis.acceptable = False
                analysis.reason = f"no swap route {swap.token_in} -> {swap.token_out}"
                return analysis
            value_out = swap.value_out_usd(route.amount_out)
            analysis.route = route
            analysis.price_impact_bps = price_impact_bps(swap.value_in_usd, value_out)
            analysis.swap_loss_usd = max(swap.value_in_usd - value_out, ZERO)
            if analysis.price_impact_bps > self.max_price_impact_bps:
                analysis.acceptable = False
                analysis.reason = (
                    f"price impact {analysis.price_impact_bps:.0f} bps above "
                    f"{self.max_price_impact_bps:.0f} bps via {route.describe()}"
                )
                return analysis

        if analysis.net_profit_usd < self.min_profit_usd:
            analysis.acceptable = False
            analysis.reason = (
                f"net profit ${analysis.net_profit_usd:.2f} after swap loss "
                f"${analysis.swap_loss_usd:.2f} below minimum ${self.min_profit_usd:.2f}"
            )
        return analysis


def build_profitability_gate(dex_config, chain: ChainContext, risk_policy) -> Optional[ProfitabilityGate]:
    if not dex_config.enabled:
        return None
    logger.info(
        f"Swap-aware profitability enabled (quoter {dex_config.quoter}, "
        f"max impact {risk_policy.max_price_impact_bps} bps)"
    )
    return ProfitabilityGate(
        RouteQuoter(chain, dex_config),
        risk_policy.max_price_impact_bps,
        risk_policy.min_profit_usd,
    )


__all__ = [
    "ProfitabilityAnalysis",
    "ProfitabilityGate",
    "RouteQuoter",
    "SwapRoute",
    "build_profitability_gate",
    "collateral_swap_leg",
    "encode_path",
    "price_impact_bps",
]
