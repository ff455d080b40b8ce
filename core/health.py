"""
Liquidation Sentinel Core: Position Health Calculator

Pure solvency math for the two supported position models. Each model stays in
its own integer scale end to end; conversion to Decimal happens once, when the
HealthMetrics are assembled.
"""

from decimal import Decimal, localcontext
from typing import Iterable, Optional

from core.models import (
    BASE_CURRENCY_SCALE,
    BPS,
    INFINITY,
    USD_SCALE,
    ZERO,
    AssetBalance,
    DebtPosition,
    HealthMetrics,
    MarginPosition,
    Position,
    PriceMap,
    PriceTuple,
    ProtocolParams,
)

# Enough digits for 1e30-scaled notionals without rounding the integer part.
_PRECISION = 60


def to_decimal(value: int, scale: int) -> Decimal:
    """Convert a fixed-point integer to Decimal units."""
    return Decimal(value) / Decimal(scale)


def _ratio(numerator: int, denominator: int) -> Decimal:
    if denominator == 0:
        return INFINITY
    return Decimal(numerator) / Decimal(denominator)


def _lookup(prices: PriceMap, token: str) -> Optional[PriceTuple]:
    return prices.get(token.lower()) if token else None


def evaluate(position: Position, prices: PriceMap, params: Optional[ProtocolParams] = None) -> HealthMetrics:
    """
    Compute HealthMetrics for a position snapshot.

    Args:
        position: MarginPosition or DebtPosition snapshot
        prices: token address (lowercase) -> PriceTuple in the model's scale
        params: market risk parameters (required for the margin model)

    Returns:
        HealthMetrics; health_factor is Infinity when there is no size/debt
    """
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        if isinstance(position, MarginPosition):
            if params is None:
                raise ValueError("margin positions require ProtocolParams")
            return _evaluate_margin(position, prices, params)
        if isinstance(position, DebtPosition):
            return _evaluate_debt(position, prices)
    raise TypeError(f"Unsupported position type: {type(position).__name__}")


def _evaluate_margin(position: MarginPosition, prices: PriceMap, params: ProtocolParams) -> HealthMetrics:
    collateral_price = _lookup(prices, position.collateral_token)
    if collateral_price is None:
        raise KeyError(f"no price for collateral token {position.collateral_token}")

    remaining = max(position.collateral_amount - position.fees_owed, 0)
    collateral_usd = remaining * collateral_price.min
    min_collateral_usd = position.size_in_usd * params.min_collateral_factor // USD_SCALE

    health_factor = _ratio(collateral_usd, min_collateral_usd)

    index_price = _lookup(prices, position.index_token)
    if index_price is not None:
        mark = index_price.mid
    elif position.size_in_tokens:
        mark = position.size_in_usd // position.size_in_tokens
    else:
        mark = 0

    if position.size_in_tokens:
        move = max(collateral_usd - min_collateral_usd, 0) // position.size_in_tokens
        if position.is_long:
            liquidation_price_unit = max(mark - move, 0)
        else:
            liquidation_price_unit = mark + move
    else:
        liquidation_price_unit = 0

    current_value = position.size_in_tokens * mark
    if position.is_long:
        pnl = current_value - position.size_in_usd
    else:
        pnl = position.size_in_usd - current_value

    if collateral_usd:
        leverage = Decimal(position.size_in_usd) / Decimal(collateral_usd)
    else:
        leverage = INFINITY if position.size_in_usd else ZERO

    return HealthMetrics(
        health_factor=health_factor,
        liquidation_price=to_decimal(liquidation_price_unit * 10 ** position.index_decimals, USD_SCALE),
        leverage=leverage,
        collateral_value_usd=to_decimal(collateral_usd, USD_SCALE),
        size_value_usd=to_decimal(position.size_in_usd, USD_SCALE),
        unrealized_pnl_usd=to_decimal(pnl, USD_SCALE),
    )


def _leg_value(legs: Iterable[AssetBalance], prices: PriceMap, side: str, weighted: bool) -> int:
    total = 0
    for leg in legs:
        price = _lookup(prices, leg.asset)
        if price is None:
            raise KeyError(f"no price for {side} asset {leg.asset}")
        unit_price = price.min if side == "collateral" else price.max
        value = leg.amount * unit_price
        if weighted:
            value *= leg.liquidation_threshold_bps
        total += value // 10 ** leg.decimals
    return total


def _evaluate_debt(position: DebtPosition, prices: PriceMap) -> HealthMetrics:
    # Base currency (1e8); weighted collateral carries an extra bps factor.
    weighted_collateral = _leg_value(position.collaterals, prices, "collateral", weighted=True)
    collateral_value = _leg_value(position.collaterals, prices, "collateral", weighted=False)
    debt_value = _leg_value(position.debts, prices, "debt", weighted=False)

    health_factor = _ratio(weighted_collateral, debt_value * BPS)

    liquidation_price = ZERO
    if len(position.collaterals) == 1 and debt_value:
        leg = position.collaterals[0]
        denominator = leg.amount * leg.liquidation_threshold_bps
        if denominator:
            liquidation_price = to_decimal(
                debt_value * BPS * 10 ** leg.decimals // denominator, BASE_CURRENCY_SCALE
            )

    equity = collateral_value - debt_value
    if not debt_value:
        leverage = Decimal(1) if collateral_value else ZERO
    elif equity <= 0:
        leverage = INFINITY
    else:
        leverage = Decimal(collateral_value) / Decimal(equity)

    return HealthMetrics(
        health_factor=health_factor,
        liquidation_price=liquidation_price,
        leverage=leverage,
        collateral_value_usd=to_decimal(collateral_value, BASE_CURRENCY_SCALE),
        size_value_usd=to_decimal(debt_value, BASE_CURRENCY_SCALE),
        unrealized_pnl_usd=ZERO,
    )


def health_factor_from_ratio(value: int) -> Decimal:
    """Health factor reported on-chain in 1e18 scale (max uint means no debt)."""
    if value >= 2 ** 255:
        return INFINITY
    return to_decimal(value, 10 ** 18)


__all__ = ["evaluate", "to_decimal", "health_factor_from_ratio"]
