"""
Liquidation Sentinel Core: Data Model

Position snapshots, price tuples, derived health metrics and the result
records that flow between the monitor, the risk pipeline and the executor.

Fixed-point scales are protocol specific and never mixed inside one
computation:
- margin protocol USD amounts and per-unit prices: 1e30
- ratios / health factors read from chain: 1e18
- lending base currency (USD): 1e8
- thresholds and fees: basis points (1e4)
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

USD_SCALE = 10 ** 30
RATIO_SCALE = 10 ** 18
BASE_CURRENCY_SCALE = 10 ** 8
BPS = 10_000
GWEI = 10 ** 9

INFINITY = Decimal("Infinity")
ZERO = Decimal(0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PriceTuple:
    """Per-token price band. Collateral is valued at ``min``, debt at ``max``."""
    min: int
    max: int

    @property
    def mid(self) -> int:
        return (self.min + self.max) // 2

    @classmethod
    def flat(cls, price: int) -> "PriceTuple":
        return cls(min=price, max=price)


@dataclass(frozen=True)
class MarginPosition:
    """Snapshot of a perpetual position (single collateral, notional size)."""
    account: str
    market: str
    collateral_token: str
    index_token: str
    is_long: bool
    size_in_usd: int          # 1e30
    size_in_tokens: int       # index token base units
    collateral_amount: int    # collateral token base units
    fees_owed: int = 0        # collateral token base units
    index_decimals: int = 18

    model: ClassVar[str] = "margin"


@dataclass(frozen=True)
class AssetBalance:
    """One leg (collateral or debt) of a lending position."""
    asset: str
    amount: int
    decimals: int
    liquidation_threshold_bps: int = 0


@dataclass(frozen=True)
class DebtPosition:
    """Snapshot of a multi-asset collateralized-debt position."""
    account: str
    market: str
    collaterals: Tuple[AssetBalance, ...]
    debts: Tuple[AssetBalance, ...]

    model: ClassVar[str] = "debt"


Position = Union[MarginPosition, DebtPosition]
PriceMap = Mapping[str, PriceTuple]


@dataclass(frozen=True)
class ProtocolParams:
    """Risk parameters for one market.

    ``min_collateral_factor`` is the maintenance margin rate in 1e30 scale
    (1% == 10**28). ``source`` records whether it was read live from the
    protocol or taken from the configured fallback.
    """
    min_collateral_factor: int = 0
    source: str = "live"

    @classmethod
    def from_bps(cls, bps: int, source: str = "configured") -> "ProtocolParams":
        return cls(min_collateral_factor=bps * USD_SCALE // BPS, source=source)


@dataclass(frozen=True)
class HealthMetrics:
    """Derived solvency metrics. Recomputed on every evaluation, never persisted."""
    health_factor: Decimal
    liquidation_price: Decimal
    leverage: Decimal
    collateral_value_usd: Decimal
    size_value_usd: Decimal
    unrealized_pnl_usd: Decimal

    @property
    def is_liquidatable(self) -> bool:
        return self.health_factor < 1


class ExecutionMode(Enum):
    FLASH_LOAN = "flash_loan"
    WALLET = "wallet"

    @classmethod
    def from_string(cls, value: str) -> "ExecutionMode":
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown execution mode: {value!r}")


class RiskCheckType(Enum):
    EMERGENCY_STOP = "EMERGENCY_STOP"
    DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
    GAS_PRICE_SPIKE = "GAS_PRICE_SPIKE"
    TOKEN_WHITELIST = "TOKEN_WHITELIST"
    TOKEN_BLACKLIST = "TOKEN_BLACKLIST"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    HEALTH_FACTOR_CHANGED = "HEALTH_FACTOR_CHANGED"
    POSITION_SIZE_TOO_SMALL = "POSITION_SIZE_TOO_SMALL"
    POSITION_SIZE_EXCEEDED = "POSITION_SIZE_EXCEEDED"

    def __str__(self) -> str:
        return self.value


@dataclass
class RiskCheckResult:
    """Outcome of one pipeline stage."""
    passed: bool
    check_type: RiskCheckType
    reason: Optional[str] = None
    details: Dict[str, Any] = None

    def __post_init__(self):
        if self.details is None:
            self.details = {}


@dataclass
class RiskValidationResult:
    """All stage results for one candidate."""
    checks: List[RiskCheckResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def failed_checks(self) -> List[RiskCheckResult]:
        return [c for c in self.checks if not c.passed]

    @property
    def can_proceed(self) -> bool:
        return not self.failed_checks

    @property
    def failed_types(self) -> List[RiskCheckType]:
        return [c.check_type for c in self.failed_checks]

    @property
    def reasons(self) -> List[str]:
        return [c.reason or c.check_type.value for c in self.failed_checks]

    def add(self, check: RiskCheckResult) -> RiskCheckResult:
        self.checks.append(check)
        return check


@dataclass
class DailyStats:
    """Per-UTC-day attempt counters. ``date`` is the reset key."""
    date: str
    total_attempts: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_profit_usd: float = 0.0
    total_loss_usd: float = 0.0
    net_profit_usd: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DailyStats":
        return cls(
            date=str(data["date"]),
            total_attempts=int(data.get("total_attempts", 0)),
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            total_profit_usd=float(data.get("total_profit_usd", 0.0)),
            total_loss_usd=float(data.get("total_loss_usd", 0.0)),
            net_profit_usd=float(data.get("net_profit_usd", 0.0)),
        )


@dataclass
class EmergencyStopState:
    is_active: bool = False
    reason: Optional[str] = None
    activated_at: Optional[str] = None
    activated_by: Optional[str] = None


class CandidateState(Enum):
    """Per-cycle lifecycle of an indexed position."""
    INDEXED = "indexed"
    VERIFIED_HEALTHY = "verified_healthy"
    VERIFIED_LIQUIDATABLE = "verified_liquidatable"
    DATA_MISMATCH = "data_mismatch"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    OBSERVED = "observed"
    EXECUTION_ATTEMPTED = "execution_attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class SwapLeg:
    """Seized collateral the liquidator sells back into the repaid asset.

    ``value_in_usd`` is the oracle value of ``amount_in``; ``out_price_usd`` is
    the oracle USD price of one whole ``token_out``.
    """
    token_in: str
    token_out: str
    amount_in: int
    value_in_usd: Decimal
    out_decimals: int
    out_price_usd: Decimal

    @property
    def needs_swap(self) -> bool:
        return self.token_in.lower() != self.token_out.lower()

    def value_out_usd(self, amount_out: int) -> Decimal:
        return Decimal(amount_out) / Decimal(10 ** self.out_decimals) * self.out_price_usd


@dataclass(frozen=True)
class IndexedPosition:
    """A candidate as reported by the off-chain index. Advisory only."""
    protocol: str
    account: str
    market: str
    collateral_token: Optional[str] = None
    is_long: Optional[bool] = None
    indexed_size_usd: float = 0.0
    debt_asset: Optional[str] = None
    debt_amount: int = 0
    metadata: Tuple[Tuple[str, Any], ...] = ()

    def meta(self, key: str, default: Any = None) -> Any:
        return dict(self.metadata).get(key, default)


@dataclass
class LiquidationCandidate:
    """A position confirmed liquidatable on-chain, ready for the risk pipeline."""
    protocol: str
    position: Position
    metrics: HealthMetrics
    health_factor: Decimal
    repay_token: str
    seize_token: str
    repay_amount: int = 0
    repay_is_native: bool = False
    estimated_gas: int = 0
    gross_reward_usd: Decimal = ZERO
    estimated_gas_usd: Decimal = ZERO
    position_key: str = ""
    discovered_at: datetime = None
    details: Dict[str, Any] = None

    def __post_init__(self):
        if self.discovered_at is None:
            self.discovered_at = utc_now()
        if self.details is None:
            self.details = {}

    @property
    def account(self) -> str:
        return self.position.account

    @property
    def size_usd(self) -> Decimal:
        return self.metrics.size_value_usd

    @property
    def estimated_profit_usd(self) -> Decimal:
        return self.gross_reward_usd - self.estimated_gas_usd

    @property
    def retry_key(self) -> str:
        return f"{self.protocol}|{self.account.lower()}|{self.repay_token.lower()}|{self.seize_token.lower()}"


@dataclass
class LiquidationResult:
    """Outcome of one execution attempt."""
    success: bool
    tx_hash: Optional[str] = None
    profit_usd: float = 0.0
    gas_usd: float = 0.0
    error: Optional[str] = None
    timestamp: datetime = None
    is_private_relay: bool = False
    channel: str = "none"  # "private" | "public" | "dry_run" | "none"
    retryable: bool = False
    attempted: bool = True
    candidate_key: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utc_now()

    @property
    def net_usd(self) -> float:
        return self.profit_usd - self.gas_usd


@dataclass(frozen=True)
class MarketSnapshot:
    """Per-cycle inputs shared by every verification."""
    prices: PriceMap
    gas_price_wei: int
    native_price_usd: Decimal
    taken_at: datetime = None

    def price(self, token: str) -> PriceTuple:
        try:
            return self.prices[token.lower()]
        except KeyError:
            raise KeyError(f"no price for token {token}") from None

    def gas_cost_usd(self, gas_units: int) -> Decimal:
        return Decimal(gas_units * self.gas_price_wei) / Decimal(10 ** 18) * self.native_price_usd
