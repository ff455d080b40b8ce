"""
Liquidation Sentinel Core: Configuration Schema

Pydantic models for config/app.yaml and config/policy.yaml plus the loader
used by the runner. Secrets are never read from YAML; the config only names
the environment variables that hold them.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from web3 import Web3

from core.models import ExecutionMode
from infra.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Uniswap V3 / PancakeSwap V3 pool fees (hundredths of a bip)
FEE_TIERS = (100, 500, 3000, 10000)


def _checksum(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not Web3.is_address(value.lower()):
        raise ValueError(f"not a valid address: {value!r}")
    return Web3.to_checksum_address(value)


# ===== Policy Schema =====
class RetryConfig(BaseModel):
    """Backoff parameters (full jitter)"""
    base_delay_seconds: float = Field(default=1.0, gt=0, description="Base delay")
    max_delay_seconds: float = Field(default=60.0, gt=0, description="Delay cap")
    max_attempts: int = Field(default=3, ge=1, description="Attempt cap")
    jitter: bool = Field(default=True, description="Full jitter on/off")

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            max_attempts=self.max_attempts,
            jitter=self.jitter,
        )


class RiskPolicy(BaseModel):
    """Risk pipeline thresholds"""
    min_position_size_usd: float = Field(ge=0, description="Skip positions below this size (not worth gas)")
    max_position_size_usd: float = Field(gt=0, description="Capital/risk ceiling per liquidation")
    min_profit_usd: float = Field(ge=0, description="Minimum estimated profit to execute")
    max_gas_price_gwei: float = Field(gt=0, description="Gas ceiling (equal passes)")
    max_daily_loss_usd: float = Field(default=0.0, description="Daily loss ceiling; <= 0 disables")
    token_whitelist: List[str] = Field(default_factory=list, description="Allowed tokens (takes precedence)")
    token_blacklist: List[str] = Field(default_factory=list, description="Denied tokens")
    health_factor_drift_warning_pct: float = Field(default=10.0, ge=0, description="Warn on HF drift above this %")
    max_price_impact_bps: int = Field(default=300, ge=0, le=10_000, description="Reject liquidations whose collateral swap loses more")

    @field_validator("token_whitelist", "token_blacklist")
    @classmethod
    def normalize_tokens(cls, v: List[str]) -> List[str]:
        return [_checksum(token).lower() for token in v]

    @field_validator("max_position_size_usd")
    @classmethod
    def validate_size_bounds(cls, v: float, info) -> float:
        min_size = info.data.get("min_position_size_usd", 0)
        if v < min_size:
            raise ValueError(f"max_position_size_usd ({v}) must be >= min_position_size_usd ({min_size})")
        return v


class ExecutionPolicy(BaseModel):
    """Execution service parameters"""
    mode: str = Field(default="flash_loan", pattern="^(flash_loan|wallet)$", description="Funding mode")
    confirmations: int = Field(default=1, ge=1, description="Blocks to wait after inclusion")
    confirmation_timeout_seconds: float = Field(default=120.0, gt=0, description="Receipt wait timeout")
    gas_limit_buffer_pct: int = Field(default=20, ge=0, le=200, description="Gas limit headroom %")
    gas_price_buffer_pct: int = Field(default=10, ge=0, le=200, description="Gas price bump %")
    post_success_cooldown_seconds: float = Field(default=2.0, ge=0, description="Pause after a successful send")
    dry_run: bool = Field(default=False, description="Build transactions but never send")
    retry: RetryConfig = Field(default_factory=RetryConfig, description="Per-position retry backoff")

    @property
    def execution_mode(self) -> ExecutionMode:
        return ExecutionMode.from_string(self.mode)


class PolicyConfig(BaseModel):
    risk: RiskPolicy
    execution: ExecutionPolicy = Field(default_factory=ExecutionPolicy)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = Field(default="liquidation-sentinel", min_length=1)
    execution_enabled: bool = Field(default=False, description="False = observation-only")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/liquidator.log")


class ChainConfig(BaseModel):
    chain_id: int = Field(gt=0)
    rpc_url: Optional[str] = Field(default=None, description="Used when rpc_url_env is unset")
    rpc_url_env: str = Field(default="RPC_URL")
    rpc_timeout_seconds: float = Field(default=10.0, gt=0)
    private_key_env: str = Field(default="PRIVATE_KEY")
    multicall_address: str = Field(default="0xcA11bde05977b3631167028862bE2a173976CA11")
    native_price_token: str = Field(description="Wrapped native token used to price gas")
    rpc_retry: RetryConfig = Field(default_factory=lambda: RetryConfig(base_delay_seconds=0.5, max_delay_seconds=5.0))

    @field_validator("multicall_address", "native_price_token")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _checksum(v)


class RelayConfig(BaseModel):
    enabled: bool = Field(default=False)
    endpoint: Optional[str] = Field(default=None)
    auth_token_env: str = Field(default="RELAY_AUTH_TOKEN")
    fallback_to_public: bool = Field(default=True)
    timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def endpoint_required_when_enabled(self) -> "RelayConfig":
        if self.enabled and not self.endpoint:
            raise ValueError("relay.endpoint is required when relay.enabled=true")
        return self


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=30.0, gt=0)
    overlap_policy: str = Field(default="no_overlap", pattern="^(no_overlap|skip_if_running|allow_overlap)$")


class MonitorConfig(BaseModel):
    batch_size: int = Field(default=1, ge=1, description="Candidates verified concurrently")
    inter_item_delay_seconds: float = Field(default=0.1, ge=0)
    market_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(base_delay_seconds=0.5, max_delay_seconds=4.0, max_attempts=3)
    )
    bulk_scan_batch_size: int = Field(default=50, ge=1, description="Accounts per multicall round trip")
    bulk_scan_health_threshold: float = Field(default=1.05, gt=0, description="Bulk-scan hits below this HF get verified")
    bulk_scan_accounts_file: Optional[str] = Field(default=None, description="Newline/JSON list of accounts to scan")


class PriceFeedConfig(BaseModel):
    tickers_url: str = Field(default="https://arbitrum-api.gmxinfra.io/prices/tickers")
    ttl_seconds: float = Field(default=10.0, gt=0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_stale_seconds: float = Field(default=30.0, ge=0)


class IndexSourceConfig(BaseModel):
    protocol: str = Field(pattern="^(gmx|aave|venus)$")
    kind: str = Field(pattern="^(subgraph|file)$")
    url: Optional[str] = None
    path: Optional[str] = None
    query: Optional[str] = Field(default=None, description="GraphQL override for subgraph sources")
    page_size: int = Field(default=500, ge=1)
    max_pages: int = Field(default=20, ge=1)
    min_size_usd: float = Field(default=0.0, ge=0)
    timeout_seconds: float = Field(default=15.0, gt=0)

    @model_validator(mode="after")
    def location_required(self) -> "IndexSourceConfig":
        if self.kind == "subgraph" and not self.url:
            raise ValueError("subgraph index sources need a url")
        if self.kind == "file" and not self.path:
            raise ValueError("file index sources need a path")
        return self


class IndexerConfig(BaseModel):
    sources: List[IndexSourceConfig] = Field(default_factory=list)


class StateConfig(BaseModel):
    daily_stats_file: str = Field(default="data/daily_stats.json")
    emergency_stop_file: str = Field(default="data/EMERGENCY_STOP")
    lock_dir: str = Field(default="data")
    lock_name: str = Field(default="liquidation-sentinel")


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class GmxConfig(BaseModel):
    enabled: bool = True
    data_store: str
    reader: str
    exchange_router: str
    order_vault: str
    referral_storage: str
    liquidation_reward_bps: int = Field(default=500, ge=0, le=10_000, description="Keeper reward estimate")
    min_collateral_factor_bps: int = Field(default=100, gt=0, le=10_000, description="Fallback maintenance margin")
    execution_gas_limit: int = Field(default=300_000, gt=0)

    @field_validator("data_store", "reader", "exchange_router", "order_vault", "referral_storage")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _checksum(v)


class AaveConfig(BaseModel):
    enabled: bool = False
    pool: str
    oracle: str
    data_provider: str
    reserves: List[str] = Field(min_length=1, description="Reserves inspected per account")
    flash_liquidator: Optional[str] = None
    liquidation_bonus_bps: int = Field(default=1000, ge=0, le=10_000, description="Fallback when reserve config is unreadable")
    flash_loan_fee_bps: int = Field(default=9, ge=0, le=10_000)
    swap_pool_fee: int = Field(default=3000, description="Uniswap V3 fee tier for the collateral swap")
    receive_a_token: bool = False
    execution_gas_limit: int = Field(default=800_000, gt=0)

    @field_validator("pool", "oracle", "data_provider", "flash_liquidator")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return _checksum(v)

    @field_validator("reserves")
    @classmethod
    def validate_reserves(cls, v: List[str]) -> List[str]:
        return [_checksum(asset) for asset in v]

    @field_validator("swap_pool_fee")
    @classmethod
    def validate_fee_tier(cls, v: int) -> int:
        if v not in FEE_TIERS:
            raise ValueError(f"swap_pool_fee must be a Uniswap V3 fee tier, got {v}")
        return v


class VenusConfig(BaseModel):
    enabled: bool = False
    chain_id: int = Field(default=56, gt=0, description="Chain the comptroller lives on")
    comptroller: str
    oracle: Optional[str] = Field(default=None, description="Defaults to comptroller.oracle()")
    liquidator: Optional[str] = Field(default=None, description="Venus Liquidator contract; vTokens are called directly when unset")
    markets: List[str] = Field(default_factory=list, description="vTokens to load; empty loads every listed market")
    wrapped_native: str = Field(default="0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", description="Swap token for the native market")
    liquidation_incentive_bps: int = Field(default=1000, ge=0, le=10_000, description="Fallback when the comptroller is unreadable")
    execution_gas_limit: int = Field(default=900_000, gt=0)

    @field_validator("comptroller", "oracle", "liquidator", "wrapped_native")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return _checksum(v)

    @field_validator("markets")
    @classmethod
    def validate_markets(cls, v: List[str]) -> List[str]:
        return [_checksum(vtoken) for vtoken in v]


class ProtocolsConfig(BaseModel):
    gmx: Optional[GmxConfig] = None
    aave: Optional[AaveConfig] = None
    venus: Optional[VenusConfig] = None


class DexConfig(BaseModel):
    """Concentrated-liquidity quoter used to price the collateral swap."""
    enabled: bool = False
    quoter: Optional[str] = Field(default=None, description="Uniswap/PancakeSwap V3 QuoterV2")
    fee_tiers: List[int] = Field(default_factory=lambda: list(FEE_TIERS))
    hop_fee_tiers: List[int] = Field(default_factory=lambda: [500, 3000], description="Fee tiers tried on two-hop routes")
    intermediaries: List[str] = Field(default_factory=list, description="Tokens tried as the middle hop")

    @field_validator("quoter")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return _checksum(v)

    @field_validator("intermediaries")
    @classmethod
    def validate_intermediaries(cls, v: List[str]) -> List[str]:
        return [_checksum(token) for token in v]

    @field_validator("fee_tiers", "hop_fee_tiers")
    @classmethod
    def validate_fee_tiers(cls, v: List[int]) -> List[int]:
        unknown = [fee for fee in v if fee not in FEE_TIERS]
        if unknown:
            raise ValueError(f"unknown V3 fee tier(s): {unknown}")
        return v

    @model_validator(mode="after")
    def quoter_required(self) -> "DexConfig":
        if self.enabled and not self.quoter:
            raise ValueError("dex.enabled=true requires dex.quoter")
        return self


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    chain: ChainConfig
    relay: RelayConfig = Field(default_factory=RelayConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    prices: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    protocols: ProtocolsConfig = Field(default_factory=ProtocolsConfig)
    dex: DexConfig = Field(default_factory=DexConfig)


class BotConfig(BaseModel):
    app: AppConfig
    policy: PolicyConfig


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(config_dir: str = "config") -> BotConfig:
    """Load and validate app.yaml + policy.yaml. Raises pydantic.ValidationError on bad values."""
    config_path = Path(config_dir)
    return BotConfig(
        app=AppConfig(**load_yaml_file(config_path / "app.yaml")),
        policy=PolicyConfig(**load_yaml_file(config_path / "policy.yaml")),
    )


__all__ = [
    "AppConfig",
    "BotConfig",
    "PolicyConfig",
    "RiskPolicy",
    "ExecutionPolicy",
    "RetryConfig",
    "load_config",
    "load_yaml_file",
]
