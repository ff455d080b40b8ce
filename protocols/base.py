"""
Protocol Adapter Interface

Each supported protocol plugs into the engine through one adapter. The
adapter owns everything protocol specific (position keys, authoritative
liquidatability reads, parameter fetches, transaction encoding) so the risk
pipeline and execution service stay protocol agnostic.

Architecture:
- ProtocolAdapter: abstract base class, one subclass per protocol
- Verification: adapter output for one indexed position
- LiquidationCall: unsigned call (to/data/value) the executor turns into a tx
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from core.chain import ChainContext
from core.models import (
    CandidateState,
    ExecutionMode,
    IndexedPosition,
    LiquidationCandidate,
    MarketSnapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class Verification:
    """Ground-truth outcome for one indexed position."""
    state: CandidateState
    indexed: IndexedPosition
    candidate: Optional[LiquidationCandidate] = None
    reason: Optional[str] = None

    @property
    def is_liquidatable(self) -> bool:
        return self.state == CandidateState.VERIFIED_LIQUIDATABLE and self.candidate is not None


@dataclass
class LiquidationCall:
    to: str
    data: bytes
    value: int = 0
    description: str = ""


class ProtocolAdapter(ABC):
    """
    Abstract base class for protocol integrations.

    Subclasses MUST:
    1. Set ``name`` (config key / candidate tag) and ``model`` ("margin" | "debt")
    2. Read liquidatability from the protocol's own view functions, never from index data
    3. Raise TransientRpcError for retryable transport failures
    """

    name: str = ""
    model: str = ""

    def __init__(self, chain: ChainContext, config: Any, execution_mode: ExecutionMode = ExecutionMode.FLASH_LOAN):
        self.chain = chain
        self.config = config
        self.execution_mode = execution_mode

    async def load_market(self, market: str) -> Any:
        """Static market metadata, cached by the monitor. Default: nothing to load."""
        return market

    @abstractmethod
    async def verify(self, indexed: IndexedPosition, market_info: Any, snapshot: MarketSnapshot) -> Verification:
        """Re-derive the position on-chain and decide liquidatability."""

    @abstractmethod
    async def current_health_factor(self, candidate: LiquidationCandidate) -> Decimal:
        """Fresh authoritative health factor (< 1 means still liquidatable)."""

    @abstractmethod
    async def build_liquidation_call(self, candidate: LiquidationCandidate, execution_fee_wei: int) -> LiquidationCall:
        """Encode the protocol-specific liquidation call."""

    @abstractmethod
    async def bulk_scan(self, accounts: Sequence[str], snapshot: MarketSnapshot,
                        health_threshold: Decimal) -> List[IndexedPosition]:
        """Batched discovery over many accounts; returns positions worth verifying."""

    def estimated_gas(self, candidate: Optional[LiquidationCandidate] = None) -> int:
        return int(getattr(self.config, "execution_gas_limit", 300_000))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name} model={self.model}>"


__all__ = ["ProtocolAdapter", "Verification", "LiquidationCall"]
