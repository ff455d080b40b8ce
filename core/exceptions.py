"""Shared exception types for the liquidation engine."""

from typing import Optional


class LiquidatorError(RuntimeError):
    """Base class for engine errors."""


class TransientRpcError(LiquidatorError):
    """Raised when an RPC read times out, is rate limited or the transport drops.

    Callers retry these with backoff; exhausting retries skips the affected
    candidate or market for the current cycle only.
    """

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(f"{source}: {original}" if original else source)
        self.source = source
        self.original = original


class DataIntegrityMismatch(LiquidatorError):
    """Index data disagrees with on-chain ground truth (closed or healthy position)."""

    def __init__(self, account: str, reason: str):
        super().__init__(f"{account}: {reason}")
        self.account = account
        self.reason = reason


class MarketUnavailable(LiquidatorError):
    """Market metadata could not be loaded after bounded retries."""

    def __init__(self, market: str, original: Optional[Exception] = None):
        super().__init__(f"market {market} unavailable: {original}")
        self.market = market
        self.original = original


class ExecutionFailed(LiquidatorError):
    """A liquidation attempt failed after the transaction was built."""

    retryable = False

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class RelayError(ExecutionFailed):
    """Broadcast rejected by the private relay (and no fallback allowed)."""

    retryable = True


class ConfirmationTimeout(ExecutionFailed):
    """No receipt within the confirmation window. The tx may still land."""

    retryable = True


class TransactionReverted(ExecutionFailed):
    """Receipt returned with status 0. Terminal for this attempt."""


class FatalStartupError(LiquidatorError):
    """Conditions that must abort the process before the first cycle."""
