"""
Liquidation Sentinel Core: Execution Service

Turns a risk-approved LiquidationCandidate into a confirmed on-chain
liquidation:

    preflight -> build -> sign -> submit (private relay / public) -> confirm -> record

Preflight repeats the profit, gas and health checks because time passes
between validation and build; a preflight rejection never builds a
transaction. With a DEX quoter configured, preflight also prices the
collateral swap (see core.profitability). Every transaction that reaches
the relay is recorded with the risk manager, successful or not.

Sends share one signing key, so they are serialized under a single lock and
batches pause after each success to let the nonce advance.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from core.exceptions import ExecutionFailed, LiquidatorError, TransientRpcError
from core.models import (
    LiquidationCandidate,
    LiquidationResult,
    MarketSnapshot,
)
from core.risk import gas_price_gwei, gas_within_ceiling
from infra.alerting import AlertService, AlertSeverity
from infra.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class _RetryState:
    attempts: int = 0
    not_before: float = 0.0
    last_error: Optional[str] = None


class RetryRegistry:
    """
    Per-position execution backoff.

    Retryable failures (timeouts, relay hiccups) back off with the shared
    jittered policy; terminal failures and exhausted retries park the
    position for ``max_delay_seconds``. A success parks it for the
    post-success cooldown so the next cycle does not re-send against a
    position that is already being closed.
    """

    def __init__(self, policy: RetryPolicy, success_cooldown_seconds: float = 0.0,
                 clock: Callable[[], float] = time.monotonic):
        self.policy = policy
        self.success_cooldown_seconds = success_cooldown_seconds
        self._clock = clock
        self._states: Dict[str, _RetryState] = {}

    def can_attempt(self, key: str) -> Tuple[bool, Optional[str]]:
        state = self._states.get(key)
        if state is None:
            return True, None
        remaining = state.not_before - self._clock()
        if remaining > 0:
            return False, f"backing off {remaining:.1f}s after: {state.last_error or 'recent attempt'}"
        if state.attempts == 0:
            # Cooldown over and no retry streak to remember.
            del self._states[key]
        return True, None

    def prune(self) -> int:
        """Drop entries whose backoff ended more than ``max_delay_seconds`` ago."""
        cutoff = self._clock() - self.policy.max_delay_seconds
        expired = [key for key, state in self._states.items() if state.not_before <= cutoff]
        for key in expired:
            del self._states[key]
        return len(expired)

    def record_failure(self, key: str, error: str, retryable: bool) -> float:
        """Returns the delay applied."""
        state = self._states.setdefault(key, _RetryState())
        state.attempts += 1
        state.last_error = error
        if retryable and state.attempts < self.policy.max_attempts:
            delay = self.policy.delay_for(state.attempts - 1)
        else:
            delay = self.policy.max_delay_seconds
            state.attempts = 0
        state.not_before = self._clock() + delay
        return delay

    def record_success(self, key: str) -> None:
        self._states[key] = _RetryState(
            not_before=self._clock() + self.success_cooldown_seconds,
            last_error="liquidated",
        )

    def clear(self, key: Optional[str] = None) -> None:
        if key is None:
            self._states.clear()
        else:
            self._states.pop(key, None)

    def __len__(self) -> int:
        return len(self._states)


@dataclass
class ExecutionStats:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    preflight_rejected: int = 0
    dry_run: int = 0
    total_profit_usd: float = 0.0
    total_gas_usd: float = 0.0
    by_channel: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "preflight_rejected": self.preflight_rejected,
            "dry_run": self.dry_run,
            "total_profit_usd": round(self.total_profit_usd, 2),
            "total_gas_usd": round(self.total_gas_usd, 2),
            "by_channel": dict(self.by_channel),
        }


class ExecutionService:
    """
    Builds, submits and confirms liquidation transactions.

    Safety:
    - dry_run builds and prices the transaction but never signs or sends
    - preflight rejections never build a transaction
    - one send at a time (signer lock)
    """

    def __init__(
        self,
        chain,
        relay,
        risk_manager,
        adapters,
        risk_policy,
        execution_policy,
        alert_service: Optional[AlertService] = None,
        metrics=None,
        profitability=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chain = chain
        self.relay = relay
        self.risk_manager = risk_manager
        self.adapters = adapters
        self.risk_policy = risk_policy
        self.policy = execution_policy
        self.alert_service = alert_service or AlertService.disabled()
        self.metrics = metrics
        self.profitability = profitability
        self._sleep = sleep
        self._signer_lock = asyncio.Lock()
        self._native_price_usd: Optional[Decimal] = None
        self.retries = RetryRegistry(
            execution_policy.retry.to_policy(),
            success_cooldown_seconds=execution_policy.post_success_cooldown_seconds,
            clock=clock,
        )
        self.stats = ExecutionStats()

        if execution_policy.dry_run:
            logger.warning("ExecutionService in DRY RUN mode - transactions are built but never sent")

    def update_market(self, snapshot: MarketSnapshot) -> None:
        """Latest native-token price, used to value gas actually spent."""
        self._native_price_usd = snapshot.native_price_usd

    # ----- public API -----

    async def execute(self, candidate: LiquidationCandidate) -> LiquidationResult:
        async with self._signer_lock:
            return await self._execute_locked(candidate)

    async def execute_batch(self, candidates: List[LiquidationCandidate]) -> List[LiquidationResult]:
        """
        Execute candidates strictly in order.

        Pauses for the post-success cooldown after each sent success; no pause
        after failures.
        """
        self.retries.prune()
        results = []
        for candidate in candidates:
            try:
                result = await self.execute(candidate)
            except Exception as e:
                logger.exception(f"Unexpected error executing {candidate.retry_key}")
                result = self._not_attempted(candidate, f"unexpected error: {e}", retryable=True)
                self.retries.record_failure(candidate.retry_key, result.error, retryable=True)
            results.append(result)
            if result.success and result.attempted and self.policy.post_success_cooldown_seconds > 0:
                await self._sleep(self.policy.post_success_cooldown_seconds)
        return results

    # ----- stages -----

    async def _execute_locked(self, candidate: LiquidationCandidate) -> LiquidationResult:
        key = candidate.retry_key

        allowed, why = self.retries.can_attempt(key)
        if not allowed:
            logger.info(f"Skipping {key}: {why}")
            return self._not_attempted(candidate, why, retryable=True)

        try:
            gas_price = await self.chain.gas_price_wei()
        except TransientRpcError as e:
            return self._not_attempted(candidate, f"gas price unavailable: {e}", retryable=True)

        rejection = await self._preflight(candidate, gas_price)
        if rejection:
            self.stats.preflight_rejected += 1
            logger.info(f"Preflight rejected {key}: {rejection}")
            return self._not_attempted(candidate, rejection)

        try:
            tx = await self._build_transaction(candidate, gas_price)
        except (LiquidatorError, ContractLogicError, Web3Exception, ValueError) as e:
            # Simulation revert or encoding failure: nothing was sent.
            self.retries.record_failure(key, str(e), retryable=isinstance(e, TransientRpcError))
            logger.warning(f"Build failed for {key}: {e}")
            return self._not_attempted(candidate, f"build failed: {e}")

        if self.policy.dry_run:
            self.stats.dry_run += 1
            logger.info(
                f"[DRY RUN] Would liquidate {key}: to={tx['to']} gas={tx['gas']} "
                f"gasPrice={gas_price_gwei(tx['gasPrice']):.3f} gwei value={tx['value']} "
                f"est. profit=${candidate.estimated_profit_usd:.2f}"
            )
            return LiquidationResult(
                success=True,
                channel="dry_run",
                attempted=False,
                candidate_key=key,
            )

        return await self._send_and_confirm(candidate, tx)

    async def _preflight(self, candidate: LiquidationCandidate, gas_price_wei: int) -> Optional[str]:
        profit = candidate.estimated_profit_usd
        if profit < Decimal(str(self.risk_policy.min_profit_usd)):
            return f"estimated profit ${profit:.2f} below minimum ${self.risk_policy.min_profit_usd:.2f}"

        if not gas_within_ceiling(gas_price_wei, self.risk_policy.max_gas_price_gwei):
            return (
                f"gas price {gas_price_gwei(gas_price_wei)} gwei above "
                f"{self.risk_policy.max_gas_price_gwei} gwei"
            )

        try:
            health_factor = await self.adapters.get(candidate.protocol).current_health_factor(candidate)
        except (LiquidatorError, Web3Exception, ValueError, KeyError) as e:
            return f"health factor re-check failed: {e}"
        if health_factor >= 1:
            return f"position no longer liquidatable (hf={health_factor:.4f})"

        if self.profitability is not None:
            try:
                analysis = await self.profitability.assess(candidate)
            except (LiquidatorError, Web3Exception, ValueError) as e:
                return f"swap quote failed: {e}"
            if not analysis.acceptable:
                return analysis.reason
            if analysis.route is not None:
                logger.debug(
                    f"Swap for {candidate.retry_key}: {analysis.route.describe()} "
                    f"impact {analysis.price_impact_bps:.1f} bps, net ${analysis.net_profit_usd:.2f}"
                )
                if analysis.route.is_direct:
                    candidate.details["swap_fee_tier"] = analysis.route.fees[0]
        return None

    async def _build_transaction(self, candidate: LiquidationCandidate, gas_price_wei: int) -> Dict[str, Any]:
        adapter = self.adapters.get(candidate.protocol)
        estimated_gas = candidate.estimated_gas or adapter.estimated_gas(candidate)
        execution_fee = gas_price_wei * estimated_gas
        call = await adapter.build_liquidation_call(candidate, execution_fee)

        tx: Dict[str, Any] = {
            "from": self.chain.address,
            "to": Web3.to_checksum_address(call.to),
            "data": call.data,
            "value": int(call.value),
            "chainId": self.chain.chain_id,
        }
        gas_estimate = await self.chain.estimate_gas(tx)
        tx["gas"] = gas_estimate * (100 + self.policy.gas_limit_buffer_pct) // 100
        tx["gasPrice"] = gas_price_wei * (100 + self.policy.gas_price_buffer_pct) // 100
        tx["nonce"] = await self.chain.pending_nonce()
        logger.debug(f"Built {call.description}: gas {gas_estimate} -> {tx['gas']}, nonce {tx['nonce']}")
        return tx

    async def _send_and_confirm(self, candidate: LiquidationCandidate, tx: Dict[str, Any]) -> LiquidationResult:
        key = candidate.retry_key
        self.stats.attempted += 1
        raw = self.chain.sign(tx)

        try:
            submission = await self.relay.submit(raw)
        except ExecutionFailed as e:
            return self._record(candidate, LiquidationResult(
                success=False,
                error=str(e),
                retryable=e.retryable,
                candidate_key=key,
            ))
        except Exception as e:
            # Broadcast state unknown; still counts as an attempt.
            logger.exception(f"Unexpected error submitting {key}")
            return self._record(candidate, LiquidationResult(
                success=False,
                error=f"submit failed: {e}",
                retryable=True,
                candidate_key=key,
            ))

        try:
            receipt = await self.relay.wait_for_confirmation(
                submission.tx_hash,
                confirmations=self.policy.confirmations,
                timeout_seconds=self.policy.confirmation_timeout_seconds,
            )
        except ExecutionFailed as e:
            # Gas is unknown without a receipt; charge the estimate.
            return self._record(candidate, LiquidationResult(
                success=False,
                tx_hash=submission.tx_hash,
                gas_usd=float(candidate.estimated_gas_usd),
                error=str(e),
                is_private_relay=submission.is_private,
                channel=submission.channel,
                retryable=e.retryable,
                candidate_key=key,
            ))
        except Exception as e:
            logger.exception(f"Unexpected error confirming {key} tx={submission.tx_hash}")
            return self._record(candidate, LiquidationResult(
                success=False,
                tx_hash=submission.tx_hash,
                gas_usd=float(candidate.estimated_gas_usd),
                error=f"confirmation failed: {e}",
                is_private_relay=submission.is_private,
                channel=submission.channel,
                retryable=True,
                candidate_key=key,
            ))

        return self._record(candidate, LiquidationResult(
            success=True,
            tx_hash=submission.tx_hash,
            profit_usd=float(candidate.gross_reward_usd),
            gas_usd=self._gas_spent_usd(receipt, candidate),
            is_private_relay=submission.is_private,
            channel=submission.channel,
            candidate_key=key,
        ))

    def _gas_spent_usd(self, receipt, candidate: LiquidationCandidate) -> float:
        if self._native_price_usd is None:
            return float(candidate.estimated_gas_usd)
        gas_used = int(receipt.get("gasUsed", 0))
        price = int(receipt.get("effectiveGasPrice", 0))
        return float(Decimal(gas_used * price) / Decimal(10 ** 18) * self._native_price_usd)

    def _not_attempted(self, candidate: LiquidationCandidate, error: str, retryable: bool = False) -> LiquidationResult:
        return LiquidationResult(
            success=False,
            error=error,
            retryable=retryable,
            attempted=False,
            candidate_key=candidate.retry_key,
        )

    def _record(self, candidate: LiquidationCandidate, result: LiquidationResult) -> LiquidationResult:
        key = candidate.retry_key
        self.risk_manager.record_result(result)
        self.stats.total_gas_usd += result.gas_usd
        self.stats.by_channel[result.channel] = self.stats.by_channel.get(result.channel, 0) + 1
        if self.metrics is not None:
            self.metrics.record_liquidation(result.success, result.channel, result.profit_usd, result.gas_usd)

        if result.success:
            self.stats.succeeded += 1
            self.stats.total_profit_usd += result.profit_usd
            self.retries.record_success(key)
            logger.info(
                f"Liquidation confirmed {key} tx={result.tx_hash} via {result.channel}: "
                f"profit ${result.profit_usd:.2f}, gas ${result.gas_usd:.2f}"
            )
            self.alert_service.notify(
                severity=AlertSeverity.INFO,
                title="Liquidation succeeded",
                message=f"{candidate.protocol} {candidate.account} net ${result.net_usd:.2f}",
                context={"tx_hash": result.tx_hash, "channel": result.channel},
            )
        else:
            self.stats.failed += 1
            delay = self.retries.record_failure(key, result.error or "failed", result.retryable)
            logger.error(
                f"Liquidation failed {key} tx={result.tx_hash}: {result.error} "
                f"(retryable={result.retryable}, next attempt in {delay:.1f}s)"
            )
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title="Liquidation failed",
                message=f"{candidate.protocol} {candidate.account}: {result.error}",
                context={"tx_hash": result.tx_hash, "channel": result.channel, "retryable": result.retryable},
            )
        return result


__all__ = ["ExecutionService", "ExecutionStats", "RetryRegistry"]
