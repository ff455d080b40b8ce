"""
Liquidation Sentinel Core: Risk Manager

Hard constraints from policy.yaml, applied to every confirmed candidate
before anything is signed.

Checks (in order):
1. Emergency stop        (hard stop)
2. Daily loss ceiling    (hard stop, latches the emergency stop)
3. Gas price ceiling
4. Token allow/deny lists
5. Wallet balance        (wallet mode only)
6. Health factor re-check against chain
7. Position size bounds

Checks 3-7 all run so every failure reason is visible; the candidate can
proceed only if none failed. Rejections are returned, never raised.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from web3.exceptions import ContractLogicError

from core.circuit_breakers import DailyLossTracker, EmergencyStop
from core.exceptions import FatalStartupError, TransientRpcError
from core.models import (
    GWEI,
    DailyStats,
    EmergencyStopState,
    ExecutionMode,
    LiquidationCandidate,
    LiquidationResult,
    RiskCheckResult,
    RiskCheckType,
    RiskValidationResult,
)
from infra.alerting import AlertService, AlertSeverity

logger = logging.getLogger(__name__)


def gas_price_gwei(gas_price_wei: int) -> Decimal:
    return Decimal(gas_price_wei) / Decimal(GWEI)


def gas_within_ceiling(gas_price_wei: int, max_gas_price_gwei: float) -> bool:
    """Equal to the ceiling passes."""
    return gas_price_gwei(gas_price_wei) <= Decimal(str(max_gas_price_gwei))


class RiskManager:
    """
    Enforces the risk policy and owns the persisted circuit breakers.

    The loss tracker and emergency stop files are written by this process
    only (see infra/instance_lock.py).
    """

    def __init__(
        self,
        policy,
        loss_tracker: DailyLossTracker,
        emergency_stop: EmergencyStop,
        chain,
        adapters,
        execution_mode: ExecutionMode = ExecutionMode.FLASH_LOAN,
        alert_service: Optional[AlertService] = None,
        metrics=None,
    ):
        self.policy = policy
        self.loss_tracker = loss_tracker
        self.emergency_stop = emergency_stop
        self.chain = chain
        self.adapters = adapters
        self.execution_mode = execution_mode
        self.alert_service = alert_service or AlertService.disabled()
        self.metrics = metrics
        self._whitelist = {t.lower() for t in policy.token_whitelist}
        self._blacklist = {t.lower() for t in policy.token_blacklist}

        logger.info(
            "Initialized RiskManager (mode=%s, size=$%.0f-$%.0f, gas<=%s gwei, daily loss<=$%.2f)",
            execution_mode.value,
            policy.min_position_size_usd,
            policy.max_position_size_usd,
            policy.max_gas_price_gwei,
            policy.max_daily_loss_usd,
        )

    # ----- pipeline -----

    async def validate(self, candidate: LiquidationCandidate,
                       mode: Optional[ExecutionMode] = None) -> RiskValidationResult:
        mode = mode or self.execution_mode
        result = RiskValidationResult()

        # Hard stops
        if not result.add(self._check_emergency_stop()).passed:
            return self._finish(candidate, result)
        if not result.add(self._check_daily_loss()).passed:
            return self._finish(candidate, result)

        result.add(await self._check_gas_price())
        result.add(self._check_token_lists(candidate))
        balance = await self._check_balance(candidate, mode)
        if balance is not None:
            result.add(balance)
        result.add(await self._check_health_factor(candidate, result))
        result.add(self._check_min_size(candidate))
        result.add(self._check_max_size(candidate))

        return self._finish(candidate, result)

    def _finish(self, candidate: LiquidationCandidate, result: RiskValidationResult) -> RiskValidationResult:
        if result.can_proceed:
            logger.info(
                f"Risk approved {candidate.protocol} {candidate.account} "
                f"(hf={candidate.health_factor:.4f}, size=${candidate.size_usd:,.2f})"
            )
            return result

        for check in result.failed_checks:
            if self.metrics is not None:
                self.metrics.record_risk_rejection(check.check_type.value)
        logger.info(
            f"Risk rejected {candidate.protocol} {candidate.account}: "
            f"{[t.value for t in result.failed_types]} - {'; '.join(result.reasons)}"
        )
        return result

    def _check_emergency_stop(self) -> RiskCheckResult:
        state = self.emergency_stop.state()
        if state.is_active:
            logger.error(f"EMERGENCY STOP ACTIVE - liquidations halted ({state.reason})")
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.EMERGENCY_STOP,
                reason=f"Emergency stop active: {state.reason}",
                details={
                    "activated_at": state.activated_at,
                    "activated_by": state.activated_by,
                    "flag_file": str(self.emergency_stop.path),
                },
            )
        return RiskCheckResult(passed=True, check_type=RiskCheckType.EMERGENCY_STOP)

    def _check_daily_loss(self) -> RiskCheckResult:
        loss = self.loss_tracker.total_loss_usd
        limit = self.loss_tracker.max_daily_loss_usd
        if self.loss_tracker.is_limit_exceeded():
            reason = f"Daily loss limit exceeded: ${loss:.2f} > ${limit:.2f}"
            self.activate_emergency_stop(reason)
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.DAILY_LOSS_LIMIT,
                reason=reason,
                details={"total_loss_usd": loss, "max_daily_loss_usd": limit},
            )
        return RiskCheckResult(passed=True, check_type=RiskCheckType.DAILY_LOSS_LIMIT)

    async def _check_gas_price(self) -> RiskCheckResult:
        try:
            gas_price_wei = await self.chain.gas_price_wei()
        except TransientRpcError as e:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.GAS_PRICE_SPIKE,
                reason=f"Gas price unavailable: {e}",
            )

        current = gas_price_gwei(gas_price_wei)
        if not gas_within_ceiling(gas_price_wei, self.policy.max_gas_price_gwei):
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.GAS_PRICE_SPIKE,
                reason=f"Gas price {current} gwei > max {self.policy.max_gas_price_gwei} gwei",
                details={"gas_price_gwei": str(current), "max_gas_price_gwei": self.policy.max_gas_price_gwei},
            )
        return RiskCheckResult(
            passed=True,
            check_type=RiskCheckType.GAS_PRICE_SPIKE,
            details={"gas_price_gwei": str(current)},
        )

    def _check_token_lists(self, candidate: LiquidationCandidate) -> RiskCheckResult:
        tokens = {
            "repay": candidate.repay_token.lower(),
            "seize": candidate.seize_token.lower(),
        }

        if self._whitelist:
            missing = {side: token for side, token in tokens.items() if token not in self._whitelist}
            if missing:
                return RiskCheckResult(
                    passed=False,
                    check_type=RiskCheckType.TOKEN_WHITELIST,
                    reason=f"Token(s) not whitelisted: {', '.join(f'{s}={t}' for s, t in missing.items())}",
                    details={"missing": missing},
                )
            return RiskCheckResult(passed=True, check_type=RiskCheckType.TOKEN_WHITELIST)

        banned = {side: token for side, token in tokens.items() if token in self._blacklist}
        if banned:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.TOKEN_BLACKLIST,
                reason=f"Token(s) blacklisted: {', '.join(f'{s}={t}' for s, t in banned.items())}",
                details={"blacklisted": banned},
            )
        return RiskCheckResult(passed=True, check_type=RiskCheckType.TOKEN_BLACKLIST)

    async def _check_balance(self, candidate: LiquidationCandidate,
                             mode: ExecutionMode) -> Optional[RiskCheckResult]:
        """Wallet-funded mode only; flash loans bring their own capital."""
        if mode == ExecutionMode.FLASH_LOAN:
            return None

        required = int(candidate.repay_amount)
        try:
            available = await self.chain.balance_of(
                candidate.repay_token, self.chain.address, is_native=candidate.repay_is_native
            )
        except (TransientRpcError, ContractLogicError, RuntimeError) as e:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.INSUFFICIENT_BALANCE,
                reason=f"Balance read failed for {candidate.repay_token}: {e}",
            )

        details = {"available": available, "required": required, "asset": candidate.repay_token}
        if available >= required:
            return RiskCheckResult(passed=True, check_type=RiskCheckType.INSUFFICIENT_BALANCE, details=details)
        return RiskCheckResult(
            passed=False,
            check_type=RiskCheckType.INSUFFICIENT_BALANCE,
            reason=f"Insufficient {candidate.repay_token} balance: {available} < {required}",
            details=details,
        )

    async def _check_health_factor(self, candidate: LiquidationCandidate,
                                   result: RiskValidationResult) -> RiskCheckResult:
        """Re-read solvency on-chain; the position may be repaid or taken by someone else."""
        try:
            adapter = self.adapters.get(candidate.protocol)
            current = await adapter.current_health_factor(candidate)
        except (TransientRpcError, ContractLogicError, KeyError) as e:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.HEALTH_FACTOR_CHANGED,
                reason=f"Health factor re-check failed: {e}",
            )

        candidate.details["current_health_factor"] = current
        discovered = candidate.health_factor
        if discovered.is_finite() and discovered > 0 and current.is_finite():
            drift_pct = abs(current - discovered) / discovered * 100
            if drift_pct > Decimal(str(self.policy.health_factor_drift_warning_pct)):
                result.warnings.append(
                    f"Health factor drifted {drift_pct:.1f}% since discovery ({discovered:.4f} -> {current:.4f})"
                )
                logger.warning(f"{candidate.account}: {result.warnings[-1]}")

        if current >= 1:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.HEALTH_FACTOR_CHANGED,
                reason=f"Position no longer liquidatable (hf={current:.4f})",
                details={"discovered": str(discovered), "current": str(current)},
            )
        return RiskCheckResult(
            passed=True,
            check_type=RiskCheckType.HEALTH_FACTOR_CHANGED,
            details={"current": str(current)},
        )

    def _check_min_size(self, candidate: LiquidationCandidate) -> RiskCheckResult:
        size = float(candidate.size_usd)
        if size < self.policy.min_position_size_usd:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.POSITION_SIZE_TOO_SMALL,
                reason=f"Position ${size:,.2f} below minimum ${self.policy.min_position_size_usd:,.2f}",
            )
        return RiskCheckResult(passed=True, check_type=RiskCheckType.POSITION_SIZE_TOO_SMALL)

    def _check_max_size(self, candidate: LiquidationCandidate) -> RiskCheckResult:
        size = float(candidate.size_usd)
        if size > self.policy.max_position_size_usd:
            return RiskCheckResult(
                passed=False,
                check_type=RiskCheckType.POSITION_SIZE_EXCEEDED,
                reason=f"Position ${size:,.2f} above maximum ${self.policy.max_position_size_usd:,.2f}",
            )
        return RiskCheckResult(passed=True, check_type=RiskCheckType.POSITION_SIZE_EXCEEDED)

    # ----- circuit breaker state -----

    def record_result(self, result: LiquidationResult) -> DailyStats:
        """Feed one attempt (success or failure) into today's loss accounting."""
        stats = self.loss_tracker.record(result)
        if self.metrics is not None:
            self.metrics.record_daily_loss(stats.total_loss_usd)
        if self.loss_tracker.is_limit_exceeded():
            logger.warning(
                f"Daily loss ${stats.total_loss_usd:.2f} is over the ${self.loss_tracker.max_daily_loss_usd:.2f} "
                "ceiling; next validation will latch the emergency stop"
            )
        return stats

    def activate_emergency_stop(self, reason: str, activated_by: str = "risk_manager") -> EmergencyStopState:
        already_active = self.emergency_stop.is_active()
        state = self.emergency_stop.activate(reason, activated_by=activated_by)
        if self.metrics is not None:
            self.metrics.record_emergency_stop(True)
        if not already_active:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title="Emergency stop activated",
                message=reason,
                context={"activated_by": activated_by, "flag_file": str(self.emergency_stop.path)},
            )
        return state

    def deactivate_emergency_stop(self, operator: str = "operator") -> None:
        self.emergency_stop.deactivate(operator)
        if self.metrics is not None:
            self.metrics.record_emergency_stop(False)

    def is_emergency_stopped(self) -> bool:
        return self.emergency_stop.is_active()

    def ensure_startable(self) -> None:
        """Raise FatalStartupError if the process must not start cycling."""
        state = self.emergency_stop.state()
        if state.is_active:
            raise FatalStartupError(
                f"Emergency stop is active ({state.reason}, by {state.activated_by} at {state.activated_at}); "
                f"remove {self.emergency_stop.path} to resume"
            )

    def status(self) -> Dict[str, Any]:
        stats = self.loss_tracker.stats
        stop = self.emergency_stop.state()
        return {
            "date": stats.date,
            "attempts": stats.total_attempts,
            "successes": stats.success_count,
            "failures": stats.failure_count,
            "total_loss_usd": round(stats.total_loss_usd, 2),
            "net_profit_usd": round(stats.net_profit_usd, 2),
            "max_daily_loss_usd": self.loss_tracker.max_daily_loss_usd,
            "emergency_stop": stop.is_active,
            "emergency_stop_reason": stop.reason,
        }


__all__ = ["RiskManager", "gas_price_gwei", "gas_within_ceiling"]
