"""
Liquidation Sentinel Core: Circuit Breakers

DailyLossTracker - UTC-day attempt/profit/loss counters, persisted after every
recorded attempt and reset exactly once when the UTC date rolls over.

EmergencyStop - presence-based flag file. The file existing means the bot is
stopped; its optional JSON body carries reason/activated_at/activated_by. An
operator can create the file by hand (manual stop) and the risk manager
creates it when the daily loss ceiling is crossed. Only deactivate() clears it.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from core.models import DailyStats, EmergencyStopState, LiquidationResult
from infra.state_store import JsonFileBackend, StateStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DailyLossTracker:
    """Persisted daily stats with a loss ceiling.

    A ceiling <= 0 disables the limit check (stats are still recorded).
    """

    def __init__(self, store: StateStore, max_daily_loss_usd: float, clock: Optional[Clock] = None):
        self._store = store
        self.max_daily_loss_usd = float(max_daily_loss_usd)
        self._clock = clock or _utc_now
        self._stats: Optional[DailyStats] = None

    def _today(self) -> str:
        return self._clock().astimezone(timezone.utc).date().isoformat()

    def _read_persisted(self) -> Optional[DailyStats]:
        data = self._store.load()
        if not data.get("date"):
            return None
        try:
            return DailyStats.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed daily stats: {e}")
            return None

    def peek(self) -> DailyStats:
        """Today's persisted stats without writing anything; another day's file reads as empty."""
        today = self._today()
        stats = self._read_persisted()
        if stats is None or stats.date != today:
            return DailyStats(date=today)
        return stats

    def load(self) -> DailyStats:
        """Load persisted stats, resetting them if they belong to another UTC day."""
        today = self._today()
        stats = self._read_persisted()

        if stats is None or stats.date != today:
            if stats is not None:
                logger.info(
                    f"Daily stats rollover {stats.date} -> {today} "
                    f"(attempts={stats.total_attempts}, net=${stats.net_profit_usd:.2f})"
                )
            stats = DailyStats(date=today)
            self._store.save(stats.to_dict())

        self._stats = stats
        return stats

    @property
    def stats(self) -> DailyStats:
        if self._stats is None or self._stats.date != self._today():
            return self.load()
        return self._stats

    def record(self, result: LiquidationResult) -> DailyStats:
        """Fold one attempt into today's stats and persist immediately."""
        stats = self.stats
        net = result.profit_usd - result.gas_usd

        stats.total_attempts += 1
        if result.success:
            stats.success_count += 1
        else:
            stats.failure_count += 1

        if net >= 0:
            stats.total_profit_usd += net
        else:
            stats.total_loss_usd += -net
        stats.net_profit_usd += net

        self._store.save(stats.to_dict())
        logger.debug(
            f"Recorded attempt success={result.success} net=${net:.2f} "
            f"(loss today ${stats.total_loss_usd:.2f}/{self.max_daily_loss_usd:.2f})"
        )
        return stats

    @property
    def total_loss_usd(self) -> float:
        return self.stats.total_loss_usd

    def is_limit_exceeded(self) -> bool:
        if self.max_daily_loss_usd <= 0:
            return False
        return self.stats.total_loss_usd > self.max_daily_loss_usd


class EmergencyStop:
    """One-way latch backed by a flag file."""

    MANUAL_REASON = "Emergency stop flag file present"

    def __init__(self, backend: JsonFileBackend, clock: Optional[Clock] = None):
        self._backend = backend
        self._clock = clock or _utc_now

    @property
    def path(self):
        return self._backend.path

    def state(self) -> EmergencyStopState:
        """Read the flag from disk. Called on every validation, so external edits apply."""
        if not self._backend.exists():
            return EmergencyStopState(is_active=False)

        body = self._backend.read()
        if not isinstance(body, dict):
            return EmergencyStopState(
                is_active=True,
                reason=self.MANUAL_REASON,
                activated_by="operator",
            )
        return EmergencyStopState(
            is_active=True,
            reason=body.get("reason") or self.MANUAL_REASON,
            activated_at=body.get("activated_at"),
            activated_by=body.get("activated_by") or "operator",
        )

    def is_active(self) -> bool:
        return self._backend.exists()

    def activate(self, reason: str, activated_by: str = "risk_manager") -> EmergencyStopState:
        """Latch the stop. If already active the original reason is kept."""
        current = self.state()
        if current.is_active:
            logger.debug(f"Emergency stop already active ({current.reason}); ignoring '{reason}'")
            return current

        state = EmergencyStopState(
            is_active=True,
            reason=reason,
            activated_at=self._clock().astimezone(timezone.utc).isoformat(),
            activated_by=activated_by,
        )
        self._backend.write({
            "reason": state.reason,
            "activated_at": state.activated_at,
            "activated_by": state.activated_by,
        })
        logger.critical(f"EMERGENCY STOP ACTIVATED by {activated_by}: {reason} (flag={self.path})")
        return state

    def deactivate(self, operator: str = "operator") -> None:
        if not self._backend.exists():
            return
        self._backend.delete()
        logger.warning(f"Emergency stop cleared by {operator}")


__all__ = ["DailyLossTracker", "EmergencyStop"]
