"""Prometheus-backed metrics hooks for the monitor loop, risk pipeline and executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "liquidator_"


@dataclass
class CycleStats:
    status: str
    indexed: int
    liquidatable: int
    executed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional["MetricsRecorder"] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._rejections: Dict[str, int] = {}

        if not self._enabled:
            return

        self._cycle_summary = Summary(
            "liquidator_cycle_duration_seconds",
            "Duration of a full discovery/verification cycle",
        )
        self._cycle_counter = Counter(
            "liquidator_cycle_total",
            "Cycles by status",
            labelnames=("status",),
        )
        self._candidates_counter = Counter(
            "liquidator_candidates_total",
            "Candidates by lifecycle state",
            labelnames=("state",),
        )
        self._rejections_counter = Counter(
            "liquidator_risk_rejections_total",
            "Risk pipeline rejections by check type",
            labelnames=("check",),
        )
        self._attempts_counter = Counter(
            "liquidator_liquidation_attempts_total",
            "Liquidation attempts by outcome and broadcast channel",
            labelnames=("outcome", "channel"),
        )
        self._profit_counter = Counter(
            "liquidator_realized_profit_usd_total",
            "Realized profit in USD (successful attempts)",
        )
        self._gas_counter = Counter(
            "liquidator_gas_spent_usd_total",
            "Gas spent in USD across all attempts",
        )
        self._emergency_gauge = Gauge(
            "liquidator_emergency_stop_active",
            "1 when the emergency stop latch is set",
        )
        self._daily_loss_gauge = Gauge(
            "liquidator_daily_loss_usd",
            "Cumulative loss for the current UTC day",
        )
        self._rpc_errors_counter = Counter(
            "liquidator_rpc_errors_total",
            "Transient RPC failures by source",
            labelnames=("source",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass
        cls._instance = None
        cls._initialized = False

    def is_enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats = stats
        if not self._enabled:
            return
        self._cycle_summary.observe(stats.duration_seconds)
        self._cycle_counter.labels(status=stats.status).inc()

    def record_candidate_state(self, state: str, count: int = 1) -> None:
        if self._enabled and count:
            self._candidates_counter.labels(state=state).inc(count)

    def record_risk_rejection(self, check: str) -> None:
        self._rejections[check] = self._rejections.get(check, 0) + 1
        if self._enabled:
            self._rejections_counter.labels(check=check).inc()

    def record_liquidation(self, success: bool, channel: str, profit_usd: float, gas_usd: float) -> None:
        if not self._enabled:
            return
        self._attempts_counter.labels(outcome="success" if success else "failure", channel=channel).inc()
        if success and profit_usd > 0:
            self._profit_counter.inc(profit_usd)
        if gas_usd > 0:
            self._gas_counter.inc(gas_usd)

    def record_emergency_stop(self, active: bool) -> None:
        if self._enabled:
            self._emergency_gauge.set(1 if active else 0)

    def record_daily_loss(self, loss_usd: float) -> None:
        if self._enabled:
            self._daily_loss_gauge.set(loss_usd)

    def record_rpc_error(self, source: str) -> None:
        if self._enabled:
            self._rpc_errors_counter.labels(source=source).inc()

    @property
    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def rejection_snapshot(self) -> Dict[str, int]:
        return dict(self._rejections)


__all__ = ["MetricsRecorder", "CycleStats"]
