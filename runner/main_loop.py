"""
Liquidation Sentinel Runner: Main Loop

Wires the engine together and schedules discovery cycles.

Flow (per tick):
1. Refresh prices and gas
2. Pull candidates from the position index
3. Verify on-chain through the protocol adapters
4. Risk-validate liquidatable positions
5. Execute approved liquidations (or log them in observation mode)

Startup is fail-fast: bad config, a second instance on the same lock, a
missing secret or an active emergency stop all abort before the first cycle.
"""

import argparse
import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Set

from core.candidates import build_sources, load_accounts
from core.chain import ChainContext
from core.circuit_breakers import DailyLossTracker, EmergencyStop
from core.config import load_config
from core.exceptions import FatalStartupError
from core.execution import ExecutionService
from core.monitor import CycleReport, DiscoveryMonitor
from core.prices import PriceCache
from core.profitability import build_profitability_gate
from core.relay import TransactionRelay
from core.risk import RiskManager
from infra.alerting import AlertService, AlertSeverity
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.state_store import JsonFileBackend, create_state_store
from protocols.registry import build_adapters

logger = logging.getLogger(__name__)

OVERLAP_POLICIES = ("no_overlap", "skip_if_running", "allow_overlap")


class CycleScheduler:
    """
    Fixed-interval scheduler with an explicit overlap policy.

    - no_overlap: the next cycle starts after the previous one finished
      (the interval is measured from the cycle start)
    - skip_if_running: ticks are fixed-rate; a tick that finds a cycle still
      running is skipped
    - allow_overlap: ticks are fixed-rate and every tick starts a cycle

    A cycle that raises is logged and retried on the next tick.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        overlap_policy: str = "no_overlap",
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if overlap_policy not in OVERLAP_POLICIES:
            raise ValueError(f"Unknown overlap policy {overlap_policy!r}; expected one of {OVERLAP_POLICIES}")
        self._cycle = cycle
        self.interval_seconds = interval_seconds
        self.overlap_policy = overlap_policy
        self._clock = clock
        self._sleep = sleep or self._wait_or_stop
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._inflight: Set[asyncio.Task] = set()
        self.started = 0
        self.skipped = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def _wait_or_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(self, max_ticks: Optional[int] = None) -> None:
        self._running = True
        self._stop_event = asyncio.Event()
        ticks = 0
        try:
            while self._running and (max_ticks is None or ticks < max_ticks):
                ticks += 1
                tick_start = self._clock()

                if self.overlap_policy == "no_overlap":
                    await self._run_one()
                elif self.overlap_policy == "skip_if_running" and self._inflight:
                    self.skipped += 1
                    logger.warning("Previous cycle still running; skipping this tick")
                else:
                    self._spawn()

                if not self._running or (max_ticks is not None and ticks >= max_ticks):
                    break
                elapsed = self._clock() - tick_start
                await self._sleep(max(self.interval_seconds - elapsed, 0.0))
        finally:
            if self._inflight:
                logger.info(f"Waiting for {len(self._inflight)} in-flight cycle(s) to finish")
                await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _spawn(self) -> None:
        task = asyncio.create_task(self._run_one())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_one(self) -> None:
        self.started += 1
        try:
            await self._cycle()
        except Exception:
            self.failed += 1
            logger.exception("Cycle failed; retrying on next tick")


class LiquidationBot:
    """
    Process-level orchestrator.

    Responsibilities:
    - Validate and load config
    - Hold the single-instance lock
    - Build the chain/price/adapter/risk/execution stack
    - Run cycles until stopped, then close transports
    """

    def __init__(self, config_dir: str = "config", env: Optional[Mapping[str, str]] = None):
        self.config_dir = Path(config_dir)
        self._env = os.environ if env is None else env

        from tools.config_validator import validate_all_configs

        validation_errors = validate_all_configs(str(self.config_dir))
        if validation_errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {err}" for err in validation_errors)
            logger.error("=" * 80)
            logger.error("CONFIG VALIDATION FAILED")
            logger.error("=" * 80)
            for err in validation_errors:
                logger.error(f"  {err}")
            logger.error("=" * 80)
            raise ValueError(error_msg)

        self.config = load_config(str(self.config_dir))
        app = self.config.app
        policy = self.config.policy
        self.execution_enabled = app.app.execution_enabled

        self._configure_logging(app.logging.level, app.logging.file)

        self.instance_lock = SingleInstanceLock(app.state.lock_name, lock_dir=app.state.lock_dir)
        if not self.instance_lock.acquire():
            logger.error("=" * 80)
            logger.error("ANOTHER INSTANCE IS ALREADY RUNNING")
            logger.error("=" * 80)
            logger.error(f"Lock file: {self.instance_lock.lock_file} (PID={self.instance_lock.holder_pid()})")
            logger.error("Two liquidators on one key race nonces and double-count daily losses.")
            logger.error("=" * 80)
            raise FatalStartupError("Another liquidator instance is already running")

        try:
            self._build(app, policy)
        except Exception:
            self.instance_lock.release()
            raise

        self._running = False
        self.scheduler: Optional[CycleScheduler] = None
        logger.info(
            f"Initialized LiquidationBot (chain={app.chain.chain_id}, protocols={self.adapters.names()}, "
            f"mode={policy.execution.mode}, execution={'ON' if self.execution_enabled else 'OFF'})"
        )

    @staticmethod
    def _configure_logging(level: str, log_file: str) -> None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[
                logging.FileHandler(log_path),
                logging.StreamHandler(),
            ],
        )

    def _secret(self, env_key: str) -> Optional[str]:
        value = self._env.get(env_key, "")
        return value.strip() or None

    def _build(self, app, policy) -> None:
        rpc_url = self._secret(app.chain.rpc_url_env) or app.chain.rpc_url
        if not rpc_url:
            raise FatalStartupError(f"No RPC endpoint: set {app.chain.rpc_url_env} or chain.rpc_url")

        private_key = self._secret(app.chain.private_key_env)
        if self.execution_enabled and not private_key:
            raise FatalStartupError(
                f"execution_enabled=true requires the signing key in ${app.chain.private_key_env}"
            )

        relay_token = None
        if app.relay.enabled:
            relay_token = self._secret(app.relay.auth_token_env)
            if not relay_token:
                raise FatalStartupError(f"relay.enabled=true requires ${app.relay.auth_token_env}")

        self.metrics = MetricsRecorder(enabled=app.metrics.enabled, port=app.metrics.port)
        self.alert_service = AlertService.from_config(app.alerts.enabled, app.alerts.model_dump(), env=self._env)

        self.chain = ChainContext.connect(
            rpc_url,
            app.chain.chain_id,
            private_key=private_key,
            rpc_timeout_seconds=app.chain.rpc_timeout_seconds,
            retry_policy=app.chain.rpc_retry.to_policy(),
            multicall_address=app.chain.multicall_address,
        )
        self.price_cache = PriceCache(
            app.prices.tickers_url,
            ttl_seconds=app.prices.ttl_seconds,
            timeout_seconds=app.prices.timeout_seconds,
            max_stale_seconds=app.prices.max_stale_seconds,
        )

        mode = policy.execution.execution_mode
        self.adapters = build_adapters(app.protocols, self.chain, self.price_cache, mode)
        if not len(self.adapters):
            raise FatalStartupError("No protocol adapters enabled")

        loss_tracker = DailyLossTracker(
            create_state_store(app.state.daily_stats_file),
            policy.risk.max_daily_loss_usd,
        )
        loss_tracker.load()
        emergency_stop = EmergencyStop(JsonFileBackend(app.state.emergency_stop_file))

        self.risk_manager = RiskManager(
            policy.risk,
            loss_tracker,
            emergency_stop,
            self.chain,
            self.adapters,
            execution_mode=mode,
            alert_service=self.alert_service,
            metrics=self.metrics,
        )
        self.risk_manager.ensure_startable()

        self.relay = TransactionRelay(self.chain, app.relay, auth_token=relay_token)
        self.executor = ExecutionService(
            self.chain,
            self.relay,
            self.risk_manager,
            self.adapters,
            policy.risk,
            policy.execution,
            alert_service=self.alert_service,
            metrics=self.metrics,
            profitability=build_profitability_gate(app.dex, self.chain, policy.risk),
        )
        self.sources = build_sources(app.indexer, app.protocols)
        self.monitor = DiscoveryMonitor(
            self.chain,
            self.price_cache,
            self.sources,
            self.adapters,
            self.risk_manager,
            self.executor,
            app.monitor,
            app.chain.native_price_token,
            execution_enabled=self.execution_enabled,
            metrics=self.metrics,
        )

    # ----- cycles -----

    async def run_cycle(self) -> CycleReport:
        self.metrics.record_emergency_stop(self.risk_manager.is_emergency_stopped())
        return await self.monitor.run_cycle()

    async def run_once(self) -> CycleReport:
        try:
            return await self.run_cycle()
        finally:
            await self.close()

    async def run_bulk_scan(self, accounts_file: Optional[str] = None, protocol: Optional[str] = None) -> CycleReport:
        path = accounts_file or self.config.app.monitor.bulk_scan_accounts_file
        if not path:
            raise ValueError("Bulk scan needs an accounts file (--bulk-scan or monitor.bulk_scan_accounts_file)")
        accounts = load_accounts(path)
        logger.info(f"Bulk scan over {len(accounts)} account(s) from {path}")
        try:
            return await self.monitor.bulk_scan(accounts, protocol=protocol)
        finally:
            await self.close()

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        interval = interval_seconds or self.config.app.loop.interval_seconds
        self.scheduler = CycleScheduler(
            self.run_cycle,
            interval,
            overlap_policy=self.config.app.loop.overlap_policy,
        )
        self._install_signal_handlers()
        self.metrics.start()
        self._running = True

        logger.info(
            f"Starting liquidation loop (interval={interval}s, overlap={self.scheduler.overlap_policy})"
        )
        try:
            await self.scheduler.run()
        finally:
            self._running = False
            await self.close()
            logger.info("Liquidation loop stopped")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_stop, sig)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda signum, frame: self._handle_stop(signum))

    def _handle_stop(self, signum=None) -> None:
        logger.warning("=" * 80)
        logger.warning(f"SHUTDOWN SIGNAL RECEIVED ({signum}) - finishing in-flight work")
        logger.warning("=" * 80)
        self._running = False
        if self.scheduler is not None:
            self.scheduler.stop()

    async def close(self) -> None:
        for name, closer in (
            ("price cache", self.price_cache.close),
            ("relay", self.relay.close),
            ("chain", self.chain.close),
            ("alerts", self.alert_service.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Failed to close {name}: {e}")
        for source in self.sources:
            try:
                await source.close()
            except Exception as e:
                logger.warning(f"Failed to close {source.protocol} index source: {e}")
        self.instance_lock.release()

    def notify_startup(self) -> None:
        self.alert_service.notify(
            AlertSeverity.INFO,
            "Liquidator started",
            f"protocols={self.adapters.names()} execution={'ON' if self.execution_enabled else 'OFF'}",
            {"chain_id": self.config.app.chain.chain_id, "mode": self.config.policy.execution.mode},
        )


def main():
    parser = argparse.ArgumentParser(description="On-chain liquidation sentinel")
    parser.add_argument("--once", action="store_true", help="Run a single discovery cycle and exit")
    parser.add_argument("--bulk-scan", metavar="FILE", nargs="?", const="",
                        help="Scan every account in FILE (or monitor.bulk_scan_accounts_file) and exit")
    parser.add_argument("--protocol", choices=["gmx", "aave", "venus"], default=None,
                        help="Restrict --bulk-scan to one protocol")
    parser.add_argument("--interval", type=float, default=None, help="Cycle interval in seconds")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    try:
        bot = LiquidationBot(config_dir=args.config_dir)
    except FatalStartupError as e:
        logger.critical(f"Startup aborted: {e}")
        raise SystemExit(1)

    bot.notify_startup()
    if args.bulk_scan is not None:
        asyncio.run(bot.run_bulk_scan(args.bulk_scan or None, protocol=args.protocol))
    elif args.once:
        asyncio.run(bot.run_once())
    else:
        asyncio.run(bot.run_forever(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
