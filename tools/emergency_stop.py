#!/usr/bin/env python3
"""
Operator control for the persisted circuit breakers.

Usage:
    python -m tools.emergency_stop status
    python -m tools.emergency_stop activate --reason "oracle incident"
    python -m tools.emergency_stop deactivate --operator alice

Works on the files named in config/app.yaml (state section), so it can be run
while the liquidator is up; the running process re-reads the flag file on every
validation.
"""
import argparse
import sys
from pathlib import Path
from typing import List, Optional

from core.circuit_breakers import DailyLossTracker, EmergencyStop
from core.config import AppConfig, PolicyConfig, load_yaml_file
from infra.state_store import JsonFileBackend, create_state_store


def _load(config_dir: str):
    config_path = Path(config_dir)
    app = AppConfig(**load_yaml_file(config_path / "app.yaml"))
    policy = PolicyConfig(**load_yaml_file(config_path / "policy.yaml"))
    stop = EmergencyStop(JsonFileBackend(app.state.emergency_stop_file))
    tracker = DailyLossTracker(create_state_store(app.state.daily_stats_file), policy.risk.max_daily_loss_usd)
    return stop, tracker


def print_status(stop: EmergencyStop, tracker: DailyLossTracker) -> None:
    state = stop.state()
    stats = tracker.peek()

    print("\n" + "=" * 60)
    print("LIQUIDATION SENTINEL CIRCUIT BREAKERS")
    print("=" * 60)
    print(f"\nEMERGENCY STOP: {'ACTIVE' if state.is_active else 'inactive'}  ({stop.path})")
    if state.is_active:
        print(f"  Reason:       {state.reason}")
        print(f"  Activated by: {state.activated_by}")
        print(f"  Activated at: {state.activated_at or 'unknown'}")

    limit = tracker.max_daily_loss_usd
    print(f"\nDAILY STATS ({stats.date} UTC):")
    print(f"  Attempts:     {stats.total_attempts} ({stats.success_count} ok / {stats.failure_count} failed)")
    print(f"  Profit:       ${stats.total_profit_usd:.2f}")
    print(f"  Loss:         ${stats.total_loss_usd:.2f} / {'disabled' if limit <= 0 else f'${limit:.2f}'}")
    print(f"  Net:          ${stats.net_profit_usd:.2f}")
    print("=" * 60 + "\n")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect or toggle the emergency stop")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show emergency stop and daily loss state")
    activate = sub.add_parser("activate", help="Halt all liquidations")
    activate.add_argument("--reason", required=True)
    activate.add_argument("--operator", default="operator")
    deactivate = sub.add_parser("deactivate", help="Clear the emergency stop")
    deactivate.add_argument("--operator", default="operator")

    args = parser.parse_args(argv)
    stop, tracker = _load(args.config_dir)

    if args.command == "activate":
        state = stop.activate(args.reason, activated_by=args.operator)
        print(f"Emergency stop ACTIVE: {state.reason} (by {state.activated_by})")
    elif args.command == "deactivate":
        if not stop.is_active():
            print("Emergency stop was not active")
            return 0
        stop.deactivate(operator=args.operator)
        print(f"Emergency stop cleared by {args.operator}")
    else:
        print_status(stop, tracker)
    return 0


if __name__ == "__main__":
    sys.exit(main())
