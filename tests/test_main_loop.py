"""
Tests for the cycle scheduler overlap policies and fail-fast bot startup.
"""

import asyncio
import os
from pathlib import Path

import pytest
import yaml

from core.exceptions import FatalStartupError
from runner.main_loop import CycleScheduler, LiquidationBot

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


class FakeSleep:
    """Records requested delays and yields to the event loop."""

    def __init__(self, on_call=None):
        self.delays = []
        self._on_call = on_call

    async def __call__(self, delay):
        self.delays.append(delay)
        if self._on_call is not None:
            self._on_call(len(self.delays))
        for _ in range(3):
            await asyncio.sleep(0)


class TestCycleScheduler:
    def test_rejects_unknown_policy(self):
        with pytest.raises(ValueError, match="overlap policy"):
            CycleScheduler(lambda: None, 10, overlap_policy="sometimes")

    def test_no_overlap_measures_interval_from_cycle_start(self):
        calls = []

        async def cycle():
            calls.append(1)

        sleep = FakeSleep()
        clock = iter([0, 4, 10, 13, 20]).__next__
        scheduler = CycleScheduler(cycle, 10, clock=clock, sleep=sleep)

        asyncio.run(scheduler.run(max_ticks=3))

        assert len(calls) == 3
        assert sleep.delays == [6, 7]

    def test_slow_cycle_starts_next_immediately(self):
        async def cycle():
            pass

        sleep = FakeSleep()
        scheduler = CycleScheduler(cycle, 10, clock=iter([0, 15, 15]).__next__, sleep=sleep)

        asyncio.run(scheduler.run(max_ticks=2))

        assert sleep.delays == [0.0]

    def test_skip_if_running_skips_busy_ticks(self):
        state = {}

        async def cycle():
            await state["gate"].wait()

        def release_on_second_sleep(count):
            if count == 2:
                state["gate"].set()

        scheduler = CycleScheduler(cycle, 10, overlap_policy="skip_if_running",
                                   sleep=FakeSleep(release_on_second_sleep))

        async def run():
            state["gate"] = asyncio.Event()
            await scheduler.run(max_ticks=3)

        asyncio.run(run())

        assert scheduler.started == 2
        assert scheduler.skipped == 1
        assert scheduler.inflight == 0

    def test_allow_overlap_runs_cycles_concurrently(self):
        active = {"now": 0, "peak": 0}

        async def cycle():
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1

        scheduler = CycleScheduler(cycle, 10, overlap_policy="allow_overlap", sleep=FakeSleep())

        asyncio.run(scheduler.run(max_ticks=3))

        assert scheduler.started == 3
        assert active["peak"] >= 2
        assert active["now"] == 0

    def test_failed_cycle_is_retried_next_tick(self):
        async def cycle():
            raise RuntimeError("rpc down")

        scheduler = CycleScheduler(cycle, 1, sleep=FakeSleep())

        asyncio.run(scheduler.run(max_ticks=2))

        assert scheduler.started == 2
        assert scheduler.failed == 2

    def test_stop_from_inside_cycle_ends_loop(self):
        scheduler = None

        async def cycle():
            if scheduler.started == 2:
                scheduler.stop()

        scheduler = CycleScheduler(cycle, 1, sleep=FakeSleep())

        asyncio.run(scheduler.run())

        assert scheduler.started == 2
        assert not scheduler.running


def _write_config(tmp_path, app_changes=None, policy_changes=None):
    with open(REPO_CONFIG / "app.yaml", "r", encoding="utf-8") as f:
        app = yaml.safe_load(f)
    with open(REPO_CONFIG / "policy.yaml", "r", encoding="utf-8") as f:
        policy = yaml.safe_load(f)

    data_dir = tmp_path / "data"
    app["logging"]["file"] = str(tmp_path / "logs" / "liquidator.log")
    app["state"] = {
        "daily_stats_file": str(data_dir / "daily_stats.json"),
        "emergency_stop_file": str(data_dir / "EMERGENCY_STOP"),
        "lock_dir": str(data_dir),
        "lock_name": "test-sentinel",
    }
    for section, values in (app_changes or {}).items():
        app[section].update(values)
    for section, values in (policy_changes or {}).items():
        policy[section].update(values)

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "app.yaml").write_text(yaml.safe_dump(app))
    (config_dir / "policy.yaml").write_text(yaml.safe_dump(policy))
    return config_dir, data_dir


class TestStartup:
    def test_invalid_config_aborts(self, tmp_path):
        config_dir, _ = _write_config(tmp_path, policy_changes={"execution": {"mode": "yolo"}})

        with pytest.raises(ValueError, match="Configuration validation failed"):
            LiquidationBot(config_dir=str(config_dir), env={})

    def test_second_instance_is_refused(self, tmp_path):
        config_dir, data_dir = _write_config(tmp_path)
        data_dir.mkdir()
        # Lock held by a live process other than this one
        (data_dir / "test-sentinel.pid").write_text(str(os.getppid()))

        with pytest.raises(FatalStartupError, match="already running"):
            LiquidationBot(config_dir=str(config_dir), env={})

    def test_execution_without_signing_key_releases_lock(self, tmp_path):
        config_dir, data_dir = _write_config(
            tmp_path,
            app_changes={"app": {"execution_enabled": True}},
            policy_changes={"execution": {"mode": "wallet"}},
        )

        with pytest.raises(FatalStartupError, match="PRIVATE_KEY"):
            LiquidationBot(config_dir=str(config_dir), env={})

        assert not (data_dir / "test-sentinel.pid").exists()
