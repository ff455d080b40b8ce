"""
Tests for the persisted circuit breakers.

- DailyLossTracker: UTC-day rollover, persistence after every attempt
- EmergencyStop: flag file latch (manual empty file or JSON body)
"""

from datetime import datetime, timedelta, timezone

from core.circuit_breakers import DailyLossTracker, EmergencyStop
from core.models import LiquidationResult
from infra.state_store import JsonFileBackend, create_state_store


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _tracker(path, limit=50.0, clock=None):
    return DailyLossTracker(create_state_store(path), limit, clock=clock)


class TestDailyLossTracker:
    def test_load_creates_todays_stats(self, state_dir):
        clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        tracker = _tracker(state_dir / "daily_stats.json", clock=clock)

        stats = tracker.load()

        assert stats.date == "2026-03-01"
        assert stats.total_attempts == 0
        assert (state_dir / "daily_stats.json").exists()

    def test_record_persists_after_every_attempt(self, state_dir):
        clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        path = state_dir / "daily_stats.json"
        tracker = _tracker(path, clock=clock)
        tracker.load()

        tracker.record(LiquidationResult(success=True, profit_usd=40.0, gas_usd=2.0))
        tracker.record(LiquidationResult(success=False, gas_usd=3.5))

        reloaded = _tracker(path, clock=clock).load()
        assert reloaded.total_attempts == 2
        assert reloaded.success_count == 1
        assert reloaded.failure_count == 1
        assert reloaded.total_profit_usd == 38.0
        assert reloaded.total_loss_usd == 3.5
        assert reloaded.net_profit_usd == 34.5

    def test_peek_reads_without_writing(self, state_dir):
        path = state_dir / "daily_stats.json"
        clock = FakeClock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
        tracker = _tracker(path, clock=clock)

        assert tracker.peek().total_attempts == 0
        assert not path.exists()

        tracker.record(LiquidationResult(success=False, gas_usd=5.0))
        before = path.read_text()
        assert _tracker(path, clock=clock).peek().total_loss_usd == 5.0

        clock.now = clock.now + timedelta(days=1)
        assert _tracker(path, clock=clock).peek().date == "2026-03-02"
        assert path.read_text() == before

    def test_resets_once_on_utc_rollover(self, state_dir):
        clock = FakeClock(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
        path = state_dir / "daily_stats.json"
        tracker = _tracker(path, clock=clock)
        tracker.load()
        tracker.record(LiquidationResult(success=False, gas_usd=60.0))
        assert tracker.is_limit_exceeded()

        clock.now = clock.now + timedelta(minutes=2)

        assert tracker.stats.date == "2026-03-02"
        assert tracker.total_loss_usd == 0.0
        assert not tracker.is_limit_exceeded()

        tracker.record(LiquidationResult(success=False, gas_usd=1.0))
        assert tracker.stats.total_attempts == 1

    def test_stale_persisted_day_is_discarded_on_load(self, state_dir):
        path = state_dir / "daily_stats.json"
        yesterday = FakeClock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
        old = _tracker(path, clock=yesterday)
        old.load()
        old.record(LiquidationResult(success=False, gas_usd=10.0))

        today = _tracker(path, clock=FakeClock(datetime(2026, 3, 2, 0, 1, tzinfo=timezone.utc)))

        assert today.load().total_loss_usd == 0.0

    def test_limit_is_strictly_greater_than(self, state_dir):
        tracker = _tracker(state_dir / "daily_stats.json", limit=10.0)
        tracker.load()

        tracker.record(LiquidationResult(success=False, gas_usd=10.0))
        assert not tracker.is_limit_exceeded()

        tracker.record(LiquidationResult(success=False, gas_usd=0.01))
        assert tracker.is_limit_exceeded()

    def test_non_positive_limit_disables_check(self, state_dir):
        tracker = _tracker(state_dir / "daily_stats.json", limit=0)
        tracker.load()

        tracker.record(LiquidationResult(success=False, gas_usd=1_000.0))

        assert not tracker.is_limit_exceeded()
        assert tracker.total_loss_usd == 1_000.0

    def test_malformed_stats_are_replaced(self, state_dir):
        path = state_dir / "daily_stats.json"
        path.write_text('{"date": "2026-03-01", "total_attempts": "many"}')
        clock = FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))

        stats = _tracker(path, clock=clock).load()

        assert stats.total_attempts == 0


class TestEmergencyStop:
    def test_inactive_without_file(self, state_dir):
        stop = EmergencyStop(JsonFileBackend(state_dir / "EMERGENCY_STOP"))

        assert not stop.is_active()
        assert stop.state().is_active is False

    def test_empty_file_is_manual_stop(self, state_dir):
        path = state_dir / "EMERGENCY_STOP"
        path.touch()

        state = EmergencyStop(JsonFileBackend(path)).state()

        assert state.is_active
        assert state.reason == EmergencyStop.MANUAL_REASON
        assert state.activated_by == "operator"

    def test_activate_writes_reason_and_survives_reload(self, state_dir):
        path = state_dir / "EMERGENCY_STOP"
        clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))

        EmergencyStop(JsonFileBackend(path), clock=clock).activate("Daily loss limit exceeded")

        state = EmergencyStop(JsonFileBackend(path)).state()
        assert state.is_active
        assert state.reason == "Daily loss limit exceeded"
        assert state.activated_by == "risk_manager"
        assert state.activated_at == "2026-03-01T12:00:00+00:00"

    def test_latch_keeps_first_reason(self, state_dir):
        stop = EmergencyStop(JsonFileBackend(state_dir / "EMERGENCY_STOP"))

        stop.activate("first")
        stop.activate("second", activated_by="someone")

        assert stop.state().reason == "first"

    def test_only_deactivate_clears(self, state_dir):
        path = state_dir / "EMERGENCY_STOP"
        stop = EmergencyStop(JsonFileBackend(path))
        stop.activate("halt")

        stop.deactivate("alice")

        assert not path.exists()
        assert not stop.is_active()
        stop.deactivate("alice")  # no-op when already clear
