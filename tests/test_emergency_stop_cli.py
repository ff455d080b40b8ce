"""Tests for the operator emergency-stop CLI."""

from pathlib import Path

import pytest
import yaml

from core.circuit_breakers import EmergencyStop
from infra.state_store import JsonFileBackend
from tools.emergency_stop import main

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path, state_dir):
    with open(REPO_CONFIG / "app.yaml", "r", encoding="utf-8") as f:
        app = yaml.safe_load(f)
    app["state"]["daily_stats_file"] = str(state_dir / "daily_stats.json")
    app["state"]["emergency_stop_file"] = str(state_dir / "EMERGENCY_STOP")

    path = tmp_path / "config"
    path.mkdir()
    (path / "app.yaml").write_text(yaml.safe_dump(app))
    (path / "policy.yaml").write_text((REPO_CONFIG / "policy.yaml").read_text())
    return path


def _stop(state_dir):
    return EmergencyStop(JsonFileBackend(state_dir / "EMERGENCY_STOP"))


def test_activate_then_status_then_deactivate(config_dir, state_dir, capsys):
    assert main(["--config-dir", str(config_dir), "activate", "--reason", "oracle incident",
                 "--operator", "alice"]) == 0
    assert "Emergency stop ACTIVE: oracle incident (by alice)" in capsys.readouterr().out

    state = _stop(state_dir).state()
    assert state.is_active
    assert state.reason == "oracle incident"
    assert state.activated_by == "alice"

    assert main(["--config-dir", str(config_dir), "status"]) == 0
    out = capsys.readouterr().out
    assert "EMERGENCY STOP: ACTIVE" in out
    assert "oracle incident" in out
    assert "$50.00" in out

    assert main(["--config-dir", str(config_dir), "deactivate", "--operator", "bob"]) == 0
    assert "cleared by bob" in capsys.readouterr().out
    assert not _stop(state_dir).is_active()


def test_activate_keeps_original_reason(config_dir, state_dir, capsys):
    _stop(state_dir).activate("daily loss limit", activated_by="risk_manager")

    main(["--config-dir", str(config_dir), "activate", "--reason", "manual"])

    assert _stop(state_dir).state().reason == "daily loss limit"
    assert "daily loss limit" in capsys.readouterr().out


def test_deactivate_when_inactive(config_dir, capsys):
    assert main(["--config-dir", str(config_dir), "deactivate"]) == 0
    assert "was not active" in capsys.readouterr().out


def test_empty_flag_file_counts_as_manual_stop(config_dir, state_dir, capsys):
    (state_dir / "EMERGENCY_STOP").write_text("")

    main(["--config-dir", str(config_dir), "status"])

    out = capsys.readouterr().out
    assert "EMERGENCY STOP: ACTIVE" in out
    assert EmergencyStop.MANUAL_REASON in out


def test_activate_requires_reason(config_dir):
    with pytest.raises(SystemExit):
        main(["--config-dir", str(config_dir), "activate"])


def test_status_does_not_write_daily_stats(config_dir, state_dir, capsys):
    assert main(["--config-dir", str(config_dir), "status"]) == 0

    assert "Attempts:     0" in capsys.readouterr().out
    assert not (state_dir / "daily_stats.json").exists()
