"""
Pytest configuration and fixtures for liquidation-sentinel tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def state_dir(tmp_path):
    """Scratch directory for daily stats / emergency stop / lock files."""
    path = tmp_path / "data"
    path.mkdir()
    return path
