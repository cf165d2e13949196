"""
Pytest configuration and fixtures for auction-investor tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.memory_ledger import MemoryLedger
from infra.portfolio_store import PortfolioStore


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "portfolio.json"


@pytest.fixture
def store(snapshot_path):
    return PortfolioStore(str(snapshot_path))


@pytest.fixture
def errors():
    """Collects everything the investor reports through its error callback."""
    return []
