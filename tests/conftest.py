"""
Test configuration and fixtures for pytest.

Fixtures wrap the fakes in tests/fakes.py so the manager, tunnel and monitor
can be exercised without a Kubernetes API server.
"""

import os

import pytest

from tests.fakes import FakeCluster, FakeEstablisher


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any app imports
    os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
    os.environ["LOG_LEVEL"] = "DEBUG"

    # Import and clear settings cache after env vars are set
    from infradesk.config import get_settings
    get_settings.cache_clear()

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as requiring the kubernetes client")


@pytest.fixture
def fake_cluster():
    return FakeCluster()


@pytest.fixture
def fake_establisher():
    return FakeEstablisher()
