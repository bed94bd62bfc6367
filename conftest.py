"""
Shared pytest fixtures for the dVPN node engine tests.
"""

import pytest

from dvpn.notify import NotificationHub
from dvpn.settlement.custody import Custody
from dvpn.tunnel.memory import MemoryTunnel
from tests.helpers import FakeClock, make_key


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests wiring several components")


@pytest.fixture
def clock():
    """Provide a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def tunnel():
    """Provide an in-memory tunnel."""
    return MemoryTunnel()


@pytest.fixture
def custody():
    """Provide a custody book with funded test accounts."""
    return Custody({"alice": 1_000_000, "bob": 1_000_000, "node-1": 10_000})


@pytest.fixture
def notifier():
    """Provide a notification hub that records every event."""
    hub = NotificationHub()
    hub.received = []
    hub.subscribe(hub.received.append)
    return hub


@pytest.fixture
def keys():
    """Provide five distinct valid tunnel keys."""
    return [make_key(i) for i in range(1, 6)]
