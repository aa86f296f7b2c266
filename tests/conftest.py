"""pytest configuration and fixtures.

The tests never talk to a real PostgreSQL server: connections are driven by
the scripted fake driver in ``fake_pq``, whose sockets are real socketpairs.
"""

import pytest

from fake_pq import FakeServer


@pytest.fixture
def server() -> FakeServer:
    """A fresh scripted server; pass it as ``driver=`` when connecting."""
    return FakeServer()


@pytest.fixture(autouse=True)
def _no_connect_timeout_env(monkeypatch):
    """Keep PGCONNECT_TIMEOUT from the environment out of the defaults."""
    monkeypatch.delenv("PGCONNECT_TIMEOUT", raising=False)
