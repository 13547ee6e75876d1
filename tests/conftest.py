"""Pytest configuration and shared fixtures."""

import pytest

from qrlink.config import Config
from qrlink.pairing.capture import CredentialCapture
from qrlink.pairing.policy import ReconnectPolicy
from qrlink.session_store import MemorySessionStore
from tests.fakes import ProviderFactory


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from qrlink.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def store():
    """In-memory session store."""
    return MemorySessionStore()


@pytest.fixture
def factory():
    """Provider factory recording scripted providers."""
    return ProviderFactory()


@pytest.fixture
def policy():
    """Fast reconnect policy so retry timers fire within a test."""
    return ReconnectPolicy(base_delay=0.01, max_delay=0.04)


@pytest.fixture
def capture(store):
    """Capture without waiting on incomplete bundles."""
    return CredentialCapture(store, recheck_delay=0.0)


@pytest.fixture
def config():
    """Config with short timings."""
    config = Config()
    config.pairing.retain_terminal = 0.0
    config.pairing.keepalive_interval = 0.05
    config.reconnect.base_delay = 0.01
    config.reconnect.max_delay = 0.04
    config.capture.recheck_delay = 0.0
    return config
