"""
Shared pytest fixtures for the keeper test suite.
"""

from __future__ import annotations

import pytest

from heira_keeper.config import KeeperConfig, NetworkConfig
from heira_keeper.policy import NotificationPolicy
from heira_keeper.storage import SQLiteEscrowStore
from tests.helpers import (
    TEST_PRIVATE_KEY,
    FakeClock,
    FakeLedgerClient,
    FakeNotifier,
)


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite escrow store in a temp directory."""
    s = SQLiteEscrowStore(str(tmp_path / "escrows.db"))
    yield s
    s.close()


@pytest.fixture
def client():
    return FakeLedgerClient("sepolia")


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy(store, notifier, clock):
    return NotificationPolicy(store, notifier, clock=clock)


@pytest.fixture
def keeper_config():
    return KeeperConfig(
        enabled=True,
        private_key=TEST_PRIVATE_KEY,
        interval_seconds=60.0,
        pacing_seconds=0.0,
        networks=[
            NetworkConfig("sepolia", "http://sepolia.invalid", "0x" + "11" * 20),
            NetworkConfig("baseSepolia", "http://base-sepolia.invalid", "0x" + "22" * 20),
        ],
    )
